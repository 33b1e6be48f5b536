from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    pass


class ReservationStatus(str, Enum):
    UNSEEN = 'unseen'
    SEEN = 'seen'
    APPROVED = 'approved'
    DENIED = 'denied'


class CheckoutStatus(str, Enum):
    CHECKED_OUT = 'checked_out'
    RETURNED = 'returned'


class SenderType(str, Enum):
    REQUESTER = 'requester'
    ADMIN = 'admin'


class FulfillmentReason(str, Enum):
    READY_FOR_PICKUP = 'ready_for_pickup'
    PICKED_UP = 'picked_up'


class InventoryItem(Base):
    __tablename__ = 'inventory_items'
    __table_args__ = (CheckConstraint('quantity >= 0', name='ck_inventory_items_quantity_non_negative'),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    checkout_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_used_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, server_default=func.now())


class Reservation(Base):
    __tablename__ = 'reservations'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    requester_name: Mapped[str] = mapped_column(Text, nullable=False)
    requester_email: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    requester_phone: Mapped[str | None] = mapped_column(Text)
    purpose: Mapped[str | None] = mapped_column(Text)
    item_lines: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[ReservationStatus] = mapped_column(
        SQLEnum(ReservationStatus, name='reservation_status', values_callable=_enum_values),
        nullable=False,
        default=ReservationStatus.UNSEEN,
        server_default=ReservationStatus.UNSEEN.value,
    )
    approved_by: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ready_for_pickup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    pickup_date: Mapped[date | None] = mapped_column(Date)
    pickup_time: Mapped[str | None] = mapped_column(String(5))
    pickup_location: Mapped[str | None] = mapped_column(Text)
    picked_up: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    picked_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fulfillment_reason: Mapped[FulfillmentReason | None] = mapped_column(
        SQLEnum(FulfillmentReason, name='fulfillment_reason', values_callable=_enum_values)
    )
    messages_last_viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, server_default=func.now())

    messages: Mapped[list[ReservationMessage]] = relationship(
        back_populates='reservation',
        cascade='all, delete-orphan',
        order_by='ReservationMessage.created_at',
    )

    @property
    def fulfilled(self) -> bool:
        return self.fulfilled_at is not None


class CheckoutRecord(Base):
    __tablename__ = 'checkout_records'
    __table_args__ = (
        UniqueConstraint('reservation_id', 'inventory_item_id', 'unit_sequence', name='uq_checkout_records_reservation_unit'),
        Index('ix_checkout_records_item_status', 'inventory_item_id', 'status'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    inventory_item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('inventory_items.id'), nullable=False)
    reservation_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey('reservations.id', ondelete='SET NULL'), index=True
    )
    unit_sequence: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[CheckoutStatus] = mapped_column(
        SQLEnum(CheckoutStatus, name='checkout_status', values_callable=_enum_values),
        nullable=False,
        default=CheckoutStatus.CHECKED_OUT,
        server_default=CheckoutStatus.CHECKED_OUT.value,
    )
    checked_out_by: Mapped[str] = mapped_column(Text, nullable=False)
    from_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    checked_out_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, server_default=func.now())
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, server_default=func.now())


class ReservationMessage(Base):
    __tablename__ = 'reservation_messages'
    __table_args__ = (Index('ix_reservation_messages_thread', 'reservation_id', 'created_at'),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    reservation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey('reservations.id', ondelete='CASCADE'), nullable=False
    )
    sender_type: Mapped[SenderType] = mapped_column(
        SQLEnum(SenderType, name='message_sender_type', values_callable=_enum_values), nullable=False
    )
    sender_name: Mapped[str] = mapped_column(Text, nullable=False)
    sender_email: Mapped[str | None] = mapped_column(Text)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, server_default=func.now())

    reservation: Mapped[Reservation] = relationship(back_populates='messages')


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_id: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    reservation_id: Mapped[str | None] = mapped_column(String(36))
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, server_default=func.now())
