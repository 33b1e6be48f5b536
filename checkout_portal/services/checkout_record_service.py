from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from checkout_portal.errors import ConflictError, NotFoundError, ValidationError
from checkout_portal.models import CheckoutRecord, CheckoutStatus, InventoryItem, Reservation
from checkout_portal.services.inventory_ledger_service import assert_reservable


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class CheckoutUnit:
    item_id: int
    from_date: date
    due_date: date
    checked_out_by: str
    reservation_id: str | None = None
    unit_sequence: int | None = None
    notes: str | None = None


def validate_window(from_date: date, due_date: date) -> None:
    if due_date < from_date:
        raise ValidationError('To date must be on or after from date')


def create_checkout_units(db: Session, units: list[CheckoutUnit], *, now: datetime | None = None) -> list[CheckoutRecord]:
    """Insert one record per unit after verifying the whole batch against live availability.

    The availability check holds row locks on every touched item until the caller commits, so
    the check and the inserts form one linearization point.
    """
    if not units:
        return []
    for unit in units:
        validate_window(unit.from_date, unit.due_date)
        if not unit.checked_out_by.strip():
            raise ValidationError('Checked out by is required')

    assert_reservable(db, dict(Counter(unit.item_id for unit in units)))

    checked_out_at = now or _now()
    records = [
        CheckoutRecord(
            inventory_item_id=unit.item_id,
            reservation_id=unit.reservation_id,
            unit_sequence=unit.unit_sequence,
            status=CheckoutStatus.CHECKED_OUT,
            checked_out_by=unit.checked_out_by.strip(),
            from_date=unit.from_date,
            due_date=unit.due_date,
            checked_out_at=checked_out_at,
            notes=unit.notes,
            updated_at=checked_out_at,
        )
        for unit in units
    ]
    db.add_all(records)
    db.flush()
    return records


def create_checkout_unit(
    db: Session,
    *,
    item_id: int,
    from_date: date,
    due_date: date,
    checked_out_by: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> CheckoutRecord:
    record = create_checkout_units(
        db,
        [
            CheckoutUnit(
                item_id=item_id,
                from_date=from_date,
                due_date=due_date,
                checked_out_by=checked_out_by,
                notes=notes.strip() if notes and notes.strip() else None,
            )
        ],
        now=now,
    )[0]
    item = db.get(InventoryItem, item_id)
    item.last_used_at = record.checked_out_at
    item.last_used_by = record.checked_out_by
    return record


def _mark_returned(db: Session, record: CheckoutRecord, returned_at: datetime) -> None:
    record.status = CheckoutStatus.RETURNED
    record.returned_at = returned_at
    record.updated_at = returned_at

    item = db.get(InventoryItem, record.inventory_item_id)
    if item:
        item.last_used_at = returned_at
        item.last_used_by = record.checked_out_by


def return_unit(db: Session, *, checkout_id: int, now: datetime | None = None) -> CheckoutRecord:
    record = db.execute(
        select(CheckoutRecord).where(CheckoutRecord.id == checkout_id).with_for_update()
    ).scalar_one_or_none()
    if not record:
        raise NotFoundError('Checkout not found')
    if record.status == CheckoutStatus.RETURNED:
        raise ConflictError('Checkout has already been returned')

    _mark_returned(db, record, now or _now())
    db.flush()
    return record


def return_all_for_reservation(db: Session, *, reservation_id: str, now: datetime | None = None) -> list[CheckoutRecord]:
    exists = db.execute(select(Reservation.id).where(Reservation.id == reservation_id)).scalar_one_or_none()
    if not exists:
        raise NotFoundError('Checkout request not found')

    active = db.execute(
        select(CheckoutRecord)
        .where(
            CheckoutRecord.reservation_id == reservation_id,
            CheckoutRecord.status == CheckoutStatus.CHECKED_OUT,
        )
        .order_by(CheckoutRecord.id.asc())
        .with_for_update()
    ).scalars().all()
    if not active:
        raise ConflictError('No active checkouts found for this request')

    returned_at = now or _now()
    for record in active:
        _mark_returned(db, record, returned_at)
    db.flush()
    return active


def records_for_reservation(db: Session, reservation_id: str) -> list[CheckoutRecord]:
    return db.execute(
        select(CheckoutRecord)
        .where(CheckoutRecord.reservation_id == reservation_id)
        .order_by(CheckoutRecord.inventory_item_id.asc(), CheckoutRecord.unit_sequence.asc(), CheckoutRecord.id.asc())
    ).scalars().all()


def delete_records_for_reservation(db: Session, *, reservation_id: str, active_only: bool = False) -> int:
    conditions = [CheckoutRecord.reservation_id == reservation_id]
    if active_only:
        conditions.append(CheckoutRecord.status == CheckoutStatus.CHECKED_OUT)
    result = db.execute(delete(CheckoutRecord).where(*conditions).execution_options(synchronize_session='fetch'))
    return result.rowcount or 0


def list_checkouts(db: Session, *, status: CheckoutStatus | None = None, checked_out_by: str | None = None) -> list[dict]:
    query = (
        select(CheckoutRecord, InventoryItem.name)
        .join(InventoryItem, InventoryItem.id == CheckoutRecord.inventory_item_id)
        .order_by(CheckoutRecord.checked_out_at.desc(), CheckoutRecord.id.desc())
    )
    if status is not None:
        query = query.where(CheckoutRecord.status == status)
    if checked_out_by and checked_out_by.strip():
        query = query.where(CheckoutRecord.checked_out_by.ilike(f'%{checked_out_by.strip()}%'))
    return [serialize_checkout(record, item_name=item_name) for record, item_name in db.execute(query).all()]


def serialize_checkout(record: CheckoutRecord, *, item_name: str | None = None) -> dict:
    payload = {
        'id': record.id,
        'item_id': record.inventory_item_id,
        'reservation_id': record.reservation_id,
        'status': record.status.value,
        'checked_out_by': record.checked_out_by,
        'from_date': record.from_date,
        'due_date': record.due_date,
        'checked_out_at': record.checked_out_at,
        'returned_at': record.returned_at,
        'notes': record.notes,
    }
    if item_name is not None:
        payload['item_name'] = item_name
    return payload
