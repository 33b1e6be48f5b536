from __future__ import annotations

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from checkout_portal.models import Reservation, ReservationMessage, ReservationStatus, SenderType

ATTENTION_STATUSES = (ReservationStatus.UNSEEN, ReservationStatus.SEEN)


def _latest_message_column(column):
    return (
        select(column)
        .where(ReservationMessage.reservation_id == Reservation.id)
        .order_by(ReservationMessage.created_at.desc(), ReservationMessage.id.desc())
        .limit(1)
        .correlate(Reservation)
        .scalar_subquery()
    )


def unseen_count(db: Session) -> int:
    return db.execute(
        select(func.count(Reservation.id)).where(Reservation.status.in_(ATTENTION_STATUSES))
    ).scalar_one()


def unread_message_count(db: Session) -> int:
    latest_sender = _latest_message_column(ReservationMessage.sender_type)
    latest_at = _latest_message_column(ReservationMessage.created_at)
    return db.execute(
        select(func.count(Reservation.id)).where(
            and_(
                latest_sender == SenderType.REQUESTER,
                or_(
                    Reservation.messages_last_viewed_at.is_(None),
                    latest_at > Reservation.messages_last_viewed_at,
                ),
            )
        )
    ).scalar_one()


def recent_unseen_requests(db: Session, *, limit: int = 5) -> list[dict]:
    rows = db.execute(
        select(
            Reservation.id,
            Reservation.requester_name,
            Reservation.requester_email,
            Reservation.created_at,
            Reservation.item_lines,
        )
        .where(Reservation.status.in_(ATTENTION_STATUSES))
        .order_by(Reservation.created_at.desc())
        .limit(limit)
    ).all()
    return [
        {
            'id': row.id,
            'requester_name': row.requester_name,
            'requester_email': row.requester_email,
            'created_at': row.created_at,
            'items': row.item_lines,
        }
        for row in rows
    ]


def notification_summary(db: Session) -> dict:
    return {
        'unseen_checkout_requests': unseen_count(db),
        'unread_message_count': unread_message_count(db),
        'recent_unseen_requests': recent_unseen_requests(db),
    }
