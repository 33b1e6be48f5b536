from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone

from sqlalchemy import case, delete, func, select
from sqlalchemy.orm import Session

from checkout_portal.config import settings
from checkout_portal.models import CheckoutRecord, CheckoutStatus, Reservation
from checkout_portal.services.audit_service import log_audit

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def months_before(value: datetime, months: int) -> datetime:
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def retention_cutoff(*, now: datetime | None = None, retention_months: int | None = None) -> datetime:
    months = settings.retention_months if retention_months is None else retention_months
    return months_before(now or _now(), months)


def _sweepable_query(cutoff: datetime):
    settled = (
        select(
            CheckoutRecord.reservation_id.label('reservation_id'),
            func.sum(case((CheckoutRecord.status == CheckoutStatus.CHECKED_OUT, 1), else_=0)).label('active_count'),
            func.max(CheckoutRecord.returned_at).label('last_returned_at'),
        )
        .where(CheckoutRecord.reservation_id.is_not(None))
        .group_by(CheckoutRecord.reservation_id)
        .subquery()
    )
    # Inner join: a reservation with no records has nothing to prove settlement and is kept.
    return (
        select(Reservation.id)
        .join(settled, settled.c.reservation_id == Reservation.id)
        .where(
            Reservation.picked_up.is_(True),
            settled.c.active_count == 0,
            settled.c.last_returned_at.is_not(None),
            settled.c.last_returned_at <= cutoff,
        )
        .order_by(Reservation.id.asc())
    )


def sweepable_reservation_ids(db: Session, *, now: datetime | None = None, retention_months: int | None = None) -> list[str]:
    cutoff = retention_cutoff(now=now, retention_months=retention_months)
    return list(db.execute(_sweepable_query(cutoff)).scalars().all())


def count_sweepable(db: Session, *, now: datetime | None = None, retention_months: int | None = None) -> int:
    return len(sweepable_reservation_ids(db, now=now, retention_months=retention_months))


def sweep(
    db: Session,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
    retention_months: int | None = None,
) -> list[str]:
    reservation_ids = sweepable_reservation_ids(db, now=now, retention_months=retention_months)
    if not reservation_ids:
        return []

    db.execute(
        delete(CheckoutRecord)
        .where(
            CheckoutRecord.reservation_id.in_(reservation_ids),
            CheckoutRecord.status == CheckoutStatus.RETURNED,
        )
        .execution_options(synchronize_session='fetch')
    )
    for reservation in db.execute(select(Reservation).where(Reservation.id.in_(reservation_ids))).scalars():
        db.delete(reservation)

    log_audit(
        db,
        actor_id=actor_id,
        action='RETENTION_SWEEP',
        reservation_id=None,
        metadata={'deleted': len(reservation_ids), 'reservation_ids': reservation_ids},
    )
    db.flush()
    logger.info('Retention sweep deleted %s checkout requests', len(reservation_ids))
    return reservation_ids
