from __future__ import annotations

import logging
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from checkout_portal.auth import Principal, is_elevated_role
from checkout_portal.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from checkout_portal.models import (
    CheckoutRecord,
    CheckoutStatus,
    FulfillmentReason,
    Reservation,
    ReservationMessage,
    ReservationStatus,
    SenderType,
)
from checkout_portal.services import notification_service
from checkout_portal.services.audit_service import log_audit
from checkout_portal.services.checkout_record_service import (
    CheckoutUnit,
    create_checkout_units,
    delete_records_for_reservation,
    records_for_reservation,
    serialize_checkout,
    validate_window,
)
from checkout_portal.services.conversation_service import append_message, serialize_message, thread_for
from checkout_portal.services.inventory_ledger_service import assert_reservable
from checkout_portal.services.notification_service import Notification

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
TIME_RE = re.compile(r'^(\d{1,2}):(\d{2})$')
NOTIFY_STATUSES = {ReservationStatus.SEEN, ReservationStatus.APPROVED, ReservationStatus.DENIED}
DECISION_STATUSES = {ReservationStatus.APPROVED, ReservationStatus.DENIED}
DEFAULT_SEED_MESSAGE = 'Checkout request submitted'
LAST_SLOT_MINUTES = 23 * 60 + 45


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class ReservationLine:
    item_id: int
    quantity: int
    from_date: date
    to_date: date

    def as_json(self) -> dict:
        return {
            'item_id': self.item_id,
            'quantity': self.quantity,
            'from_date': self.from_date.isoformat(),
            'to_date': self.to_date.isoformat(),
        }

    @classmethod
    def from_json(cls, raw: dict) -> ReservationLine:
        return cls(
            item_id=int(raw['item_id']),
            quantity=int(raw['quantity']),
            from_date=date.fromisoformat(raw['from_date']),
            to_date=date.fromisoformat(raw['to_date']),
        )


@dataclass
class TransitionResult:
    reservation: Reservation
    notifications: list[Notification] = field(default_factory=list)
    records: list[CheckoutRecord] = field(default_factory=list)


@dataclass(frozen=True)
class PickupSchedule:
    pickup_date: date | None
    pickup_time: str | None
    pickup_location: str | None


def parse_status(raw: str | ReservationStatus | None) -> ReservationStatus:
    if isinstance(raw, ReservationStatus):
        return raw
    try:
        return ReservationStatus((raw or '').strip().lower())
    except ValueError as exc:
        allowed = ', '.join(status.value for status in ReservationStatus)
        raise ValidationError(f'Invalid status. Expected one of: {allowed}') from exc


def round_to_quarter_hour(raw: str) -> str:
    match = TIME_RE.match(raw.strip())
    if not match:
        raise ValidationError('Pickup time must be in HH:MM format')
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValidationError('Pickup time must be in HH:MM format')

    # Clamped to the last slot of the day so the pickup never moves to another date.
    total = min(hours * 60 + round(minutes / 15) * 15, LAST_SLOT_MINUTES)
    hours, minutes = divmod(total, 60)
    return f'{hours:02d}:{minutes:02d}'


def validate_schedule(schedule: PickupSchedule) -> PickupSchedule:
    location = (schedule.pickup_location or '').strip()
    time_raw = (schedule.pickup_time or '').strip()
    if schedule.pickup_date is None or not time_raw or not location:
        raise ValidationError('Pickup date, time, and location are all required')
    return PickupSchedule(
        pickup_date=schedule.pickup_date,
        pickup_time=round_to_quarter_hour(time_raw),
        pickup_location=location,
    )


def _validate_lines(lines: list[ReservationLine]) -> None:
    if not lines:
        raise ValidationError('Name, email, and at least one item are required')
    for line in lines:
        if line.quantity < 1:
            raise ValidationError(f'Quantity for item {line.item_id} must be at least 1')
        validate_window(line.from_date, line.to_date)


def _wanted_by_item(lines: list[ReservationLine]) -> dict[int, int]:
    wanted: Counter[int] = Counter()
    for line in lines:
        wanted[line.item_id] += line.quantity
    return dict(wanted)


def requested_lines(reservation: Reservation) -> list[ReservationLine]:
    return [ReservationLine.from_json(raw) for raw in reservation.item_lines or []]


def get_reservation(db: Session, reservation_id: str, *, lock: bool = False) -> Reservation:
    query = select(Reservation).where(Reservation.id == reservation_id)
    if lock:
        query = query.with_for_update()
    reservation = db.execute(query).scalar_one_or_none()
    if not reservation:
        raise NotFoundError('Checkout request not found')
    return reservation


def submit_reservation(
    db: Session,
    *,
    requester_name: str,
    requester_email: str,
    requester_phone: str | None,
    purpose: str | None,
    lines: list[ReservationLine],
    now: datetime | None = None,
) -> TransitionResult:
    clean_name = (requester_name or '').strip()
    clean_email = (requester_email or '').strip()
    if not clean_name or not clean_email:
        raise ValidationError('Name, email, and at least one item are required')
    if not EMAIL_RE.match(clean_email):
        raise ValidationError('A valid email address is required')
    _validate_lines(lines)

    assert_reservable(db, _wanted_by_item(lines))

    created_at = now or _now()
    clean_purpose = purpose.strip() if purpose and purpose.strip() else None
    reservation = Reservation(
        requester_name=clean_name,
        requester_email=clean_email,
        requester_phone=requester_phone.strip() if requester_phone and requester_phone.strip() else None,
        purpose=clean_purpose,
        item_lines=[line.as_json() for line in lines],
        status=ReservationStatus.UNSEEN,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(reservation)
    db.flush()

    append_message(
        db,
        reservation_id=reservation.id,
        sender_type=SenderType.REQUESTER,
        sender_name=clean_name,
        sender_email=clean_email,
        body=clean_purpose or DEFAULT_SEED_MESSAGE,
        now=created_at,
    )
    confirmation = notification_service.submission_confirmation(
        email=reservation.requester_email,
        name=reservation.requester_name,
        reservation_id=reservation.id,
    )
    return TransitionResult(reservation=reservation, notifications=[confirmation])


def reconcile_unfulfilled(db: Session, reservation: Reservation) -> int:
    """Purge active records that exist for a reservation that was never fulfilled."""
    if reservation.fulfilled or reservation.ready_for_pickup or reservation.picked_up:
        return 0
    purged = delete_records_for_reservation(db, reservation_id=reservation.id, active_only=True)
    if purged:
        logger.warning('Purged %s premature checkout records for checkout request %s', purged, reservation.id)
    return purged


def update_status(
    db: Session,
    *,
    reservation_id: str,
    new_status: str | ReservationStatus,
    principal: Principal,
    message: str | None = None,
    now: datetime | None = None,
    ip: str | None = None,
) -> TransitionResult:
    status = parse_status(new_status)
    reservation = get_reservation(db, reservation_id, lock=True)
    if status != ReservationStatus.APPROVED and (reservation.fulfilled or reservation.ready_for_pickup or reservation.picked_up):
        raise ConflictError('Checkout request has already been fulfilled; return its equipment before changing status')
    changed_at = now or _now()

    previous = reservation.status
    reservation.status = status
    if status in DECISION_STATUSES:
        reservation.approved_by = principal.attribution
        reservation.approved_at = changed_at
    reservation.updated_at = changed_at

    clean_message = message.strip() if message and message.strip() else None
    if clean_message:
        append_message(
            db,
            reservation_id=reservation.id,
            sender_type=SenderType.ADMIN,
            sender_name=principal.display_name or principal.email or 'Admin',
            sender_email=principal.email,
            body=clean_message,
            now=changed_at,
        )

    reconcile_unfulfilled(db, reservation)
    log_audit(
        db,
        actor_id=principal.id,
        action='RESERVATION_STATUS_CHANGED',
        reservation_id=reservation.id,
        ip=ip,
        metadata={'from': previous.value, 'to': status.value},
    )
    db.flush()

    notifications = []
    if status in NOTIFY_STATUSES:
        notifications.append(
            notification_service.status_update(
                email=reservation.requester_email,
                name=reservation.requester_name,
                reservation_id=reservation.id,
                status=status.value,
                message=clean_message,
            )
        )
    return TransitionResult(reservation=reservation, notifications=notifications)


def _require_approved(reservation: Reservation) -> None:
    if reservation.status != ReservationStatus.APPROVED:
        raise ConflictError('Checkout request must be approved before it can be fulfilled')


def _fulfill(db: Session, reservation: Reservation, *, reason: FulfillmentReason, now: datetime) -> list[CheckoutRecord]:
    """Materialize one checkout record per requested unit, exactly once per reservation.

    Callers hold the reservation row lock, so the existence check and the inserts are serialized
    per reservation; the (reservation, item, sequence) unique constraint backs that up.
    """
    existing = records_for_reservation(db, reservation.id)
    if existing:
        if reservation.fulfilled_at is None:
            reservation.fulfilled_at = now
            reservation.fulfillment_reason = reason
        return existing

    sequence_by_item: Counter[int] = Counter()
    units: list[CheckoutUnit] = []
    for line in requested_lines(reservation):
        for _ in range(line.quantity):
            sequence_by_item[line.item_id] += 1
            units.append(
                CheckoutUnit(
                    item_id=line.item_id,
                    from_date=line.from_date,
                    due_date=line.to_date,
                    checked_out_by=reservation.requester_name,
                    reservation_id=reservation.id,
                    unit_sequence=sequence_by_item[line.item_id],
                    notes=f'{reason.value.replace("_", " ").capitalize()} from checkout request {reservation.id}',
                )
            )

    try:
        records = create_checkout_units(db, units, now=now)
    except IntegrityError as exc:
        raise ConflictError('Checkout request is already being fulfilled') from exc

    reservation.fulfilled_at = now
    reservation.fulfillment_reason = reason
    logger.info('Materialized %s checkout records for checkout request %s (%s)', len(records), reservation.id, reason.value)
    return records


def set_ready_for_pickup(
    db: Session,
    *,
    reservation_id: str,
    principal: Principal,
    schedule: PickupSchedule,
    now: datetime | None = None,
    ip: str | None = None,
) -> TransitionResult:
    clean_schedule = validate_schedule(schedule)
    reservation = get_reservation(db, reservation_id, lock=True)
    _require_approved(reservation)
    changed_at = now or _now()

    records = _fulfill(db, reservation, reason=FulfillmentReason.READY_FOR_PICKUP, now=changed_at)
    newly_ready = not reservation.ready_for_pickup
    reservation.ready_for_pickup = True
    reservation.pickup_date = clean_schedule.pickup_date
    reservation.pickup_time = clean_schedule.pickup_time
    reservation.pickup_location = clean_schedule.pickup_location
    reservation.updated_at = changed_at

    log_audit(
        db,
        actor_id=principal.id,
        action='RESERVATION_READY_FOR_PICKUP',
        reservation_id=reservation.id,
        ip=ip,
        metadata={'records': len(records), 'pickup_date': clean_schedule.pickup_date.isoformat()},
    )
    db.flush()

    notifications = []
    if newly_ready:
        notifications.append(
            notification_service.ready_for_pickup(
                email=reservation.requester_email,
                name=reservation.requester_name,
                reservation_id=reservation.id,
            )
        )
    return TransitionResult(reservation=reservation, notifications=notifications, records=records)


def set_picked_up(
    db: Session,
    *,
    reservation_id: str,
    principal: Principal,
    now: datetime | None = None,
    ip: str | None = None,
) -> TransitionResult:
    reservation = get_reservation(db, reservation_id, lock=True)
    _require_approved(reservation)
    changed_at = now or _now()

    records = _fulfill(db, reservation, reason=FulfillmentReason.PICKED_UP, now=changed_at)
    if not reservation.picked_up:
        reservation.picked_up = True
        reservation.picked_up_at = changed_at
    reservation.updated_at = changed_at

    log_audit(
        db,
        actor_id=principal.id,
        action='RESERVATION_PICKED_UP',
        reservation_id=reservation.id,
        ip=ip,
        metadata={'records': len(records)},
    )
    db.flush()
    return TransitionResult(reservation=reservation, records=records)


def schedule_pickup(db: Session, *, reservation_id: str, schedule: PickupSchedule, now: datetime | None = None) -> Reservation:
    clean_schedule = validate_schedule(schedule)
    reservation = get_reservation(db, reservation_id, lock=True)
    if not reservation.ready_for_pickup:
        raise ValidationError('This request is not ready for pickup yet')

    reservation.pickup_date = clean_schedule.pickup_date
    reservation.pickup_time = clean_schedule.pickup_time
    reservation.pickup_location = clean_schedule.pickup_location
    reservation.updated_at = now or _now()
    db.flush()
    return reservation


def delete_reservation(db: Session, *, reservation_id: str, principal: Principal, ip: str | None = None) -> None:
    if not is_elevated_role(principal.role):
        raise ForbiddenError('Forbidden')

    reservation = get_reservation(db, reservation_id, lock=True)
    # Records survive the request; active ones still hold inventory until returned.
    db.execute(
        update(CheckoutRecord)
        .where(CheckoutRecord.reservation_id == reservation.id)
        .values(reservation_id=None)
        .execution_options(synchronize_session='fetch')
    )
    db.delete(reservation)
    log_audit(db, actor_id=principal.id, action='RESERVATION_DELETED', reservation_id=reservation_id, ip=ip)
    db.flush()
    logger.info('Checkout request %s deleted by %s', reservation_id, principal.attribution)


def serialize_reservation(
    reservation: Reservation,
    *,
    messages: list[ReservationMessage],
    records: list[CheckoutRecord],
) -> dict:
    return {
        'id': reservation.id,
        'requester_name': reservation.requester_name,
        'requester_email': reservation.requester_email,
        'requester_phone': reservation.requester_phone,
        'purpose': reservation.purpose,
        'items': list(reservation.item_lines or []),
        'status': reservation.status.value,
        'approved_by': reservation.approved_by,
        'approved_at': reservation.approved_at,
        'ready_for_pickup': reservation.ready_for_pickup,
        'pickup_date': reservation.pickup_date,
        'pickup_time': reservation.pickup_time,
        'pickup_location': reservation.pickup_location,
        'picked_up': reservation.picked_up,
        'picked_up_at': reservation.picked_up_at,
        'fulfilled': reservation.fulfilled,
        'fulfillment_reason': reservation.fulfillment_reason.value if reservation.fulfillment_reason else None,
        'messages_last_viewed_at': reservation.messages_last_viewed_at,
        'created_at': reservation.created_at,
        'updated_at': reservation.updated_at,
        'messages': [serialize_message(message) for message in messages],
        'checkouts': [serialize_checkout(record) for record in records],
    }


def get_reservation_detail(db: Session, *, reservation_id: str) -> dict:
    reservation = get_reservation(db, reservation_id)
    reconcile_unfulfilled(db, reservation)
    return serialize_reservation(
        reservation,
        messages=thread_for(db, reservation_id=reservation.id),
        records=records_for_reservation(db, reservation.id),
    )


def _is_fully_returned(records: list[CheckoutRecord]) -> bool:
    return bool(records) and all(record.status == CheckoutStatus.RETURNED for record in records)


def list_reservations(
    db: Session,
    *,
    statuses: list[str] | None = None,
    email: str | None = None,
    ready_for_pickup: bool = False,
    picked_up: bool = False,
    returned: bool = False,
) -> list[dict]:
    query = select(Reservation).order_by(Reservation.created_at.desc())
    if statuses:
        query = query.where(Reservation.status.in_([parse_status(raw) for raw in statuses]))
    if email and email.strip():
        query = query.where(func.lower(Reservation.requester_email) == email.strip().lower())
    if ready_for_pickup:
        query = query.where(Reservation.ready_for_pickup.is_(True))
    if picked_up or returned:
        query = query.where(Reservation.picked_up.is_(True))
    reservations = db.execute(query).scalars().all()

    for reservation in reservations:
        reconcile_unfulfilled(db, reservation)

    ids = [reservation.id for reservation in reservations]
    messages_by_id: dict[str, list[ReservationMessage]] = defaultdict(list)
    records_by_id: dict[str, list[CheckoutRecord]] = defaultdict(list)
    if ids:
        for message in db.execute(
            select(ReservationMessage)
            .where(ReservationMessage.reservation_id.in_(ids))
            .order_by(ReservationMessage.created_at.desc(), ReservationMessage.id.desc())
        ).scalars():
            messages_by_id[message.reservation_id].append(message)
        for record in db.execute(
            select(CheckoutRecord).where(CheckoutRecord.reservation_id.in_(ids)).order_by(CheckoutRecord.id.asc())
        ).scalars():
            records_by_id[record.reservation_id].append(record)

    rows = []
    for reservation in reservations:
        records = records_by_id.get(reservation.id, [])
        if returned and not _is_fully_returned(records):
            continue
        rows.append(
            serialize_reservation(
                reservation,
                messages=messages_by_id.get(reservation.id, []),
                records=records,
            )
        )
    return rows
