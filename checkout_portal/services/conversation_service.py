from __future__ import annotations

import html
import logging
import re
from datetime import datetime, timedelta, timezone
from email.utils import parseaddr

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from checkout_portal.auth import Principal
from checkout_portal.config import settings
from checkout_portal.errors import NotFoundError, ValidationError
from checkout_portal.models import Reservation, ReservationMessage, ReservationStatus, SenderType
from checkout_portal.services.notification_service import Notification, staff_reply

logger = logging.getLogger(__name__)

BR_RE = re.compile(r'<br\s*/?>', re.IGNORECASE)
P_CLOSE_RE = re.compile(r'</p>', re.IGNORECASE)
TAG_RE = re.compile(r'<[^>]*>')
QUOTE_MARKER_RE = re.compile(r'^>+\s*', re.MULTILINE)
REPLY_HISTORY_RES = [
    re.compile(r'On .* wrote:', re.IGNORECASE),
    re.compile(r'-----Original Message-----', re.IGNORECASE),
    re.compile(r'^(From|Sent|Date|Subject|To):.*', re.IGNORECASE | re.MULTILINE),
]
MIN_INBOUND_LENGTH = 3
QUOTE_STRIP_THRESHOLD = 50


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _load_reservation(db: Session, reservation_id: str) -> Reservation:
    reservation = db.execute(select(Reservation).where(Reservation.id == reservation_id)).scalar_one_or_none()
    if not reservation:
        raise NotFoundError('Checkout request not found')
    return reservation


def append_message(
    db: Session,
    *,
    reservation_id: str,
    sender_type: SenderType,
    sender_name: str,
    sender_email: str | None,
    body: str,
    now: datetime | None = None,
) -> ReservationMessage:
    clean_body = (body or '').strip()
    if not clean_body:
        raise ValidationError('Message is required')

    reservation = _load_reservation(db, reservation_id)
    created_at = now or _now()
    message = ReservationMessage(
        reservation_id=reservation.id,
        sender_type=sender_type,
        sender_name=(sender_name or '').strip() or sender_type.value.title(),
        sender_email=(sender_email or '').strip() or None,
        body=clean_body,
        created_at=created_at,
    )
    db.add(message)
    reservation.updated_at = created_at
    db.flush()
    return message


def thread_for(db: Session, *, reservation_id: str, newest_first: bool = False) -> list[ReservationMessage]:
    if newest_first:
        ordering = (ReservationMessage.created_at.desc(), ReservationMessage.id.desc())
    else:
        ordering = (ReservationMessage.created_at.asc(), ReservationMessage.id.asc())
    return db.execute(
        select(ReservationMessage).where(ReservationMessage.reservation_id == reservation_id).order_by(*ordering)
    ).scalars().all()


def post_staff_reply(
    db: Session,
    *,
    reservation_id: str,
    principal: Principal,
    body: str,
) -> tuple[ReservationMessage, list[Notification]]:
    message = append_message(
        db,
        reservation_id=reservation_id,
        sender_type=SenderType.ADMIN,
        sender_name=principal.display_name or principal.email or 'Admin',
        sender_email=principal.email,
        body=body,
    )
    reservation = _load_reservation(db, reservation_id)
    notification = staff_reply(
        email=reservation.requester_email,
        name=reservation.requester_name,
        reservation_id=reservation.id,
        sender_name=message.sender_name,
        message=message.body,
    )
    return message, [notification]


def mark_messages_viewed(db: Session, *, reservation_id: str, now: datetime | None = None) -> Reservation:
    reservation = _load_reservation(db, reservation_id)
    reservation.messages_last_viewed_at = now or _now()
    db.flush()
    return reservation


def html_to_text(raw_html: str) -> str:
    value = BR_RE.sub('\n', raw_html)
    value = P_CLOSE_RE.sub('\n\n', value)
    value = TAG_RE.sub('', value)
    return html.unescape(value).replace('\xa0', ' ').strip()


def extract_reply_text(text: str | None, html_body: str | None) -> str:
    content = (text or '').strip()
    if not content and html_body:
        content = html_to_text(html_body)

    if len(content) > QUOTE_STRIP_THRESHOLD:
        for pattern in REPLY_HISTORY_RES:
            content = pattern.split(content, maxsplit=1)[0]
        content = QUOTE_MARKER_RE.sub('', content).strip()
    return content


def find_routing_target(db: Session, *, sender_email: str, now: datetime | None = None) -> Reservation | None:
    """Most recently updated non-denied reservation for the address.

    Picked-up reservations stay routable for ``inbound_routing_window_days`` after pickup.
    """
    cutoff = (now or _now()) - timedelta(days=settings.inbound_routing_window_days)
    return db.execute(
        select(Reservation)
        .where(
            func.lower(Reservation.requester_email) == sender_email.strip().lower(),
            Reservation.status != ReservationStatus.DENIED,
            or_(
                Reservation.picked_up.is_(False),
                Reservation.picked_up_at >= cutoff,
            ),
        )
        .order_by(Reservation.updated_at.desc(), Reservation.created_at.desc())
        .limit(1)
    ).scalars().first()


def route_inbound_message(
    db: Session,
    *,
    sender_email: str,
    text: str | None,
    html_body: str | None = None,
    now: datetime | None = None,
) -> ReservationMessage | None:
    clean_sender = parseaddr(sender_email or '')[1].strip()
    if not clean_sender:
        logger.info('Inbound message dropped: no sender address')
        return None

    reservation = find_routing_target(db, sender_email=clean_sender, now=now)
    if not reservation:
        logger.info('Inbound message dropped: no active checkout request for sender=%s', clean_sender)
        return None

    body = extract_reply_text(text, html_body)
    if len(body) < MIN_INBOUND_LENGTH:
        logger.info('Inbound message dropped: body too short sender=%s reservation=%s', clean_sender, reservation.id)
        return None

    message = append_message(
        db,
        reservation_id=reservation.id,
        sender_type=SenderType.REQUESTER,
        sender_name=reservation.requester_name,
        sender_email=clean_sender,
        body=body,
        now=now,
    )
    logger.info('Inbound message routed to checkout request %s', reservation.id)
    return message


def serialize_message(message: ReservationMessage) -> dict:
    return {
        'id': message.id,
        'reservation_id': message.reservation_id,
        'sender_type': message.sender_type.value,
        'sender_name': message.sender_name,
        'sender_email': message.sender_email,
        'body': message.body,
        'created_at': message.created_at,
    }
