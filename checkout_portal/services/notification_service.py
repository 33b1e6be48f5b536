from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from html import escape
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from checkout_portal.config import settings
from checkout_portal.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class TemplateKind(str, Enum):
    SUBMISSION_CONFIRMATION = 'submission_confirmation'
    STATUS_UPDATE = 'status_update'
    READY_FOR_PICKUP = 'ready_for_pickup'
    STAFF_REPLY = 'staff_reply'


@dataclass(frozen=True)
class Notification:
    recipient_email: str
    template_kind: TemplateKind
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


class NotificationDispatcher(Protocol):
    def send(self, notification: Notification) -> None: ...


STATUS_LABELS = {
    'seen': 'Seen',
    'approved': 'Approved',
    'denied': 'Denied',
}

STATUS_MESSAGES = {
    'seen': 'Your request has been reviewed.',
    'approved': 'Your request has been approved! The equipment will be prepared for you.',
    'denied': 'Unfortunately, your request has been denied.',
}


def schedule_url(reservation_id: str) -> str:
    return f'{settings.schedule_base_url}/{reservation_id}'


def submission_confirmation(*, email: str, name: str, reservation_id: str) -> Notification:
    return Notification(
        recipient_email=email,
        template_kind=TemplateKind.SUBMISSION_CONFIRMATION,
        payload={'name': name, 'reservation_id': reservation_id},
    )


def status_update(*, email: str, name: str, reservation_id: str, status: str, message: str | None) -> Notification:
    return Notification(
        recipient_email=email,
        template_kind=TemplateKind.STATUS_UPDATE,
        payload={'name': name, 'reservation_id': reservation_id, 'status': status, 'message': message},
    )


def ready_for_pickup(*, email: str, name: str, reservation_id: str) -> Notification:
    return Notification(
        recipient_email=email,
        template_kind=TemplateKind.READY_FOR_PICKUP,
        payload={'name': name, 'reservation_id': reservation_id, 'schedule_url': schedule_url(reservation_id)},
    )


def staff_reply(*, email: str, name: str, reservation_id: str, sender_name: str, message: str) -> Notification:
    return Notification(
        recipient_email=email,
        template_kind=TemplateKind.STAFF_REPLY,
        payload={'name': name, 'reservation_id': reservation_id, 'sender_name': sender_name, 'message': message},
    )


def _paragraphs(lines: list[str]) -> str:
    return ''.join(f'<p>{escape(line)}</p>' for line in lines)


def render(notification: Notification) -> RenderedEmail:
    payload = notification.payload
    kind = notification.template_kind
    greeting = f"Hello {payload.get('name') or 'there'},"
    reference = f"Request ID: {payload.get('reservation_id')}"

    if kind == TemplateKind.SUBMISSION_CONFIRMATION:
        subject = 'Equipment Checkout Request Received'
        lines = [
            greeting,
            'Thank you for submitting your equipment checkout request. We will review it shortly.',
            'You will receive an email once your request has been reviewed.',
            reference,
        ]
    elif kind == TemplateKind.STATUS_UPDATE:
        status = str(payload.get('status'))
        subject = f'Equipment Checkout Request {STATUS_LABELS.get(status, status.title())}'
        lines = [greeting, STATUS_MESSAGES.get(status, f'Your request is now {status}.')]
        if payload.get('message'):
            lines.append(f"Message: {payload['message']}")
        lines.append(reference)
    elif kind == TemplateKind.READY_FOR_PICKUP:
        subject = 'Your Equipment is Ready for Pickup'
        lines = [
            greeting,
            'Your equipment is ready. Please schedule a pickup time using the link below:',
            str(payload.get('schedule_url')),
            reference,
        ]
    elif kind == TemplateKind.STAFF_REPLY:
        subject = 'New Message About Your Equipment Checkout Request'
        lines = [
            greeting,
            f"{payload.get('sender_name') or 'Staff'} wrote:",
            str(payload.get('message') or ''),
            'Reply to this email to respond.',
            reference,
        ]
    else:
        raise ValueError(f'Unknown notification template {kind}')

    return RenderedEmail(subject=subject, html=_paragraphs(lines), text='\n\n'.join(lines))


class LogNotificationDispatcher:
    """Used when no email service is configured."""

    def send(self, notification: Notification) -> None:
        rendered = render(notification)
        logger.info(
            'Email not sent (no email service configured) to=%s kind=%s subject=%s',
            notification.recipient_email,
            notification.template_kind.value,
            rendered.subject,
        )


class ResendNotificationDispatcher:
    def __init__(self) -> None:
        if not settings.resend_api_key:
            raise ValueError('RESEND_API_KEY is required when NOTIFICATION_PROVIDER=resend')
        self.base_url = settings.resend_api_base_url.rstrip('/')
        self.headers = {
            'Authorization': f'Bearer {settings.resend_api_key}',
            'Content-Type': 'application/json',
        }
        self.timeout = settings.notification_timeout_seconds

    def send(self, notification: Notification) -> None:
        rendered = render(notification)
        payload = {
            'from': settings.email_from,
            'to': [notification.recipient_email],
            'subject': rendered.subject,
            'html': rendered.html,
            'text': rendered.text,
        }
        req = Request(
            url=f'{self.base_url}/emails',
            data=json.dumps(payload).encode('utf-8'),
            headers=self.headers,
            method='POST',
        )
        try:
            with urlopen(req, timeout=self.timeout) as response:
                response.read()
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise ExternalServiceError(f'Resend API error {exc.code}: {body}') from exc
        except (URLError, TimeoutError) as exc:
            reason = getattr(exc, 'reason', exc)
            raise ExternalServiceError(f'Resend API network error: {reason}') from exc


def dispatch_safely(dispatcher: NotificationDispatcher, notifications: list[Notification]) -> int:
    """Send each notification, logging and swallowing failures. Returns the number delivered."""
    delivered = 0
    for notification in notifications:
        try:
            dispatcher.send(notification)
            delivered += 1
        except Exception:
            logger.exception(
                'Failed to send %s email to %s',
                notification.template_kind.value,
                notification.recipient_email,
            )
    return delivered
