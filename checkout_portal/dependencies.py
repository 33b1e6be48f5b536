from __future__ import annotations

from fastapi import Request

from checkout_portal.services.notification_service import NotificationDispatcher
from checkout_portal.services.provider_factory import get_notification_dispatcher


def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None
