from __future__ import annotations

from functools import lru_cache

from checkout_portal.config import settings
from checkout_portal.security.identity import HeaderIdentityProvider, StaticIdentityProvider, static_principal_from_settings
from checkout_portal.services.notification_service import LogNotificationDispatcher, ResendNotificationDispatcher


@lru_cache(maxsize=1)
def get_notification_dispatcher():
    provider = settings.notification_provider.strip().lower()
    if provider == 'resend':
        return ResendNotificationDispatcher()
    return LogNotificationDispatcher()


@lru_cache(maxsize=1)
def get_identity_provider():
    provider = settings.identity_provider.strip().lower()
    if provider == 'static':
        return StaticIdentityProvider(static_principal_from_settings())
    return HeaderIdentityProvider(settings.identity_proxy_secret)
