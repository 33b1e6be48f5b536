from __future__ import annotations

import hmac
import logging
from typing import Protocol

from fastapi import FastAPI, Request

from checkout_portal.auth import Principal, Role
from checkout_portal.config import settings

logger = logging.getLogger(__name__)

PROXY_SECRET_HEADER = 'x-auth-proxy-secret'
USER_ID_HEADER = 'x-auth-user-id'
USER_NAME_HEADER = 'x-auth-user-name'
USER_EMAIL_HEADER = 'x-auth-user-email'
USER_ROLE_HEADER = 'x-auth-user-role'


class IdentityProvider(Protocol):
    def resolve(self, request: Request) -> Principal | None: ...


def _parse_role(raw: str | None) -> Role | None:
    try:
        return Role((raw or '').strip().lower())
    except ValueError:
        return None


class HeaderIdentityProvider:
    """Trusts the principal forwarded by the upstream auth proxy, guarded by a shared secret."""

    def __init__(self, proxy_secret: str | None) -> None:
        self.proxy_secret = proxy_secret

    def resolve(self, request: Request) -> Principal | None:
        if not self.proxy_secret:
            return None
        presented = request.headers.get(PROXY_SECRET_HEADER, '')
        if not hmac.compare_digest(presented, self.proxy_secret):
            return None

        user_id = (request.headers.get(USER_ID_HEADER) or '').strip()
        role = _parse_role(request.headers.get(USER_ROLE_HEADER))
        if not user_id or role is None:
            logger.warning('Auth proxy request missing user id or role path=%s', request.url.path)
            return None

        email = (request.headers.get(USER_EMAIL_HEADER) or '').strip() or None
        name = (request.headers.get(USER_NAME_HEADER) or '').strip() or email or 'Staff'
        return Principal(id=user_id, display_name=name, email=email, role=role)


class StaticIdentityProvider:
    def __init__(self, principal: Principal) -> None:
        self.principal = principal

    def resolve(self, request: Request) -> Principal | None:
        return self.principal


def static_principal_from_settings() -> Principal:
    role = _parse_role(settings.static_principal_role) or Role.VIEWER
    return Principal(
        id=settings.static_principal_id,
        display_name=settings.static_principal_name,
        email=settings.static_principal_email or None,
        role=role,
    )


def install_identity_middleware(app: FastAPI, provider: IdentityProvider) -> None:
    @app.middleware('http')
    async def identity_middleware(request: Request, call_next):
        request.state.principal = provider.resolve(request)
        return await call_next(request)
