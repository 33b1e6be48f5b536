from __future__ import annotations


class CheckoutError(Exception):
    """Base class for errors surfaced to callers of the checkout engine."""


class ValidationError(CheckoutError, ValueError):
    pass


class NotFoundError(CheckoutError, LookupError):
    pass


class ForbiddenError(CheckoutError, PermissionError):
    pass


class ConflictError(CheckoutError):
    """Availability or record state makes the request impossible right now."""


class UnavailableError(CheckoutError):
    pass


class ExternalServiceError(CheckoutError):
    """Notification collaborator failure. Never propagated out of a committed transition."""
