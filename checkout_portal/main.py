import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from checkout_portal.config import settings
from checkout_portal.errors import (
    CheckoutError,
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from checkout_portal.routers import inbound, management, public
from checkout_portal.security.headers import install_security_headers
from checkout_portal.security.identity import install_identity_middleware
from checkout_portal.services.provider_factory import get_identity_provider

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title='Equipment Checkout Portal')

install_security_headers(app)
install_identity_middleware(app, get_identity_provider())

app.include_router(public.router)
app.include_router(management.router)
app.include_router(inbound.router)

ERROR_STATUS = {
    ValidationError: 400,
    ForbiddenError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    ExternalServiceError: 502,
    UnavailableError: 503,
}


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    status_code = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
    if status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={'error': str(exc)})


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
