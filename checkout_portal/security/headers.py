from fastapi import FastAPI, Request
from starlette.responses import Response


ROBOTS_HEADER = "noindex, nofollow, noarchive"
PRIVATE_PREFIXES = ("/management", "/checkout/requests")


def install_security_headers(app: FastAPI) -> None:
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Robots-Tag"] = ROBOTS_HEADER
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Request details carry requester contact data.
        if request.url.path.startswith(PRIVATE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"
        return response
