"""Security headers middleware."""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.config import settings

LOCAL_HOSTS = ("localhost", "127.0.0.1", "testserver")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses.

    MFA responses carry TOTP secrets, QR codes and backup codes, so API
    responses are marked ``no-store``: no browser or proxy may cache them.
    """

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        script_src = "'self' 'unsafe-eval'" if settings.DEBUG else "'self'"

        # API-only backend; the relaxed bits only matter for /docs
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; "
            f"script-src {script_src}; "
            "style-src 'self'; "
            "img-src 'self' data:; "
            "connect-src 'self'; "
            "frame-ancestors 'none'; "
            "base-uri 'self'; "
            "form-action 'self'"
        )
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"

        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"

        if request.url.hostname not in LOCAL_HOSTS:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        return response
