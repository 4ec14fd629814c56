"""Per-user rate limiting using slowapi."""

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from markview.config import settings


def _get_user_or_ip(request: Request) -> str:
    """Extract user ID from JWT for rate-limit key, fall back to IP."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        try:
            from markview.api.dependencies import verify_token
            payload = verify_token(auth.split(" ", 1)[1])
            return payload["sub"]
        except Exception:
            pass
    return get_remote_address(request)


limiter = Limiter(
    key_func=_get_user_or_ip,
    default_limits=[f"{settings.rate_limit_default}/minute"],
)


def sync_limit() -> str:
    """Limit for the sync endpoints, read from config on every request."""
    return f"{settings.rate_limit_sync}/minute"


# Limits are per minute; waiting one full window always clears them.
RETRY_AFTER_SECONDS = 60


def rate_limit_exceeded_handler(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return a JSON 429 carrying ``Retry-After`` when the rate limit is exceeded."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too Many Requests",
            "code": "RATE_LIMITED",
            "message": f"Rate limit exceeded: {exc.detail}",
            "retryAfter": RETRY_AFTER_SECONDS,
        },
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )
