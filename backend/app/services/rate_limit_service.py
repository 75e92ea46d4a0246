"""Per-IP endpoint rate limiting using Redis.

This is transport-level flood protection for the MFA routes. It is separate
from the per-user failed-attempt history, which lives in the database and is
what turns verification results into ``rate_limited``.
"""

import hashlib
import logging
from typing import Optional

import redis.asyncio as redis
from fastapi import HTTPException, Request, status
from redis.exceptions import RedisError

from app.config import settings
from app.core.metrics import track_rate_limit_hit
from app.services.error_logging_service import error_logging_service

logger = logging.getLogger(__name__)

KEY_PREFIX = "mfa_rate_limit"


def get_client_ip(request: Request) -> str:
    """
    Client address for throttling and audit records.

    Uses the rightmost X-Forwarded-For entry; the leftmost entries are client
    supplied and can be spoofed.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ips = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
        if ips:
            return ips[-1]
    return request.client.host if request.client else "unknown"


class RateLimitService:
    """Service for rate limiting API endpoints using Redis."""

    def __init__(self):
        """Initialize Redis connection."""
        self.redis_client: Optional[redis.Redis] = None

    async def get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                settings.REDIS_URL, encoding="utf-8", decode_responses=True
            )
        return self.redis_client

    def _get_rate_limit_key(self, identifier: str, endpoint: str) -> str:
        # Hash to normalize key length, not for security
        hash_key = hashlib.sha256(f"{identifier}:{endpoint}".encode()).hexdigest()[:32]
        return f"{KEY_PREFIX}:{hash_key}"

    async def check_rate_limit(
        self,
        request: Request,
        max_requests: int = 10,
        window_seconds: int = 60,
        identifier: Optional[str] = None,
    ) -> None:
        """
        Check if request exceeds rate limit.

        Args:
            request: FastAPI request object
            max_requests: Maximum requests allowed in window
            window_seconds: Time window in seconds
            identifier: Custom identifier (defaults to client IP)

        Raises:
            HTTPException: 429 Too Many Requests if limit exceeded
        """
        identifier = identifier or get_client_ip(request)

        # No real client address (e.g. in-process test client)
        if identifier == "unknown":
            return

        # Redis may not be running locally
        if settings.ENVIRONMENT == "development":
            return

        redis_client = await self.get_redis()
        key = self._get_rate_limit_key(identifier, request.url.path)

        try:
            current = await redis_client.incr(key)
            if current == 1:
                await redis_client.expire(key, window_seconds)

            if current > max_requests:
                ttl = await redis_client.ttl(key)
                retry_after = max(ttl, 1)
                track_rate_limit_hit(request.url.path)
                error_logging_service.log_security_event(
                    logger,
                    "rate_limit",
                    f"Too many requests to {request.url.path}",
                    ip_address=identifier,
                )
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail={
                        "error": "Rate limit exceeded",
                        "message": f"Too many requests. Please try again in {retry_after} seconds.",
                        "retry_after": retry_after,
                    },
                    headers={"Retry-After": str(retry_after)},
                )

        except RedisError as e:
            # Fail open; the per-user failure history still guards the codes
            logger.warning("Rate limit check failed (fail-open): %s", e)

    async def reset_rate_limit(self, identifier: str, endpoint: str) -> None:
        """Reset rate limit for a specific identifier and endpoint."""
        redis_client = await self.get_redis()
        await redis_client.delete(self._get_rate_limit_key(identifier, endpoint))


# Singleton instance
_rate_limit_service = None


def get_rate_limit_service() -> RateLimitService:
    """Get or create rate limit service singleton."""
    global _rate_limit_service
    if _rate_limit_service is None:
        _rate_limit_service = RateLimitService()
    return _rate_limit_service


# Create singleton instance for direct import
rate_limit_service = get_rate_limit_service()
