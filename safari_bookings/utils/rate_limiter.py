"""
Rate Limiter Configuration

In-memory storage by default; set REDIS_URL to share limits across
instances (slowapi/limits storage URI).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request
import logging
import os

from ..config import settings

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def create_limiter() -> Limiter:
    """
    Create a rate limiter with appropriate storage backend.
    Uses Redis if REDIS_URL is set, otherwise in-memory.
    """
    redis_url = os.getenv("REDIS_URL")

    if redis_url:
        logger.info("Using Redis rate limiter storage")
        return Limiter(
            key_func=get_real_client_ip,
            storage_uri=redis_url,
            default_limits=["100/minute"]
        )

    return Limiter(
        key_func=get_real_client_ip,
        default_limits=["100/minute"]
    )


# Global rate limiter instance
limiter = create_limiter()


RATE_LIMITS = {
    # Admission hits the payment gateway - strict
    "booking_create": settings.booking_rate_limit,
    "booking_manual": "60/minute",
    "booking_cancel": "20/minute",

    # Polling
    "booking_get": "200/minute",
    "availability": "120/minute",

    # Admin
    "approve_items": "30/minute",
    "export": "10/minute",
}


def get_rate_limit(operation: str) -> str:
    """Get rate limit for a specific operation."""
    return RATE_LIMITS.get(operation, "100/minute")
