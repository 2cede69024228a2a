"""Rate limiting: the general per-IP limit and the verification gate.

The general limit is applied to every HTTP route through slowapi's
middleware.  Code-issuing endpoints additionally pass through
``VerificationRateGate``, keyed on (client IP, phone number), which is
stricter and independent of the general quota.
"""

import structlog
from limits import parse
from limits.storage import storage_from_string
from limits.aio.strategies import MovingWindowRateLimiter
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.config import get_settings
from app.errors import RateLimitError

logger = structlog.get_logger("rendezvous.api.rate_limit")

settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.GENERAL_RATE_LIMIT],
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.RATE_LIMIT_ENABLED,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """429 with the project's error body and a Retry-After hint."""
    logger.warning(
        "general_rate_limit_hit",
        path=request.url.path,
        client=get_remote_address(request),
        limit=str(exc.detail),
    )
    response = JSONResponse(
        status_code=429,
        content={"error": "Too many requests from this IP, please try again later."},
    )
    response.headers["retry-after"] = str(exc.limit.limit.get_expiry())
    return response


def async_storage_uri(storage_uri: str) -> str:
    """Map a ``limits`` storage URI onto its asyncio variant."""
    if storage_uri.startswith("async+"):
        return storage_uri
    return f"async+{storage_uri}"


class VerificationRateGate:
    """Moving-window limit per (client IP, phone number).

    Backed by the asyncio ``limits`` storages so a Redis round trip never
    blocks the event loop.
    """

    namespace = "verification"

    def __init__(self, limit: str, storage_uri: str, enabled: bool = True) -> None:
        uri = async_storage_uri(storage_uri)
        # redis-py is already a dependency; the async default would be coredis.
        options = {"implementation": "redispy"} if uri.startswith("async+redis") else {}
        self.limit = parse(limit)
        self.storage = storage_from_string(uri, **options)
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.enabled = enabled

    async def check(self, client_ip: str, phone_number: str) -> None:
        """Consume one attempt; raise ``RateLimitError`` when exhausted."""
        if not self.enabled:
            return
        if not await self.strategy.hit(self.limit, self.namespace, client_ip, phone_number):
            logger.warning("verification_rate_limit_hit", client=client_ip, phone_number=phone_number)
            raise RateLimitError(retry_after=self.limit.get_expiry())

    async def check_request(self, request: Request, phone_number: str) -> None:
        await self.check(get_remote_address(request), phone_number)

    async def reset(self) -> None:
        await self.storage.reset()
