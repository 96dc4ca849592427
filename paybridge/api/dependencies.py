"""FastAPI dependencies shared by the payment routes."""
from fastapi import Depends, HTTPException, Request, status

from paybridge.core.exceptions import RateLimitedError
from paybridge.core.orchestrator import PaymentOrchestrator
from paybridge.core.rate_limiter import RateLimiter


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For entry, else the socket peer, else ``unknown``."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


async def enforce_rate_limit(
    client_ip: str = Depends(get_client_ip),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """
    Count one initiation attempt for the client.

    Runs before the request body is validated or any provider is called, so
    a rejected request has no side effects.
    """
    try:
        await limiter.check(client_ip)
    except RateLimitedError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=e.message,
            headers={"Retry-After": str(e.retry_after)},
        )
