"""Store construction and request-scoped dependencies."""
from __future__ import annotations

from fastapi import HTTPException, status
from fastapi.requests import HTTPConnection

from ..core.config import Settings
from ..services.matching import MatchService
from .redis_store import RedisStore
from .store import InMemoryStore, RetryPolicy, TransactionalStore


def retry_policy_from(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.transaction_max_attempts,
        base_delay=settings.transaction_backoff_base_ms / 1000,
        max_delay=settings.transaction_backoff_max_ms / 1000,
    )


def build_store(settings: Settings) -> TransactionalStore:
    """Create the configured store adapter."""

    retry = retry_policy_from(settings)
    if settings.store_backend == "memory":
        return InMemoryStore(retry=retry)
    return RedisStore.from_url(settings.redis_url, retry=retry)


def get_match_service(connection: HTTPConnection) -> MatchService:
    """FastAPI dependency returning the service created at startup."""

    service = getattr(connection.app.state, "match_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return service
