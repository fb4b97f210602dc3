"""FastAPI dependencies: the shared store, the service and request guards."""
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Header, HTTPException, Request, status

from newsletter_desk.core.config import get_settings
from newsletter_desk.core.rate_limit import create_rate_limiter
from newsletter_desk.services.newsletter_service import NewsletterService
from newsletter_desk.services.subscribers import SubscriberStore

_write_limiter = create_rate_limiter(get_settings().api_rate_limit_per_minute)


@lru_cache()
def get_store() -> SubscriberStore:
    return SubscriberStore.open(get_settings().database_url)


def get_service(store: SubscriberStore = Depends(get_store)) -> NewsletterService:
    return NewsletterService(get_settings(), store)


def require_api_key(authorization: str | None = Header(default=None)) -> None:
    """When an API key is configured, require ``Authorization: Bearer <key>``."""

    api_key = get_settings().api_key
    if api_key and authorization != f"Bearer {api_key}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")


async def limit_writes(request: Request) -> None:
    client = request.client.host if request.client else "anonymous"
    await _write_limiter.check(client)
