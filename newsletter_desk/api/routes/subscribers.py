"""Subscriber management endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator

from newsletter_desk.api.deps import get_service, get_store, limit_writes, require_api_key
from newsletter_desk.api.envelope import ApiResponse, ok
from newsletter_desk.core.errors import SubscriberNotFoundError
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.ingestion import is_valid_email
from newsletter_desk.services.newsletter_service import NewsletterService
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore, normalize_email

router = APIRouter(prefix="/subscribers", tags=["subscribers"], dependencies=[Depends(require_api_key)])


class SubscriberCreate(BaseModel):
    email: str
    status: SubscriberStatus = SubscriberStatus.PENDING
    notes: str | None = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = normalize_email(value)
        if not is_valid_email(value):
            raise ValueError("email must be valid")
        return value


class SubscriberUpdate(BaseModel):
    status: SubscriberStatus | None = None
    notes: str | None = None


def _get_subscriber(store: SubscriberStore, email: str) -> Subscriber:
    subscriber = store.get_by_email(email)
    if subscriber is None:
        raise SubscriberNotFoundError(email)
    return subscriber


@router.get("", response_model=ApiResponse)
def list_subscribers(
    status_filter: SubscriberStatus | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    store: SubscriberStore = Depends(get_store),
) -> ApiResponse:
    """List subscribers, newest first, optionally filtered by status."""

    subscribers = store.list(status_filter)[offset:]
    if limit is not None:
        subscribers = subscribers[:limit]
    return ok(subscribers)


@router.post(
    "",
    response_model=ApiResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(limit_writes)],
)
def add_subscriber(payload: SubscriberCreate, store: SubscriberStore = Depends(get_store)) -> ApiResponse:
    """Add a subscriber; a known email is a conflict."""

    subscriber = Subscriber(
        email=payload.email,
        status=payload.status,
        source_email_id="api",
        notes=payload.notes,
    )
    new_id = store.add(subscriber)
    return ok(store.get(new_id))


@router.get("/{email}", response_model=ApiResponse)
def get_subscriber(email: str, store: SubscriberStore = Depends(get_store)) -> ApiResponse:
    return ok(_get_subscriber(store, email))


@router.put("/{email}", response_model=ApiResponse, dependencies=[Depends(limit_writes)])
def update_subscriber(
    email: str,
    payload: SubscriberUpdate,
    service: NewsletterService = Depends(get_service),
) -> ApiResponse:
    """Update status and/or notes. Status changes stamp ``approved_at`` like the review loop."""

    subscriber = _get_subscriber(service.store, email)
    if payload.status is not None:
        subscriber = service.set_status(subscriber.email, payload.status)
    if "notes" in payload.model_fields_set:
        subscriber = service.store.update_notes(subscriber.id, payload.notes)
    return ok(subscriber)


@router.delete("/{email}", response_model=ApiResponse, dependencies=[Depends(limit_writes)])
def delete_subscriber(email: str, store: SubscriberStore = Depends(get_store)) -> ApiResponse:
    """Remove a subscriber permanently."""

    if not store.remove(email):
        raise SubscriberNotFoundError(email)
    return ok({"deleted": normalize_email(email)})
