"""Subscriber statistics and bulk export/import."""
from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from newsletter_desk.api.deps import get_service, limit_writes, require_api_key
from newsletter_desk.api.envelope import ApiResponse, ok
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.migration import FormatConfig, MigrationSource
from newsletter_desk.services.newsletter_service import NewsletterService

router = APIRouter(tags=["subscribers"], dependencies=[Depends(require_api_key)])


class ImportRequest(BaseModel):
    source: str
    data: str
    preview_only: bool = False
    preview_limit: int = Field(default=10, ge=1)
    column_mappings: dict[str, str] = Field(default_factory=dict)
    delimiter: str | None = None
    has_header: bool | None = None


@router.get("/stats", response_model=ApiResponse)
def get_stats(service: NewsletterService = Depends(get_service)) -> ApiResponse:
    return ok(service.stats())


@router.get("/export", response_model=ApiResponse)
def export_subscribers(
    export_format: Literal["csv", "json"] = Query(default="csv", alias="format"),
    status_filter: SubscriberStatus | None = Query(default=None, alias="status"),
    service: NewsletterService = Depends(get_service),
) -> ApiResponse:
    content = service.export(export_format, status_filter)
    return ok({"format": export_format, "content": content})


@router.post("/import", response_model=ApiResponse, dependencies=[Depends(limit_writes)])
def import_subscribers(payload: ImportRequest, service: NewsletterService = Depends(get_service)) -> ApiResponse:
    """Import an export from another service, or preview what would be imported."""

    source = MigrationSource.parse(payload.source)
    config = FormatConfig.for_source(source).with_overrides(
        **{f"{field}_column": column for field, column in payload.column_mappings.items()},
        delimiter=payload.delimiter,
        has_header=payload.has_header,
    )
    if payload.preview_only:
        preview = service.preview_import(source, payload.data, config, payload.preview_limit)
        return ok({"preview": preview, "count": len(preview)})
    return ok(service.import_subscribers(source, payload.data, config))
