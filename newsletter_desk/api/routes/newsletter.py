"""Compose previews and trigger newsletter sends."""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel

from newsletter_desk.api.deps import get_service, limit_writes, require_api_key
from newsletter_desk.api.envelope import ApiResponse, ok
from newsletter_desk.core.config import resolve_password
from newsletter_desk.queue.send_runner import enqueue_send, run_send_in_background
from newsletter_desk.services.composer import preview
from newsletter_desk.services.newsletter_service import NewsletterService

router = APIRouter(prefix="/newsletter", tags=["newsletter"], dependencies=[Depends(require_api_key)])


class ComposeRequest(BaseModel):
    """Custom newsletter when ``subject`` is set, otherwise the latest post."""

    subject: str | None = None
    content: str | None = None


class SendRequest(ComposeRequest):
    enqueue: bool = False


@router.post("/preview", response_model=ApiResponse)
def preview_newsletter(payload: ComposeRequest, service: NewsletterService = Depends(get_service)) -> ApiResponse:
    if payload.subject is None:
        newsletter = service.compose_latest()
    else:
        newsletter = service.compose_custom(payload.subject, payload.content or "")
    return ok(
        {
            "subject": newsletter.subject,
            "html_content": newsletter.html_content,
            "text_content": newsletter.text_content,
            "preview": preview(newsletter),
        }
    )


@router.post(
    "/send",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(limit_writes)],
)
def send_newsletter(
    payload: SendRequest,
    background_tasks: BackgroundTasks,
    service: NewsletterService = Depends(get_service),
) -> ApiResponse:
    """Validate configuration now, send later so the rate limit never blocks the request."""

    service.smtp_config()
    resolve_password("smtp", service.environ)

    if payload.enqueue:
        job = enqueue_send(payload.subject, payload.content)
        return ok({"queued": True, "job_id": job.id})

    background_tasks.add_task(run_send_in_background, service, payload.subject, payload.content)
    return ok({"queued": False, "job_id": None})
