"""Newsletter send runs, executed inline, as a FastAPI background task or on RQ."""
from __future__ import annotations

from typing import Any

from newsletter_desk.core.config import settings
from newsletter_desk.core.errors import NewsletterError
from newsletter_desk.queue.worker import get_queue
from newsletter_desk.services.newsletter_service import NewsletterService
from newsletter_desk.services.subscribers import SubscriberStore
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)


def run_send(service: NewsletterService, subject: str | None = None, content: str | None = None) -> dict[str, Any]:
    """Compose and send one newsletter; the latest post when no subject is given."""

    if subject is None:
        newsletter = service.compose_latest()
    else:
        newsletter = service.compose_custom(subject, content or "")
    report = service.send(newsletter)
    logger.info(
        "Send run for %r finished: %d/%d delivered",
        newsletter.subject,
        report.successful_sends,
        report.total_subscribers,
    )
    return report.model_dump(mode="json")


def run_send_in_background(service: NewsletterService, subject: str | None = None, content: str | None = None) -> None:
    """BackgroundTasks wrapper; failures are logged because nobody awaits the result."""

    try:
        run_send(service, subject, content)
    except NewsletterError as exc:
        logger.error("Background send failed: %s", exc)


def _run_send_job(subject: str | None = None, content: str | None = None) -> dict[str, Any]:
    """RQ-friendly job; builds its own service from process settings."""

    service = NewsletterService(settings, SubscriberStore.open(settings.database_url))
    return run_send(service, subject, content)


def enqueue_send(subject: str | None = None, content: str | None = None):
    queue = get_queue()
    job = queue.enqueue(_run_send_job, kwargs={"subject": subject, "content": content})
    logger.info("Enqueued newsletter send with job id %s", job.id)
    return job
