"""Orchestration shared by the CLI, the HTTP API and queued jobs."""
from __future__ import annotations

import csv
import io
import json
import os
from typing import Any, Mapping

from newsletter_desk.core.config import (
    MailServerConfig,
    Settings,
    resolve_imap_config,
    resolve_password,
    resolve_smtp_config,
)
from newsletter_desk.core.errors import ConfigMissingError, SubscriberNotFoundError, ValidationFailure
from newsletter_desk.core.rate_limit import SendRateLimiter
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.composer import Newsletter, NewsletterComposer, Post, load_posts
from newsletter_desk.services.ingestion import ImapFactory, IngestionPipeline, IngestionResult
from newsletter_desk.services.migration import FormatConfig, ImportedSubscriber, MigrationImporter, MigrationResult
from newsletter_desk.services.plugins import (
    PluginContext,
    PluginHook,
    PluginManager,
    PluginResult,
    create_plugin_manager,
    load_plugin_configs,
)
from newsletter_desk.services.sender import BulkSender, ProgressCallback, SendReport, SmtpFactory
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)

EXPORT_FIELDS = ("email", "status", "subscribed_at", "approved_at", "source_email_id", "notes")

SETUP_HINT = (
    "Enable the newsletter with NEWSLETTER_ENABLED=true and configure the mail servers, "
    "either as IMAP__SERVER / IMAP__PORT / IMAP__USERNAME settings or through "
    "NEWSLETTER_IMAP_SERVER, NEWSLETTER_IMAP_PORT and NEWSLETTER_IMAP_USERNAME "
    "(and the NEWSLETTER_SMTP_* equivalents)."
)


def export_subscribers(subscribers: list[Subscriber], fmt: str) -> str:
    """Render subscribers as CSV or JSON, preserving the store's ordering."""

    fmt = fmt.lower()
    rows = [subscriber.model_dump(mode="json", include=set(EXPORT_FIELDS)) for subscriber in subscribers]
    if fmt == "json":
        return json.dumps(rows, indent=2)
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_FIELDS, lineterminator="\n")
        writer.writeheader()
        for row in rows:
            writer.writerow({key: "" if row[key] is None else row[key] for key in EXPORT_FIELDS})
        return buffer.getvalue()
    raise ValidationFailure(f"Unsupported export format: {fmt}. Use 'csv' or 'json'.")


class NewsletterService:
    """Wires the store, mail servers, composer and plugins together for one caller."""

    def __init__(
        self,
        settings: Settings,
        store: SubscriberStore,
        plugins: PluginManager | None = None,
        environ: Mapping[str, str] | None = None,
        imap_factory: ImapFactory | None = None,
        smtp_factory: SmtpFactory | None = None,
        limiter: SendRateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.plugins = plugins or create_plugin_manager(load_plugin_configs(settings.plugins_file))
        self.environ = os.environ if environ is None else environ
        self.composer = NewsletterComposer(settings)
        self._imap_factory = imap_factory
        self._smtp_factory = smtp_factory
        self._limiter = limiter

    # --- configuration ---

    def ensure_enabled(self) -> None:
        if not self.settings.newsletter_enabled:
            raise ConfigMissingError("Newsletter functionality is not enabled", hint=SETUP_HINT)

    def imap_config(self) -> MailServerConfig:
        self.ensure_enabled()
        config = resolve_imap_config(self.settings, self.environ)
        if config is None:
            raise ConfigMissingError("IMAP configuration not found", hint=SETUP_HINT)
        return config

    def smtp_config(self) -> MailServerConfig:
        self.ensure_enabled()
        config = resolve_smtp_config(self.settings, self.environ)
        if config is None:
            raise ConfigMissingError("SMTP configuration not found", hint=SETUP_HINT)
        return config

    def _context(self, hook: PluginHook, **data: Any) -> PluginContext:
        return PluginContext(hook=hook, store=self.store, data=data)

    def run_hook(self, hook: PluginHook, **data: Any) -> list[PluginResult]:
        results = self.plugins.execute_hook(hook, self._context(hook, **data))
        for result in results:
            if result.message:
                logger.info("[%s] %s", hook.value, result.message)
        return results

    # --- ingestion and review ---

    def fetch_subscribers(self) -> IngestionResult:
        config = self.imap_config()
        password = resolve_password("imap", self.environ)
        self.run_hook(PluginHook.PRE_FETCH)
        result = IngestionPipeline(self.store, imap_factory=self._imap_factory).run(config, password)
        self.run_hook(PluginHook.POST_FETCH, added=[sub.email for sub in result.added])
        return result

    def set_status(self, email: str, status: SubscriberStatus) -> Subscriber:
        subscriber = self.store.get_by_email(email)
        if subscriber is None:
            raise SubscriberNotFoundError(email)
        self.run_hook(PluginHook.PRE_APPROVE, email=subscriber.email, status=status.value)
        updated = self.store.update_status(subscriber.id, status)
        self.run_hook(PluginHook.POST_APPROVE, email=updated.email, status=updated.status.value)
        return updated

    def stats(self) -> dict[str, int]:
        counts = self.store.counts_by_status()
        summary = {"total": sum(counts.values())}
        summary.update({status.value: counts[status] for status in SubscriberStatus})
        return summary

    def export(self, fmt: str, status: SubscriberStatus | None = None) -> str:
        return export_subscribers(self.store.list(status), fmt)

    # --- migration ---

    def import_subscribers(
        self, source: str, data: str, config: FormatConfig | None = None
    ) -> MigrationResult:
        importer = MigrationImporter(self.store)
        return importer.import_(importer.parse(source, data, config))

    def preview_import(
        self, source: str, data: str, config: FormatConfig | None = None, limit: int | None = 10
    ) -> list[ImportedSubscriber]:
        importer = MigrationImporter(self.store)
        return importer.preview(importer.parse(source, data, config), limit)

    # --- compose and send ---

    def posts(self) -> list[Post]:
        return load_posts(self.settings.posts_file)

    def _finish_compose(self, newsletter: Newsletter) -> Newsletter:
        for result in self.run_hook(PluginHook.POST_COMPOSE, subject=newsletter.subject, newsletter=newsletter):
            if result.modified_newsletter is not None:
                newsletter = result.modified_newsletter
        return newsletter

    def compose_latest(self) -> Newsletter:
        self.run_hook(PluginHook.PRE_COMPOSE, kind="latest")
        return self._finish_compose(self.composer.compose_from_latest_post(self.posts()))

    def compose_custom(self, subject: str, content: str) -> Newsletter:
        self.run_hook(PluginHook.PRE_COMPOSE, kind="custom", subject=subject)
        return self._finish_compose(self.composer.compose_custom(subject, content))

    def sender(self) -> BulkSender:
        return BulkSender(
            self.smtp_config(),
            sender_name=self.settings.sender_name or self.settings.blog_title,
            limiter=self._limiter,
            emails_per_minute=self.settings.emails_per_minute,
            smtp_factory=self._smtp_factory,
        )

    def send(self, newsletter: Newsletter, progress: ProgressCallback | None = None) -> SendReport:
        sender = self.sender()
        password = resolve_password("smtp", self.environ)
        subscribers = self.store.list(SubscriberStatus.APPROVED)
        self.run_hook(PluginHook.PRE_SEND, subject=newsletter.subject, recipients=len(subscribers))
        report = sender.send_to_approved(newsletter, subscribers, password, progress=progress)
        self.run_hook(PluginHook.POST_SEND, report=report.model_dump(mode="json"))
        return report

    def send_test(self, newsletter: Newsletter, address: str) -> None:
        sender = self.sender()
        sender.send_test(newsletter, address, resolve_password("smtp", self.environ))
