"""Tests for the orchestration layer shared by the CLI and the API."""
from __future__ import annotations

import csv
import io
import json

import pytest

from newsletter_desk.core.config import Settings
from newsletter_desk.core.errors import ConfigMissingError, SubscriberNotFoundError, ValidationFailure
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.newsletter_service import NewsletterService, export_subscribers
from newsletter_desk.services.plugins import (
    NewsletterPlugin,
    PluginConfig,
    PluginContext,
    PluginHook,
    PluginManager,
    PluginMetadata,
    PluginResult,
)
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore

IMAP_ENV = {
    "NEWSLETTER_IMAP_SERVER": "imap.example.com",
    "NEWSLETTER_IMAP_PORT": "993",
    "NEWSLETTER_IMAP_USERNAME": "me@example.com",
    "NEWSLETTER_IMAP_PASSWORD": "secret",
}


class HookLog(NewsletterPlugin):
    metadata = PluginMetadata(name="hook-log", version="0.1.0", author="tests", description="logs hooks")

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[PluginHook, dict]] = []

    def handles_hook(self, hook: PluginHook) -> bool:
        return True

    def execute_hook(self, context: PluginContext) -> PluginResult:
        self.calls.append((context.hook, dict(context.data)))
        return PluginResult()


class OneMessageImap:
    def __init__(self) -> None:
        self.raw = (
            b"From: Ann <ann@example.com>\r\nSubject: Subscribe me\r\n"
            b"Content-Type: text/plain\r\n\r\nplease add me to the newsletter\r\n"
        )

    def login(self, username, password):
        return "OK", []

    def select(self, mailbox):
        return "OK", [b"1"]

    def search(self, charset, criterion):
        return "OK", [b"1"]

    def fetch(self, message_id, parts):
        return "OK", [(b"1 (RFC822)", self.raw)]

    def store(self, message_id, command, flags):
        return "OK", []

    def logout(self):
        return "BYE", []


def _service(tmp_path, enabled: bool = True, environ=None) -> tuple[NewsletterService, HookLog]:
    plugin = HookLog()
    manager = PluginManager({"hook-log": PluginConfig(enabled=True)})
    manager.register(plugin)
    settings = Settings(_env_file=None, newsletter_enabled=enabled)
    store = SubscriberStore.open(f"sqlite:///{tmp_path / 'service.db'}")
    service = NewsletterService(
        settings,
        store,
        plugins=manager,
        environ=IMAP_ENV if environ is None else environ,
        imap_factory=lambda host, port: OneMessageImap(),
    )
    return service, plugin


def test_fetch_runs_hooks_around_ingestion(tmp_path):
    service, plugin = _service(tmp_path)

    result = service.fetch_subscribers()

    assert [sub.email for sub in result.added] == ["ann@example.com"]
    assert [hook for hook, _ in plugin.calls] == [PluginHook.PRE_FETCH, PluginHook.POST_FETCH]
    assert plugin.calls[1][1] == {"added": ["ann@example.com"]}


def test_fetch_requires_enabled_newsletter(tmp_path):
    service, plugin = _service(tmp_path, enabled=False)

    with pytest.raises(ConfigMissingError) as excinfo:
        service.fetch_subscribers()
    assert "NEWSLETTER_ENABLED" in excinfo.value.hint
    assert plugin.calls == []


def test_fetch_requires_imap_settings(tmp_path):
    service, _ = _service(tmp_path, environ={})

    with pytest.raises(ConfigMissingError):
        service.fetch_subscribers()


def test_set_status_runs_approval_hooks(tmp_path):
    service, plugin = _service(tmp_path)
    service.store.add(Subscriber.new("ann@example.com"))

    updated = service.set_status("ANN@example.com", SubscriberStatus.APPROVED)

    assert updated.approved_at is not None
    assert [hook for hook, _ in plugin.calls] == [PluginHook.PRE_APPROVE, PluginHook.POST_APPROVE]
    with pytest.raises(SubscriberNotFoundError):
        service.set_status("ghost@example.com", SubscriberStatus.APPROVED)


def test_export_formats_preserve_order(tmp_path):
    service, _ = _service(tmp_path)
    service.store.add(Subscriber(email="old@example.com", notes="first"))
    service.store.add(Subscriber(email="new@example.com"))

    rows = list(csv.DictReader(io.StringIO(service.export("CSV"))))
    assert [row["email"] for row in rows] == ["new@example.com", "old@example.com"]
    assert rows[0]["approved_at"] == ""
    assert rows[1]["notes"] == "first"

    assert [row["email"] for row in json.loads(service.export("json"))] == ["new@example.com", "old@example.com"]
    with pytest.raises(ValidationFailure):
        export_subscribers([], "xml")


def test_compose_custom_runs_compose_hooks(tmp_path):
    service, plugin = _service(tmp_path)

    newsletter = service.compose_custom("Hi", "there")

    assert newsletter.subject == "Hi"
    assert [hook for hook, _ in plugin.calls] == [PluginHook.PRE_COMPOSE, PluginHook.POST_COMPOSE]
    assert plugin.calls[1][1]["newsletter"] == newsletter
