"""Tests for the command line entry point."""
from __future__ import annotations

import json

from newsletter_desk.cli import main
from newsletter_desk.core.config import Settings
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore


def _settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite:///{tmp_path / 'cli.db'}",
        "plugins_file": str(tmp_path / "plugins.json"),
        "posts_file": str(tmp_path / "posts.json"),
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _store(settings: Settings) -> SubscriberStore:
    return SubscriberStore.open(settings.database_url)


def test_import_then_list_and_export(tmp_path, capsys):
    settings = _settings(tmp_path)
    export = tmp_path / "mailchimp.csv"
    export.write_text("Email Address,Member Status\nann@example.com,subscribed\nbob@example.com,pending\n")

    assert main(["import", "mailchimp", str(export)], settings=settings) == 0
    assert "Successfully imported: 2" in capsys.readouterr().out

    assert main(["list", "--status", "approved"], settings=settings) == 0
    listed = capsys.readouterr().out
    assert "ann@example.com" in listed
    assert "bob@example.com" not in listed

    output = tmp_path / "out.json"
    assert main(["export", "-f", "json", "-o", str(output)], settings=settings) == 0
    assert [row["email"] for row in json.loads(output.read_text())] == ["bob@example.com", "ann@example.com"]


def test_import_preview_does_not_write(tmp_path, capsys):
    settings = _settings(tmp_path)
    export = tmp_path / "list.csv"
    export.write_text("address\nann@example.com\n")

    assert main(["import", "generic", str(export), "--preview", "--email-column", "address"], settings=settings) == 0

    assert "Preview shows 1 of 1 subscribers" in capsys.readouterr().out
    assert _store(settings).count() == 0


def test_remove_with_force(tmp_path, capsys):
    settings = _settings(tmp_path)
    _store(settings).add(Subscriber.new("ann@example.com"))

    assert main(["remove", "ann@example.com", "--force"], settings=settings) == 0
    assert not _store(settings).exists("ann@example.com")

    assert main(["remove", "ann@example.com", "--force"], settings=settings) == 1
    assert "Subscriber not found" in capsys.readouterr().err


def test_send_requires_enabled_newsletter(tmp_path, capsys):
    settings = _settings(tmp_path, newsletter_enabled=False)

    assert main(["send-custom", "Hello", "Body"], settings=settings) == 1

    err = capsys.readouterr().err
    assert "not enabled" in err
    assert "NEWSLETTER_ENABLED=true" in err


def test_status_counts(tmp_path, capsys):
    settings = _settings(tmp_path)
    store = _store(settings)
    store.add(Subscriber.new("a@example.com"))
    store.add(Subscriber(email="b@example.com", status=SubscriberStatus.DECLINED))

    assert main(["status"], settings=settings) == 0

    out = capsys.readouterr().out
    assert "Subscribers: 2 total" in out
    assert "declined: 1" in out


def test_plugin_enable_persists_and_runs(tmp_path, capsys):
    settings = _settings(tmp_path)
    _store(settings).add(Subscriber.new("a@example.com"))

    assert main(["plugin", "run", "stats"], settings=settings) == 1
    assert main(["plugin", "enable", "subscriber-stats"], settings=settings) == 0
    saved = json.loads((tmp_path / "plugins.json").read_text())
    assert saved["subscriber-stats"]["enabled"] is True

    capsys.readouterr()
    assert main(["plugin", "run", "stats"], settings=settings) == 0
    out = capsys.readouterr().out
    assert "pending: 1" in out
    assert "total: 1" in out


def test_draft_custom_prints_preview(tmp_path, capsys):
    assert main(["draft-custom", "Hello", "Some *news*"], settings=_settings(tmp_path)) == 0

    out = capsys.readouterr().out
    assert "Subject: Hello" in out
    assert "Some news" in out
