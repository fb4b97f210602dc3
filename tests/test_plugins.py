"""Tests for the plugin hooks and built-in plugins."""
from __future__ import annotations

import pytest

from newsletter_desk.core.errors import NotFoundError
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.composer import Newsletter
from newsletter_desk.services.plugins import (
    NewsletterPlugin,
    PluginConfig,
    PluginContext,
    PluginHook,
    PluginManager,
    PluginMetadata,
    PluginResult,
    create_plugin_manager,
    load_plugin_configs,
    save_plugin_configs,
)
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore


class RecordingPlugin(NewsletterPlugin):
    metadata = PluginMetadata(name="recorder", version="0.1.0", author="tests", description="records hooks")

    def __init__(self) -> None:
        super().__init__()
        self.seen: list[PluginHook] = []

    def handles_hook(self, hook: PluginHook) -> bool:
        return hook is PluginHook.PRE_SEND

    def execute_hook(self, context: PluginContext) -> PluginResult:
        self.seen.append(context.hook)
        return PluginResult(message="recorded")


class BrokenPlugin(NewsletterPlugin):
    metadata = PluginMetadata(name="broken", version="0.1.0", author="tests", description="always fails")

    def handles_hook(self, hook: PluginHook) -> bool:
        return True

    def execute_hook(self, context: PluginContext) -> PluginResult:
        raise RuntimeError("kaboom")


def _make_store(tmp_path) -> SubscriberStore:
    return SubscriberStore.open(f"sqlite:///{tmp_path / 'newsletter.db'}")


def test_disabled_plugins_do_not_run():
    plugin = RecordingPlugin()
    manager = PluginManager()
    manager.register(plugin)

    assert manager.execute_hook(PluginHook.PRE_SEND, PluginContext(hook=PluginHook.PRE_SEND)) == []
    assert plugin.seen == []


def test_enabled_plugin_runs_only_for_its_hooks():
    plugin = RecordingPlugin()
    manager = PluginManager({"recorder": PluginConfig(enabled=True)})
    manager.register(plugin)

    results = manager.execute_hook(PluginHook.PRE_SEND, PluginContext(hook=PluginHook.PRE_SEND))
    manager.execute_hook(PluginHook.POST_SEND, PluginContext(hook=PluginHook.POST_SEND))

    assert [result.message for result in results] == ["recorded"]
    assert plugin.seen == [PluginHook.PRE_SEND]


def test_failing_plugin_becomes_failed_result():
    manager = PluginManager({"broken": PluginConfig(enabled=True)})
    manager.register(BrokenPlugin())

    results = manager.execute_hook(PluginHook.PRE_FETCH, PluginContext(hook=PluginHook.PRE_FETCH))

    assert results[0].success is False
    assert "kaboom" in results[0].message


def test_set_enabled_unknown_plugin():
    with pytest.raises(NotFoundError):
        PluginManager().set_enabled("ghost", True)


def test_stats_plugin_command(tmp_path):
    store = _make_store(tmp_path)
    store.add(Subscriber.new("a@example.com"))
    store.add(Subscriber(email="b@example.com", status=SubscriberStatus.APPROVED))
    manager = create_plugin_manager()

    assert manager.custom_commands() == {}
    manager.set_enabled("subscriber-stats", True)

    assert manager.custom_commands() == {"stats": "subscriber-stats"}
    result = manager.execute_command("stats", [], PluginContext(hook=PluginHook.CUSTOM_COMMAND, store=store))
    assert result.data == {"pending": 1, "approved": 1, "declined": 0, "total": 2}

    with pytest.raises(NotFoundError):
        manager.execute_command("missing", [], PluginContext(hook=PluginHook.CUSTOM_COMMAND, store=store))


def test_footer_plugin_renders_configured_snippet():
    manager = create_plugin_manager(
        {"footer": PluginConfig(enabled=True, config={"footer": "<p>Sent with love: {{ subject }}</p>"})}
    )
    newsletter = Newsletter(subject="Issue 7", html_content="<p>Body</p>", text_content="Body")

    decorated = manager.render_custom_template(
        "footer", newsletter, PluginContext(hook=PluginHook.CUSTOM_TEMPLATE)
    )
    [result] = manager.execute_hook(
        PluginHook.POST_COMPOSE, PluginContext(hook=PluginHook.POST_COMPOSE, data={"newsletter": newsletter})
    )

    assert decorated.html_content.endswith("<p>Sent with love: Issue 7</p>")
    assert decorated.text_content.endswith("Sent with love: Issue 7")
    assert result.modified_newsletter == decorated
    assert manager.custom_templates() == {"footer": "footer"}


def test_plugin_configs_round_trip_through_file(tmp_path):
    path = tmp_path / "nested" / "plugins.json"
    save_plugin_configs(path, {"footer": PluginConfig(enabled=True, config={"footer": "bye"})})

    configs = load_plugin_configs(path)

    assert configs["footer"].enabled is True
    assert configs["footer"].config == {"footer": "bye"}
    assert load_plugin_configs(tmp_path / "missing.json") == {}
