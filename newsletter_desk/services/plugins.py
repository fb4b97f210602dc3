"""Plugin hooks around fetch, approval, compose and send.

Plugins subclass ``NewsletterPlugin`` and are registered on a
``PluginManager``. A plugin only runs when its config marks it enabled; a
plugin that raises never aborts the operation it hooks into.
"""
from __future__ import annotations

import enum
import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from newsletter_desk.core.errors import NotFoundError, ValidationFailure
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.composer import Newsletter, html_to_text
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore
from newsletter_desk.services.template_engine import render_string
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)


class PluginHook(str, enum.Enum):
    PRE_FETCH = "pre_fetch"
    POST_FETCH = "post_fetch"
    PRE_APPROVE = "pre_approve"
    POST_APPROVE = "post_approve"
    PRE_COMPOSE = "pre_compose"
    POST_COMPOSE = "post_compose"
    PRE_SEND = "pre_send"
    POST_SEND = "post_send"
    CUSTOM_COMMAND = "custom_command"
    CUSTOM_TEMPLATE = "custom_template"


class PluginMetadata(BaseModel):
    name: str
    version: str
    author: str
    description: str
    homepage: str | None = None
    repository: str | None = None
    license: str | None = None
    keywords: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)


class PluginConfig(BaseModel):
    enabled: bool = False
    config: dict[str, Any] = Field(default_factory=dict)


class PluginContext(BaseModel):
    model_config = {"arbitrary_types_allowed": True}

    hook: PluginHook
    store: SubscriberStore | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class PluginResult(BaseModel):
    success: bool = True
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    modified_newsletter: Newsletter | None = None
    modified_subscribers: list[Subscriber] | None = None


class NewsletterPlugin:
    """Base class for plugins. Override ``metadata``, ``handles_hook`` and ``execute_hook``."""

    metadata: PluginMetadata

    def __init__(self) -> None:
        self.config = PluginConfig()

    def initialize(self, config: PluginConfig) -> None:
        self.config = config

    def handles_hook(self, hook: PluginHook) -> bool:
        return False

    def execute_hook(self, context: PluginContext) -> PluginResult:
        raise NotImplementedError

    def custom_commands(self) -> list[str]:
        return []

    def execute_command(self, command: str, args: list[str], context: PluginContext) -> PluginResult:
        raise NotFoundError(f"Command '{command}' not implemented")

    def custom_templates(self) -> list[str]:
        return []

    def render_template(self, template: str, newsletter: Newsletter, context: PluginContext) -> Newsletter:
        raise NotFoundError(f"Template '{template}' not implemented")


def load_plugin_configs(path: str | Path) -> dict[str, PluginConfig]:
    path = Path(path)
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationFailure(f"Invalid plugin config file {path}: {exc}") from exc
    return {name: PluginConfig.model_validate(value) for name, value in raw.items()}


def save_plugin_configs(path: str | Path, configs: dict[str, PluginConfig]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {name: config.model_dump() for name, config in configs.items()}
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


class PluginManager:
    def __init__(self, configs: dict[str, PluginConfig] | None = None) -> None:
        self._plugins: list[NewsletterPlugin] = []
        self.configs: dict[str, PluginConfig] = dict(configs or {})

    def register(self, plugin: NewsletterPlugin) -> None:
        name = plugin.metadata.name
        plugin.initialize(self.configs.get(name, PluginConfig()))
        self._plugins.append(plugin)
        logger.debug("Registered plugin %s", name)

    def is_enabled(self, name: str) -> bool:
        config = self.configs.get(name)
        return config is not None and config.enabled

    def set_enabled(self, name: str, enabled: bool) -> PluginConfig:
        plugin = self.get(name)
        if plugin is None:
            raise NotFoundError(f"Plugin '{name}' not found")
        config = self.configs.get(name, PluginConfig()).model_copy(update={"enabled": enabled})
        self.configs[name] = config
        plugin.initialize(config)
        return config

    def _enabled(self) -> list[NewsletterPlugin]:
        return [plugin for plugin in self._plugins if self.is_enabled(plugin.metadata.name)]

    def execute_hook(self, hook: PluginHook, context: PluginContext) -> list[PluginResult]:
        results: list[PluginResult] = []
        for plugin in self._enabled():
            if not plugin.handles_hook(hook):
                continue
            try:
                results.append(plugin.execute_hook(context))
            except Exception as exc:
                logger.warning("Plugin '%s' failed to execute hook %s: %s", plugin.metadata.name, hook.value, exc)
                results.append(PluginResult(success=False, message=f"Plugin error: {exc}"))
        return results

    def custom_commands(self) -> dict[str, str]:
        return {command: plugin.metadata.name for plugin in self._enabled() for command in plugin.custom_commands()}

    def execute_command(self, command: str, args: list[str], context: PluginContext) -> PluginResult:
        for plugin in self._enabled():
            if command in plugin.custom_commands():
                return plugin.execute_command(command, args, context)
        raise NotFoundError(f"Custom command '{command}' not found")

    def custom_templates(self) -> dict[str, str]:
        return {name: plugin.metadata.name for plugin in self._enabled() for name in plugin.custom_templates()}

    def render_custom_template(self, template: str, newsletter: Newsletter, context: PluginContext) -> Newsletter:
        for plugin in self._enabled():
            if template in plugin.custom_templates():
                return plugin.render_template(template, newsletter, context)
        raise NotFoundError(f"Custom template '{template}' not found")

    def list(self) -> list[PluginMetadata]:
        return [plugin.metadata for plugin in self._plugins]

    def get(self, name: str) -> NewsletterPlugin | None:
        return next((plugin for plugin in self._plugins if plugin.metadata.name == name), None)


class SubscriberStatsPlugin(NewsletterPlugin):
    """Reports subscriber counts after fetches and sends."""

    metadata = PluginMetadata(
        name="subscriber-stats",
        version="1.0.0",
        author="newsletter-desk",
        description="Summarises subscriber counts after fetch and send runs",
        license="MIT",
        keywords=["stats"],
    )

    def handles_hook(self, hook: PluginHook) -> bool:
        return hook in (PluginHook.POST_FETCH, PluginHook.POST_SEND)

    def _summary(self, store: SubscriberStore | None) -> dict[str, int]:
        if store is None:
            raise ValidationFailure("subscriber-stats needs a subscriber store")
        counts = store.counts_by_status()
        summary = {status.value: counts[status] for status in SubscriberStatus}
        summary["total"] = sum(counts.values())
        return summary

    def execute_hook(self, context: PluginContext) -> PluginResult:
        summary = self._summary(context.store)
        message = ", ".join(f"{key}={value}" for key, value in summary.items())
        return PluginResult(message=f"Subscribers after {context.hook.value}: {message}", data=summary)

    def custom_commands(self) -> list[str]:
        return ["stats"]

    def execute_command(self, command: str, args: list[str], context: PluginContext) -> PluginResult:
        if command != "stats":
            return super().execute_command(command, args, context)
        summary = self._summary(context.store)
        return PluginResult(message="Subscriber statistics", data=summary)


class FooterPlugin(NewsletterPlugin):
    """Appends a configurable footer to composed newsletters.

    The footer is a Jinja2 snippet taken from the plugin config key ``footer``
    and rendered with the newsletter's ``subject``.
    """

    metadata = PluginMetadata(
        name="footer",
        version="1.0.0",
        author="newsletter-desk",
        description="Appends a configurable footer to every composed newsletter",
        license="MIT",
        keywords=["template"],
    )

    default_footer = "<p>Thanks for reading {{ subject }}.</p>"

    def handles_hook(self, hook: PluginHook) -> bool:
        return hook in (PluginHook.POST_COMPOSE, PluginHook.CUSTOM_TEMPLATE)

    def _apply(self, newsletter: Newsletter) -> Newsletter:
        snippet = render_string(self.config.config.get("footer", self.default_footer), subject=newsletter.subject)
        return newsletter.model_copy(
            update={
                "html_content": f"{newsletter.html_content}\n{snippet}",
                "text_content": f"{newsletter.text_content}\n\n{html_to_text(snippet)}",
            }
        )

    def execute_hook(self, context: PluginContext) -> PluginResult:
        newsletter = context.data.get("newsletter")
        if not isinstance(newsletter, Newsletter):
            return PluginResult(message="No newsletter to decorate")
        return PluginResult(message="Footer appended", modified_newsletter=self._apply(newsletter))

    def custom_templates(self) -> list[str]:
        return ["footer"]

    def render_template(self, template: str, newsletter: Newsletter, context: PluginContext) -> Newsletter:
        if template != "footer":
            return super().render_template(template, newsletter, context)
        return self._apply(newsletter)


BUILTIN_PLUGINS = (SubscriberStatsPlugin, FooterPlugin)


def create_plugin_manager(configs: dict[str, PluginConfig] | None = None) -> PluginManager:
    manager = PluginManager(configs)
    for plugin_cls in BUILTIN_PLUGINS:
        manager.register(plugin_cls())
    return manager
