"""Application configuration powered by environment variables."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from newsletter_desk.core.errors import ConfigMissingError

# Load variables from a local .env file if present. This keeps runtime flexible.
load_dotenv()


class MailServerConfig(BaseModel):
    """Connection settings for an IMAP or SMTP server. Passwords never live here."""

    server: str
    port: int
    username: str
    use_tls: bool = True


class Settings(BaseSettings):
    """Strongly typed configuration for the service."""

    app_name: str = "Newsletter Desk"
    environment: str = "development"
    api_version: str = "v1"
    database_url: str = "sqlite:///.blogr/newsletter.db"
    redis_url: str = "redis://localhost:6379/0"
    rq_queue_name: str = "newsletters"
    allowed_origins: List[str] = ["http://localhost", "http://localhost:3000"]
    api_rate_limit_per_minute: int = 100

    newsletter_enabled: bool = False
    blog_title: str = "My Blog"
    subscribe_email: str | None = None
    sender_name: str | None = None
    emails_per_minute: int = 10
    posts_file: str = "posts.json"
    plugins_file: str = ".blogr/plugins.json"
    api_key: str | None = None
    imap: MailServerConfig | None = None
    smtp: MailServerConfig | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def strip_wrapping_quotes(cls, value: str) -> str:
        """Allow quoted URLs in env files."""
        if isinstance(value, str):
            return value.strip().strip('"').strip("'")
        return value

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def split_origins(cls, value: str | List[str]) -> List[str]:
        """Allow comma separated origins in env files."""
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("subscribe_email")
    @classmethod
    def validate_subscribe_email(cls, value: str | None) -> str | None:
        if value is not None and "@" not in value:
            raise ValueError("subscribe_email must contain '@'")
        return value

    @field_validator("emails_per_minute", "api_rate_limit_per_minute")
    @classmethod
    def positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("rate limits must be at least 1 per minute")
        return value


def _resolve_mail_server(
    configured: MailServerConfig | None, prefix: str, environ: Mapping[str, str]
) -> MailServerConfig | None:
    if configured is not None:
        return configured

    server = environ.get(f"{prefix}_SERVER")
    port = environ.get(f"{prefix}_PORT")
    username = environ.get(f"{prefix}_USERNAME")
    if not (server and port and username):
        return None
    try:
        port_number = int(port)
    except ValueError:
        return None
    return MailServerConfig(server=server, port=port_number, username=username, use_tls=True)


def resolve_imap_config(
    settings: Settings, environ: Mapping[str, str] | None = None
) -> MailServerConfig | None:
    """Structured IMAP settings, else NEWSLETTER_IMAP_* variables, else None."""

    return _resolve_mail_server(settings.imap, "NEWSLETTER_IMAP", os.environ if environ is None else environ)


def resolve_smtp_config(
    settings: Settings, environ: Mapping[str, str] | None = None
) -> MailServerConfig | None:
    """Structured SMTP settings, else NEWSLETTER_SMTP_* variables, else None."""

    return _resolve_mail_server(settings.smtp, "NEWSLETTER_SMTP", os.environ if environ is None else environ)


def resolve_password(kind: str, environ: Mapping[str, str] | None = None) -> str:
    """Read the IMAP or SMTP password from the environment snapshot."""

    variable = f"NEWSLETTER_{kind.upper()}_PASSWORD"
    value = (os.environ if environ is None else environ).get(variable)
    if not value:
        raise ConfigMissingError(
            f"{variable} environment variable not set",
            hint=f"export {variable}=<app password> before running this command.",
        )
    return value


@lru_cache()
def get_settings() -> Settings:
    """Return a cached Settings instance for reuse across the app."""

    return Settings()


settings = get_settings()
