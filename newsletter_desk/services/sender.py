"""Rate-limited newsletter delivery over SMTP."""
from __future__ import annotations

import base64
import html
import smtplib
import uuid
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from typing import Callable, Iterable
from urllib.parse import quote

from pydantic import BaseModel, Field

from newsletter_desk.core.config import MailServerConfig
from newsletter_desk.core.errors import AuthFailedError, NetworkFailedError
from newsletter_desk.core.rate_limit import SendRateLimiter
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.composer import (
    UNSUBSCRIBE_TOKEN_MARKER,
    UNSUBSCRIBE_URL_MARKER,
    Newsletter,
)
from newsletter_desk.services.subscribers import Subscriber
from newsletter_desk.utils.datetime import utcnow
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)

SmtpFactory = Callable[[MailServerConfig], smtplib.SMTP]
ProgressCallback = Callable[[int, int], None]


class SendError(BaseModel):
    subscriber_email: str
    error_message: str
    timestamp: datetime = Field(default_factory=utcnow)
    retry_count: int = 0


class SendReport(BaseModel):
    total_subscribers: int
    successful_sends: int = 0
    failed_sends: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    errors: list[SendError] = Field(default_factory=list)

    def add_success(self) -> None:
        self.successful_sends += 1

    def add_error(self, subscriber_email: str, error_message: str) -> None:
        self.failed_sends += 1
        self.errors.append(SendError(subscriber_email=subscriber_email, error_message=error_message))

    def complete(self) -> None:
        self.completed_at = utcnow()

    def is_complete(self) -> bool:
        return self.successful_sends + self.failed_sends >= self.total_subscribers

    def success_rate(self) -> float:
        if self.total_subscribers == 0:
            return 1.0
        return self.successful_sends / self.total_subscribers


def generate_unsubscribe_token(email: str) -> str:
    encoded = base64.urlsafe_b64encode(email.encode("utf-8")).decode("ascii")
    return f"{encoded}:{uuid.uuid4().hex[:8]}"


def unsubscribe_url(sender_address: str, token: str) -> str:
    body = quote(f"Please unsubscribe me from the newsletter. Token: {token}")
    return f"mailto:{sender_address}?subject=Unsubscribe&body={body}"


def personalize(newsletter: Newsletter, token: str, sender_address: str) -> Newsletter:
    """Resolve the unsubscribe markers for one recipient."""

    url = unsubscribe_url(sender_address, token)

    def resolve(body: str, link: str) -> str:
        return body.replace(UNSUBSCRIBE_URL_MARKER, link).replace(UNSUBSCRIBE_TOKEN_MARKER, token)

    return newsletter.model_copy(
        update={
            "html_content": resolve(newsletter.html_content, html.escape(url)),
            "text_content": resolve(newsletter.text_content, url),
            "unsubscribe_token": token,
        }
    )


def build_message(newsletter: Newsletter, from_address: str, recipient: str) -> MIMEMultipart:
    message = MIMEMultipart("alternative")
    message["Subject"] = newsletter.subject
    message["From"] = from_address
    message["To"] = recipient
    message["Date"] = formatdate(localtime=False)
    message.attach(MIMEText(newsletter.text_content, "plain", "utf-8"))
    message.attach(MIMEText(newsletter.html_content, "html", "utf-8"))
    return message


def _default_smtp_factory(config: MailServerConfig) -> smtplib.SMTP:
    if config.port == 465:
        return smtplib.SMTP_SSL(config.server, config.port, timeout=30)
    client = smtplib.SMTP(config.server, config.port, timeout=30)
    if config.use_tls:
        try:
            client.starttls()
        except (OSError, smtplib.SMTPException):
            client.close()
            raise
    return client


class SmtpTransport:
    """One authenticated SMTP session, closed when the context exits."""

    def __init__(self, client: smtplib.SMTP) -> None:
        self._client = client
        self._open = True

    @classmethod
    def open(
        cls, config: MailServerConfig, password: str, factory: SmtpFactory | None = None
    ) -> "SmtpTransport":
        factory = factory or _default_smtp_factory
        try:
            client = factory(config)
        except (OSError, smtplib.SMTPException) as exc:
            raise NetworkFailedError(
                f"Failed to connect to SMTP server {config.server}:{config.port}: {exc}"
            ) from exc

        try:
            client.login(config.username, password)
        except smtplib.SMTPAuthenticationError as exc:
            cls(client).close()
            raise AuthFailedError(f"SMTP login failed: {exc}") from exc
        except (OSError, smtplib.SMTPException) as exc:
            cls(client).close()
            raise NetworkFailedError(f"SMTP login failed: {exc}") from exc
        logger.info("Connected to SMTP server: %s:%s", config.server, config.port)
        return cls(client)

    def __enter__(self) -> "SmtpTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def send(self, message: MIMEMultipart) -> None:
        self._client.send_message(message)

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            self._client.quit()
        except (OSError, smtplib.SMTPException) as exc:
            logger.warning("SMTP quit failed: %s", exc)


class BulkSender:
    """Sends a newsletter to approved subscribers, one at a time, within the rate limit."""

    def __init__(
        self,
        config: MailServerConfig,
        sender_name: str | None = None,
        limiter: SendRateLimiter | None = None,
        emails_per_minute: int = 10,
        smtp_factory: SmtpFactory | None = None,
    ) -> None:
        self.config = config
        self.from_address = formataddr((sender_name or "Newsletter", config.username))
        self.limiter = limiter or SendRateLimiter(emails_per_minute)
        self._smtp_factory = smtp_factory

    def connect(self, password: str) -> SmtpTransport:
        return SmtpTransport.open(self.config, password, factory=self._smtp_factory)

    def send_to_approved(
        self,
        newsletter: Newsletter,
        subscribers: Iterable[Subscriber],
        password: str,
        progress: ProgressCallback | None = None,
    ) -> SendReport:
        approved = [sub for sub in subscribers if sub.status is SubscriberStatus.APPROVED]
        report = SendReport(total_subscribers=len(approved))
        if not approved:
            logger.warning("No approved subscribers found")
            report.complete()
            return report

        logger.info("Sending newsletter to %d approved subscribers", len(approved))
        with self.connect(password) as transport:
            for index, subscriber in enumerate(approved, start=1):
                self.limiter.acquire()
                self._send_one(transport, newsletter, subscriber.email, report)
                if progress is not None:
                    progress(index, len(approved))

        report.complete()
        logger.info(
            "Send finished: %d sent, %d failed, success rate %.1f%%",
            report.successful_sends,
            report.failed_sends,
            report.success_rate() * 100,
        )
        return report

    def _send_one(self, transport: SmtpTransport, newsletter: Newsletter, email: str, report: SendReport) -> None:
        personalized = personalize(newsletter, generate_unsubscribe_token(email), self.config.username)
        try:
            transport.send(build_message(personalized, self.from_address, email))
        except (smtplib.SMTPException, OSError, ValueError) as exc:
            message = f"Failed to send to {email}: {exc}"
            logger.error(message)
            report.add_error(email, message)
            return
        report.add_success()
        logger.info("Sent to %s", email)

    def send_test(self, newsletter: Newsletter, address: str, password: str) -> None:
        """Send one copy to ``address``; ignores the approval filter and the rate limit."""

        personalized = personalize(newsletter, generate_unsubscribe_token(address), self.config.username)
        with self.connect(password) as transport:
            try:
                transport.send(build_message(personalized, self.from_address, address))
            except (smtplib.SMTPException, OSError) as exc:
                raise NetworkFailedError(f"Failed to send test email: {exc}") from exc
        logger.info("Test email sent to %s", address)
