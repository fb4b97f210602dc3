"""Mailbox ingestion: fetch unseen mail, spot subscribe requests, store them as pending."""
from __future__ import annotations

import imaplib
from email import message_from_bytes, policy
from email.message import EmailMessage, Message
from typing import Callable, Iterable, Sequence

from pydantic import BaseModel, Field

from newsletter_desk.core.config import MailServerConfig
from newsletter_desk.core.errors import (
    AuthFailedError,
    DuplicateSubscriberError,
    NetworkFailedError,
    ParseFailure,
)
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore, normalize_email
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)

SUBSCRIBE_KEYWORDS = (
    "subscribe",
    "subscription",
    "newsletter",
    "sign up",
    "signup",
    "join",
    "mailing list",
    "updates",
    "notifications",
)
UNSUBSCRIBE_KEYWORDS = ("unsubscribe", "remove", "stop", "opt out", "opt-out")

NO_CONTENT = "No readable content found"


class FetchedEmail(BaseModel):
    id: str
    from_: str = Field(alias="from")
    subject: str = "No Subject"
    body: str = ""
    date: str | None = None

    model_config = {"populate_by_name": True, "frozen": True}


class IngestionResult(BaseModel):
    fetched: int = 0
    candidates: int = 0
    added: list[Subscriber] = Field(default_factory=list)
    skipped_existing: list[str] = Field(default_factory=list)
    unmarked_ids: list[str] = Field(default_factory=list)


# --- Pure helpers ---


def extract_email_address(from_field: str) -> str:
    """Pull the address out of ``Name <addr>``, ``<addr>`` or a bare ``addr``."""

    start = from_field.find("<")
    end = from_field.find(">")
    if start != -1 and end > start:
        return normalize_email(from_field[start + 1 : end])

    candidate = normalize_email(from_field)
    if "@" not in candidate:
        raise ParseFailure(f"Could not extract email from: {from_field}")
    return candidate


def is_valid_email(email: str) -> bool:
    return (
        "@" in email
        and "." in email
        and not email.startswith("@")
        and not email.endswith("@")
        and len(email) > 5
    )


def is_subscription_intent(email: FetchedEmail) -> bool:
    """Subscribe keywords present and no unsubscribe keyword anywhere; unsubscribe wins."""

    haystack = f"{email.subject}\n{email.body}".lower()
    wants_in = any(keyword in haystack for keyword in SUBSCRIBE_KEYWORDS)
    wants_out = any(keyword in haystack for keyword in UNSUBSCRIBE_KEYWORDS)
    return wants_in and not wants_out


def extract_body_text(message: Message) -> str:
    """Best-effort plain text: text/plain part, else the first part, else a placeholder."""

    if not message.is_multipart():
        return _decode_part(message)

    parts = [part for part in message.walk() if not part.is_multipart()]
    for part in parts:
        if part.get_content_type() == "text/plain":
            return _decode_part(part)
    if parts:
        return _decode_part(parts[0])
    return NO_CONTENT


def _decode_part(part: Message) -> str:
    if isinstance(part, EmailMessage):
        try:
            content = part.get_content()
        except (KeyError, LookupError):
            content = None
        if isinstance(content, str):
            return content
    payload = part.get_payload(decode=True)
    if payload is None:
        return NO_CONTENT
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def parse_raw_message(message_id: str, raw: bytes) -> FetchedEmail:
    try:
        message = message_from_bytes(raw, policy=policy.default)
        return FetchedEmail(
            id=message_id,
            from_=str(message.get("From") or "unknown@unknown.com"),
            subject=str(message.get("Subject") or "No Subject"),
            body=extract_body_text(message),
            date=str(message["Date"]) if message.get("Date") else None,
        )
    except Exception as exc:
        raise ParseFailure(f"Failed to parse email {message_id}: {exc}") from exc


def extract_candidates(emails: Iterable[FetchedEmail]) -> list[Subscriber]:
    """Turn subscribe requests into pending subscribers; first address in the batch wins."""

    candidates: list[Subscriber] = []
    seen: set[str] = set()
    for email in emails:
        try:
            address = extract_email_address(email.from_)
        except ParseFailure as exc:
            logger.warning("Skipping message %s: %s", email.id, exc)
            continue

        if address in seen:
            continue
        seen.add(address)

        if not is_valid_email(address):
            logger.warning("Skipping invalid email: %s", address)
            continue

        if is_subscription_intent(email):
            logger.info("Found subscription from: %s", address)
            candidates.append(Subscriber.new(address, source_email_id=email.id))
    return candidates


def commit_new_subscribers(
    candidates: Iterable[Subscriber], store: SubscriberStore
) -> list[Subscriber]:
    """Insert candidates the store does not know yet and return the inserted ones."""

    added: list[Subscriber] = []
    for candidate in candidates:
        if store.exists(candidate.email):
            logger.info("Subscriber already exists: %s", candidate.email)
            continue
        try:
            new_id = store.add(candidate)
        except DuplicateSubscriberError:
            logger.info("Subscriber already exists: %s", candidate.email)
            continue
        added.append(candidate.model_copy(update={"id": new_id}))
        logger.info("Added new subscriber: %s", candidate.email)
    return added


# --- IMAP connection ---


ImapFactory = Callable[[str, int], imaplib.IMAP4]


def _default_imap_factory(use_tls: bool) -> ImapFactory:
    return imaplib.IMAP4_SSL if use_tls else imaplib.IMAP4


class MailboxConnection:
    """An authenticated IMAP session owned by one ingestion pass.

    Use as a context manager; logout runs on every exit path and a failing
    logout is logged rather than raised so it never hides the original error.
    """

    def __init__(self, client: imaplib.IMAP4, config: MailServerConfig) -> None:
        self._client = client
        self.config = config
        self._open = True

    @classmethod
    def open(
        cls,
        config: MailServerConfig,
        password: str,
        factory: ImapFactory | None = None,
    ) -> "MailboxConnection":
        factory = factory or _default_imap_factory(config.use_tls)
        try:
            client = factory(config.server, config.port)
        except (OSError, imaplib.IMAP4.error) as exc:
            raise NetworkFailedError(
                f"Failed to connect to IMAP server {config.server}:{config.port}: {exc}"
            ) from exc

        try:
            client.login(config.username, password)
        except imaplib.IMAP4.error as exc:
            _safe_shutdown(client)
            raise AuthFailedError(f"IMAP login failed: {exc}") from exc
        except OSError as exc:
            _safe_shutdown(client)
            raise NetworkFailedError(f"IMAP connection dropped during login: {exc}") from exc

        logger.info("Connected to IMAP server: %s:%s", config.server, config.port)
        return cls(client, config)

    def __enter__(self) -> "MailboxConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def fetch_unseen(self, mailbox: str = "INBOX") -> list[FetchedEmail]:
        """Fetch every unseen message; an empty mailbox yields an empty list."""

        try:
            status, _ = self._client.select(mailbox)
            if status != "OK":
                raise NetworkFailedError(f"Failed to select {mailbox}")
            status, data = self._client.search(None, "UNSEEN")
        except (imaplib.IMAP4.error, OSError) as exc:
            raise NetworkFailedError(f"Failed to search for unseen emails: {exc}") from exc
        if status != "OK":
            raise NetworkFailedError("Failed to search for unseen emails")

        message_ids = [raw.decode() for raw in (data[0] or b"").split()]
        if not message_ids:
            logger.info("No new emails found.")
            return []

        logger.info("Found %d new emails to process", len(message_ids))
        fetched: list[FetchedEmail] = []
        for message_id in message_ids:
            try:
                fetched.append(self._fetch_one(message_id))
            except (ParseFailure, imaplib.IMAP4.error) as exc:
                logger.warning("Failed to process email %s: %s", message_id, exc)
            except OSError as exc:
                raise NetworkFailedError(f"IMAP connection dropped while fetching {message_id}: {exc}") from exc
        return fetched

    def _fetch_one(self, message_id: str) -> FetchedEmail:
        status, data = self._client.fetch(message_id, "(RFC822)")
        if status != "OK":
            raise ParseFailure(f"Failed to fetch email {message_id}")
        raw = next((part[1] for part in data if isinstance(part, tuple)), None)
        if raw is None:
            raise ParseFailure(f"No body found for message {message_id}")
        email = parse_raw_message(message_id, raw)
        logger.debug("Processed email from: %s", email.from_)
        return email

    def mark_processed(self, message_ids: Sequence[str]) -> list[str]:
        """Flag messages as seen; return the ids that could not be flagged."""

        failed: list[str] = []
        for message_id in message_ids:
            try:
                status, _ = self._client.store(message_id, "+FLAGS", "(\\Seen)")
            except (imaplib.IMAP4.error, OSError) as exc:
                logger.warning("Failed to mark email %s as seen: %s", message_id, exc)
                failed.append(message_id)
                continue
            if status != "OK":
                logger.warning("Failed to mark email %s as seen: %s", message_id, status)
                failed.append(message_id)
        logger.info("Marked %d emails as seen", len(message_ids) - len(failed))
        return failed

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        _safe_shutdown(self._client)
        logger.info("Disconnected from IMAP server")


def _safe_shutdown(client: imaplib.IMAP4) -> None:
    try:
        client.logout()
    except (imaplib.IMAP4.error, OSError) as exc:
        logger.warning("IMAP logout failed: %s", exc)


class IngestionPipeline:
    """One ingestion pass: connect, fetch, extract, commit, mark processed."""

    def __init__(self, store: SubscriberStore, imap_factory: ImapFactory | None = None) -> None:
        self.store = store
        self._imap_factory = imap_factory

    def connect(self, config: MailServerConfig, password: str) -> MailboxConnection:
        return MailboxConnection.open(config, password, factory=self._imap_factory)

    def run(self, config: MailServerConfig, password: str) -> IngestionResult:
        with self.connect(config, password) as mailbox:
            emails = mailbox.fetch_unseen()
            result = IngestionResult(fetched=len(emails))
            if not emails:
                return result

            candidates = extract_candidates(emails)
            added = commit_new_subscribers(candidates, self.store)
            inserted = {subscriber.email for subscriber in added}
            result.candidates = len(candidates)
            result.added = added
            result.skipped_existing = [c.email for c in candidates if c.email not in inserted]
            result.unmarked_ids = mailbox.mark_processed([email.id for email in emails])
            return result
