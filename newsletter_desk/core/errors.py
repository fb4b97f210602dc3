"""Error taxonomy shared by the store, the pipelines and the API."""
from __future__ import annotations


class NewsletterError(Exception):
    """Base class for every error raised on purpose by this package."""


class ConfigMissingError(NewsletterError):
    """Newsletter disabled or credentials absent. Raised before any network call."""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class AuthFailedError(NewsletterError):
    """The IMAP or SMTP server rejected our credentials."""


class NetworkFailedError(NewsletterError):
    """The IMAP or SMTP server could not be reached or dropped the connection."""


class DuplicateSubscriberError(NewsletterError):
    def __init__(self, email: str) -> None:
        super().__init__(f"Subscriber already exists: {email}")
        self.email = email


class NotFoundError(NewsletterError):
    """A lookup returned nothing."""


class SubscriberNotFoundError(NotFoundError):
    def __init__(self, key: str | int) -> None:
        super().__init__(f"Subscriber not found: {key}")
        self.key = key


class ParseFailure(NewsletterError):
    """One malformed message, row or date. Callers skip the item and continue."""


class ValidationFailure(NewsletterError):
    """Malformed address, unsupported import source or export format."""
