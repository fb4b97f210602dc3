"""Import subscriber lists exported from other newsletter services.

Parsing and importing are separate steps: ``MigrationImporter.parse`` turns a
CSV or JSON export into ``ImportedSubscriber`` rows without touching the
store, ``preview`` truncates those rows for display and ``import_`` converts
and inserts them. Re-importing the same file only counts duplicates.
"""
from __future__ import annotations

import csv
import enum
import io
import json
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from newsletter_desk.core.errors import DuplicateSubscriberError, ParseFailure, ValidationFailure
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore, normalize_email
from newsletter_desk.utils.datetime import ensure_utc, utcnow
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)


class MigrationSource(str, enum.Enum):
    MAILCHIMP = "mailchimp"
    CONVERTKIT = "convertkit"
    SUBSTACK = "substack"
    BEEHIIV = "beehiiv"
    GENERIC = "generic"
    JSON = "json"

    @classmethod
    def parse(cls, value: str | "MigrationSource") -> "MigrationSource":
        if isinstance(value, cls):
            return value
        name = value.strip().lower()
        if name == "csv":
            return cls.GENERIC
        try:
            return cls(name)
        except ValueError:
            raise ValidationFailure(f"Unsupported migration source: {value}") from None

    @property
    def label(self) -> str:
        return _LABELS[self]

    def __str__(self) -> str:
        return self.value


_LABELS = {
    MigrationSource.MAILCHIMP: "Mailchimp",
    MigrationSource.CONVERTKIT: "ConvertKit",
    MigrationSource.SUBSTACK: "Substack",
    MigrationSource.BEEHIIV: "Beehiiv",
    MigrationSource.GENERIC: "Generic",
    MigrationSource.JSON: "Json",
}

# (approved values, declined values); anything else stays pending.
_DEFAULT_VOCABULARY = (
    {"active", "subscribed", "approved"},
    {"unsubscribed", "declined", "cancelled"},
)
STATUS_VOCABULARY: dict[MigrationSource, tuple[set[str], set[str]]] = {
    MigrationSource.MAILCHIMP: ({"subscribed"}, {"unsubscribed", "cleaned"}),
    MigrationSource.CONVERTKIT: ({"active", "subscribed"}, {"unsubscribed", "cancelled"}),
    MigrationSource.SUBSTACK: ({"active", "subscribed"}, {"unsubscribed"}),
    MigrationSource.BEEHIIV: ({"active", "subscribed"}, {"unsubscribed"}),
    MigrationSource.GENERIC: _DEFAULT_VOCABULARY,
    MigrationSource.JSON: _DEFAULT_VOCABULARY,
}

DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%m-%d-%Y",
    "%d-%m-%Y",
)


class FormatConfig(BaseModel):
    """Column names and CSV dialect for one export."""

    email_column: str | None = "email"
    name_column: str | None = "name"
    status_column: str | None = None
    date_column: str | None = None
    tags_column: str | None = None
    delimiter: str = ","
    has_header: bool = True

    @classmethod
    def for_source(cls, source: MigrationSource) -> "FormatConfig":
        return cls(**_SOURCE_COLUMNS[source])

    def with_overrides(self, **overrides: Any) -> "FormatConfig":
        """Replace fields that were explicitly given; ``None`` keeps the default."""

        unknown = set(overrides) - set(type(self).model_fields)
        if unknown:
            raise ValidationFailure(f"Unknown column mapping: {', '.join(sorted(unknown))}")
        updates = {key: value for key, value in overrides.items() if value is not None}
        return self.model_validate({**self.model_dump(), **updates})

    def columns(self) -> dict[str, str | None]:
        return {
            "email": self.email_column,
            "name": self.name_column,
            "status": self.status_column,
            "date": self.date_column,
            "tags": self.tags_column,
        }


_SOURCE_COLUMNS: dict[MigrationSource, dict[str, Any]] = {
    MigrationSource.MAILCHIMP: {
        "email_column": "Email Address",
        "name_column": "FNAME",
        "status_column": "Member Status",
        "date_column": "Timestamp Signup",
        "tags_column": "Tags",
    },
    MigrationSource.CONVERTKIT: {
        "email_column": "email",
        "name_column": "first_name",
        "status_column": "state",
        "date_column": "created_at",
        "tags_column": "tags",
    },
    MigrationSource.SUBSTACK: {
        "email_column": "email",
        "name_column": "name",
        "status_column": "subscription_status",
        "date_column": "created_at",
    },
    MigrationSource.BEEHIIV: {
        "email_column": "email",
        "name_column": "name",
        "status_column": "status",
        "date_column": "created",
        "tags_column": "tags",
    },
    MigrationSource.GENERIC: {"email_column": "email", "name_column": "name"},
    MigrationSource.JSON: {
        "email_column": "email",
        "name_column": "name",
        "status_column": "status",
        "date_column": "created_at",
        "tags_column": "tags",
        "has_header": False,
    },
}


class ImportedSubscriber(BaseModel):
    email: str
    name: str | None = None
    status: str | None = None
    subscribed_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, str] = Field(default_factory=dict)


class ParsedImport(BaseModel):
    """Rows read from one export plus the rows that could not be read."""

    source: MigrationSource
    records: list[ImportedSubscriber] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class MigrationResult(BaseModel):
    total_processed: int = 0
    successfully_imported: int = 0
    skipped_duplicates: int = 0
    errors: list[str] = Field(default_factory=list)
    imported_subscribers: list[Subscriber] = Field(default_factory=list)


# --- Field parsing ---


def parse_csv_line(line: str, delimiter: str = ",") -> list[str]:
    """Split one CSV line; quotes protect delimiters and ``""`` is a literal quote."""

    row = next(csv.reader([line], delimiter=delimiter), [])
    return [field.strip() for field in row] or [""]


def parse_date(value: str) -> datetime | None:
    """Try each known export format, then ISO 8601; unparseable dates give None."""

    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def map_status(raw: str | None, source: MigrationSource) -> SubscriberStatus:
    if not raw:
        return SubscriberStatus.PENDING
    approved, declined = STATUS_VOCABULARY[source]
    value = raw.strip().lower()
    if value in approved:
        return SubscriberStatus.APPROVED
    if value in declined:
        return SubscriberStatus.DECLINED
    return SubscriberStatus.PENDING


def _lookup(fields: dict[str, str], column: str | None, fallback: str) -> tuple[str | None, str | None]:
    """Return ``(key, value)``: configured column, then fallback key, then case-insensitive."""

    if column and fields.get(column):
        return column, fields[column]
    if fields.get(fallback):
        return fallback, fields[fallback]
    for key, value in fields.items():
        if key.lower() == fallback and value:
            return key, value
    return None, None


def _json_value(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        return ",".join(item for item in value if isinstance(item, str))
    return None


def build_record(fields: dict[str, str], config: FormatConfig) -> ImportedSubscriber:
    """Map one row of named fields onto an ``ImportedSubscriber``."""

    used: set[str] = set()
    values: dict[str, str | None] = {}
    for fallback, column in config.columns().items():
        key, value = _lookup(fields, column, fallback)
        values[fallback] = value
        if key is not None:
            used.add(key)
        if column:
            used.add(column)

    email = values["email"]
    if not email:
        raise ParseFailure("Email field is required")
    email = normalize_email(email)
    if "@" not in email:
        raise ParseFailure(f"Invalid email format: {email}")

    tags = [tag.strip() for tag in (values["tags"] or "").split(",") if tag.strip()]
    custom_fields = {key: value for key, value in fields.items() if key not in used and value}

    return ImportedSubscriber(
        email=email,
        name=values["name"],
        status=values["status"],
        subscribed_at=parse_date(values["date"]) if values["date"] else None,
        tags=tags,
        custom_fields=custom_fields,
    )


def build_notes(record: ImportedSubscriber, source: MigrationSource) -> str:
    notes = f"Migrated from {source.label}"
    if record.tags:
        notes += f" | Tags: {', '.join(record.tags)}"
    if record.custom_fields:
        custom = ", ".join(f"{key}={value}" for key, value in sorted(record.custom_fields.items()))
        notes += f" | Custom fields: {custom}"
    return notes


def to_subscriber(record: ImportedSubscriber, source: MigrationSource) -> Subscriber:
    status = map_status(record.status, source)
    subscribed_at = record.subscribed_at or utcnow()
    return Subscriber(
        email=normalize_email(record.email),
        status=status,
        subscribed_at=subscribed_at,
        approved_at=None if status is SubscriberStatus.PENDING else subscribed_at,
        source_email_id=f"migration-{source.label}",
        notes=build_notes(record, source),
    )


# --- Importer ---


class MigrationImporter:
    def __init__(self, store: SubscriberStore) -> None:
        self.store = store

    def parse(
        self,
        source: MigrationSource | str,
        data: str,
        config: FormatConfig | None = None,
    ) -> ParsedImport:
        """Parse export text. Bad rows land in ``errors``; the rest are returned."""

        source = MigrationSource.parse(source)
        config = config or FormatConfig.for_source(source)
        if source is MigrationSource.JSON:
            parsed = self._parse_json(data, config)
        else:
            parsed = self._parse_csv(source, data, config)
        logger.info("Parsed %d subscribers from %s export", len(parsed.records), source.label)
        return parsed

    def parse_file(
        self,
        source: MigrationSource | str,
        path: str | Path,
        config: FormatConfig | None = None,
    ) -> ParsedImport:
        try:
            data = Path(path).read_text(encoding="utf-8-sig")
        except OSError as exc:
            raise ValidationFailure(f"Failed to open file: {path}: {exc}") from exc
        return self.parse(source, data, config)

    def _parse_csv(self, source: MigrationSource, data: str, config: FormatConfig) -> ParsedImport:
        parsed = ParsedImport(source=source)
        reader = csv.reader(io.StringIO(data), delimiter=config.delimiter)
        headers: list[str] = []
        if config.has_header:
            headers = [field.strip() for field in next(reader, [])]

        for row in reader:
            line_number = reader.line_num
            values = [field.strip() for field in row]
            if not any(values):
                continue
            if headers:
                fields = dict(zip(headers, values))
            else:
                fields = {str(index): value for index, value in enumerate(values)}
            try:
                parsed.records.append(build_record(fields, config))
            except ParseFailure as exc:
                logger.warning("Failed to parse line %d: %s", line_number, exc)
                parsed.errors.append(f"Line {line_number}: {exc}")
        return parsed

    def _parse_json(self, data: str, config: FormatConfig) -> ParsedImport:
        parsed = ParsedImport(source=MigrationSource.JSON)
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ParseFailure(f"Invalid JSON format: {exc}") from exc

        if isinstance(payload, dict):
            items = [payload]
        elif isinstance(payload, list):
            items = payload
        else:
            raise ValidationFailure("JSON must be an object or array of objects")

        for position, item in enumerate(items, start=1):
            if not isinstance(item, dict):
                parsed.errors.append(f"Item {position}: expected an object")
                continue
            fields = {}
            for key, value in item.items():
                text = _json_value(value)
                if text is not None:
                    fields[key] = text
            try:
                parsed.records.append(build_record(fields, config))
            except ParseFailure as exc:
                logger.warning("Failed to parse item %d: %s", position, exc)
                parsed.errors.append(f"Item {position}: {exc}")
        return parsed

    def preview(self, parsed: ParsedImport, limit: int | None = None) -> list[ImportedSubscriber]:
        records = parsed.records if limit is None else parsed.records[:limit]
        logger.info("Preview shows %d subscribers", len(records))
        return list(records)

    def import_(self, parsed: ParsedImport) -> MigrationResult:
        result = MigrationResult(
            total_processed=len(parsed.records) + len(parsed.errors),
            errors=list(parsed.errors),
        )
        for record in parsed.records:
            self._import_one(record, parsed.source, result)

        logger.info(
            "Migration completed: processed=%d imported=%d duplicates=%d errors=%d",
            result.total_processed,
            result.successfully_imported,
            result.skipped_duplicates,
            len(result.errors),
        )
        return result

    def _import_one(self, record: ImportedSubscriber, source: MigrationSource, result: MigrationResult) -> None:
        subscriber = to_subscriber(record, source)
        try:
            if self.store.exists(subscriber.email):
                raise DuplicateSubscriberError(subscriber.email)
            new_id = self.store.add(subscriber)
        except DuplicateSubscriberError:
            result.skipped_duplicates += 1
            logger.info("Skipped duplicate: %s", subscriber.email)
            return
        except SQLAlchemyError as exc:
            result.errors.append(f"Failed to save {subscriber.email}: {exc}")
            logger.error("Failed to save %s: %s", subscriber.email, exc)
            return
        result.successfully_imported += 1
        result.imported_subscribers.append(subscriber.model_copy(update={"id": new_id}))
        logger.info("Imported: %s", subscriber.email)

