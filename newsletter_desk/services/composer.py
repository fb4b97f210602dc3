"""Turn blog posts or ad-hoc text into newsletter emails."""
from __future__ import annotations

import html
import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, Field, field_validator

from newsletter_desk.core.config import Settings
from newsletter_desk.core.errors import NotFoundError, ValidationFailure
from newsletter_desk.services.template_engine import render_template
from newsletter_desk.utils.datetime import ensure_utc, utcnow
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)

# Left in composed bodies and resolved per recipient by the sender.
UNSUBSCRIBE_TOKEN_MARKER = "{{unsubscribe_token}}"
UNSUBSCRIBE_URL_MARKER = "{{unsubscribe_url}}"

PREVIEW_HTML_LIMIT = 500
WORDS_PER_MINUTE = 200


class Newsletter(BaseModel):
    subject: str
    html_content: str
    text_content: str
    created_at: datetime = Field(default_factory=utcnow)
    unsubscribe_token: str | None = UNSUBSCRIBE_TOKEN_MARKER


class Post(BaseModel):
    title: str
    content: str
    date: datetime | None = None
    slug: str | None = None
    description: str | None = None
    status: str = "published"

    @field_validator("date")
    @classmethod
    def as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


def load_posts(path: str | Path) -> list[Post]:
    """Read posts from a JSON array; a missing file means there are no posts."""

    path = Path(path)
    if not path.exists():
        logger.warning("Posts file %s does not exist", path)
        return []
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationFailure(f"Invalid posts file {path}: {exc}") from exc
    if not isinstance(payload, list):
        raise ValidationFailure(f"Posts file {path} must contain a JSON array")
    return [Post.model_validate(item) for item in payload]


def latest_post(posts: list[Post]) -> Post:
    published = [post for post in posts if post.status.lower() == "published"]
    if not published:
        raise NotFoundError("No published posts found")
    return max(published, key=lambda post: post.date or datetime.min.replace(tzinfo=UTC))


def render_markdown(text: str) -> str:
    """Small markdown subset: headings, paragraphs, bold, italics, inline code, links."""

    blocks = [block.strip() for block in re.split(r"\n\s*\n", text.strip()) if block.strip()]
    rendered: list[str] = []
    for block in blocks:
        heading = re.match(r"^(#{1,6})\s+(.*)$", block)
        if heading and "\n" not in block:
            level = len(heading.group(1))
            rendered.append(f"<h{level}>{_inline(heading.group(2))}</h{level}>")
            continue
        lines = [_inline(line.strip()) for line in block.splitlines()]
        rendered.append("<p>" + "<br>\n".join(lines) + "</p>")
    return "\n".join(rendered)


def _inline(text: str) -> str:
    text = html.escape(text, quote=False)
    text = re.sub(r"`([^`]+)`", r"<code>\1</code>", text)
    text = re.sub(r"\*\*([^*]+)\*\*", r"<strong>\1</strong>", text)
    text = re.sub(r"\*([^*]+)\*", r"<em>\1</em>", text)
    text = re.sub(r"\[([^\]]+)\]\(([^)\s]+)\)", r'<a href="\2">\1</a>', text)
    return text


def html_to_text(body: str) -> str:
    """Plain-text alternative for an HTML email body."""

    text = re.sub(r"<style[^>]*>.*?</style>", "", body, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<script[^>]*>.*?</script>", "", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<title[^>]*>.*?</title>", "", text, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r'<a [^>]*href="([^"]*)"[^>]*>(.*?)</a>', r"\2 (\1)", text, flags=re.DOTALL)
    text = re.sub(r"<br\s*/?>", "\n", text)
    text = re.sub(r"<hr\s*/?>", "\n---\n", text)
    text = re.sub(r"<h[1-6][^>]*>", "\n\n", text)
    text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class NewsletterComposer:
    def __init__(
        self,
        settings: Settings,
        render: Callable[..., str] = render_template,
        markdown: Callable[[str], str] = render_markdown,
    ) -> None:
        self.settings = settings
        self._render = render
        self._markdown = markdown

    @property
    def newsletter_title(self) -> str:
        return self.settings.sender_name or self.settings.blog_title

    def _base_context(self) -> dict[str, Any]:
        return {
            "newsletter_title": self.newsletter_title,
            "blog_title": self.settings.blog_title,
            "unsubscribe_url": UNSUBSCRIBE_URL_MARKER,
            "unsubscribe_token": UNSUBSCRIBE_TOKEN_MARKER,
        }

    def compose_from_post(self, post: Post) -> Newsletter:
        reading_time = max(1, len(post.content.split()) // WORDS_PER_MINUTE)
        html_body = self._render(
            "email/post.html",
            **self._base_context(),
            post=post,
            content=self._markdown(post.content),
            reading_time=reading_time,
        )
        subject = f"{self.newsletter_title}: {post.title}"
        logger.info("Composed newsletter from post %r", post.title)
        return Newsletter(subject=subject, html_content=html_body, text_content=html_to_text(html_body))

    def compose_from_latest_post(self, posts: list[Post]) -> Newsletter:
        return self.compose_from_post(latest_post(posts))

    def compose_custom(self, subject: str, content: str) -> Newsletter:
        if not subject.strip():
            raise ValidationFailure("Newsletter subject must not be empty")
        html_body = self._render(
            "email/custom.html",
            **self._base_context(),
            subject=subject,
            content=self._markdown(content),
        )
        logger.info("Composed custom newsletter %r", subject)
        return Newsletter(subject=subject, html_content=html_body, text_content=html_to_text(html_body))


def preview(newsletter: Newsletter) -> str:
    """Terminal preview: full text body and the first part of the HTML."""

    html_body = newsletter.html_content
    if len(html_body) > PREVIEW_HTML_LIMIT:
        html_body = (
            f"{html_body[:PREVIEW_HTML_LIMIT]}...\n\n"
            f"[HTML content truncated - {len(newsletter.html_content)} total characters]"
        )
    rule = "=" * 40
    return "\n".join(
        [
            "Newsletter Preview",
            rule,
            f"Subject: {newsletter.subject}",
            f"Created: {newsletter.created_at:%Y-%m-%d %H:%M:%S} UTC",
            rule,
            "",
            "Plain Text Version:",
            "-" * 20,
            newsletter.text_content,
            "",
            "HTML Version (truncated):",
            "-" * 20,
            html_body,
        ]
    )
