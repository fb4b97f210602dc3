"""Tests for composing newsletters from posts and custom text."""
from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from newsletter_desk.core.config import Settings
from newsletter_desk.core.errors import NotFoundError, ValidationFailure
from newsletter_desk.services.composer import (
    UNSUBSCRIBE_TOKEN_MARKER,
    UNSUBSCRIBE_URL_MARKER,
    Newsletter,
    NewsletterComposer,
    Post,
    html_to_text,
    latest_post,
    load_posts,
    preview,
    render_markdown,
)


def _settings(**overrides) -> Settings:
    values = {"blog_title": "Test Blog", "sender_name": None}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_render_markdown_subset():
    rendered = render_markdown("# Title\n\nSome **bold** and *soft* `code` with [a link](https://example.com) & more")

    assert rendered.startswith("<h1>Title</h1>")
    assert "<strong>bold</strong>" in rendered
    assert "<em>soft</em>" in rendered
    assert "<code>code</code>" in rendered
    assert '<a href="https://example.com">a link</a>' in rendered
    assert "&amp; more" in rendered


def test_html_to_text_keeps_links_and_drops_styles():
    text = html_to_text(
        "<style>p { color: red; }</style><h2>Hi</h2><p>Read <a href=\"https://x.test\">this</a></p>"
    )

    assert "color" not in text
    assert "Hi" in text
    assert "this (https://x.test)" in text


def test_latest_post_picks_newest_published():
    posts = [
        Post(title="Old", content="a", date=datetime(2024, 1, 1, tzinfo=UTC)),
        Post(title="Draft", content="b", date=datetime(2024, 6, 1, tzinfo=UTC), status="draft"),
        Post(title="New", content="c", date=datetime(2024, 3, 1, tzinfo=UTC)),
        Post(title="Undated", content="d"),
    ]

    assert latest_post(posts).title == "New"


def test_latest_post_without_published_posts():
    with pytest.raises(NotFoundError):
        latest_post([Post(title="Draft", content="x", status="draft")])


def test_load_posts(tmp_path):
    path = tmp_path / "posts.json"
    path.write_text(json.dumps([{"title": "Hello", "content": "World", "date": "2024-02-02T00:00:00"}]))

    posts = load_posts(path)

    assert posts[0].title == "Hello"
    assert posts[0].date.tzinfo is not None
    assert load_posts(tmp_path / "missing.json") == []

    path.write_text("{}")
    with pytest.raises(ValidationFailure):
        load_posts(path)


def test_compose_from_post_leaves_unsubscribe_markers():
    composer = NewsletterComposer(_settings(sender_name="Weekly Notes"))
    post = Post(
        title="Shipping Day",
        content="We **shipped** it.",
        date=datetime(2024, 5, 4, tzinfo=UTC),
        description="What changed",
    )

    newsletter = composer.compose_from_post(post)

    assert newsletter.subject == "Weekly Notes: Shipping Day"
    assert "<strong>shipped</strong>" in newsletter.html_content
    assert "May 04, 2024" in newsletter.html_content
    assert "1 min read" in newsletter.html_content
    assert UNSUBSCRIBE_URL_MARKER in newsletter.html_content
    assert UNSUBSCRIBE_URL_MARKER in newsletter.text_content
    assert newsletter.unsubscribe_token == UNSUBSCRIBE_TOKEN_MARKER


def test_compose_custom_escapes_subject():
    composer = NewsletterComposer(_settings())

    newsletter = composer.compose_custom("News <today>", "Plain body")

    assert newsletter.subject == "News <today>"
    assert "News &lt;today&gt;" in newsletter.html_content
    assert "Test Blog" in newsletter.html_content
    assert "Plain body" in newsletter.text_content


def test_compose_custom_requires_subject():
    with pytest.raises(ValidationFailure):
        NewsletterComposer(_settings()).compose_custom("  ", "body")


def test_composer_uses_injected_renderer():
    calls = []

    def fake_render(name, **context):
        calls.append((name, context))
        return "<p>rendered</p>"

    newsletter = NewsletterComposer(_settings(), render=fake_render).compose_custom("Hi", "there")

    assert calls[0][0] == "email/custom.html"
    assert calls[0][1]["unsubscribe_url"] == UNSUBSCRIBE_URL_MARKER
    assert newsletter.text_content == "rendered"


def test_preview_truncates_html():
    newsletter = Newsletter(subject="S", html_content="x" * 600, text_content="text")

    output = preview(newsletter)

    assert "Subject: S" in output
    assert "[HTML content truncated - 600 total characters]" in output
