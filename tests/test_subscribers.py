"""Tests for the subscriber store."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from newsletter_desk.core.errors import DuplicateSubscriberError, SubscriberNotFoundError
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore


def _make_store(tmp_path) -> SubscriberStore:
    return SubscriberStore.open(f"sqlite:///{tmp_path / 'newsletter.db'}")


def test_add_and_get_by_email_is_case_insensitive(tmp_path):
    store = _make_store(tmp_path)
    new_id = store.add(Subscriber.new("  Alice@Example.com "))

    found = store.get_by_email("ALICE@example.COM")
    assert found is not None
    assert found.id == new_id
    assert found.email == "alice@example.com"
    assert found.status is SubscriberStatus.PENDING
    assert found.approved_at is None
    assert found.subscribed_at.tzinfo is not None


def test_duplicate_insert_raises(tmp_path):
    store = _make_store(tmp_path)
    store.add(Subscriber.new("bob@example.com"))

    with pytest.raises(DuplicateSubscriberError):
        store.add(Subscriber.new("BOB@example.com"))
    assert store.count() == 1


def test_list_orders_newest_first_and_filters(tmp_path):
    store = _make_store(tmp_path)
    base = datetime(2024, 1, 1, tzinfo=UTC)
    for offset, email in enumerate(["old@example.com", "mid@example.com", "new@example.com"]):
        store.add(Subscriber(email=email, subscribed_at=base + timedelta(days=offset)))

    assert [sub.email for sub in store.list()] == ["new@example.com", "mid@example.com", "old@example.com"]

    store.update_status(store.get_by_email("mid@example.com").id, SubscriberStatus.APPROVED)
    assert [sub.email for sub in store.list(SubscriberStatus.APPROVED)] == ["mid@example.com"]
    assert store.count(SubscriberStatus.PENDING) == 2


def test_list_breaks_timestamp_ties_by_newest_id(tmp_path):
    store = _make_store(tmp_path)
    stamp = datetime(2024, 5, 1, tzinfo=UTC)
    store.add(Subscriber(email="first@example.com", subscribed_at=stamp))
    store.add(Subscriber(email="second@example.com", subscribed_at=stamp))

    assert [sub.email for sub in store.list()] == ["second@example.com", "first@example.com"]


def test_update_status_keeps_approved_at_invariant(tmp_path):
    store = _make_store(tmp_path)
    new_id = store.add(Subscriber.new("carol@example.com"))

    approved = store.update_status(new_id, SubscriberStatus.APPROVED)
    assert approved.approved_at is not None

    declined = store.update_status(new_id, SubscriberStatus.DECLINED)
    assert declined.approved_at is not None
    assert declined.approved_at >= approved.approved_at

    pending = store.update_status(new_id, SubscriberStatus.PENDING)
    assert pending.approved_at is None

    for subscriber in store.list():
        assert (subscriber.status is SubscriberStatus.PENDING) == (subscriber.approved_at is None)


def test_reapplying_same_status_keeps_timestamp(tmp_path):
    store = _make_store(tmp_path)
    new_id = store.add(Subscriber.new("dave@example.com"))
    first = store.update_status(new_id, SubscriberStatus.APPROVED)
    again = store.update_status(new_id, SubscriberStatus.APPROVED)

    assert again.approved_at == first.approved_at


def test_add_with_reviewed_status_stamps_approved_at(tmp_path):
    store = _make_store(tmp_path)
    new_id = store.add(Subscriber(email="erin@example.com", status=SubscriberStatus.DECLINED))

    assert store.get(new_id).approved_at is not None


def test_update_status_unknown_id(tmp_path):
    store = _make_store(tmp_path)

    with pytest.raises(SubscriberNotFoundError):
        store.update_status(999, SubscriberStatus.APPROVED)


def test_update_notes_and_remove(tmp_path):
    store = _make_store(tmp_path)
    new_id = store.add(Subscriber.new("frank@example.com"))

    assert store.update_notes(new_id, "met at conference").notes == "met at conference"
    assert store.remove("FRANK@example.com") is True
    assert store.remove("frank@example.com") is False
    assert store.exists("frank@example.com") is False


def test_counts_by_status_reports_every_status(tmp_path):
    store = _make_store(tmp_path)
    store.add(Subscriber.new("a@example.com"))
    store.add(Subscriber(email="b@example.com", status=SubscriberStatus.APPROVED))

    counts = store.counts_by_status()
    assert counts == {
        SubscriberStatus.PENDING: 1,
        SubscriberStatus.APPROVED: 1,
        SubscriberStatus.DECLINED: 0,
    }


def test_store_survives_reopen(tmp_path):
    _make_store(tmp_path).add(Subscriber.new("persist@example.com"))

    assert _make_store(tmp_path).exists("persist@example.com")
