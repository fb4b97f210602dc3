"""Tests for the review state machine and the session that drives it."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.review import (
    ApplyAction,
    Browse,
    Cancel,
    ClearSelection,
    Confirm,
    ConfirmAction,
    Dismiss,
    Help,
    MoveDown,
    MoveLast,
    MoveUp,
    Quit,
    Refresh,
    Reload,
    RequestAction,
    ReviewAction,
    ReviewFilter,
    ReviewSession,
    ReviewView,
    SelectVisible,
    SetFilter,
    SetSearch,
    ShowHelp,
    Shutdown,
    ToggleSelect,
    transition,
    with_subscribers,
)
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore

BASE = datetime(2024, 3, 1, tzinfo=UTC)


def _sub(id_: int, email: str, status: SubscriberStatus = SubscriberStatus.PENDING) -> Subscriber:
    return Subscriber(
        id=id_,
        email=email,
        status=status,
        subscribed_at=BASE - timedelta(days=id_),
        approved_at=None if status is SubscriberStatus.PENDING else BASE,
    )


SUBSCRIBERS = (
    _sub(1, "ann@example.com"),
    _sub(2, "bob@example.com"),
    _sub(3, "cat@other.org", SubscriberStatus.APPROVED),
    _sub(4, "dan@example.com", SubscriberStatus.DECLINED),
)


def _browse(**kwargs) -> Browse:
    return Browse(with_subscribers(ReviewView(**kwargs), SUBSCRIBERS))


def _make_store(tmp_path) -> SubscriberStore:
    return SubscriberStore.open(f"sqlite:///{tmp_path / 'newsletter.db'}")


def test_default_view_shows_pending_only():
    state = _browse()

    assert [sub.email for sub in state.view.visible] == ["ann@example.com", "bob@example.com"]
    assert state.view.cursor == 0


def test_filter_and_search_intersect():
    state = _browse(filter=ReviewFilter.ALL)
    state, _ = transition(state, SetSearch("EXAMPLE"))

    assert [sub.email for sub in state.view.visible] == ["ann@example.com", "bob@example.com", "dan@example.com"]

    state, _ = transition(state, SetFilter(ReviewFilter.DECLINED))
    assert [sub.email for sub in state.view.visible] == ["dan@example.com"]
    assert state.view.message == "Filter changed to: Declined"


def test_cursor_resets_when_out_of_range():
    state = _browse(filter=ReviewFilter.ALL)
    state, _ = transition(state, MoveLast())
    assert state.view.cursor == 3

    state, _ = transition(state, SetFilter(ReviewFilter.APPROVED))
    assert state.view.cursor == 0
    assert state.view.highlighted.email == "cat@other.org"

    state, _ = transition(state, SetSearch("nobody"))
    assert state.view.cursor is None


def test_cursor_moves_stay_in_bounds():
    state = _browse()
    state, _ = transition(state, MoveUp())
    assert state.view.cursor == 0
    state, _ = transition(state, MoveDown())
    state, _ = transition(state, MoveDown())
    assert state.view.cursor == 1


def test_toggle_and_select_visible():
    state = _browse()
    state, _ = transition(state, ToggleSelect())
    assert state.view.selected == {1}
    state, _ = transition(state, ToggleSelect())
    assert state.view.selected == frozenset()

    state, _ = transition(state, SelectVisible())
    assert state.view.selected == {1, 2}
    state, _ = transition(state, ClearSelection())
    assert state.view.selected == frozenset()


def test_request_with_empty_selection_uses_highlighted_row():
    state, effect = transition(_browse(), RequestAction(ReviewAction.APPROVE))

    assert isinstance(state, Confirm)
    assert effect is None
    assert state.action is ReviewAction.APPROVE
    assert [sub.email for sub in state.selection] == ["ann@example.com"]


def test_request_with_nothing_visible_stays_in_browse():
    state, _ = transition(_browse(), SetSearch("zzz"))
    state, effect = transition(state, RequestAction(ReviewAction.DELETE))

    assert isinstance(state, Browse)
    assert effect is None
    assert state.view.message == "No subscribers selected"


def test_confirm_emits_apply_and_clears_selection():
    state, _ = transition(_browse(), SelectVisible())
    state, _ = transition(state, RequestAction(ReviewAction.DECLINE))
    state, effect = transition(state, ConfirmAction())

    assert isinstance(state, Browse)
    assert isinstance(effect, ApplyAction)
    assert effect.action is ReviewAction.DECLINE
    assert {sub.id for sub in effect.subscribers} == {1, 2}
    assert state.view.selected == frozenset()
    assert state.view.message == "Declined 2 subscriber(s)"


def test_cancel_discards_pending_action():
    state, _ = transition(_browse(), RequestAction(ReviewAction.DELETE))
    state, effect = transition(state, Cancel())

    assert isinstance(state, Browse)
    assert effect is None
    assert state.view.selected == frozenset()
    assert state.view.message == "Action cancelled"


def test_confirm_ignores_unrelated_events():
    confirm, _ = transition(_browse(), RequestAction(ReviewAction.APPROVE))
    state, effect = transition(confirm, MoveDown())

    assert state is confirm
    assert effect is None


def test_help_overlay_closes_on_any_event():
    state, _ = transition(_browse(), ShowHelp())
    assert isinstance(state, Help)

    state, _ = transition(state, Dismiss())
    assert isinstance(state, Browse)


def test_quit_is_terminal():
    state, _ = transition(_browse(), Quit())
    assert isinstance(state, Shutdown)

    again, effect = transition(state, RequestAction(ReviewAction.APPROVE))
    assert again is state
    assert effect is None


def test_refresh_requests_reload():
    state, effect = transition(_browse(), Refresh())

    assert isinstance(effect, Reload)
    assert state.view.message == "Data refreshed"


def test_session_approve_reloads_from_store(tmp_path):
    store = _make_store(tmp_path)
    store.add(Subscriber(email="a@example.com", subscribed_at=BASE))
    store.add(Subscriber(email="b@example.com", subscribed_at=BASE - timedelta(hours=1)))
    session = ReviewSession(store)
    session.start()

    assert session.view.message == "Welcome to Newsletter Manager"
    assert session.view.highlighted.email == "a@example.com"

    session.dispatch(RequestAction(ReviewAction.APPROVE))
    session.dispatch(ConfirmAction())

    approved = store.get_by_email("a@example.com")
    assert approved.status is SubscriberStatus.APPROVED
    assert approved.approved_at is not None
    assert [sub.email for sub in session.view.visible] == ["b@example.com"]
    assert session.view.counts()[SubscriberStatus.APPROVED] == 1


def test_session_delete_removes_rows(tmp_path):
    store = _make_store(tmp_path)
    store.add(Subscriber.new("a@example.com"))
    store.add(Subscriber.new("b@example.com"))
    session = ReviewSession(store)
    session.start()

    session.dispatch(SelectVisible())
    session.dispatch(RequestAction(ReviewAction.DELETE))
    session.dispatch(ConfirmAction())

    assert store.count() == 0
    assert session.view.visible == ()
    assert session.view.cursor is None
    assert session.view.selected == frozenset()


def test_session_cancel_leaves_store_untouched(tmp_path):
    store = _make_store(tmp_path)
    store.add(Subscriber.new("a@example.com"))
    session = ReviewSession(store)
    session.start()

    session.dispatch(RequestAction(ReviewAction.DECLINE))
    session.dispatch(Cancel())
    session.dispatch(Quit())

    assert session.finished
    assert store.get_by_email("a@example.com").status is SubscriberStatus.PENDING
