"""Review loop for pending subscribers.

The loop is a state machine: ``transition(state, event)`` is pure and returns
the next state plus an optional effect. ``ReviewSession`` is the only place
that touches the store; it applies effects and reloads the subscriber list so
the view always reflects what the store recorded (including ``approved_at``).
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Union

from newsletter_desk.core.errors import SubscriberNotFoundError
from newsletter_desk.db.models import SubscriberStatus
from newsletter_desk.services.subscribers import Subscriber, SubscriberStore
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)


class ReviewFilter(str, enum.Enum):
    ALL = "all"
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"

    def matches(self, subscriber: Subscriber) -> bool:
        if self is ReviewFilter.ALL:
            return True
        return subscriber.status.value == self.value

    def __str__(self) -> str:
        return self.value.capitalize()


class ReviewAction(str, enum.Enum):
    APPROVE = "approve"
    DECLINE = "decline"
    DELETE = "delete"


_DONE_MESSAGES = {
    ReviewAction.APPROVE: "Approved {count} subscriber(s)",
    ReviewAction.DECLINE: "Declined {count} subscriber(s)",
    ReviewAction.DELETE: "Deleted {count} subscriber(s)",
}


@dataclass(frozen=True)
class ReviewView:
    """Everything a renderer needs; it never reads the store."""

    subscribers: tuple[Subscriber, ...] = ()
    filter: ReviewFilter = ReviewFilter.PENDING
    search: str = ""
    cursor: int | None = None
    selected: frozenset[int] = frozenset()
    message: str | None = None

    @property
    def visible(self) -> tuple[Subscriber, ...]:
        needle = self.search.strip().lower()
        return tuple(
            sub
            for sub in self.subscribers
            if self.filter.matches(sub) and (not needle or needle in sub.email.lower())
        )

    @property
    def highlighted(self) -> Subscriber | None:
        visible = self.visible
        if self.cursor is None or not 0 <= self.cursor < len(visible):
            return None
        return visible[self.cursor]

    def counts(self) -> dict[SubscriberStatus, int]:
        counts = {status: 0 for status in SubscriberStatus}
        for sub in self.subscribers:
            counts[sub.status] += 1
        return counts

    def selected_subscribers(self) -> tuple[Subscriber, ...]:
        return tuple(sub for sub in self.subscribers if sub.id in self.selected)


# --- States ---


@dataclass(frozen=True)
class Browse:
    view: ReviewView = field(default_factory=ReviewView)


@dataclass(frozen=True)
class Confirm:
    view: ReviewView
    action: ReviewAction
    selection: tuple[Subscriber, ...]


@dataclass(frozen=True)
class Help:
    view: ReviewView


@dataclass(frozen=True)
class Shutdown:
    view: ReviewView


ReviewState = Union[Browse, Confirm, Help, Shutdown]


# --- Events ---


@dataclass(frozen=True)
class MoveUp:
    pass


@dataclass(frozen=True)
class MoveDown:
    pass


@dataclass(frozen=True)
class MoveFirst:
    pass


@dataclass(frozen=True)
class MoveLast:
    pass


@dataclass(frozen=True)
class ToggleSelect:
    pass


@dataclass(frozen=True)
class SelectVisible:
    pass


@dataclass(frozen=True)
class ClearSelection:
    pass


@dataclass(frozen=True)
class RequestAction:
    action: ReviewAction


@dataclass(frozen=True)
class ConfirmAction:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class ShowHelp:
    pass


@dataclass(frozen=True)
class Dismiss:
    pass


@dataclass(frozen=True)
class Quit:
    pass


@dataclass(frozen=True)
class SetFilter:
    filter: ReviewFilter


@dataclass(frozen=True)
class SetSearch:
    text: str


@dataclass(frozen=True)
class Refresh:
    pass


ReviewEvent = Union[
    MoveUp,
    MoveDown,
    MoveFirst,
    MoveLast,
    ToggleSelect,
    SelectVisible,
    ClearSelection,
    RequestAction,
    ConfirmAction,
    Cancel,
    ShowHelp,
    Dismiss,
    Quit,
    SetFilter,
    SetSearch,
    Refresh,
]


# --- Effects ---


@dataclass(frozen=True)
class ApplyAction:
    action: ReviewAction
    subscribers: tuple[Subscriber, ...]


@dataclass(frozen=True)
class Reload:
    pass


ReviewEffect = Union[ApplyAction, Reload, None]


# --- Transition ---


def clamp_cursor(view: ReviewView) -> ReviewView:
    """Keep the cursor on a visible row, or None when nothing is visible."""

    count = len(view.visible)
    if count == 0:
        return replace(view, cursor=None)
    if view.cursor is None or not 0 <= view.cursor < count:
        return replace(view, cursor=0)
    return view


def with_subscribers(view: ReviewView, subscribers: tuple[Subscriber, ...]) -> ReviewView:
    """Swap in freshly loaded data; selections of vanished rows are dropped."""

    ids = {sub.id for sub in subscribers}
    return clamp_cursor(replace(view, subscribers=subscribers, selected=view.selected & ids))


def _move(view: ReviewView, event: ReviewEvent) -> ReviewView:
    count = len(view.visible)
    if count == 0:
        return replace(view, cursor=None)
    current = view.cursor if view.cursor is not None else 0
    if isinstance(event, MoveUp):
        target = max(current - 1, 0)
    elif isinstance(event, MoveDown):
        target = min(current + 1, count - 1)
    elif isinstance(event, MoveFirst):
        target = 0
    else:
        target = count - 1
    return replace(view, cursor=target)


def _browse(state: Browse, event: ReviewEvent) -> tuple[ReviewState, ReviewEffect]:
    view = state.view
    if isinstance(event, (MoveUp, MoveDown, MoveFirst, MoveLast)):
        return Browse(_move(view, event)), None

    if isinstance(event, ToggleSelect):
        current = view.highlighted
        if current is None:
            return state, None
        return Browse(replace(view, selected=view.selected ^ {current.id})), None

    if isinstance(event, SelectVisible):
        ids = {sub.id for sub in view.visible}
        return Browse(replace(view, selected=view.selected | ids)), None

    if isinstance(event, ClearSelection):
        return Browse(replace(view, selected=frozenset(), message="Selection cleared")), None

    if isinstance(event, RequestAction):
        selected = view.selected
        if not selected and view.highlighted is not None:
            selected = frozenset({view.highlighted.id})
        if not selected:
            return Browse(replace(view, message="No subscribers selected")), None
        view = replace(view, selected=selected)
        return Confirm(view, event.action, view.selected_subscribers()), None

    if isinstance(event, ShowHelp):
        return Help(view), None

    if isinstance(event, Quit):
        return Shutdown(view), None

    if isinstance(event, SetFilter):
        view = clamp_cursor(replace(view, filter=event.filter, message=f"Filter changed to: {event.filter}"))
        return Browse(view), None

    if isinstance(event, SetSearch):
        return Browse(clamp_cursor(replace(view, search=event.text))), None

    if isinstance(event, Refresh):
        return Browse(replace(view, message="Data refreshed")), Reload()

    return state, None


def transition(state: ReviewState, event: ReviewEvent) -> tuple[ReviewState, ReviewEffect]:
    """Compute the next state. Never touches the store; effects describe what to do."""

    if isinstance(state, Shutdown):
        return state, None

    if isinstance(state, Help):
        return Browse(state.view), None

    if isinstance(state, Confirm):
        if isinstance(event, ConfirmAction):
            message = _DONE_MESSAGES[state.action].format(count=len(state.selection))
            view = replace(state.view, selected=frozenset(), message=message)
            return Browse(view), ApplyAction(state.action, state.selection)
        if isinstance(event, (Cancel, Quit)):
            view = replace(state.view, selected=frozenset(), message="Action cancelled")
            return Browse(view), None
        return state, None

    return _browse(state, event)


# --- Session ---


class ReviewSession:
    """Drives the state machine against a store.

    Renderers call ``dispatch`` with events and read ``state.view``.
    """

    def __init__(self, store: SubscriberStore) -> None:
        self.store = store
        self.state: ReviewState = Browse(ReviewView(message="Welcome to Newsletter Manager"))

    @property
    def view(self) -> ReviewView:
        return self.state.view

    @property
    def finished(self) -> bool:
        return isinstance(self.state, Shutdown)

    def start(self) -> ReviewState:
        self._reload()
        return self.state

    def dispatch(self, event: ReviewEvent) -> ReviewState:
        self.state, effect = transition(self.state, event)
        if isinstance(effect, ApplyAction):
            self._apply(effect)
            self._reload()
        elif isinstance(effect, Reload):
            self._reload()
        return self.state

    def _apply(self, effect: ApplyAction) -> None:
        for subscriber in effect.subscribers:
            try:
                if effect.action is ReviewAction.APPROVE:
                    self.store.update_status(subscriber.id, SubscriberStatus.APPROVED)
                elif effect.action is ReviewAction.DECLINE:
                    self.store.update_status(subscriber.id, SubscriberStatus.DECLINED)
                else:
                    self.store.remove(subscriber.email)
            except SubscriberNotFoundError:
                logger.warning("Subscriber %s vanished before %s", subscriber.email, effect.action.value)

    def _reload(self) -> None:
        subscribers = tuple(self.store.list())
        self.state = replace(self.state, view=with_subscribers(self.state.view, subscribers))
