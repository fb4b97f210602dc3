"""Line-based terminal driver for the subscriber review loop.

Each input line is read key by key; keys map to review events through
``key_to_event``. Rendering only reads ``ReviewView``.
"""
from __future__ import annotations

from typing import Callable

from newsletter_desk.services.review import (
    Browse,
    Cancel,
    ClearSelection,
    Confirm,
    ConfirmAction,
    Dismiss,
    Help,
    MoveDown,
    MoveFirst,
    MoveLast,
    MoveUp,
    Quit,
    Refresh,
    RequestAction,
    ReviewAction,
    ReviewEvent,
    ReviewFilter,
    ReviewSession,
    ReviewState,
    ReviewView,
    SelectVisible,
    SetFilter,
    SetSearch,
    ShowHelp,
    ToggleSelect,
)

ESCAPE = "\x1b"
ENTER = "\n"
SEARCH = "/"

BROWSE_KEYS: dict[str, ReviewEvent] = {
    "k": MoveUp(),
    "j": MoveDown(),
    "g": MoveFirst(),
    "G": MoveLast(),
    " ": ToggleSelect(),
    "a": SelectVisible(),
    "n": ClearSelection(),
    "N": ClearSelection(),
    "A": RequestAction(ReviewAction.APPROVE),
    ENTER: RequestAction(ReviewAction.APPROVE),
    "D": RequestAction(ReviewAction.DECLINE),
    "X": RequestAction(ReviewAction.DELETE),
    "1": SetFilter(ReviewFilter.ALL),
    "2": SetFilter(ReviewFilter.PENDING),
    "3": SetFilter(ReviewFilter.APPROVED),
    "4": SetFilter(ReviewFilter.DECLINED),
    "r": Refresh(),
    "h": ShowHelp(),
    "q": Quit(),
    ESCAPE: Quit(),
}

CONFIRM_KEYS: dict[str, ReviewEvent] = {
    "y": ConfirmAction(),
    ENTER: ConfirmAction(),
    "n": Cancel(),
    ESCAPE: Cancel(),
}

HELP_TEXT = """\
Navigation:  j/k move  g/G first/last
Selection:   space toggle  a select visible  n clear
Actions:     A or Enter approve  D decline  X delete
Filters:     1 all  2 pending  3 approved  4 declined
Other:       / search  r refresh  h help  q quit
Any key closes this help."""


def key_to_event(state: ReviewState, key: str) -> ReviewEvent | None:
    """Translate one key for the current state; unknown keys are ignored."""

    if isinstance(state, Confirm):
        return CONFIRM_KEYS.get(key)
    if isinstance(state, Help):
        return Dismiss()
    if isinstance(state, Browse):
        return BROWSE_KEYS.get(key)
    return None


def render(state: ReviewState) -> str:
    view = state.view
    if isinstance(state, Help):
        return HELP_TEXT
    lines = [_header(view), ""]
    visible = view.visible
    if not visible:
        lines.append("  (no subscribers match)")
    for index, subscriber in enumerate(visible):
        cursor = ">" if index == view.cursor else " "
        mark = "*" if subscriber.id in view.selected else " "
        lines.append(
            f"{cursor}{mark} {subscriber.email:<40} {subscriber.status.value:<9} "
            f"{subscriber.subscribed_at:%Y-%m-%d %H:%M}"
        )
    lines.append("")
    lines.append(f"{len(view.selected)} item(s) selected" if view.selected else "No items selected")
    if view.message:
        lines.append(view.message)
    if isinstance(state, Confirm):
        lines.append(
            f"{state.action.value.capitalize()} {len(state.selection)} subscriber(s)? [y/Enter = yes, n/Esc = no]"
        )
    return "\n".join(lines)


def _header(view: ReviewView) -> str:
    counts = view.counts()
    summary = "  ".join(f"{status.value}: {count}" for status, count in counts.items())
    search = f"  search: {view.search!r}" if view.search else ""
    return f"Newsletter subscribers [{view.filter}]  {summary}{search}"


def _keys(line: str) -> list[str]:
    """An empty line is Enter; ``esc`` spelled out is Escape."""

    if line == "":
        return [ENTER]
    if line.strip().lower() == "esc":
        return [ESCAPE]
    return list(line)


def run_console(
    session: ReviewSession,
    read: Callable[[str], str] = input,
    write: Callable[[str], None] = print,
) -> ReviewView:
    """Run until quit or end of input; returns the last view."""

    session.start()
    while not session.finished:
        write(render(session.state))
        try:
            line = read("> ")
        except EOFError:
            session.dispatch(Quit())
            break
        for key in _keys(line):
            if key == SEARCH and isinstance(session.state, Browse):
                try:
                    text = read("Search: ")
                except EOFError:
                    text = ""
                session.dispatch(SetSearch(text.strip()))
                continue
            event = key_to_event(session.state, key)
            if event is not None:
                session.dispatch(event)
            if session.finished:
                break
    return session.view
