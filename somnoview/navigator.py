"""Cursor for stepping through detected events."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Sequence, TypeVar

T = TypeVar("T")

DIRECTIONS = ("first", "prev", "next", "last")


@dataclass(frozen=True)
class NavigationState(Generic[T]):
    index: int | None
    total: int
    current: T | None
    is_first: bool
    is_last: bool

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    @property
    def label(self) -> str:
        if self.index is None:
            return "0 of 0"
        return f"{self.index + 1} of {self.total}"


class EventNavigator(Generic[T]):
    """Saturating first/prev/next/last cursor.

    The cursor sits at 0 for a non-empty sequence and is ``None`` when there
    is nothing to navigate. Moves past either end stay put; nothing raises on
    an empty sequence.
    """

    def __init__(self, events: Sequence[T] = ()):
        self._events: tuple[T, ...] = ()
        self._index: int | None = None
        self.reset(events)

    def reset(self, events: Sequence[T]) -> None:
        self._events = tuple(events)
        self._index = 0 if self._events else None

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> tuple[T, ...]:
        return self._events

    @property
    def index(self) -> int | None:
        return self._index

    @property
    def is_empty(self) -> bool:
        return self._index is None

    @property
    def current_event(self) -> T | None:
        if self._index is None:
            return None
        return self._events[self._index]

    @property
    def is_first(self) -> bool:
        return self._index is None or self._index == 0

    @property
    def is_last(self) -> bool:
        return self._index is None or self._index == len(self._events) - 1

    @property
    def position_label(self) -> str:
        return self.snapshot().label

    def first(self) -> T | None:
        return self.go_to(0)

    def last(self) -> T | None:
        return self.go_to(len(self._events) - 1)

    def next(self) -> T | None:
        if self._index is None:
            return None
        return self.go_to(self._index + 1)

    def prev(self) -> T | None:
        if self._index is None:
            return None
        return self.go_to(self._index - 1)

    def go_to(self, index: int) -> T | None:
        if self._index is None:
            return None
        self._index = max(0, min(int(index), len(self._events) - 1))
        return self.current_event

    def navigate(self, direction: str) -> T | None:
        if direction not in DIRECTIONS:
            raise ValueError(f"unknown direction {direction!r}")
        return getattr(self, direction)()

    def snapshot(self) -> NavigationState[T]:
        return NavigationState(
            index=self._index,
            total=len(self._events),
            current=self.current_event,
            is_first=self.is_first,
            is_last=self.is_last,
        )
