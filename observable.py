"""Single-writer, multi-reader read-model cells with change notification."""
from __future__ import annotations

import logging
from typing import Callable, Generic, List, Optional, TypeVar

T = TypeVar("T")

Subscriber = Callable[[T], None]


class Observable(Generic[T]):
    """
    Hold one value and publish every replacement to subscribers.

    Subscribers run synchronously, in subscription order, on every ``set``.
    Published values should be immutable snapshots so readers never observe a
    half-applied mutation.
    """

    def __init__(self, value: T, name: str = "value", logger: Optional[logging.Logger] = None):
        self._value = value
        self.name = name
        self._subscribers: List[Subscriber[T]] = []
        self.logger = logger or logging.getLogger("prompt_runner.observable")

    @property
    def value(self) -> T:
        return self._value

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                self.logger.exception("Subscriber to %s failed", self.name)

    def subscribe(self, callback: Subscriber[T], replay: bool = False) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it."""
        self._subscribers.append(callback)
        if replay:
            callback(self._value)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def __repr__(self) -> str:
        return f"Observable({self.name}={self._value!r})"
