"""
rostersync.engine.observers — Ordered observer channels
========================================================

A :class:`EventChannel` delivers each published value to its subscribers
synchronously and in subscription order.  Channels never reorder across
each other either: a value published on one channel is fully delivered
before ``publish`` returns, so publishing ``auth_changed`` before
``data_loaded`` guarantees every observer sees them in that order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Observer = Callable[..., Any]


class EventChannel:
    def __init__(self, name: str) -> None:
        self.name = name
        self._observers: list[Observer] = []

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register *observer*; returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, *args: Any) -> None:
        # A failing observer must not starve the ones after it.
        for observer in list(self._observers):
            try:
                observer(*args)
            except Exception:
                logger.exception("Observer on channel %s failed", self.name)

    def clear(self) -> None:
        self._observers.clear()
