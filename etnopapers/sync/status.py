"""Status publication to UI subscribers."""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, List, Union

from loguru import logger

from etnopapers.storage.schemas import StatusSummary

StatusCallback = Callable[[StatusSummary], Union[None, Awaitable[None]]]


class StatusBroadcaster:
    """Fan a :class:`StatusSummary` out to registered callbacks.

    Callbacks may be plain functions or coroutine functions. A failing
    subscriber is logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._subscribers: List[StatusCallback] = []
        self.last_summary: StatusSummary | None = None

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, summary: StatusSummary) -> None:
        self.last_summary = summary
        for callback in list(self._subscribers):
            try:
                outcome: Any = callback(summary)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:  # noqa: BLE001 - subscribers are isolated
                logger.warning("Status subscriber {} failed: {}", _name(callback), exc)


def _name(callback: StatusCallback) -> str:
    return getattr(callback, "__qualname__", None) or repr(callback)
