"""Synchronous, ordered publish/subscribe channels for voice components."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from voicemode.core.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]


class EventChannel:
    """Named event channels with listeners called in subscription order.

    Emission is synchronous: every listener has run by the time ``emit``
    returns. A failing listener is logged and does not prevent the remaining
    listeners from running.
    """

    def __init__(self, component: str, names: tuple[str, ...] | None = None) -> None:
        self._component = component
        self._names = frozenset(names) if names else None
        self._listeners: dict[str, list[Listener]] = {}

    def _check_name(self, name: str) -> None:
        if self._names is not None and name not in self._names:
            raise ValueError(f"Unknown {self._component} event: {name}")

    def subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``name`` and return an unsubscribe callable."""

        self._check_name(name)
        self._listeners.setdefault(name, []).append(listener)
        return lambda: self.unsubscribe(name, listener)

    def unsubscribe(self, name: str, listener: Listener) -> None:
        listeners = self._listeners.get(name)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, ()))

    def emit(self, name: str, *args: Any) -> None:
        self._check_name(name)
        # Snapshot so listeners may unsubscribe while being called.
        for listener in list(self._listeners.get(name, ())):
            try:
                listener(*args)
            except Exception:
                logger.exception(
                    "Voice event listener failed",
                    extra={
                        "component": self._component,
                        "operation": "emit",
                        "context_data": {"event": name},
                    },
                )

    def clear(self) -> None:
        self._listeners.clear()
