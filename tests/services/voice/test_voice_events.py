"""Tests for synchronous voice event channels."""

from __future__ import annotations

import logging

import pytest

from voicemode.services.voice.events import EventChannel


def test_listeners_run_in_subscription_order() -> None:
    """Listeners are called synchronously, in order, with all arguments."""

    channel = EventChannel("test", ("close",))
    calls: list[tuple[str, int, str]] = []

    channel.subscribe("close", lambda code, reason: calls.append(("first", code, reason)))
    channel.subscribe("close", lambda code, reason: calls.append(("second", code, reason)))
    channel.emit("close", 1000, "done")

    assert calls == [("first", 1000, "done"), ("second", 1000, "done")]


def test_failing_listener_is_isolated(caplog: pytest.LogCaptureFixture) -> None:
    """A raising listener is logged and the rest still run."""

    channel = EventChannel("test")
    seen: list[str] = []

    def broken(_payload: str) -> None:
        raise RuntimeError("listener bug")

    channel.subscribe("partial", broken)
    channel.subscribe("partial", seen.append)

    with caplog.at_level(logging.ERROR):
        channel.emit("partial", "hello")

    assert seen == ["hello"]
    assert "Voice event listener failed" in caplog.text


def test_unsubscribe_handle_and_clear() -> None:
    """Unsubscribe handles are idempotent and clear drops everything."""

    channel = EventChannel("test")
    seen: list[int] = []

    unsubscribe = channel.subscribe("tick", seen.append)
    channel.emit("tick", 1)
    unsubscribe()
    unsubscribe()
    channel.emit("tick", 2)

    channel.subscribe("tick", seen.append)
    channel.clear()
    channel.emit("tick", 3)

    assert seen == [1]
    assert channel.listener_count("tick") == 0


def test_unknown_event_names_are_rejected() -> None:
    """Channels with declared names reject typos."""

    channel = EventChannel("test", ("partial",))

    with pytest.raises(ValueError, match="Unknown test event: partail"):
        channel.subscribe("partail", lambda _text: None)


def test_listener_may_unsubscribe_itself_while_emitting() -> None:
    """Removing a listener during dispatch does not skip the next one."""

    channel = EventChannel("test")
    calls: list[str] = []

    def once(_payload: object) -> None:
        calls.append("once")
        channel.unsubscribe("ended", once)

    channel.subscribe("ended", once)
    channel.subscribe("ended", lambda _payload: calls.append("always"))

    channel.emit("ended", None)
    channel.emit("ended", None)

    assert calls == ["once", "always", "always"]
