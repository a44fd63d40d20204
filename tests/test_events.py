"""
Tests for observer notifications.
"""

from unittest.mock import MagicMock

from codeloop.agent.events import AgentEvent, EventHub, EventKind, log_observer


def test_emit_reaches_all_observers():
    """Test fan-out to every subscribed observer."""
    first, second = MagicMock(), MagicMock()
    hub = EventHub([first])
    hub.subscribe(second)

    event = hub.emit(EventKind.TURN_STARTED, "s1", has_input=True)

    first.assert_called_once_with(event)
    second.assert_called_once_with(event)
    assert event.data == {"has_input": True}
    assert event.session_id == "s1"


def test_unsubscribe():
    """Test removing an observer."""
    observer = MagicMock()
    hub = EventHub([observer])

    hub.unsubscribe(observer)
    hub.unsubscribe(observer)
    hub.emit(EventKind.TURN_FINISHED, "s1")

    observer.assert_not_called()


def test_failing_observer_is_isolated():
    """Test that one broken observer does not stop the others."""
    broken = MagicMock(side_effect=RuntimeError("bug"))
    healthy = MagicMock()
    hub = EventHub([broken, healthy])

    hub.emit(EventKind.TOOL_DISPATCHED, "s1", tool="read_file")

    healthy.assert_called_once()


def test_log_observer_accepts_every_kind():
    """Test the logging observer with each event kind."""
    for kind in EventKind:
        log_observer(AgentEvent(kind=kind, session_id="s1", data={"detail": 1}))
