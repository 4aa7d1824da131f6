"""
Structured event emission tests.

Every event is one JSON object per stdout line and is also kept in the
in-memory event store read by the assistant API.
"""
import json
import sys
from io import StringIO
from datetime import datetime, timedelta, timezone

import pytest

from observability.events import (
    DEFAULT_INSTANCE_ID,
    EventEmitter,
    Component,
    Severity,
    utterance_pii,
)
from observability.event_store import EventStore, event_store


@pytest.fixture(autouse=True)
def clean_store():
    event_store.clear()
    yield
    event_store.clear()


class TestEventFormat:
    """Envelope fields."""

    def test_required_fields(self):
        old_stdout = sys.stdout
        sys.stdout = captured_output = StringIO()

        try:
            emitter = EventEmitter(Component.RECOGNITION)
            emitter.emit(
                event_type="recognition.state_changed",
                severity=Severity.INFO,
                correlation_id="cmd_1",
            )

            event = json.loads(captured_output.getvalue().strip())

            for key in ("ts", "instance_id", "component", "event_type", "severity", "correlation_id", "pii"):
                assert key in event

            assert event["instance_id"] == DEFAULT_INSTANCE_ID
            assert event["component"] == "recognition"
            assert event["event_type"] == "recognition.state_changed"
            assert event["severity"] == "info"
            assert event["correlation_id"] == "cmd_1"

        finally:
            sys.stdout = old_stdout

    def test_timestamp_format(self, capsys):
        EventEmitter(Component.CONNECTIVITY).emit("connectivity.changed")

        event = json.loads(capsys.readouterr().out.strip())
        datetime.fromisoformat(event["ts"].replace("Z", "+00:00"))

    def test_correlation_defaults_to_instance(self, capsys):
        EventEmitter(Component.CONNECTIVITY, instance_id="kiosk-1").emit("connectivity.changed")

        event = json.loads(capsys.readouterr().out.strip())
        assert event["correlation_id"] == "kiosk-1"

    def test_default_pii_marker(self, capsys):
        EventEmitter(Component.AI_CLIENT).emit("ai.retry")

        event = json.loads(capsys.readouterr().out.strip())
        assert event["pii"] == {"contains_pii": False, "fields": [], "handling": "none"}

    def test_utterance_pii_marker(self, capsys):
        EventEmitter(Component.ASSISTANT).emit(
            "command.received",
            pii=utterance_pii("utterance"),
            utterance="aide",
        )

        event = json.loads(capsys.readouterr().out.strip())
        assert event["pii"]["contains_pii"] is True
        assert event["pii"]["fields"] == ["utterance"]
        assert event["utterance"] == "aide"

    def test_event_specific_fields(self, capsys):
        EventEmitter(Component.RECOGNITION).emit(
            "recognition.backoff_scheduled",
            severity=Severity.WARN,
            attempt=2,
            delay_ms=2000,
        )

        event = json.loads(capsys.readouterr().out.strip())
        assert event["severity"] == "warn"
        assert event["attempt"] == 2
        assert event["delay_ms"] == 2000

    def test_emit_returns_event(self, capsys):
        event = EventEmitter(Component.API).emit("api.control_received", command="retry")
        assert event["command"] == "retry"


class TestEventStore:
    def test_emitted_events_are_stored(self, capsys):
        EventEmitter(Component.AI_CLIENT).emit("ai.request", correlation_id="cmd_a")
        EventEmitter(Component.AI_CLIENT).emit("ai.response", correlation_id="cmd_a", attempt=1)

        events = event_store.query(correlation_id="cmd_a")

        assert [e["event_type"] for e in events] == ["ai.request", "ai.response"]
        assert events[1]["attempt"] == 1

    def test_query_filters(self, capsys):
        EventEmitter(Component.CONNECTIVITY).emit("connectivity.changed")
        EventEmitter(Component.RECOGNITION).emit("recognition.state_changed")
        EventEmitter(Component.RECOGNITION).emit("recognition.offline_mode")

        assert len(event_store.query(component="recognition")) == 2
        assert len(event_store.query(event_type="connectivity.changed")) == 1
        assert len(event_store.query(component="recognition", limit=1)) == 1

    def test_query_since(self, capsys):
        EventEmitter(Component.CONNECTIVITY).emit("connectivity.changed")
        future = datetime.now(timezone.utc) + timedelta(minutes=5)

        assert event_store.query(since=future) == []

    def test_bounded(self):
        store = EventStore(max_events=2)
        for i in range(3):
            store.store({"event_type": f"e{i}", "component": "api"})

        assert [e["event_type"] for e in store.query()] == ["e1", "e2"]
        assert store.get_stats()["total_events"] == 2
        assert store.get_stats()["max_events"] == 2

    def test_stats_empty(self):
        stats = EventStore().get_stats()
        assert stats["total_events"] == 0
        assert stats["oldest_event_ts"] is None
