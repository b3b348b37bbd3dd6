"""EventBridge tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from sidecar_manager.models import EventSeverity, RuntimeEvent
from sidecar_manager.runtime.event_bridge import EventBridge, parse_json_line, parse_severity
from sidecar_manager.store import InMemoryRuntimeStore


@pytest.fixture
def bridge_setup(tmp_path: Path):
    store = InMemoryRuntimeStore()
    received: list[RuntimeEvent] = []
    bridge = EventBridge("dep-1", tmp_path / "logs" / "runtime.log", store, received.append)
    return bridge, store, received


def _events(store: InMemoryRuntimeStore) -> list[RuntimeEvent]:
    return list(reversed(store.list_events("dep-1").events))


class TestParsing:
    @pytest.mark.parametrize(
        "level,expected",
        [
            ("trace", EventSeverity.DEBUG),
            ("DEBUG", EventSeverity.DEBUG),
            ("info", EventSeverity.INFO),
            ("Warn", EventSeverity.WARNING),
            ("warning", EventSeverity.WARNING),
            ("error", EventSeverity.ERROR),
            ("fatal", EventSeverity.ERROR),
            ("critical", EventSeverity.ERROR),
        ],
    )
    def test_severity_aliases(self, level: str, expected: EventSeverity):
        assert parse_severity(level, EventSeverity.INFO) == expected

    def test_unknown_severity_uses_fallback(self):
        assert parse_severity("loud", EventSeverity.ERROR) == EventSeverity.ERROR
        assert parse_severity(3, EventSeverity.INFO) == EventSeverity.INFO

    def test_parse_json_line(self):
        assert parse_json_line(' {"a": 1} ') == {"a": 1}
        assert parse_json_line("[1, 2]") is None
        assert parse_json_line("{broken") is None
        assert parse_json_line("plain text") is None


class TestIngest:
    """Test line reassembly and classification."""

    def test_structured_line(self, bridge_setup):
        bridge, store, received = bridge_setup
        line = {"level": "warn", "event": "gateway", "message": "slow upstream", "ms": 900}
        bridge.ingest_stdout((json.dumps(line) + "\n").encode())

        events = _events(store)
        assert len(events) == 1
        assert events[0].event_type == "gateway"
        assert events[0].severity == EventSeverity.WARNING
        assert events[0].message == "slow upstream"
        assert events[0].payload == line
        assert received == events

    def test_structured_line_defaults(self, bridge_setup):
        """Missing event/message fall back to stream name and a generic message."""
        bridge, store, _ = bridge_setup
        bridge.ingest_stderr(b'{"msg_id": 1}\n')
        event = _events(store)[0]
        assert event.event_type == "stderr"
        assert event.message == "stderr log"
        assert event.severity == EventSeverity.ERROR

    def test_target_and_msg_fields(self, bridge_setup):
        bridge, store, _ = bridge_setup
        bridge.ingest_stdout(b'{"target": "agent::loop", "msg": "tick", "level": "debug"}\n')
        event = _events(store)[0]
        assert event.event_type == "agent::loop"
        assert event.message == "tick"
        assert event.severity == EventSeverity.DEBUG

    def test_plain_lines(self, bridge_setup):
        bridge, store, _ = bridge_setup
        bridge.ingest_stdout(b"booting\n")
        bridge.ingest_stderr(b"panic: oh no\n")
        stdout_event, stderr_event = _events(store)
        assert (stdout_event.event_type, stdout_event.severity) == ("stdout", EventSeverity.INFO)
        assert stdout_event.payload == {"source": "stdout"}
        assert (stderr_event.event_type, stderr_event.severity) == ("stderr", EventSeverity.ERROR)
        assert stderr_event.message == "panic: oh no"

    def test_split_chunks_reassembled(self, bridge_setup):
        """A line split across chunks (mid UTF-8 sequence) yields one event."""
        bridge, store, _ = bridge_setup
        data = "héllo wörld\n".encode()
        for index in range(len(data)):
            bridge.ingest_stdout(data[index:index + 1])
        events = _events(store)
        assert [event.message for event in events] == ["héllo wörld"]

    def test_streams_buffered_independently(self, bridge_setup):
        bridge, store, _ = bridge_setup
        bridge.ingest_stdout(b"out-")
        bridge.ingest_stderr(b"err-line\n")
        bridge.ingest_stdout(b"line\n")
        assert [event.message for event in _events(store)] == ["err-line", "out-line"]

    def test_blank_lines_ignored(self, bridge_setup):
        bridge, store, _ = bridge_setup
        bridge.ingest_stdout(b"\n   \n\r\n")
        assert _events(store) == []

    def test_flush_emits_trailing_partial(self, bridge_setup):
        bridge, store, _ = bridge_setup
        bridge.ingest_stdout(b"no newline at end")
        assert _events(store) == []
        bridge.flush()
        assert [event.message for event in _events(store)] == ["no newline at end"]

    def test_log_file_format(self, bridge_setup):
        bridge, _, _ = bridge_setup
        bridge.ingest_stdout(b"first\n")
        bridge.ingest_stderr(b"second\n")
        lines = bridge.log_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert lines[0].startswith("[") and lines[0].endswith("] stdout: first")
        assert lines[1].endswith("] stderr: second")


class TestProcessEvents:
    def test_emit_process_event(self, bridge_setup):
        bridge, store, received = bridge_setup
        event = bridge.emit_process_event(
            "process_spawned",
            EventSeverity.INFO,
            "Runtime daemon started (pid 42).",
            {"pid": 42},
            correlation_id="corr-1",
        )
        assert event.payload == {"pid": 42}
        assert event.correlation_id == "corr-1"
        assert _events(store) == [event]
        assert received == [event]

    def test_listener_errors_are_contained(self, tmp_path: Path):
        store = InMemoryRuntimeStore()

        def explode(event: RuntimeEvent) -> None:
            raise RuntimeError("listener bug")

        bridge = EventBridge("dep-1", tmp_path / "runtime.log", store, explode)
        bridge.ingest_stdout(b"still recorded\n")
        assert [event.message for event in _events(store)] == ["still recorded"]
