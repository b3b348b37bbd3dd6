"""Process output -> structured runtime events.

sidecar-manager runtime module

stdout and stderr keep independent carry buffers, so a chunk boundary that
splits a line (or a multi-byte UTF-8 sequence) is reassembled before the line
is processed. Every complete non-blank line is:

1. appended to the deployment log file as ``[ISO-timestamp] stream: line``
2. classified: a JSON object line yields a structured event (message from
   ``message``/``msg``, type from ``event``/``target``, severity from
   ``level``); anything else yields a plain event carrying the raw line
3. persisted through the store and forwarded to the listener
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..models import EventSeverity, RuntimeEvent, utcnow
from ..store.base import RuntimeStore

__all__ = ["EventBridge", "EventListener", "parse_severity", "parse_json_line"]

logger = logging.getLogger(__name__)

EventListener = Callable[[RuntimeEvent], None]

STDOUT = "stdout"
STDERR = "stderr"

_SEVERITY_ALIASES = {
    "trace": EventSeverity.DEBUG,
    "debug": EventSeverity.DEBUG,
    "info": EventSeverity.INFO,
    "warn": EventSeverity.WARNING,
    "warning": EventSeverity.WARNING,
    "error": EventSeverity.ERROR,
    "fatal": EventSeverity.ERROR,
    "critical": EventSeverity.ERROR,
}


def parse_severity(value: Any, fallback: EventSeverity) -> EventSeverity:
    """Map a log ``level`` field onto an EventSeverity (case-insensitive)."""
    if isinstance(value, str):
        return _SEVERITY_ALIASES.get(value.strip().lower(), fallback)
    return fallback


def parse_json_line(line: str) -> dict[str, Any] | None:
    """Decode ``line`` if it is a JSON object, else None."""
    trimmed = line.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        return None
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _first_str(obj: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str):
            return value
    return None


class EventBridge:
    """Per-deployment bridge from raw process output to RuntimeEvents.

    Attributes:
        deployment_id: Owning deployment
        log_path: Append-only log file
    """

    def __init__(
        self,
        deployment_id: str,
        log_path: Path,
        store: RuntimeStore,
        on_event: EventListener | None = None,
    ) -> None:
        self.deployment_id = deployment_id
        self.log_path = log_path
        self._store = store
        self._on_event = on_event
        self._buffers: dict[str, bytes] = {STDOUT: b"", STDERR: b""}
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def emit_process_event(
        self,
        event_type: str,
        severity: EventSeverity,
        message: str,
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> RuntimeEvent:
        """Persist an event and forward it to the listener exactly once."""
        event = self._store.create_event(
            RuntimeEvent(
                deployment_id=self.deployment_id,
                event_type=event_type,
                severity=severity,
                message=message,
                payload=payload or {},
                correlation_id=correlation_id,
            )
        )
        if self._on_event:
            try:
                self._on_event(event)
            except Exception as e:
                logger.warning(f"Event listener failed for {self.deployment_id}: {e}")
        return event

    def ingest_stdout(self, chunk: bytes) -> None:
        self.ingest(STDOUT, chunk)

    def ingest_stderr(self, chunk: bytes) -> None:
        self.ingest(STDERR, chunk)

    def ingest(self, stream: str, chunk: bytes) -> None:
        """Append a chunk and process every complete line it closes."""
        data = self._buffers[stream] + chunk
        *lines, rest = data.split(b"\n")
        self._buffers[stream] = rest
        for raw in lines:
            self._ingest_line(stream, raw.decode("utf-8", errors="replace"))

    def flush(self) -> None:
        """Process trailing partial lines once the streams have closed."""
        for stream in (STDOUT, STDERR):
            rest = self._buffers[stream]
            self._buffers[stream] = b""
            if rest:
                self._ingest_line(stream, rest.decode("utf-8", errors="replace"))

    def _append_log(self, stream: str, line: str) -> None:
        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(f"[{utcnow().isoformat()}] {stream}: {line}\n")
        except OSError as e:
            logger.warning(f"Failed to append runtime log {self.log_path}: {e}")

    def _ingest_line(self, stream: str, line: str) -> None:
        trimmed = line.strip()
        if not trimmed:
            return

        self._append_log(stream, trimmed)
        fallback = EventSeverity.ERROR if stream == STDERR else EventSeverity.INFO

        parsed = parse_json_line(trimmed)
        if parsed is not None:
            self.emit_process_event(
                event_type=_first_str(parsed, "event", "target") or stream,
                severity=parse_severity(parsed.get("level"), fallback),
                message=_first_str(parsed, "message", "msg") or f"{stream} log",
                payload=parsed,
            )
            return

        self.emit_process_event(
            event_type=stream,
            severity=fallback,
            message=trimmed,
            payload={"source": stream},
        )
