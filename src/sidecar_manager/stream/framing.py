"""Incremental decoders for streamed webhook bodies.

sidecar-manager stream module

Both decoders accept raw bytes in arbitrarily sized chunks and return the
payloads completed by each chunk, so the output sequence does not depend on
where the transport split the body.

Payloads are either a dict (decoded JSON object) or a str (anything else).
"""

from __future__ import annotations

import codecs
import json
import re
from typing import Any, Union

__all__ = [
    "Payload",
    "SseDecoder",
    "NdjsonDecoder",
    "parse_json_object",
    "find_event_delimiter",
]

Payload = Union[dict[str, Any], str]

_LINE_SPLIT_RE = re.compile(r"\r?\n")


def parse_json_object(raw: str) -> dict[str, Any] | None:
    """Decode ``raw`` if it is a JSON object, else None."""
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def find_event_delimiter(buffer: str) -> tuple[int, int] | None:
    """Locate the earliest blank-line frame delimiter.

    Returns:
        (index, length) of ``\\n\\n`` or ``\\r\\n\\r\\n``, whichever comes
        first, or None when the buffer holds no complete frame.
    """
    rn = buffer.find("\r\n\r\n")
    nn = buffer.find("\n\n")
    if rn == -1 and nn == -1:
        return None
    if rn == -1:
        return nn, 2
    if nn == -1:
        return rn, 4
    return (rn, 4) if rn < nn else (nn, 2)


class _TextBuffer:
    """UTF-8 incremental decoding shared by both decoders."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.buffer = ""

    def push(self, chunk: bytes) -> None:
        self.buffer += self._decoder.decode(chunk)

    def drain(self) -> str:
        self.buffer += self._decoder.decode(b"", final=True)
        rest, self.buffer = self.buffer, ""
        return rest


class SseDecoder:
    """``text/event-stream`` decoder.

    Per frame: lines starting with ``:`` are comments, ``event:`` sets the
    (lowercased) event name, ``data:`` lines are joined with ``\\n``. A JSON
    object gets the event name injected when it has no string ``event``;
    other data becomes ``{"event": name, "data": data}`` or the raw string.
    """

    def __init__(self) -> None:
        self._text = _TextBuffer()

    def feed(self, chunk: bytes) -> list[Payload]:
        self._text.push(chunk)
        payloads: list[Payload] = []
        while True:
            delimiter = find_event_delimiter(self._text.buffer)
            if delimiter is None:
                break
            index, length = delimiter
            raw_frame = self._text.buffer[:index]
            self._text.buffer = self._text.buffer[index + length:]
            payload = self._parse_frame(raw_frame)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def close(self) -> list[Payload]:
        trailing = self._text.drain().strip()
        if not trailing:
            return []
        payload = self._parse_frame(trailing)
        if payload is not None:
            return [payload]
        return [parse_json_object(trailing) or trailing]

    @staticmethod
    def _parse_frame(raw_frame: str) -> Payload | None:
        event_name = ""
        data_lines: list[str] = []
        for line in _LINE_SPLIT_RE.split(raw_frame):
            if not line or line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_name = line[6:].strip().lower()
            elif line.startswith("data:"):
                data_lines.append(line[5:].lstrip())

        if not data_lines:
            return None

        data = "\n".join(data_lines)
        obj = parse_json_object(data)
        if obj is not None:
            if event_name and not isinstance(obj.get("event"), str):
                return {**obj, "event": event_name}
            return obj
        if event_name:
            return {"event": event_name, "data": data}
        return data


class NdjsonDecoder:
    """``application/x-ndjson`` / ``application/jsonl`` decoder."""

    def __init__(self) -> None:
        self._text = _TextBuffer()

    def feed(self, chunk: bytes) -> list[Payload]:
        self._text.push(chunk)
        payloads: list[Payload] = []
        *lines, rest = self._text.buffer.split("\n")
        self._text.buffer = rest
        for line in lines:
            payload = self._parse_line(line)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def close(self) -> list[Payload]:
        payload = self._parse_line(self._text.drain())
        return [payload] if payload is not None else []

    @staticmethod
    def _parse_line(line: str) -> Payload | None:
        trimmed = line.strip()
        if not trimmed:
            return None
        return parse_json_object(trimmed) or trimmed
