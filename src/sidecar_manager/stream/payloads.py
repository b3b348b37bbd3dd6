"""Payload interpretation for webhook responses.

sidecar-manager stream module

Each decoded payload is first classified by ``decode_payload`` into the
parts it carries, then applied to the accumulated PayloadState in a fixed
order:

    explicit delta fields -> choices[] deltas -> cumulative text -> nested envelope

Incremental text is emitted immediately. Cumulative snapshots only emit the
suffix that extends what was already emitted; before any emission they are
emitted whole only when the transport allows it (SSE/NDJSON), and are always
kept as the final response.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .framing import parse_json_object

__all__ = [
    "DONE_SENTINEL",
    "PayloadState",
    "DecodedPayload",
    "PayloadInterpreter",
    "TokenCallback",
    "decode_payload",
    "is_delta_event_name",
]

TokenCallback = Callable[[str], None]

DONE_SENTINEL = "[DONE]"
MAX_DEPTH = 8

DELTA_EVENT_NAMES = frozenset({
    "token",
    "delta",
    "chunk",
    "partial",
    "text_delta",
    "content_delta",
    "message_delta",
})
DONE_EVENT_NAMES = frozenset({"done", "complete", "completed", "finish", "finished"})

_DELTA_FIELDS = ("delta", "token", "chunk", "text_delta", "content_delta", "partial")
_CUMULATIVE_FIELDS = ("response", "message", "content", "text", "output")
_ERROR_FIELDS = ("error", "message_error", "detail")

_MISSING = object()


def is_delta_event_name(event_name: str) -> bool:
    if not event_name:
        return False
    return (
        event_name in DELTA_EVENT_NAMES
        or event_name.endswith("_delta")
        or event_name.endswith(":delta")
    )


def _first_string(obj: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _extract_error(obj: dict[str, Any]) -> str | None:
    message = _first_string(obj, _ERROR_FIELDS)
    if message:
        return message
    # {"error": {"message": "..."}}
    nested = obj.get("error")
    if isinstance(nested, dict):
        return _first_string(nested, ("message", "detail"))
    return None


@dataclass
class PayloadState:
    """Accumulated interpretation of one webhook response."""

    emitted_text: str = ""
    token_chunks: int = 0
    final_response: str | None = None
    model: str | None = None
    error: str | None = None
    done: bool = False


@dataclass(frozen=True)
class DecodedPayload:
    """The parts a single JSON object payload carries."""

    event_name: str = ""
    done: bool = False
    model: str | None = None
    error: str | None = None
    explicit_delta: str | None = None
    choice_deltas: tuple[str, ...] = ()
    cumulative: str | None = None
    nested: Any = field(default=_MISSING)

    @property
    def has_nested(self) -> bool:
        return self.nested is not _MISSING


def decode_payload(obj: dict[str, Any]) -> DecodedPayload:
    """Classify an object payload without touching any state."""
    event_name = (_first_string(obj, ("event", "type")) or "").lower()
    done = (
        obj.get("done") is True
        or obj.get("complete") is True
        or obj.get("completed") is True
        or event_name in DONE_EVENT_NAMES
    )

    choice_deltas: list[str] = []
    choices = obj.get("choices")
    for choice in choices if isinstance(choices, list) else []:
        if not isinstance(choice, dict):
            continue
        delta_obj = choice.get("delta")
        text = None
        if isinstance(delta_obj, dict):
            text = _first_string(delta_obj, ("content",))
        text = text or _first_string(choice, ("text",))
        if text:
            choice_deltas.append(text)
        if choice.get("finish_reason") is not None:
            done = True

    nested = obj.get("data")
    if nested is None:
        nested = obj.get("payload", _MISSING)
    if nested is None:
        nested = _MISSING

    return DecodedPayload(
        event_name=event_name,
        done=done,
        model=_first_string(obj, ("model", "model_name")),
        error=_extract_error(obj),
        explicit_delta=_first_string(obj, _DELTA_FIELDS),
        choice_deltas=tuple(choice_deltas),
        cumulative=_first_string(obj, _CUMULATIVE_FIELDS),
        nested=nested,
    )


class PayloadInterpreter:
    """Applies payloads to a PayloadState and emits tokens.

    Example:
        interpreter = PayloadInterpreter(on_token=print)
        interpreter.feed({"delta": "Hel"}, allow_initial_cumulative=True)
        interpreter.feed({"delta": "lo"}, allow_initial_cumulative=True)
        interpreter.resolve_response()  # "Hello"
    """

    def __init__(self, on_token: TokenCallback | None = None) -> None:
        self.state = PayloadState()
        self._on_token = on_token

    def feed(self, payload: Any, *, allow_initial_cumulative: bool) -> None:
        self._interpret(payload, allow_initial_cumulative, 0)

    def apply_delta(self, delta: str) -> None:
        if not delta:
            return
        if self._on_token:
            self._on_token(delta)
        self.state.emitted_text += delta
        self.state.token_chunks += 1

    def apply_cumulative(self, text: str, allow_initial: bool) -> None:
        if not text:
            return
        emitted = self.state.emitted_text
        if emitted and text.startswith(emitted):
            self.apply_delta(text[len(emitted):])
        elif not emitted and allow_initial:
            self.apply_delta(text)

    def resolve_response(self) -> str:
        """Reconcile the final snapshot with the emitted text.

        A final response that extends the emitted text emits the missing
        suffix; a snapshot that diverges from emitted text is ignored in
        favour of what was actually emitted.
        """
        state = self.state
        final = state.final_response
        emitted = state.emitted_text
        if final and emitted and final.startswith(emitted):
            self.apply_delta(final[len(emitted):])
            return final
        if final and not emitted:
            return final
        if emitted:
            return emitted
        return final or ""

    def _interpret(self, payload: Any, allow_initial: bool, depth: int) -> None:
        if payload is None or depth > MAX_DEPTH:
            return

        if isinstance(payload, str):
            self._interpret_string(payload, allow_initial, depth)
        elif isinstance(payload, list):
            for item in payload:
                self._interpret(item, allow_initial, depth + 1)
        elif isinstance(payload, dict):
            self._interpret_object(decode_payload(payload), allow_initial, depth)

    def _interpret_string(self, payload: str, allow_initial: bool, depth: int) -> None:
        trimmed = payload.strip()
        if not trimmed:
            return
        if trimmed == DONE_SENTINEL:
            self.state.done = True
            return
        obj = parse_json_object(trimmed)
        if obj is not None:
            self._interpret(obj, allow_initial, depth + 1)
            return
        self.apply_cumulative(payload, allow_initial)
        self.state.final_response = payload

    def _interpret_object(self, decoded: DecodedPayload, allow_initial: bool, depth: int) -> None:
        state = self.state
        if decoded.done:
            state.done = True
        if decoded.model:
            state.model = decoded.model
        if decoded.error and not state.error:
            state.error = decoded.error

        if decoded.explicit_delta:
            self.apply_delta(decoded.explicit_delta)

        for text in decoded.choice_deltas:
            self.apply_delta(text)

        if decoded.cumulative:
            state.final_response = decoded.cumulative
            self.apply_cumulative(decoded.cumulative, allow_initial)

        if decoded.has_nested:
            self._interpret_nested(decoded, allow_initial, depth)

    def _interpret_nested(self, decoded: DecodedPayload, allow_initial: bool, depth: int) -> None:
        nested = decoded.nested
        if not isinstance(nested, str):
            self._interpret(nested, allow_initial, depth + 1)
            return

        normalized = nested.strip()
        if normalized == DONE_SENTINEL:
            self.state.done = True
        elif decoded.event_name == "error":
            if not self.state.error:
                self.state.error = normalized or nested
        elif is_delta_event_name(decoded.event_name):
            self.apply_delta(nested)
        else:
            self.state.final_response = nested
            self.apply_cumulative(nested, allow_initial)
