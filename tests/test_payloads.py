"""PayloadInterpreter tests."""

from __future__ import annotations

import pytest

from sidecar_manager.stream.payloads import (
    MAX_DEPTH,
    PayloadInterpreter,
    decode_payload,
    is_delta_event_name,
)


@pytest.fixture
def tokens() -> list[str]:
    return []


@pytest.fixture
def interpreter(tokens: list[str]) -> PayloadInterpreter:
    return PayloadInterpreter(on_token=tokens.append)


def _nest(payload, levels: int):
    for _ in range(levels):
        payload = {"data": payload}
    return payload


class TestDecodePayload:
    """Test classification of a single object payload."""

    def test_parts(self):
        decoded = decode_payload(
            {
                "type": "Message_Delta",
                "delta": "x",
                "model_name": "m",
                "response": "full",
                "choices": [{"delta": {"content": "c"}}, {"text": "t"}, "junk"],
                "payload": {"k": 1},
            }
        )
        assert decoded.event_name == "message_delta"
        assert decoded.explicit_delta == "x"
        assert decoded.model == "m"
        assert decoded.cumulative == "full"
        assert decoded.choice_deltas == ("c", "t")
        assert decoded.nested == {"k": 1}
        assert decoded.done is False

    @pytest.mark.parametrize(
        "obj",
        [
            {"done": True},
            {"complete": True},
            {"completed": True},
            {"event": "Finished"},
            {"choices": [{"finish_reason": "stop"}]},
        ],
    )
    def test_done_markers(self, obj):
        assert decode_payload(obj).done is True

    def test_no_nested(self):
        assert decode_payload({"data": None}).has_nested is False
        assert decode_payload({}).has_nested is False

    def test_errors(self):
        assert decode_payload({"error": "boom"}).error == "boom"
        assert decode_payload({"error": {"message": "nested boom"}}).error == "nested boom"
        assert decode_payload({"detail": "bad input"}).error == "bad input"

    @pytest.mark.parametrize(
        "name,expected",
        [("token", True), ("text_delta", True), ("response:delta", True), ("custom_delta", True),
         ("message", False), ("", False)],
    )
    def test_delta_event_names(self, name, expected):
        assert is_delta_event_name(name) is expected


class TestInterpreter:
    """Test token emission and final response reconciliation."""

    def test_cumulative_snapshots_emit_suffixes(self, interpreter, tokens):
        interpreter.feed({"response": "Hello"}, allow_initial_cumulative=True)
        interpreter.feed({"response": "Hello world"}, allow_initial_cumulative=True)
        assert tokens == ["Hello", " world"]
        assert interpreter.resolve_response() == "Hello world"
        assert interpreter.state.token_chunks == 2

    def test_initial_cumulative_withheld_for_plain_json(self, interpreter, tokens):
        interpreter.feed({"response": "Hi there", "model": "m-1"}, allow_initial_cumulative=False)
        assert tokens == []
        assert interpreter.state.final_response == "Hi there"
        assert interpreter.state.model == "m-1"
        assert interpreter.resolve_response() == "Hi there"
        assert tokens == []

    def test_field_order_within_one_payload(self, interpreter, tokens):
        """Explicit delta, then choices, then the cumulative suffix."""
        interpreter.feed(
            {"delta": "A", "choices": [{"delta": {"content": "B"}}], "response": "ABC"},
            allow_initial_cumulative=True,
        )
        assert tokens == ["A", "B", "C"]

    def test_choices_stream(self, interpreter, tokens):
        for piece in ("Hel", "lo"):
            interpreter.feed({"choices": [{"delta": {"content": piece}}]}, allow_initial_cumulative=True)
        interpreter.feed({"choices": [{"delta": {}, "finish_reason": "stop"}]}, allow_initial_cumulative=True)
        assert tokens == ["Hel", "lo"]
        assert interpreter.state.done is True
        assert interpreter.resolve_response() == "Hello"

    def test_delta_event_with_string_data(self, interpreter, tokens):
        interpreter.feed({"event": "token", "data": "abc"}, allow_initial_cumulative=True)
        interpreter.feed({"event": "token", "data": " def"}, allow_initial_cumulative=True)
        assert tokens == ["abc", " def"]

    def test_error_event(self, interpreter, tokens):
        interpreter.feed({"event": "error", "data": " upstream failed "}, allow_initial_cumulative=True)
        interpreter.feed({"error": "second error"}, allow_initial_cumulative=True)
        assert interpreter.state.error == "upstream failed"
        assert tokens == []

    def test_done_sentinel(self, interpreter):
        interpreter.feed("[DONE]", allow_initial_cumulative=True)
        interpreter.feed({"data": " [DONE] "}, allow_initial_cumulative=True)
        assert interpreter.state.done is True
        assert interpreter.resolve_response() == ""

    def test_json_string_payload_is_decoded(self, interpreter, tokens):
        interpreter.feed('{"delta": "x"}', allow_initial_cumulative=True)
        assert tokens == ["x"]

    def test_plain_string_is_cumulative(self, interpreter, tokens):
        interpreter.feed("partial", allow_initial_cumulative=True)
        interpreter.feed("partial answer", allow_initial_cumulative=True)
        assert tokens == ["partial", " answer"]
        assert interpreter.state.final_response == "partial answer"

    def test_list_payload(self, interpreter, tokens):
        interpreter.feed([{"delta": "a"}, {"delta": "b"}], allow_initial_cumulative=True)
        assert tokens == ["a", "b"]

    def test_nested_envelope_depth_limit(self, interpreter, tokens):
        interpreter.feed(_nest({"delta": "deep"}, MAX_DEPTH), allow_initial_cumulative=True)
        interpreter.feed(_nest({"delta": "too deep"}, MAX_DEPTH + 1), allow_initial_cumulative=True)
        assert tokens == ["deep"]


class TestResolveResponse:
    def test_final_extends_emitted(self, interpreter, tokens):
        interpreter.feed({"delta": "Hel"}, allow_initial_cumulative=False)
        interpreter.state.final_response = "Hello"
        assert interpreter.resolve_response() == "Hello"
        assert tokens == ["Hel", "lo"]

    def test_divergent_snapshot_ignored(self, interpreter, tokens):
        interpreter.feed({"delta": "abc"}, allow_initial_cumulative=True)
        interpreter.feed({"response": "xyz"}, allow_initial_cumulative=True)
        assert interpreter.resolve_response() == "abc"
        assert tokens == ["abc"]

    def test_apply_delta_ignores_empty(self, interpreter, tokens):
        interpreter.apply_delta("")
        assert tokens == []
        assert interpreter.state.token_chunks == 0

    def test_nothing_received(self, interpreter):
        assert interpreter.resolve_response() == ""
