"""Webhook protocol normalization: framing, payload interpretation, client."""

from .client import (
    Transport,
    WebhookStreamAttempt,
    split_text_for_synthetic_stream,
    stream_webhook,
)
from .framing import NdjsonDecoder, SseDecoder
from .payloads import PayloadInterpreter, decode_payload

__all__ = [
    "NdjsonDecoder",
    "PayloadInterpreter",
    "SseDecoder",
    "Transport",
    "WebhookStreamAttempt",
    "decode_payload",
    "split_text_for_synthetic_stream",
    "stream_webhook",
]
