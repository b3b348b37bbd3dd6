"""Webhook streaming client.

sidecar-manager stream module

``stream_webhook`` POSTs a message to ``{api_base_url}/webhook`` and turns
whatever the runtime answers with (event-stream, NDJSON or a single JSON
document) into one incremental-token contract:

1. 401 / other non-2xx -> structured failure result (never raised)
2. Transport dispatch on Content-Type -> incremental decoder
3. Payload interpretation -> tokens via ``on_token``
4. Final reconciliation of cumulative snapshot vs emitted text
5. Synthetic fallback: split a non-streamed response into small chunks
6. Empty response -> failure result

Cancellation follows the anyio.CancelScope convention used by the process
runner. Every network await runs in its own task that is abandoned as soon
as ``cancel_scope.cancel_called`` turns true, so a stalled read aborts
without waiting for more bytes. The flag is re-checked after each read and
between synthetic chunks. A caller that has entered the scope sees the same
RequestAbortedError instead of a silently absorbed cancellation.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, TypeVar

import aiohttp
import anyio

from ..errors import RequestAbortedError
from .framing import NdjsonDecoder, Payload, SseDecoder, parse_json_object
from .payloads import PayloadInterpreter, TokenCallback

__all__ = [
    "Transport",
    "WebhookStreamAttempt",
    "stream_webhook",
    "split_text_for_synthetic_stream",
    "DEFAULT_SYNTHETIC_CHUNK_SIZE",
]

logger = logging.getLogger(__name__)

DEFAULT_SYNTHETIC_CHUNK_SIZE = 20
ACCEPT_HEADER = "text/event-stream, application/x-ndjson, application/json"
EMPTY_RESPONSE_ERROR = "Runtime returned an empty response."
ABORT_POLL_INTERVAL = 0.05  # seconds between cancel_called checks while waiting

_SEGMENT_RE = re.compile(r"\s+|\S+")

T = TypeVar("T")


class Transport(str, Enum):
    SSE = "sse"
    NDJSON = "ndjson"
    JSON = "json"
    UNKNOWN = "unknown"


@dataclass
class WebhookStreamAttempt:
    """Outcome of one webhook call.

    Attributes:
        ok: A non-empty response was produced
        unauthorized: The runtime answered 401
        response: Authoritative response text
        model: Model name reported by the runtime
        error: Failure text (from the body when available)
        streamed: At least one token reached ``on_token``
        transport: Wire format that carried the response
        token_chunks: Number of tokens emitted
        synthetic_fallback_used: Tokens were produced by splitting the response
        duration_ms: Wall-clock time of the call
    """

    ok: bool
    unauthorized: bool = False
    response: str | None = None
    model: str | None = None
    error: str | None = None
    streamed: bool = False
    transport: Transport = Transport.UNKNOWN
    token_chunks: int = 0
    synthetic_fallback_used: bool = False
    duration_ms: int = 0


def split_text_for_synthetic_stream(
    text: str, max_chunk_size: int = DEFAULT_SYNTHETIC_CHUNK_SIZE
) -> list[str]:
    """Split text into chunks of at most ``max_chunk_size`` characters.

    Whitespace runs and words are kept whole unless a single run is longer
    than the chunk size, in which case it is sliced. Concatenating the result
    always reproduces ``text``.
    """
    if not text:
        return []

    chunks: list[str] = []
    current = ""
    for segment in _SEGMENT_RE.findall(text):
        if len(segment) <= max_chunk_size:
            if current and len(current) + len(segment) > max_chunk_size:
                chunks.append(current)
                current = ""
            current += segment
            continue

        if current:
            chunks.append(current)
            current = ""
        for index in range(0, len(segment), max_chunk_size):
            chunks.append(segment[index:index + max_chunk_size])

    if current:
        chunks.append(current)
    return chunks


def _check_abort(cancel_scope: anyio.CancelScope | None) -> None:
    if cancel_scope is not None and cancel_scope.cancel_called:
        raise RequestAbortedError()


async def _abortable(awaitable: Awaitable[T], cancel_scope: anyio.CancelScope | None) -> T:
    """Await ``awaitable``, giving up as soon as the cancel scope is cancelled.

    Raises:
        RequestAbortedError: The scope was cancelled before or while waiting
    """
    _check_abort(cancel_scope)
    if cancel_scope is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    try:
        while not task.done() and not cancel_scope.cancel_called:
            await asyncio.wait({task}, timeout=ABORT_POLL_INTERVAL)
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    _check_abort(cancel_scope)
    return task.result()


def _error_from_body(raw: str, status: int) -> str:
    if not raw.strip():
        return f"Runtime webhook failed with HTTP {status}."
    payload = parse_json_object(raw)
    if payload is not None:
        for key in ("error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return raw.strip()


async def _read_text(
    response: aiohttp.ClientResponse, cancel_scope: anyio.CancelScope | None
) -> str:
    try:
        body = await _abortable(response.read(), cancel_scope)
    except aiohttp.ClientError:
        return ""
    return body.decode("utf-8", errors="replace")


async def _consume_stream(
    response: aiohttp.ClientResponse,
    decoder: SseDecoder | NdjsonDecoder,
    interpreter: PayloadInterpreter,
    cancel_scope: anyio.CancelScope | None,
) -> None:
    def apply(payloads: list[Payload]) -> None:
        for payload in payloads:
            interpreter.feed(payload, allow_initial_cumulative=True)

    while True:
        chunk = await _abortable(response.content.readany(), cancel_scope)
        if not chunk:
            break
        apply(decoder.feed(chunk))
    apply(decoder.close())


async def stream_webhook(
    api_base_url: str,
    message: str,
    *,
    cancel_scope: anyio.CancelScope | None = None,
    token: str | None = None,
    on_token: TokenCallback | None = None,
    synthetic_streaming_fallback: bool = True,
    session: aiohttp.ClientSession | None = None,
) -> WebhookStreamAttempt:
    """Send ``message`` to a runtime and stream the answer through ``on_token``.

    Args:
        api_base_url: Runtime base URL (trailing slashes ignored)
        message: User message
        cancel_scope: Optional anyio.CancelScope; cancelling it aborts the call
        token: Optional bearer token
        on_token: Receives each incremental token
        synthetic_streaming_fallback: Split non-streamed answers into chunks
        session: Reuse an aiohttp session (created and closed per call if None)

    Returns:
        WebhookStreamAttempt describing the outcome

    Raises:
        RequestAbortedError: The cancel scope was cancelled mid-stream
        aiohttp.ClientError: The request itself could not be made
    """
    try:
        return await _exchange(
            api_base_url,
            message,
            cancel_scope=cancel_scope,
            token=token,
            on_token=on_token,
            synthetic_streaming_fallback=synthetic_streaming_fallback,
            session=session,
        )
    except asyncio.CancelledError:
        # Entered scope: the cancellation was delivered into an await
        if cancel_scope is not None and cancel_scope.cancel_called:
            raise RequestAbortedError() from None
        raise


async def _exchange(
    api_base_url: str,
    message: str,
    *,
    cancel_scope: anyio.CancelScope | None,
    token: str | None,
    on_token: TokenCallback | None,
    synthetic_streaming_fallback: bool,
    session: aiohttp.ClientSession | None,
) -> WebhookStreamAttempt:
    started = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    headers = {"Content-Type": "application/json", "Accept": ACCEPT_HEADER}
    if token and token.strip():
        headers["Authorization"] = f"Bearer {token.strip()}"
    url = f"{api_base_url.rstrip('/')}/webhook"

    _check_abort(cancel_scope)

    async with contextlib.AsyncExitStack() as stack:
        if session is None:
            session = await stack.enter_async_context(aiohttp.ClientSession())
        response = await _abortable(
            stack.enter_async_context(
                session.post(url, json={"message": message}, headers=headers)
            ),
            cancel_scope,
        )

        if response.status == 401 or not 200 <= response.status < 300:
            raw = await _read_text(response, cancel_scope)
            logger.debug(f"Webhook {url} failed with HTTP {response.status}")
            return WebhookStreamAttempt(
                ok=False,
                unauthorized=response.status == 401,
                error=_error_from_body(raw, response.status),
                duration_ms=elapsed_ms(),
            )

        content_type = response.headers.get("Content-Type", "").lower()
        interpreter = PayloadInterpreter(on_token)

        if "text/event-stream" in content_type:
            transport = Transport.SSE
            await _consume_stream(response, SseDecoder(), interpreter, cancel_scope)
        elif "application/x-ndjson" in content_type or "application/jsonl" in content_type:
            transport = Transport.NDJSON
            await _consume_stream(response, NdjsonDecoder(), interpreter, cancel_scope)
        else:
            transport = Transport.JSON
            raw = await _read_text(response, cancel_scope)
            interpreter.feed(parse_json_object(raw) or raw, allow_initial_cumulative=False)

    state = interpreter.state
    resolved = interpreter.resolve_response()
    synthetic_used = False

    if not state.emitted_text and resolved:
        if synthetic_streaming_fallback:
            synthetic_used = True
            for chunk in split_text_for_synthetic_stream(resolved):
                _check_abort(cancel_scope)
                if on_token:
                    on_token(chunk)
                state.token_chunks += 1
            state.emitted_text = resolved
        else:
            interpreter.apply_delta(resolved)
            resolved = state.emitted_text

    if not resolved.strip():
        return WebhookStreamAttempt(
            ok=False,
            error=state.error or EMPTY_RESPONSE_ERROR,
            transport=transport,
            token_chunks=state.token_chunks,
            synthetic_fallback_used=synthetic_used,
            duration_ms=elapsed_ms(),
        )

    return WebhookStreamAttempt(
        ok=True,
        response=resolved,
        model=state.model,
        streamed=bool(state.emitted_text),
        transport=transport,
        token_chunks=state.token_chunks,
        synthetic_fallback_used=synthetic_used,
        duration_ms=elapsed_ms(),
    )
