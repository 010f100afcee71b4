"""Single-candidate attempt: open the upstream stream and wait for its first byte.

The first-byte deadline covers both opening the call and pulling the first
non-empty unit. Once that unit is observed no timeout applies any more; the
rest of the stream is handed to :func:`src.chatgw.splice.splice` untouched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .types import Attempt, AttemptOutcome, ContextBundle

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class AttemptResult:
    attempt: Attempt
    first_chunk: str | None = None
    stream: Any | None = None

    @property
    def ok(self) -> bool:
        return self.attempt.outcome is AttemptOutcome.SUCCESS


def _http_status_error_details(exc: httpx.HTTPStatusError) -> tuple[int | None, str]:
    status: int | None = None
    message: str | None = None
    response = exc.response
    if response is not None:
        status = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            payload = payload[0]
        if isinstance(payload, dict):
            error_field = payload.get("error")
            if isinstance(error_field, dict):
                error_message = error_field.get("message")
                if isinstance(error_message, str) and error_message:
                    message = error_message
            if message is None:
                nested_message = payload.get("message")
                if isinstance(nested_message, str) and nested_message:
                    message = nested_message
        if message is None:
            text = response.text
            if text:
                message = text.strip()
        if message is None:
            reason = response.reason_phrase
            if reason:
                message = reason
    if message is None:
        message = str(exc)
    return status, message


def describe_upstream_error(exc: BaseException) -> str:
    """One-line, operator-facing summary of an upstream failure."""
    if isinstance(exc, httpx.HTTPStatusError):
        status, message = _http_status_error_details(exc)
        summary = f"HTTP {status}: {message}" if status is not None else message
    else:
        detail = str(exc).strip()
        summary = f"{type(exc).__name__}: {detail}" if detail else type(exc).__name__
    return " ".join(summary.split())


async def _close_quietly(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # noqa: BLE001 - the attempt already has its outcome
        logger.debug("upstream close failed", exc_info=True)


async def run_attempt(
    provider: Any,
    *,
    candidate: str,
    index: int,
    bundle: ContextBundle,
    messages: list[dict[str, Any]],
    deadline_s: float,
    temperature: float = 0.2,
    max_tokens: int = 2048,
    clock: Clock = time.monotonic,
) -> AttemptResult:
    attempt = Attempt(candidate=candidate, index=index, started_at=clock())
    loop = asyncio.get_running_loop()
    deadline_at = loop.time() + deadline_s

    def _remaining() -> float:
        return max(deadline_at - loop.time(), 0.0)

    def _fail(outcome: AttemptOutcome, reason: str) -> AttemptResult:
        attempt.resolve(outcome, reason, clock())
        return AttemptResult(attempt=attempt)

    # Dialing
    try:
        stream = await asyncio.wait_for(
            provider.open_stream(
                messages,
                system=bundle.system_prompt,
                tools=bundle.tools,
                tool_executor=bundle.tool_executor,
                temperature=temperature,
                max_tokens=max_tokens,
            ),
            timeout=_remaining(),
        )
    except asyncio.TimeoutError:
        return _fail(
            AttemptOutcome.TIMED_OUT_BEFORE_FIRST_BYTE,
            f"no response within {deadline_s:g}s while opening the stream",
        )
    except Exception as exc:  # noqa: BLE001 - every provider failure is eligible for fallback
        return _fail(AttemptOutcome.UPSTREAM_ERROR, describe_upstream_error(exc))

    # AwaitingFirstByte
    try:
        while True:
            chunk = await asyncio.wait_for(stream.__anext__(), timeout=_remaining())
            if chunk:
                break
    except StopAsyncIteration:
        await _close_quietly(stream)
        return _fail(AttemptOutcome.EMPTY_STREAM, "upstream closed the stream without sending any content")
    except asyncio.TimeoutError:
        await _close_quietly(stream)
        return _fail(
            AttemptOutcome.TIMED_OUT_DURING_STREAM_INIT,
            f"stream opened but no content within {deadline_s:g}s",
        )
    except asyncio.CancelledError:
        await _close_quietly(stream)
        raise
    except Exception as exc:  # noqa: BLE001
        await _close_quietly(stream)
        return _fail(AttemptOutcome.UPSTREAM_ERROR, describe_upstream_error(exc))

    attempt.resolve(AttemptOutcome.SUCCESS, None, clock())
    return AttemptResult(attempt=attempt, first_chunk=chunk, stream=stream)
