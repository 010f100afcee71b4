from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

ErrorHook = Callable[[BaseException], Awaitable[None] | None]


class MidStreamError(RuntimeError):
    """The winning candidate failed after part of its answer was delivered."""

    def __init__(self, candidate: str, message: str) -> None:
        super().__init__(f"candidate {candidate} failed mid-stream: {message}")
        self.candidate = candidate


async def splice(
    first: str,
    rest: Any,
    *,
    candidate: str = "unknown",
    encoding: str = "utf-8",
    on_error: ErrorHook | None = None,
) -> AsyncIterator[bytes]:
    """Yield ``first`` followed by every remaining unit of ``rest``.

    ``first`` is the unit already pulled from ``rest`` while checking that the
    candidate produces anything; it is emitted exactly once, ahead of the tail.
    Upstream failures after that point surface as :class:`MidStreamError`
    instead of a silently truncated body. ``rest`` is closed on every exit path.
    """
    try:
        yield first.encode(encoding)
        try:
            async for unit in rest:
                if unit:
                    yield unit.encode(encoding)
        except Exception as exc:
            if on_error is not None:
                result = on_error(exc)
                if result is not None:
                    await result
            raise MidStreamError(candidate, str(exc) or type(exc).__name__) from exc
    finally:
        aclose = getattr(rest, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception:  # noqa: BLE001 - closing must not mask the stream outcome
                logger.debug("upstream close failed after splice", exc_info=True)
