from __future__ import annotations

import time
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from .attempt import AttemptResult, Clock, run_attempt
from .attempt_log import AttemptLog
from .config import GatewayDefaults
from .splice import splice
from .types import Attempt, AttemptOutcome, ContextBundle


@dataclass
class GatewayResult:
    stream: AsyncIterator[bytes] | None = None
    candidate: str | None = None
    attempts: list[Attempt] = field(default_factory=list)
    dossier: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.stream is not None


class FallbackOrchestrator:
    """Try candidates strictly in order until one produces its first byte.

    Attempts never overlap: the next candidate is only dialed once the current
    one has resolved. The first success ends the loop and later candidates are
    never contacted, even if the winning stream fails afterwards.
    """

    def __init__(
        self,
        providers: Any,
        candidates: Sequence[str],
        *,
        deadline_s: float,
        defaults: GatewayDefaults | None = None,
        attempt_log: AttemptLog | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        if not candidates:
            raise ValueError("at least one candidate is required")
        self.providers = providers
        self.candidates = tuple(candidates)
        self.deadline_s = deadline_s
        self.defaults = defaults or GatewayDefaults(temperature=0.2, max_tokens=2048)
        self.attempt_log = attempt_log or AttemptLog(None)
        self._clock = clock

    async def _attempt(
        self,
        candidate: str,
        index: int,
        bundle: ContextBundle,
        messages: list[dict[str, Any]],
    ) -> AttemptResult:
        try:
            provider = self.providers.get(candidate)
        except KeyError:
            attempt = Attempt(candidate=candidate, index=index, started_at=self._clock())
            attempt.resolve(AttemptOutcome.UPSTREAM_ERROR, "candidate is not configured", self._clock())
            return AttemptResult(attempt=attempt)
        return await run_attempt(
            provider,
            candidate=candidate,
            index=index,
            bundle=bundle,
            messages=messages,
            deadline_s=self.deadline_s,
            temperature=self.defaults.temperature,
            max_tokens=self.defaults.max_tokens,
            clock=self._clock,
        )

    async def run(
        self,
        bundle: ContextBundle,
        messages: list[dict[str, Any]],
        *,
        req_id: str = "-",
    ) -> GatewayResult:
        result = GatewayResult()
        for index, candidate in enumerate(self.candidates, start=1):
            outcome = await self._attempt(candidate, index, bundle, messages)
            attempt = outcome.attempt
            result.attempts.append(attempt)
            self.attempt_log.record_attempt(attempt, req_id=req_id)
            if outcome.ok:
                attempt_log = self.attempt_log

                def _on_error(exc: BaseException, winner: str = candidate) -> None:
                    attempt_log.record_mid_stream_error(req_id=req_id, candidate=winner, error=exc)

                result.candidate = candidate
                result.stream = splice(
                    outcome.first_chunk or "",
                    outcome.stream,
                    candidate=candidate,
                    on_error=_on_error,
                )
                self.attempt_log.record_success(req_id=req_id, candidate=candidate, attempts=index)
                return result
            result.dossier.append(attempt.dossier_line())
        self.attempt_log.record_exhausted(req_id=req_id, dossier=result.dossier)
        return result
