"""Best-effort diagnostics for chat attempts.

Every failed attempt, every exhausted request and every mid-stream failure is
reported to the console through :mod:`logging` and appended as one JSON line to
the attempt log file. Neither destination may affect the response: errors
raised while writing are swallowed.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Any, Sequence

from .metrics import AttemptMetrics
from .types import Attempt, AttemptOutcome

logger = logging.getLogger(__name__)


def _format_timestamp(value: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(value))


class AttemptLog:
    def __init__(self, path: str | None, metrics: AttemptMetrics | None = None) -> None:
        self.path = path
        self.metrics = metrics if metrics is not None else AttemptMetrics()
        self._lock = threading.Lock()

    def record_attempt(self, attempt: Attempt, *, req_id: str) -> None:
        outcome = attempt.outcome.value if attempt.outcome is not None else "Unknown"
        self._record_metrics(attempt.candidate, outcome, attempt.elapsed_ms)
        if attempt.outcome is AttemptOutcome.SUCCESS:
            self._console(
                logging.INFO,
                f"chat.attempt success req_id={req_id} candidate={attempt.candidate} "
                f"index={attempt.index} elapsed_ms={attempt.elapsed_ms}",
            )
            return
        self._console(
            logging.WARNING,
            f"chat.attempt failure req_id={req_id} candidate={attempt.candidate} "
            f"index={attempt.index} outcome={outcome} elapsed_ms={attempt.elapsed_ms} "
            f"detail={attempt.reason}",
        )
        self._append(
            {
                "event": "attempt_failed",
                "req_id": req_id,
                "candidate": attempt.candidate,
                "index": attempt.index,
                "outcome": outcome,
                "reason": attempt.reason,
                "elapsed_ms": attempt.elapsed_ms,
            }
        )

    def record_exhausted(self, *, req_id: str, dossier: Sequence[str]) -> None:
        self._record_request("exhausted")
        self._console(
            logging.ERROR,
            f"chat.exhausted req_id={req_id} attempts={len(dossier)} dossier={' | '.join(dossier)}",
        )
        self._append({"event": "exhausted", "req_id": req_id, "dossier": list(dossier)})

    def record_success(self, *, req_id: str, candidate: str, attempts: int) -> None:
        self._record_request("success")
        level = logging.WARNING if attempts > 1 else logging.INFO
        self._console(level, f"chat.success req_id={req_id} candidate={candidate} attempts={attempts}")

    def record_mid_stream_error(self, *, req_id: str, candidate: str, error: BaseException) -> None:
        self._record_metrics(candidate, AttemptOutcome.MID_STREAM_ERROR.value, 0)
        detail = str(error) or type(error).__name__
        self._console(
            logging.ERROR,
            f"chat.mid_stream_error req_id={req_id} candidate={candidate} detail={detail}",
        )
        self._append(
            {
                "event": "mid_stream_error",
                "req_id": req_id,
                "candidate": candidate,
                "outcome": AttemptOutcome.MID_STREAM_ERROR.value,
                "reason": detail,
            }
        )

    def _record_metrics(self, candidate: str, outcome: str, elapsed_ms: int) -> None:
        try:
            self.metrics.record_attempt(candidate, outcome, elapsed_ms)
        except Exception:  # noqa: BLE001
            pass

    def _record_request(self, result: str) -> None:
        try:
            self.metrics.record_request(result)
        except Exception:  # noqa: BLE001
            pass

    def _console(self, level: int, message: str) -> None:
        try:
            logger.log(level, message)
        except Exception:  # noqa: BLE001
            pass

    def _append(self, record: dict[str, Any]) -> None:
        if not self.path:
            return
        try:
            now = time.time()
            entry = {"ts": _format_timestamp(now), **record}
            line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
            directory = os.path.dirname(self.path)
            with self._lock:
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as handle:
                    handle.write(line)
        except Exception:  # noqa: BLE001 - the attempt log never fails a request
            pass
