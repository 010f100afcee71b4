"""In-process attempt counters rendered in the Prometheus text format."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any

PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
HISTOGRAM_BUCKETS: tuple[float, ...] = (0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class AttemptMetrics:
    __slots__ = ("_lock", "_attempts", "_requests", "_first_byte")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._attempts: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._requests: defaultdict[str, int] = defaultdict(int)
        self._first_byte: defaultdict[str, dict[str, Any]] = defaultdict(_new_histogram_state)

    def record_attempt(self, candidate: str, outcome: str, elapsed_ms: int) -> None:
        with self._lock:
            self._attempts[(candidate, outcome)] += 1
            if outcome != "Success":
                return
            seconds = max(float(elapsed_ms) / 1000.0, 0.0)
            state = self._first_byte[candidate]
            buckets = state["buckets"]
            for idx, bound in enumerate(HISTOGRAM_BUCKETS):
                if seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            state["count"] += 1
            state["sum"] += seconds

    def record_request(self, result: str) -> None:
        with self._lock:
            self._requests[result] += 1

    def attempts(self, candidate: str, outcome: str) -> int:
        with self._lock:
            return self._attempts.get((candidate, outcome), 0)

    def render(self) -> bytes:
        with self._lock:
            lines: list[str] = [
                "# HELP chatgw_requests_total Chat requests by final result",
                "# TYPE chatgw_requests_total counter",
            ]
            for result, value in sorted(self._requests.items()):
                lines.append(f'chatgw_requests_total{{result="{result}"}} {value}')
            lines.append("# HELP chatgw_attempts_total Candidate attempts by outcome")
            lines.append("# TYPE chatgw_attempts_total counter")
            for (candidate, outcome), value in sorted(self._attempts.items()):
                lines.append(
                    f'chatgw_attempts_total{{candidate="{candidate}",outcome="{outcome}"}} {value}'
                )
            lines.append("# HELP chatgw_first_byte_seconds Time to first byte of successful attempts")
            lines.append("# TYPE chatgw_first_byte_seconds histogram")
            for candidate, state in sorted(self._first_byte.items()):
                buckets = state["buckets"]
                for idx, bound in enumerate(HISTOGRAM_BUCKETS):
                    le_value = format(bound, ".6g")
                    lines.append(
                        f'chatgw_first_byte_seconds_bucket{{candidate="{candidate}",le="{le_value}"}} {buckets[idx]}'
                    )
                lines.append(
                    f'chatgw_first_byte_seconds_bucket{{candidate="{candidate}",le="+Inf"}} {buckets[-1]}'
                )
                lines.append(f'chatgw_first_byte_seconds_count{{candidate="{candidate}"}} {state["count"]}')
                lines.append(f'chatgw_first_byte_seconds_sum{{candidate="{candidate}"}} {state["sum"]}')
        return ("\n".join(lines) + "\n").encode("utf-8")
