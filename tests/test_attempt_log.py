from __future__ import annotations

import json
import logging
import sys
import threading
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.chatgw.attempt_log import AttemptLog  # noqa: E402
from src.chatgw.metrics import AttemptMetrics  # noqa: E402
from src.chatgw.types import Attempt, AttemptOutcome  # noqa: E402


def _failed_attempt(candidate: str = "alpha", index: int = 1) -> Attempt:
    attempt = Attempt(candidate=candidate, index=index, started_at=0.0)
    attempt.resolve(AttemptOutcome.EMPTY_STREAM, "nothing", 0.5)
    return attempt


def test_failed_attempt_is_logged_and_appended(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    log_path = tmp_path / "nested" / "attempts.jsonl"
    attempt_log = AttemptLog(str(log_path))

    with caplog.at_level(logging.WARNING, logger="src.chatgw.attempt_log"):
        attempt_log.record_attempt(_failed_attempt(), req_id="r1")

    record = json.loads(log_path.read_text(encoding="utf-8"))
    assert record["event"] == "attempt_failed"
    assert record["candidate"] == "alpha"
    assert record["outcome"] == "EmptyStream"
    assert record["elapsed_ms"] == 500
    assert record["ts"].endswith("Z")
    assert any("chat.attempt failure req_id=r1 candidate=alpha" in message for message in caplog.messages)


def test_unwritable_log_path_is_ignored(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("file", encoding="utf-8")
    attempt_log = AttemptLog(str(blocker / "attempts.jsonl"))

    attempt_log.record_attempt(_failed_attempt(), req_id="r1")
    attempt_log.record_exhausted(req_id="r1", dossier=["candidate alpha failed after 1ms: EmptyStream"])

    assert blocker.read_text(encoding="utf-8") == "file"


def test_console_failures_are_swallowed(monkeypatch: pytest.MonkeyPatch) -> None:
    import src.chatgw.attempt_log as attempt_log_module

    def _explode(*_args: object, **_kwargs: object) -> None:
        raise RuntimeError("handler broke")

    monkeypatch.setattr(attempt_log_module.logger, "log", _explode)
    attempt_log = AttemptLog(None)

    attempt_log.record_exhausted(req_id="r1", dossier=["x"])
    attempt_log.record_mid_stream_error(req_id="r1", candidate="alpha", error=RuntimeError("drop"))


def test_concurrent_appends_keep_lines_intact(tmp_path: Path) -> None:
    log_path = tmp_path / "attempts.jsonl"
    attempt_log = AttemptLog(str(log_path))

    def _writer(worker: int) -> None:
        for index in range(50):
            attempt_log.record_attempt(_failed_attempt(f"w{worker}", index + 1), req_id=f"{worker}-{index}")

    threads = [threading.Thread(target=_writer, args=(worker,)) for worker in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 400
    parsed = [json.loads(line) for line in lines]
    assert {record["req_id"] for record in parsed} == {f"{w}-{i}" for w in range(8) for i in range(50)}


def test_metrics_render_counts_attempts_and_first_byte_latency() -> None:
    metrics = AttemptMetrics()
    attempt_log = AttemptLog(None, metrics)
    success = Attempt(candidate="beta", index=2, started_at=0.0)
    success.resolve(AttemptOutcome.SUCCESS, None, 1.5)

    attempt_log.record_attempt(_failed_attempt(), req_id="r1")
    attempt_log.record_attempt(success, req_id="r1")
    attempt_log.record_success(req_id="r1", candidate="beta", attempts=2)

    text = metrics.render().decode("utf-8")
    assert 'chatgw_attempts_total{candidate="alpha",outcome="EmptyStream"} 1' in text
    assert 'chatgw_attempts_total{candidate="beta",outcome="Success"} 1' in text
    assert 'chatgw_first_byte_seconds_bucket{candidate="beta",le="1"} 0' in text
    assert 'chatgw_first_byte_seconds_bucket{candidate="beta",le="2"} 1' in text
    assert 'chatgw_first_byte_seconds_count{candidate="beta"} 1' in text
    assert 'chatgw_requests_total{result="success"} 1' in text
