import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.chatgw.config import RateLimitSettings  # noqa: E402
from src.chatgw.gate import AccessGate, FixedWindowRateLimiter, client_identifier  # noqa: E402


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_blocks_after_max_requests_and_resets() -> None:
    clock = _Clock()
    limiter = FixedWindowRateLimiter(2, 60.0, clock=clock)

    assert limiter.check("ip:1") == (True, 1, 1060.0)
    assert limiter.check("ip:1") == (True, 0, 1060.0)
    assert limiter.check("ip:1") == (False, 0, 1060.0)
    assert limiter.check("ip:2")[0] is True

    clock.now = 1061.0
    assert limiter.check("ip:1") == (True, 1, 1121.0)


def test_rate_limiter_prunes_expired_entries() -> None:
    clock = _Clock()
    limiter = FixedWindowRateLimiter(5, 10.0, clock=clock)
    limiter.check("ip:1")
    limiter.check("ip:2")

    clock.now += 120.0
    limiter.check("ip:3")

    assert len(limiter) == 1


def test_client_identifier_prefers_forwarded_header() -> None:
    assert client_identifier({"x-forwarded-for": "10.0.0.1, 10.0.0.2"}) == "ip:10.0.0.1"
    assert client_identifier({"x-real-ip": "10.0.0.9"}) == "ip:10.0.0.9"
    assert client_identifier({}) == "ip:unknown"
    assert client_identifier({"x-real-ip": "10.0.0.9"}, user_id="42") == "user:42"


def test_gate_without_keys_allows_requests() -> None:
    gate = AccessGate(api_keys=frozenset(), api_key_header="x-api-key", rate_limit=None)

    assert gate.check({}).allowed


def test_gate_checks_header_and_bearer_token() -> None:
    gate = AccessGate(api_keys=frozenset({"secret"}), api_key_header="x-api-key", rate_limit=None)

    assert gate.check({"x-api-key": "secret"}).allowed
    assert gate.check({"authorization": "Bearer secret"}).allowed
    denied = gate.check({"x-api-key": "wrong"})
    assert not denied.allowed
    assert denied.status == 401
    assert denied.code == "invalid_api_key"


def test_gate_rate_limit_reports_retry_after() -> None:
    clock = _Clock()
    gate = AccessGate(
        api_keys=frozenset(),
        api_key_header="x-api-key",
        rate_limit=RateLimitSettings(max_requests=1, window_s=60.0),
        clock=clock,
    )
    headers = {"x-forwarded-for": "192.0.2.1"}

    assert gate.check(headers).allowed
    clock.now += 15.5
    denied = gate.check(headers)

    assert not denied.allowed
    assert denied.status == 429
    assert denied.retry_after == 45
    assert denied.reset_at == 1060.0
