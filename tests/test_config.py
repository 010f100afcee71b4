import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.chatgw.config import ToolEndpointSettings, load_config  # noqa: E402
from src.chatgw.providers import DummyProvider, GeminiProvider, ProviderRegistry  # noqa: E402

PROVIDERS = """
[alpha]
type = "gemini"
model = "gemini-2.5-flash"
auth_env = "TOKEN"

[beta]
type = "dummy"
script = ["Hello", " world"]
"""


def write_config(tmp_path: Path, gateway: str, providers: str = PROVIDERS) -> str:
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "providers.toml").write_text(providers, encoding="utf-8")
    (config_dir / "gateway.yaml").write_text(gateway, encoding="utf-8")
    return str(config_dir)


def test_load_config_reads_candidates_in_order(tmp_path: Path) -> None:
    config_dir = write_config(
        tmp_path,
        """
candidates: [beta, alpha]
deadline_s: 12.5
defaults:
  temperature: 0.4
  max_tokens: 256
attempt_log:
  path: logs/attempts.jsonl
""",
    )

    loaded = load_config(config_dir)

    assert loaded.gateway.candidates == ("beta", "alpha")
    assert loaded.gateway.deadline_s == 12.5
    assert loaded.gateway.defaults.temperature == 0.4
    assert loaded.gateway.defaults.max_tokens == 256
    assert loaded.gateway.rate_limit.max_requests == 10
    assert loaded.gateway.attempt_log_path == str(tmp_path / "logs" / "attempts.jsonl")
    assert loaded.providers["beta"].script == ("Hello", " world")
    assert loaded.providers["beta"].model == "beta"


def test_deadline_defaults_to_thirty_seconds(tmp_path: Path) -> None:
    loaded = load_config(write_config(tmp_path, "candidates: [alpha]\n"))

    assert loaded.gateway.deadline_s == 30.0


def test_tools_endpoint_is_optional(tmp_path: Path) -> None:
    plain = load_config(write_config(tmp_path, "candidates: [alpha]\n"))
    with_tools = load_config(
        write_config(
            tmp_path,
            """
candidates: [alpha]
tools:
  endpoint: https://reports.internal/tools/call
  auth_env: REPORTS_KEY
""",
        )
    )

    assert plain.gateway.tools is None
    assert with_tools.gateway.tools == ToolEndpointSettings(
        endpoint="https://reports.internal/tools/call", timeout_s=10.0, auth_env="REPORTS_KEY"
    )


def test_load_config_rejects_undefined_candidate(tmp_path: Path) -> None:
    config_dir = write_config(tmp_path, "candidates: [alpha, gamma]\n")

    with pytest.raises(ValueError) as excinfo:
        load_config(config_dir)

    message = str(excinfo.value)
    assert "gamma" in message
    assert "alpha, beta" in message


@pytest.mark.parametrize(
    "gateway, fragment",
    [
        ("candidates: []\n", "at least one candidate"),
        ("candidates: [alpha, alpha]\n", "duplicate candidates: alpha"),
        ("candidates: [alpha]\ndeadline_s: 0\n", "deadline_s"),
        ("candidates: [alpha]\nunknown: 1\n", "unknown"),
        ("candidates: [alpha]\ntools:\n  endpoint: ''\n", "endpoint"),
        ("candidates: [alpha]\ntools:\n  endpoint: http://r\n  timeout_s: -1\n", "timeout_s"),
    ],
)
def test_load_config_rejects_invalid_gateway(tmp_path: Path, gateway: str, fragment: str) -> None:
    config_dir = write_config(tmp_path, gateway)

    with pytest.raises(ValueError) as excinfo:
        load_config(config_dir)

    assert fragment in str(excinfo.value)


def test_load_config_rejects_unknown_provider_type(tmp_path: Path) -> None:
    config_dir = write_config(
        tmp_path,
        "candidates: [alpha]\n",
        providers='[alpha]\ntype = "mock"\nmodel = "x"\n',
    )

    with pytest.raises(ValueError) as excinfo:
        load_config(config_dir)

    assert "alpha -> type" in str(excinfo.value)


def test_dummy_providers_file_is_used_when_requested(tmp_path: Path) -> None:
    config_dir = write_config(tmp_path, "candidates: [alpha]\n")
    (Path(config_dir) / "providers.dummy.toml").write_text('[alpha]\ntype = "dummy"\n', encoding="utf-8")

    loaded = load_config(config_dir, use_dummy=True)
    registry = ProviderRegistry(loaded.providers)

    assert isinstance(registry.get("alpha"), DummyProvider)


def test_registry_builds_providers_by_type(tmp_path: Path) -> None:
    loaded = load_config(write_config(tmp_path, "candidates: [alpha, beta]\n"))
    registry = ProviderRegistry(loaded.providers)

    assert isinstance(registry.get("alpha"), GeminiProvider)
    assert isinstance(registry.get("beta"), DummyProvider)
    with pytest.raises(KeyError):
        registry.get("gamma")


def test_shipped_config_loads() -> None:
    config_dir = str(PROJECT_ROOT / "config")

    real = load_config(config_dir)
    dummy = load_config(config_dir, use_dummy=True)

    assert real.gateway.candidates[0] == "gemini-3-flash-preview"
    assert real.gateway.deadline_s == 30.0
    assert set(dummy.gateway.candidates) <= set(dummy.providers)
