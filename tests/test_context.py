import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.chatgw.config import load_config  # noqa: E402
from src.chatgw.context import (  # noqa: E402
    DEFAULT_SYSTEM_PROMPT,
    PERIODS,
    TOOL_RULES,
    build_context_bundle,
)


async def _executor(name: str, arguments: dict[str, Any]) -> Any:
    return {"name": name}


def test_tools_are_not_declared_without_executor() -> None:
    bundle = build_context_bundle()

    assert bundle.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert bundle.tools == ()
    assert bundle.tool_executor is None
    assert "get_dashboard_stats" not in bundle.system_prompt


def test_executor_enables_both_stats_tools() -> None:
    bundle = build_context_bundle(executor=_executor)

    assert bundle.system_prompt == DEFAULT_SYSTEM_PROMPT + TOOL_RULES
    assert bundle.tool_executor is _executor
    assert [tool.name for tool in bundle.tools] == ["get_dashboard_stats", "get_detailed_stats"]
    for tool in bundle.tools:
        properties = tool.parameters["properties"]
        assert properties["period"]["enum"] == list(PERIODS)
        assert tool.parameters["required"] == ["period"]
        assert {"division_id", "worker_id", "client_id"} <= set(properties)


def test_configured_system_prompt_overrides_default() -> None:
    settings = load_config(str(PROJECT_ROOT / "config"), use_dummy=True).gateway

    bundle = build_context_bundle(replace(settings, system_prompt="Answer tersely."), _executor)

    assert bundle.system_prompt == "Answer tersely."
    assert len(bundle.tools) == 2
