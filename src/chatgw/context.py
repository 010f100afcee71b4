"""Default system prompt and analytics tool declarations sent with every chat.

The tools are only declared when something can execute them; without an
executor the model is never told to call them.
"""

from __future__ import annotations

from typing import Any

from .config import GatewaySettings
from .types import ContextBundle, ToolDeclaration, ToolExecutor

PERIODS: tuple[str, ...] = ("last12months", "thisYear", "lastYear", "thisMonth", "lastMonth")

DEFAULT_SYSTEM_PROMPT = """\
You are the financial and operations analyst of a small interior-fitting company.
Answer the owner's questions about clients, workers, projects, time sheets,
wages and finances.

Rules:
1. Answer in the language of the question.
2. Use Markdown: bold for key amounts and names, tables for lists, bullets for enumerations.
3. Never format monetary amounts as code.
"""

TOOL_RULES = """\
4. For revenue, cost and profit questions call get_dashboard_stats first; its figures match the dashboard.
5. For breakdowns by month, worker, client or project call get_detailed_stats.
"""

_FILTER_PROPERTIES: dict[str, dict[str, str]] = {
    "division_id": {"type": "number", "description": "Restrict to one division."},
    "worker_id": {"type": "number", "description": "Restrict to one worker."},
    "client_id": {"type": "number", "description": "Restrict to one client."},
}


def _stats_parameters() -> dict:
    return {
        "type": "object",
        "properties": {
            "period": {
                "type": "string",
                "enum": list(PERIODS),
                "description": "Reporting period.",
            },
            **{name: dict(schema) for name, schema in _FILTER_PROPERTIES.items()},
        },
        "required": ["period"],
    }


DASHBOARD_STATS_TOOL = ToolDeclaration(
    name="get_dashboard_stats",
    description=(
        "Aggregated totals for the period: revenue, costs, gross profit, labour, "
        "material and overhead costs, top clients and top workers."
    ),
    parameters=_stats_parameters(),
)

DETAILED_STATS_TOOL = ToolDeclaration(
    name="get_detailed_stats",
    description=(
        "Monthly breakdown for the period with per-project, per-client and "
        "per-worker figures."
    ),
    parameters=_stats_parameters(),
)


STATS_TOOL_NAMES: frozenset[str] = frozenset({DASHBOARD_STATS_TOOL.name, DETAILED_STATS_TOOL.name})


def check_stats_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Validate tool arguments against the declared contract; unknown keys are dropped."""
    period = arguments.get("period")
    if period not in PERIODS:
        raise ValueError(f"period must be one of {', '.join(PERIODS)}")
    checked: dict[str, Any] = {"period": period}
    for name in _FILTER_PROPERTIES:
        value = arguments.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{name} must be a number")
        checked[name] = value
    return checked


def build_context_bundle(
    settings: GatewaySettings | None = None,
    executor: ToolExecutor | None = None,
) -> ContextBundle:
    prompt = DEFAULT_SYSTEM_PROMPT
    if settings is not None and settings.system_prompt:
        prompt = settings.system_prompt
    if executor is None:
        return ContextBundle(system_prompt=prompt)
    if prompt == DEFAULT_SYSTEM_PROMPT:
        prompt += TOOL_RULES
    return ContextBundle(
        system_prompt=prompt,
        tools=(DASHBOARD_STATS_TOOL, DETAILED_STATS_TOOL),
        tool_executor=executor,
    )
