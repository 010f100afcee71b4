"""Execution of the analytics tools the model may call.

The gateway does not compute statistics itself. Each call is validated
against the declared parameter contract and forwarded to the reporting
backend configured under ``tools`` in ``gateway.yaml``.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from .config import ToolEndpointSettings
from .context import STATS_TOOL_NAMES, check_stats_arguments
from .types import ToolExecutor

logger = logging.getLogger(__name__)


class HttpToolExecutor:
    """POST ``{"name": ..., "arguments": {...}}`` and return the JSON reply."""

    def __init__(self, settings: ToolEndpointSettings) -> None:
        self.settings = settings

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        auth_env = self.settings.auth_env
        key = os.environ.get(auth_env, "") if auth_env else ""
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    async def __call__(self, name: str, arguments: dict[str, Any]) -> Any:
        if name not in STATS_TOOL_NAMES:
            raise ValueError(f"unknown tool '{name}'")
        arguments = check_stats_arguments(arguments)
        logger.info(f"tool.call name={name} period={arguments['period']}")
        async with httpx.AsyncClient(timeout=self.settings.timeout_s) as client:
            response = await client.post(
                self.settings.endpoint,
                headers=self._headers(),
                json={"name": name, "arguments": arguments},
            )
        response.raise_for_status()
        return response.json()


def build_tool_executor(settings: ToolEndpointSettings | None) -> ToolExecutor | None:
    if settings is None:
        return None
    return HttpToolExecutor(settings)
