from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, List

from ..types import ToolCall, ToolDeclaration
from . import BaseProvider, UpstreamStream, parse_tool_arguments, raise_for_stream_error, tool_result_text

__all__ = ["OllamaProvider"]


def _tool_calls(message: dict[str, Any], ordinal: int) -> list[ToolCall]:
    raw_calls = message.get("tool_calls")
    if not isinstance(raw_calls, list):
        return []
    calls: list[ToolCall] = []
    for raw in raw_calls:
        function = raw.get("function") if isinstance(raw, dict) else None
        if not isinstance(function, dict) or not function.get("name"):
            continue
        name = str(function["name"])
        calls.append(
            ToolCall(
                id=f"call_{ordinal + len(calls)}",
                name=name,
                arguments=parse_tool_arguments(name, function.get("arguments")),
            )
        )
    return calls


async def _iter_message_units(lines: AsyncIterator[str]) -> AsyncIterator[str | ToolCall]:
    ordinal = 0
    async for line in lines:
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        raise_for_stream_error(payload)
        message = payload.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content:
                yield content
            for call in _tool_calls(message, ordinal):
                ordinal += 1
                yield call
        if payload.get("done"):
            return


def _to_upstream_message(message: dict[str, Any]) -> dict[str, Any]:
    tool_calls = message.get("tool_calls")
    if tool_calls:
        return {
            "role": "assistant",
            "content": message.get("content") or "",
            "tool_calls": [
                {"function": {"name": call.name, "arguments": call.arguments}} for call in tool_calls
            ],
        }
    call = message.get("tool_call")
    if message.get("role") == "tool" and call is not None:
        return {
            "role": "tool",
            "tool_name": call.name,
            "content": tool_result_text(message.get("content")),
        }
    return message


class OllamaProvider(BaseProvider):
    def _build_chat_request(
        self,
        messages: List[dict[str, Any]],
        *,
        system: str | None,
        tools: tuple[ToolDeclaration, ...],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, dict[str, Any]]:
        url = f"{self.defn.base_url.rstrip('/')}/api/chat"
        upstream_messages: list[dict[str, Any]] = []
        if system:
            upstream_messages.append({"role": "system", "content": system})
        upstream_messages.extend(_to_upstream_message(message) for message in messages)
        payload: dict[str, Any] = {
            "model": self.defn.model,
            "messages": upstream_messages,
            "stream": True,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if tools:
            payload["tools"] = [tool.as_openai_tool() for tool in tools]
        return url, payload

    async def _open_turn(
        self,
        messages: List[dict[str, Any]],
        *,
        system: str | None,
        tools: tuple[ToolDeclaration, ...],
        temperature: float,
        max_tokens: int,
    ) -> UpstreamStream:
        url, payload = self._build_chat_request(
            messages,
            system=system,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return await self._send_streaming(
            url,
            headers={"Content-Type": "application/json"},
            payload=payload,
            parser=_iter_message_units,
        )
