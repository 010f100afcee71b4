from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, List
from urllib.parse import urlparse, urlunparse

from ..types import ToolCall, ToolDeclaration
from . import (
    BaseProvider,
    UpstreamStream,
    iter_sse_data,
    parse_tool_arguments,
    raise_for_stream_error,
    tool_result_text,
)

_AZURE_COMPAT_SUFFIXES = (
    "openai.azure.com",
    "openai.azure.us",
    "openai.azure.cn",
    "cognitiveservices.azure.com",
    "cognitiveservices.azure.us",
    "cognitiveservices.azure.cn",
)


def _is_version_segment(segment: str) -> bool:
    lowered = segment.lower()
    if not lowered.startswith("v"):
        return False
    suffix = lowered[1:]
    return bool(suffix) and suffix[0].isdigit()


def _matches_suffix(host: str, suffix: str) -> bool:
    return host == suffix or host.endswith(f".{suffix}")


def _merge_tool_call_deltas(pending: dict[int, dict[str, Any]], fragments: Any) -> None:
    if not isinstance(fragments, list):
        return
    for position, fragment in enumerate(fragments):
        if not isinstance(fragment, dict):
            continue
        index = fragment.get("index")
        if not isinstance(index, int):
            index = position
        entry = pending.setdefault(index, {"id": None, "name": "", "arguments": ""})
        if fragment.get("id"):
            entry["id"] = fragment["id"]
        function = fragment.get("function")
        if not isinstance(function, dict):
            continue
        if function.get("name") and not entry["name"]:
            entry["name"] = function["name"]
        arguments = function.get("arguments")
        if isinstance(arguments, str):
            entry["arguments"] += arguments
        elif isinstance(arguments, dict):
            entry["arguments"] = json.dumps(arguments)


def _drain_tool_calls(pending: dict[int, dict[str, Any]]) -> list[ToolCall]:
    calls = [
        ToolCall(
            id=entry["id"] or f"call_{index}",
            name=entry["name"],
            arguments=parse_tool_arguments(entry["name"], entry["arguments"]),
        )
        for index, entry in sorted(pending.items())
    ]
    pending.clear()
    return calls


async def _iter_delta_units(lines: AsyncIterator[str]) -> AsyncIterator[str | ToolCall]:
    pending: dict[int, dict[str, Any]] = {}
    async for payload in iter_sse_data(lines):
        raise_for_stream_error(payload)
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            continue
        first = choices[0]
        if not isinstance(first, dict):
            continue
        delta = first.get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            _merge_tool_call_deltas(pending, delta.get("tool_calls"))
        elif isinstance(delta, str):
            content = delta
        else:
            content = None
        if isinstance(content, str) and content:
            yield content
        if first.get("finish_reason") and pending:
            for call in _drain_tool_calls(pending):
                yield call
    for call in _drain_tool_calls(pending):
        yield call


def _to_upstream_message(message: dict[str, Any]) -> dict[str, Any]:
    tool_calls = message.get("tool_calls")
    if tool_calls:
        return {
            "role": "assistant",
            "content": message.get("content") or None,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in tool_calls
            ],
        }
    call = message.get("tool_call")
    if message.get("role") == "tool" and call is not None:
        return {
            "role": "tool",
            "tool_call_id": call.id,
            "content": tool_result_text(message.get("content")),
        }
    return message


class OpenAICompatProvider(BaseProvider):
    """OpenAI-style ``/chat/completions`` streaming.

    Also serves Gemini models through Google's OpenAI-compatible endpoint
    (``https://generativelanguage.googleapis.com/v1beta/openai``).
    """

    def _build_url(self) -> tuple[str, bool]:
        parsed = urlparse(self.defn.base_url.strip())
        path_segments = [segment for segment in (parsed.path or "").rstrip("/").split("/") if segment]
        lowered = [segment.lower() for segment in path_segments]
        if len(lowered) >= 2 and lowered[-2:] == ["chat", "completions"]:
            base_segments = path_segments[:-2]
            tail = path_segments[-2:]
        elif lowered and lowered[-1] == "chat":
            base_segments = path_segments[:-1]
            tail = path_segments[-1:] + ["completions"]
        else:
            base_segments = path_segments
            tail = ["chat", "completions"]
        hostname = (parsed.hostname or "").lower()
        is_azure = any(_matches_suffix(hostname, suffix) for suffix in _AZURE_COMPAT_SUFFIXES)
        if not base_segments:
            append_v1 = hostname.endswith("openai.com")
        elif any(segment.lower() == "openai" for segment in base_segments[:-1]):
            append_v1 = False
        elif base_segments[-1].lower() == "openai":
            append_v1 = not is_azure and not hostname.endswith("googleapis.com")
        else:
            append_v1 = not _is_version_segment(base_segments[-1])
        segments = list(base_segments)
        if append_v1:
            segments.append("v1")
        segments.extend(tail)
        url = urlunparse(parsed._replace(path="/" + "/".join(segments)))
        return url, is_azure

    def _build_chat_request(
        self,
        messages: List[dict[str, Any]],
        *,
        system: str | None,
        tools: tuple[ToolDeclaration, ...],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        url, is_azure = self._build_url()
        headers: dict[str, str] = {"Content-Type": "application/json"}
        key = self._api_key()
        if key:
            if is_azure:
                headers["api-key"] = key
            else:
                headers["Authorization"] = f"Bearer {key}"
        upstream_messages: list[dict[str, Any]] = []
        if system:
            upstream_messages.append({"role": "system", "content": system})
        upstream_messages.extend(_to_upstream_message(message) for message in messages)
        payload: dict[str, Any] = {
            "model": self.defn.model,
            "messages": upstream_messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        if tools:
            payload["tools"] = [tool.as_openai_tool() for tool in tools]
        return url, headers, payload

    async def _open_turn(
        self,
        messages: List[dict[str, Any]],
        *,
        system: str | None,
        tools: tuple[ToolDeclaration, ...],
        temperature: float,
        max_tokens: int,
    ) -> UpstreamStream:
        url, headers, payload = self._build_chat_request(
            messages,
            system=system,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return await self._send_streaming(url, headers=headers, payload=payload, parser=_iter_delta_units)
