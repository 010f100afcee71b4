from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, List

from ..types import ToolCall, ToolDeclaration
from . import BaseProvider, UpstreamStream, iter_sse_data, parse_tool_arguments, raise_for_stream_error

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_ROLE_MAP = {"user": "user", "assistant": "model"}


def _function_call(part: dict[str, Any], ordinal: int) -> ToolCall | None:
    call = part.get("functionCall")
    if not isinstance(call, dict) or not call.get("name"):
        return None
    name = str(call["name"])
    extra: dict[str, Any] = {}
    signature = part.get("thoughtSignature")
    if signature:
        extra["thoughtSignature"] = signature
    return ToolCall(
        id=str(call.get("id") or f"call_{ordinal}"),
        name=name,
        arguments=parse_tool_arguments(name, call.get("args")),
        extra=extra,
    )


async def _iter_candidate_units(lines: AsyncIterator[str]) -> AsyncIterator[str | ToolCall]:
    ordinal = 0
    async for payload in iter_sse_data(lines):
        raise_for_stream_error(payload)
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            continue
        first = candidates[0]
        if not isinstance(first, dict):
            continue
        content = first.get("content")
        if not isinstance(content, dict):
            continue
        parts = content.get("parts")
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, dict):
                continue
            call = _function_call(part, ordinal)
            if call is not None:
                ordinal += 1
                yield call
                continue
            text = part.get("text")
            if isinstance(text, str) and text and not part.get("thought"):
                yield text


def _function_response(message: dict[str, Any]) -> dict[str, Any]:
    call: ToolCall = message["tool_call"]
    result = message.get("content")
    response = result if isinstance(result, dict) else {"result": result}
    return {"functionResponse": {"name": call.name, "response": response}}


class GeminiProvider(BaseProvider):
    """Native ``streamGenerateContent`` client for Google Gemini models."""

    def _build_contents(self, messages: List[dict[str, Any]], instructions: list[str]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            tool_calls = message.get("tool_calls")
            if tool_calls:
                parts: list[dict[str, Any]] = []
                if message.get("content"):
                    parts.append({"text": message["content"]})
                for call in tool_calls:
                    parts.append({"functionCall": {"name": call.name, "args": call.arguments}, **call.extra})
                contents.append({"role": "model", "parts": parts})
                continue
            if role == "tool" and message.get("tool_call") is not None:
                part = _function_response(message)
                previous = contents[-1] if contents else None
                # Results of one round travel together in a single user turn.
                if previous is not None and previous["role"] == "user" and all(
                    "functionResponse" in item for item in previous["parts"]
                ):
                    previous["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part]})
                continue
            text = message.get("content") or ""
            if role == "system":
                instructions.append(text)
                continue
            contents.append({"role": _ROLE_MAP.get(str(role), "user"), "parts": [{"text": text}]})
        return contents

    def _build_chat_request(
        self,
        messages: List[dict[str, Any]],
        *,
        system: str | None,
        tools: tuple[ToolDeclaration, ...],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        base = (self.defn.base_url or DEFAULT_BASE_URL).rstrip("/")
        url = f"{base}/models/{self.defn.model}:streamGenerateContent?alt=sse"
        headers: dict[str, str] = {"Content-Type": "application/json"}
        key = self._api_key()
        if key:
            headers["x-goog-api-key"] = key

        # Gemini has no system role inside contents.
        instructions: list[str] = [system] if system else []
        contents = self._build_contents(messages, instructions)

        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if instructions:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(instructions)}],
            }
        if tools:
            payload["tools"] = [
                {"functionDeclarations": [tool.as_function_declaration() for tool in tools]}
            ]
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
        return await self._send_streaming(url, headers=headers, payload=payload, parser=_iter_candidate_units)
