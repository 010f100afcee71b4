import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, List

import httpx

from ..config import ProviderDef
from ..types import ToolCall, ToolDeclaration, ToolExecutor

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT_S = 10.0
MAX_TOOL_ROUNDS = 4

LineParser = Callable[[AsyncIterator[str]], AsyncIterator["str | ToolCall"]]
TurnOpener = Callable[[List[dict[str, Any]]], Awaitable[Any]]


class ToolCallError(RuntimeError):
    """The model asked for tools the gateway cannot service."""


class UpstreamStream:
    """Live reply of one upstream call, iterated as text units and tool calls.

    Owns both the streamed ``httpx.Response`` and the client that produced it;
    ``aclose`` releases both and is safe to call more than once.
    """

    def __init__(
        self,
        response: httpx.Response,
        client: httpx.AsyncClient,
        parser: LineParser,
    ) -> None:
        self.response = response
        self._client = client
        self._units = parser(response.aiter_lines())
        self._closed = False

    def __aiter__(self) -> "UpstreamStream":
        return self

    async def __anext__(self) -> "str | ToolCall":
        return await self._units.__anext__()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._units, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            try:
                await self.response.aclose()
            finally:
                await self._client.aclose()


class ToolLoopStream:
    """Text of a reply, with requested tool calls serviced between turns.

    Tool calls emitted during a turn are collected until the turn ends. They
    are then run through the executor, the call and its result are appended to
    the conversation and the next turn is opened. Only text is yielded.
    """

    def __init__(
        self,
        stream: Any,
        conversation: List[dict[str, Any]],
        open_turn: TurnOpener,
        *,
        executor: ToolExecutor | None,
        max_rounds: int = MAX_TOOL_ROUNDS,
    ) -> None:
        self._stream = stream
        self.conversation = conversation
        self._open_turn = open_turn
        self._executor = executor
        self._max_rounds = max_rounds
        self._pending: list[ToolCall] = []
        self._closed = False
        self.rounds = 0

    def __aiter__(self) -> "ToolLoopStream":
        return self

    async def __anext__(self) -> str:
        while True:
            try:
                unit = await self._stream.__anext__()
            except StopAsyncIteration:
                if not self._pending:
                    raise
                await self._run_tools()
                continue
            if isinstance(unit, ToolCall):
                self._pending.append(unit)
                continue
            return unit

    async def _run_tools(self) -> None:
        calls, self._pending = self._pending, []
        if self._executor is None:
            raise ToolCallError(f"model requested tool '{calls[0].name}' but no tool executor is configured")
        if self.rounds >= self._max_rounds:
            raise ToolCallError(f"model still requesting tools after {self._max_rounds} rounds")
        self.rounds += 1
        await self._stream.aclose()
        self.conversation.append({"role": "assistant", "content": "", "tool_calls": list(calls)})
        for call in calls:
            result = await self._execute(self._executor, call)
            self.conversation.append({"role": "tool", "tool_call": call, "content": result})
        self._stream = await self._open_turn(self.conversation)

    async def _execute(self, executor: ToolExecutor, call: ToolCall) -> Any:
        try:
            return await executor(call.name, call.arguments)
        except Exception as exc:  # noqa: BLE001 - the model receives the failure as the tool result
            detail = str(exc) or type(exc).__name__
            logger.warning(f"tool.failed name={call.name} detail={detail}")
            return {"error": detail}

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stream.aclose()


def tool_result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def parse_tool_arguments(name: str, raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise ToolCallError(f"malformed arguments for tool '{name}'") from exc
    if not isinstance(parsed, dict):
        raise ToolCallError(f"arguments for tool '{name}' are not an object")
    return parsed


class BaseProvider:
    def __init__(self, defn: ProviderDef):
        self.defn = defn
        self.model = defn.model

    async def open_stream(
        self,
        messages: List[dict[str, Any]],
        *,
        system: str | None = None,
        tools: tuple[ToolDeclaration, ...] = (),
        temperature: float = 0.2,
        max_tokens: int = 2048,
        tool_executor: ToolExecutor | None = None,
    ) -> ToolLoopStream:
        async def open_turn(conversation: List[dict[str, Any]]) -> Any:
            return await self._open_turn(
                conversation,
                system=system,
                tools=tools,
                temperature=temperature,
                max_tokens=max_tokens,
            )

        conversation = list(messages)
        stream = await open_turn(conversation)
        return ToolLoopStream(stream, conversation, open_turn, executor=tool_executor)

    async def _open_turn(
        self,
        messages: List[dict[str, Any]],
        *,
        system: str | None,
        tools: tuple[ToolDeclaration, ...],
        temperature: float,
        max_tokens: int,
    ) -> Any:
        raise NotImplementedError

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.defn.timeout_s, connect=_CONNECT_TIMEOUT_S)

    def _api_key(self) -> str:
        auth_env = self.defn.auth_env
        if not auth_env:
            return ""
        return os.environ.get(auth_env, "")

    async def _send_streaming(
        self,
        url: str,
        *,
        headers: dict[str, str],
        payload: dict[str, Any],
        parser: LineParser,
    ) -> UpstreamStream:
        client = httpx.AsyncClient(timeout=self._timeout())
        try:
            request = client.build_request("POST", url, headers=headers, json=payload)
            response = await client.send(request, stream=True)
        except BaseException:
            await client.aclose()
            raise
        if response.is_error:
            try:
                await response.aread()
                response.raise_for_status()
            finally:
                await response.aclose()
                await client.aclose()
        return UpstreamStream(response, client, parser)


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield the JSON objects carried by ``data:`` frames of an SSE body."""
    data_lines: list[str] = []
    async for raw_line in lines:
        if raw_line is None:
            continue
        line = raw_line.strip("\r")
        if line == "":
            if not data_lines:
                continue
            data_text = "\n".join(data_lines)
            data_lines.clear()
            if data_text == "[DONE]":
                return
            try:
                parsed = json.loads(data_text)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                yield parsed
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        data_text = "\n".join(data_lines)
        if data_text and data_text != "[DONE]":
            try:
                parsed = json.loads(data_text)
            except json.JSONDecodeError:
                return
            if isinstance(parsed, dict):
                yield parsed


def raise_for_stream_error(payload: dict[str, Any]) -> None:
    error = payload.get("error")
    if error is None:
        return
    if isinstance(error, dict):
        message = error.get("message") or json.dumps(error)
    else:
        message = str(error)
    raise RuntimeError(f"upstream stream error: {message}")


class ScriptedStream:
    """In-memory stand-in for ``UpstreamStream`` used by the dummy provider."""

    def __init__(self, chunks: tuple[str, ...], *, delay_s: float = 0.0) -> None:
        self._chunks = list(chunks)
        self._delay_s = delay_s
        self.closed = False

    def __aiter__(self) -> "ScriptedStream":
        return self

    async def __anext__(self) -> str:
        if self.closed or not self._chunks:
            raise StopAsyncIteration
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        return self._chunks.pop(0)

    async def aclose(self) -> None:
        self.closed = True


class DummyProvider(BaseProvider):
    async def _open_turn(
        self,
        messages: List[dict[str, Any]],
        *,
        system: str | None,
        tools: tuple[ToolDeclaration, ...],
        temperature: float,
        max_tokens: int,
    ) -> ScriptedStream:
        _ = system
        _ = tools
        _ = temperature
        _ = max_tokens
        if self.defn.script:
            return ScriptedStream(self.defn.script)
        last_user = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "ping")
        return ScriptedStream((f"dummy:{last_user}",))


from .gemini import GeminiProvider  # noqa: E402
from .ollama import OllamaProvider  # noqa: E402
from .openai import OpenAICompatProvider  # noqa: E402


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, type[BaseProvider]] = {
        "openai": OpenAICompatProvider,
        "gemini": GeminiProvider,
        "ollama": OllamaProvider,
        "dummy": DummyProvider,
    }

    def __init__(self, providers: Dict[str, ProviderDef]):
        self.providers: dict[str, BaseProvider] = {}
        for name, d in providers.items():
            provider_type = (d.type or "").strip()
            factory = self._PROVIDER_FACTORIES.get(provider_type)
            if factory is None:
                display_type = provider_type or "<missing>"
                raise ValueError(
                    f"Unknown provider type '{display_type}' for provider '{name}'"
                )
            self.providers[name] = factory(d)

    def get(self, name: str) -> BaseProvider:
        return self.providers[name]


__all__ = [
    "UpstreamStream",
    "ScriptedStream",
    "ToolLoopStream",
    "ToolCallError",
    "MAX_TOOL_ROUNDS",
    "BaseProvider",
    "OpenAICompatProvider",
    "GeminiProvider",
    "OllamaProvider",
    "DummyProvider",
    "ProviderRegistry",
    "iter_sse_data",
]
