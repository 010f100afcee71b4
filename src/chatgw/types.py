from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Literal

from pydantic import BaseModel, ConfigDict, Field

MAX_MESSAGES = 200


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: List[ChatMessage] = Field(min_length=1, max_length=MAX_MESSAGES)


class AttemptOutcome(str, Enum):
    SUCCESS = "Success"
    TIMED_OUT_BEFORE_FIRST_BYTE = "TimedOutBeforeFirstByte"
    TIMED_OUT_DURING_STREAM_INIT = "TimedOutDuringStreamInit"
    EMPTY_STREAM = "EmptyStream"
    UPSTREAM_ERROR = "UpstreamError"
    MID_STREAM_ERROR = "MidStreamError"

    @property
    def eligible_for_fallback(self) -> bool:
        return self not in (AttemptOutcome.SUCCESS, AttemptOutcome.MID_STREAM_ERROR)


@dataclass
class Attempt:
    """One bounded trial of a single candidate.

    ``index`` is 1-based and only used for logging. ``outcome`` is set exactly
    once; a failed attempt is never retried in place.
    """

    candidate: str
    index: int
    started_at: float
    outcome: AttemptOutcome | None = None
    reason: str | None = None
    elapsed_ms: int = 0

    def resolve(self, outcome: AttemptOutcome, reason: str | None, now: float) -> None:
        if self.outcome is not None:
            raise RuntimeError(f"attempt {self.index} ({self.candidate}) already resolved")
        self.outcome = outcome
        self.reason = reason
        self.elapsed_ms = max(int((now - self.started_at) * 1000), 0)

    def dossier_line(self) -> str:
        outcome = self.outcome.value if self.outcome is not None else "Unknown"
        detail = f"{outcome}: {self.reason}" if self.reason else outcome
        return f"candidate {self.candidate} failed after {self.elapsed_ms}ms: {detail}"


@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str
    parameters: dict[str, Any]

    def as_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def as_function_declaration(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass(frozen=True)
class ToolCall:
    """A function call requested by the model instead of (or before) text.

    ``extra`` carries provider metadata that must be echoed back with the
    call, such as Gemini's ``thoughtSignature``.
    """

    id: str
    name: str
    arguments: dict[str, Any]
    extra: dict[str, Any] = field(default_factory=dict)


ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ContextBundle:
    system_prompt: str
    tools: tuple[ToolDeclaration, ...] = field(default_factory=tuple)
    tool_executor: ToolExecutor | None = None
