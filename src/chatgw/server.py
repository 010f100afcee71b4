import asyncio
import logging
import os
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Literal, TypeVar

from typing_extensions import TypedDict

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .attempt_log import AttemptLog
from .config import GatewaySettings, load_config
from .context import build_context_bundle
from .gate import AccessGate, GateDecision
from .metrics import PROM_CONTENT_TYPE, AttemptMetrics
from .orchestrator import FallbackOrchestrator, GatewayResult
from .providers import ProviderRegistry
from .tools import build_tool_executor
from .types import ChatRequest, ContextBundle, ToolExecutor

logger = logging.getLogger(__name__)

app = FastAPI(title="chat-gateway")

CONFIG_DIR = os.environ.get(
    "CHATGW_CONFIG_DIR",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config"),
)

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

TEXT_STREAM_CONTENT_TYPE = "text/plain; charset=utf-8"
SERVICE_UNAVAILABLE_STATUS = 503
CLIENT_CLOSED_REQUEST_STATUS = 499
SERVICE_UNAVAILABLE_MESSAGE = (
    "AI services are currently overloaded or unavailable. Please try again later."
)
DISCONNECT_POLL_INTERVAL = 0.25


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


USE_DUMMY: bool = _env_var_as_bool("CHATGW_USE_DUMMY")
DEFAULT_RETRY_AFTER_SECONDS = int(os.environ.get("CHATGW_RETRY_AFTER_SECONDS", "30"))
INBOUND_API_KEYS = frozenset(_parse_env_list(os.environ.get("CHATGW_INBOUND_API_KEYS", "")))
API_KEY_HEADER = os.environ.get("CHATGW_API_KEY_HEADER", "x-api-key")
ALLOWED_ORIGINS = _parse_env_list(os.environ.get("CHATGW_CORS_ALLOW_ORIGINS", ""))


class ErrorCode(str, Enum):
    INVALID_API_KEY = "invalid_api_key"
    RATE_LIMIT = "rate_limit"
    INVALID_REQUEST = "invalid_request"
    SERVICE_UNAVAILABLE = "service_unavailable"


class _HealthPayload(TypedDict):
    status: Literal["ok"]
    candidates: list[str]
    deadline_s: float
    providers: list[str]


class ClientDisconnected(Exception):
    """The caller went away before any candidate produced output."""


ContextProducer = Callable[[GatewaySettings, ToolExecutor | None], ContextBundle]

cfg = load_config(CONFIG_DIR, use_dummy=USE_DUMMY)
providers = ProviderRegistry(cfg.providers)
gate = AccessGate(
    api_keys=INBOUND_API_KEYS,
    api_key_header=API_KEY_HEADER,
    rate_limit=cfg.gateway.rate_limit,
)
attempt_log = AttemptLog(cfg.gateway.attempt_log_path, AttemptMetrics())
tool_executor: ToolExecutor | None = build_tool_executor(cfg.gateway.tools)
context_producer: ContextProducer = build_context_bundle

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _make_error_body(
    *,
    message: str,
    code: ErrorCode | str,
    details: list[str] | None = None,
    retry_after: int | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "message": message,
        "code": code.value if isinstance(code, ErrorCode) else str(code),
    }
    if details is not None:
        payload["details"] = details
    if retry_after is not None:
        payload["retry_after"] = retry_after
    return {"error": payload}


def _gate_response(decision: GateDecision, *, req_id: str) -> JSONResponse:
    headers = {"x-chatgw-request-id": req_id}
    if decision.retry_after is not None:
        headers["Retry-After"] = str(decision.retry_after)
    if decision.reset_at is not None:
        headers["X-RateLimit-Reset"] = str(int(decision.reset_at * 1000))
    body = _make_error_body(
        message=decision.message or "request denied",
        code=decision.code or ErrorCode.INVALID_API_KEY,
        retry_after=decision.retry_after,
    )
    return JSONResponse(body, status_code=decision.status, headers=headers)


def _build_orchestrator() -> FallbackOrchestrator:
    settings = cfg.gateway
    return FallbackOrchestrator(
        providers,
        settings.candidates,
        deadline_s=settings.deadline_s,
        defaults=settings.defaults,
        attempt_log=attempt_log,
    )


T = TypeVar("T")


async def _run_until_disconnect(req: Request, work: Awaitable[T]) -> T:
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await req.is_disconnected():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"error": "invalid request", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


@app.get("/healthz")
async def healthz() -> _HealthPayload:
    return {
        "status": "ok",
        "candidates": list(cfg.gateway.candidates),
        "deadline_s": cfg.gateway.deadline_s,
        "providers": sorted(cfg.providers),
    }


@app.get("/metrics")
async def metrics_endpoint(req: Request) -> Response:
    decision = gate.check_api_key(req.headers)
    if not decision.allowed:
        return _gate_response(decision, req_id=str(uuid.uuid4()))
    return Response(attempt_log.metrics.render(), media_type=PROM_CONTENT_TYPE)


@app.post("/api/chat")
async def chat(req: Request, body: ChatRequest) -> Response:
    req_id = str(uuid.uuid4())
    decision = gate.check(req.headers)
    if not decision.allowed:
        logger.info(f"chat.denied req_id={req_id} status={decision.status}")
        return _gate_response(decision, req_id=req_id)

    bundle = context_producer(cfg.gateway, tool_executor)
    messages = [message.model_dump(mode="json") for message in body.messages]
    orchestrator = _build_orchestrator()
    try:
        result: GatewayResult = await _run_until_disconnect(
            req, orchestrator.run(bundle, messages, req_id=req_id)
        )
    except ClientDisconnected:
        logger.info(f"chat.client_disconnected req_id={req_id}")
        return Response(status_code=CLIENT_CLOSED_REQUEST_STATUS)

    headers = {"x-chatgw-request-id": req_id}
    if result.stream is not None:
        return StreamingResponse(result.stream, media_type=TEXT_STREAM_CONTENT_TYPE, headers=headers)

    headers["Retry-After"] = str(DEFAULT_RETRY_AFTER_SECONDS)
    error_body = _make_error_body(
        message=SERVICE_UNAVAILABLE_MESSAGE,
        code=ErrorCode.SERVICE_UNAVAILABLE,
        details=list(result.dossier),
    )
    return JSONResponse(error_body, status_code=SERVICE_UNAVAILABLE_STATUS, headers=headers)


def run() -> None:
    import uvicorn

    uvicorn.run(
        "src.chatgw.server:app",
        host=os.environ.get("CHATGW_HOST", "0.0.0.0"),
        port=int(os.environ.get("CHATGW_PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    run()
