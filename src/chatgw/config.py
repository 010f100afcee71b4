import os
from dataclasses import dataclass, field
from typing import Any, Dict, Literal

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised on Python 3.10
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError, field_validator

DEFAULT_ATTEMPT_LOG_PATH = os.path.join("logs", "chat-attempts.jsonl")


@dataclass
class ProviderDef:
    name: str
    type: str
    base_url: str
    model: str
    auth_env: str | None
    timeout_s: float = 120.0
    script: tuple[str, ...] = ()


@dataclass(frozen=True)
class GatewayDefaults:
    temperature: float
    max_tokens: int


@dataclass(frozen=True)
class RateLimitSettings:
    max_requests: int
    window_s: float


@dataclass(frozen=True)
class ToolEndpointSettings:
    endpoint: str
    timeout_s: float = 10.0
    auth_env: str | None = None


@dataclass(frozen=True)
class GatewaySettings:
    candidates: tuple[str, ...]
    deadline_s: float
    defaults: GatewayDefaults
    rate_limit: RateLimitSettings
    attempt_log_path: str
    system_prompt: str | None = None
    tools: ToolEndpointSettings | None = None


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    gateway: GatewaySettings
    config_dir: str = ""
    watch_paths: tuple[str, ...] = field(default_factory=tuple)


class _ProviderModel(BaseModel):
    type: Literal["openai", "gemini", "ollama", "dummy"] = "openai"
    base_url: str = ""
    model: str = ""
    auth_env: str | None = None
    timeout_s: PositiveFloat = Field(default=120.0)
    script: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class _DefaultsModel(BaseModel):
    temperature: float = Field(default=0.2, ge=0.0)
    max_tokens: int = Field(default=2048, ge=1)

    model_config = ConfigDict(extra="forbid")


class _RateLimitModel(BaseModel):
    max_requests: PositiveInt = Field(default=10)
    window_s: PositiveFloat = Field(default=60.0)

    model_config = ConfigDict(extra="forbid")


class _AttemptLogModel(BaseModel):
    path: str = Field(default=DEFAULT_ATTEMPT_LOG_PATH)

    model_config = ConfigDict(extra="forbid")


class _ToolsModel(BaseModel):
    endpoint: str = Field(min_length=1)
    timeout_s: PositiveFloat = Field(default=10.0)
    auth_env: str | None = None

    model_config = ConfigDict(extra="forbid")


class _GatewayModel(BaseModel):
    candidates: list[str]
    deadline_s: PositiveFloat = Field(default=30.0)
    defaults: _DefaultsModel = Field(default_factory=_DefaultsModel)
    rate_limit: _RateLimitModel = Field(default_factory=_RateLimitModel)
    attempt_log: _AttemptLogModel = Field(default_factory=_AttemptLogModel)
    system_prompt: str | None = None
    tools: _ToolsModel | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("candidates", mode="before")
    @classmethod
    def _normalize_candidates(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [str(item).strip() for item in value]
        return value

    @field_validator("candidates")
    @classmethod
    def _check_candidates(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one candidate is required")
        if any(not item for item in value):
            raise ValueError("candidate names must be non-empty")
        seen: set[str] = set()
        duplicates: list[str] = []
        for item in value:
            if item in seen:
                duplicates.append(item)
            seen.add(item)
        if duplicates:
            raise ValueError(
                "duplicate candidates: {names}".format(names=", ".join(sorted(set(duplicates))))
            )
        return value


def _format_validation_error(exc: ValidationError, *, prefix: str = "") -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        if prefix:
            location = f"{prefix} -> {location}"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def _load_providers(path: str) -> Dict[str, ProviderDef]:
    with open(path, "rb") as f:
        prov_data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {}
    for name, raw in prov_data.items():
        if not isinstance(raw, dict):
            raise ValueError(f"Provider '{name}' must be a table")
        try:
            parsed = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            raise ValueError(_format_validation_error(exc, prefix=name)) from exc
        providers[name] = ProviderDef(
            name=name,
            type=parsed.type,
            base_url=parsed.base_url,
            model=parsed.model or name,
            auth_env=parsed.auth_env,
            timeout_s=float(parsed.timeout_s),
            script=tuple(parsed.script),
        )
    return providers


def load_config(config_dir: str, use_dummy: bool = False) -> LoadedConfig:
    prov_path = os.path.join(config_dir, "providers.dummy.toml" if use_dummy else "providers.toml")
    providers = _load_providers(prov_path)
    gateway_path = os.path.join(config_dir, "gateway.yaml")
    with open(gateway_path, "r", encoding="utf-8") as f:
        gdata: Any = yaml.safe_load(f) or {}
    try:
        parsed = _GatewayModel.model_validate(gdata)
    except ValidationError as exc:
        raise ValueError(_format_validation_error(exc)) from exc
    log_path = parsed.attempt_log.path
    if not os.path.isabs(log_path):
        log_path = os.path.normpath(os.path.join(config_dir, "..", log_path))
    settings = GatewaySettings(
        candidates=tuple(parsed.candidates),
        deadline_s=float(parsed.deadline_s),
        defaults=GatewayDefaults(
            temperature=float(parsed.defaults.temperature),
            max_tokens=int(parsed.defaults.max_tokens),
        ),
        rate_limit=RateLimitSettings(
            max_requests=int(parsed.rate_limit.max_requests),
            window_s=float(parsed.rate_limit.window_s),
        ),
        attempt_log_path=log_path,
        system_prompt=parsed.system_prompt,
        tools=(
            ToolEndpointSettings(
                endpoint=parsed.tools.endpoint,
                timeout_s=float(parsed.tools.timeout_s),
                auth_env=parsed.tools.auth_env,
            )
            if parsed.tools is not None
            else None
        ),
    )
    validate_gateway_config(settings, providers)
    return LoadedConfig(
        providers=providers,
        gateway=settings,
        config_dir=config_dir,
        watch_paths=(prov_path, gateway_path),
    )


def validate_gateway_config(settings: GatewaySettings, providers: Dict[str, ProviderDef]) -> None:
    if not settings.candidates:
        raise ValueError("Gateway must specify at least one candidate")
    for candidate in settings.candidates:
        if candidate not in providers:
            available = ", ".join(sorted(providers)) or "<none>"
            raise ValueError(
                "Candidate '{candidate}' references undefined provider. Available providers: {available}".format(
                    candidate=candidate,
                    available=available,
                )
            )
