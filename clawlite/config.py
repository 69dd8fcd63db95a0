"""Bot configuration: defaults, validation and JSON persistence."""

from __future__ import annotations

import copy
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

PROVIDER_OPENAI = "openai"
PROVIDER_MINIMAX = "minimax"
PROVIDER_GLM = "glm"
PROVIDER_CUSTOM = "custom"

_BASE_URLS = {
    PROVIDER_OPENAI: "https://api.openai.com/v1",
    PROVIDER_MINIMAX: "https://api.minimaxi.com/v1",
    PROVIDER_GLM: "https://open.bigmodel.cn/api/paas/v4",
    PROVIDER_CUSTOM: "",
}

_RUNTIME_DEFAULTS = {
    "workers": 4,
    "queue_size": 64,
    "poll_timeout_second": 25,
    "request_timeout_sec": 60,
    "health_port": 18080,
    "restart_backoff_ms": 1000,
    "restart_max_ms": 30000,
}
_OPTIONAL_KEYS = frozenset({
    "provider", "system_prompt", "data_dir", "history_turns", "agent_retry_count",
    "skills_source_dir", "skills_install_dir", "codex_proxy_url",
    "codex_proxy_token", "codex_proxy_timeout_sec", "codex_first_default",
})

DEFAULT_TASK_SYSTEM_PROMPT = """You are ClawLite, a pragmatic task assistant.
Be concise, factual, and action-oriented.
When external information is required, you may request exactly one tool call per response with this strict format:
TOOL_CALL {"name":"web_search","query":"...","recency_days":7,"max_results":5}
or
TOOL_CALL {"name":"http_get","url":"https://..."}
or
TOOL_CALL {"name":"skill_install","skill":"weather"}
or
TOOL_CALL {"name":"skill_list"}
or
TOOL_CALL {"name":"skill_read","skill":"weather","max_bytes":4000}
or
TOOL_CALL {"name":"skill_run","skill":"weather","script":"scripts/run.py","input":"..."}
or
TOOL_CALL {"name":"docker_ps"}
or
TOOL_CALL {"name":"docker_ps","all":true}
or
TOOL_CALL {"name":"stock_price","query":"NVDA"}
You may perform multiple tool-call rounds when needed.
For web_search, prefer recency_days for freshness control and include citeable sources from tool output in your final answer.
When the user asks stock price/quote, prefer stock_price.
If stock_price is unavailable, use web_search for the latest quote context.
When the user asks about current host/container deployment status, prefer docker_ps instead of giving shell commands.
After tool output is provided, return the final answer directly without another tool call."""


class ConfigError(ValueError):
    """Raised when a configuration cannot be parsed or is invalid."""


@dataclass
class TelegramConfig:
    bot_token: str = ""


@dataclass
class AgentConfig:
    provider: str = ""
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    system_prompt: str = ""


@dataclass
class RuntimeConfig:
    workers: int = 0
    queue_size: int = 0
    poll_timeout_second: int = 0
    request_timeout_sec: int = 0
    health_port: int = 0
    restart_backoff_ms: int = 0
    restart_max_ms: int = 0
    data_dir: str = ""
    history_turns: int = 0
    agent_retry_count: int = 0
    skills_source_dir: str = ""
    skills_install_dir: str = ""
    codex_proxy_url: str = ""
    codex_proxy_token: str = ""
    codex_proxy_timeout_sec: int = 0
    codex_first_default: bool = False


def _build(cls: type, data: Any, name: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"parse config: {name} must be an object")
    return cls(**{f.name: data[f.name] for f in fields(cls) if data.get(f.name) is not None})


@dataclass
class Config:
    """Complete bot configuration."""

    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    def apply_defaults(self) -> None:
        """Fill unset fields with their defaults, in place."""
        agent, rt = self.agent, self.runtime
        agent.provider = normalize_provider(agent.provider)
        if not agent.base_url.strip():
            agent.base_url = default_base_url_for_provider(agent.provider)
        if not agent.system_prompt.strip():
            agent.system_prompt = DEFAULT_TASK_SYSTEM_PROMPT
        for key, default in _RUNTIME_DEFAULTS.items():
            if getattr(rt, key) <= 0:
                setattr(rt, key, default)
        if not rt.data_dir.strip():
            rt.data_dir = "data"
        if rt.history_turns <= 0:
            rt.history_turns = 8
        if rt.agent_retry_count <= 0:
            rt.agent_retry_count = 2
        if not rt.skills_install_dir.strip():
            rt.skills_install_dir = os.path.join(rt.data_dir, "skills")
        if not rt.skills_source_dir.strip():
            rt.skills_source_dir = "openclaw-skills"
        if rt.codex_proxy_timeout_sec <= 0:
            rt.codex_proxy_timeout_sec = 120

    def validate(self) -> None:
        """Raise ConfigError if the configuration is not usable."""
        agent, rt = self.agent, self.runtime
        if not is_supported_provider(normalize_provider(agent.provider)):
            raise ConfigError(
                f"invalid config: unsupported agent.provider {json.dumps(agent.provider)}"
            )
        required = {
            "telegram.bot_token": self.telegram.bot_token,
            "agent.base_url": agent.base_url,
            "agent.api_key": agent.api_key,
            "agent.model": agent.model,
        }
        missing = [name for name, value in required.items() if not value.strip()]
        if missing:
            raise ConfigError("invalid config: missing required fields: " + ", ".join(missing))
        checks = (
            (0 <= rt.health_port <= 65535, "runtime.health_port must be 0-65535"),
            (rt.restart_backoff_ms > 0, "runtime.restart_backoff_ms must be > 0"),
            (rt.restart_max_ms >= rt.restart_backoff_ms,
             "runtime.restart_max_ms must be >= runtime.restart_backoff_ms"),
            (rt.data_dir.strip(), "runtime.data_dir is required"),
            (rt.history_turns > 0, "runtime.history_turns must be > 0"),
            (rt.agent_retry_count > 0, "runtime.agent_retry_count must be > 0"),
            (rt.skills_source_dir.strip(), "runtime.skills_source_dir is required"),
            (rt.skills_install_dir.strip(), "runtime.skills_install_dir is required"),
            (rt.codex_proxy_timeout_sec > 0, "runtime.codex_proxy_timeout_sec must be > 0"),
            (not rt.codex_proxy_url.strip() or _is_http_url(rt.codex_proxy_url.strip()),
             "runtime.codex_proxy_url must be a valid http/https url"),
        )
        for ok, message in checks:
            if not ok:
                raise ConfigError("invalid config: " + message)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; empty optional fields are left out."""
        return {
            section: {k: v for k, v in values.items() if v or k not in _OPTIONAL_KEYS}
            for section, values in asdict(self).items()
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Build a config from its JSON form; unknown keys are ignored."""
        if not isinstance(data, dict):
            raise ConfigError("parse config: top level must be an object")
        return cls(
            telegram=_build(TelegramConfig, data.get("telegram"), "telegram"),
            agent=_build(AgentConfig, data.get("agent"), "agent"),
            runtime=_build(RuntimeConfig, data.get("runtime"), "runtime"),
        )


def _is_http_url(raw: str) -> bool:
    try:
        parsed = urlsplit(raw)
    except ValueError:
        return False
    host = parsed.netloc.rpartition("@")[2]
    return parsed.scheme in ("http", "https") and bool(host.strip())


def normalize_provider(raw: str) -> str:
    """Lower-case the provider name; empty means openai."""
    return raw.strip().lower() or PROVIDER_OPENAI


def is_supported_provider(provider: str) -> bool:
    """Tell whether the normalised provider name is known."""
    return provider in _BASE_URLS


def default_base_url_for_provider(provider: str) -> str:
    """Return the API base URL used when none is configured."""
    return _BASE_URLS.get(provider, _BASE_URLS[PROVIDER_OPENAI])


def load(path: str | os.PathLike) -> Config:
    """Read, default and validate a configuration file."""
    text = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"parse config: {exc}") from exc
    cfg = Config.from_dict(data)
    cfg.apply_defaults()
    cfg.validate()
    return cfg


def save(path: str | os.PathLike, cfg: Config) -> None:
    """Default, validate and write a configuration file; cfg is left untouched."""
    cfg = copy.deepcopy(cfg)
    cfg.apply_defaults()
    cfg.validate()
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(cfg.to_dict(), indent=2, ensure_ascii=False) + "\n"
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(text)