"""HTTP chat endpoint that answers messages by running the codex CLI."""

from __future__ import annotations

import hashlib
import json
import os
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from clawlite.audit import AuditLog, AuditRecord
from clawlite.policy import Policy
from clawlite.research import SearchResult, WebResearcher, needs_explicit_research

DEFAULT_LISTEN_ADDR = "127.0.0.1:8099"
DEFAULT_TIMEOUT = 600.0
MAX_PROMPT_CHARS = 16000
MAX_TURNS_KEPT = 12
RESEARCH_RECENCY_DAYS = 7
RESEARCH_MAX_RESULTS = 5

_GOAL_PREFIX = "[goal:"
_BEARER_PREFIX = "Bearer "
_REPLY_KEYS = ("reply", "output", "text", "message")
_AGENT_MESSAGE_KEYS = ("text", "message", "output", "reply")


class ProxyError(Exception):
    """Raised when a chat request cannot be answered."""


class _Executor(Protocol):
    def run(self, workdir: str, args: Sequence[str]) -> bytes: ...


class _Researcher(Protocol):
    def research(
        self, query: str, recency_days: int, max_results: int
    ) -> list[SearchResult]: ...


@dataclass
class ServerConfig:
    """Settings for a CodexProxyServer."""

    work_dir: str = ""
    state_dir: str = ""
    auth_token: str = ""
    codex_bin: str = "codex"
    model: str = ""
    timeout: float = 0.0
    danger_full_access: bool = False
    executor: Optional[_Executor] = None
    researcher: Optional[_Researcher] = None
    audit_log: Optional[AuditLog] = None
    policy: Policy = field(default_factory=Policy)


class CLIExecutor:
    """Runs the codex binary and returns its combined stdout and stderr."""

    def __init__(self, binary: str = "codex", model: str = "", timeout: float = 0) -> None:
        self.binary = binary.strip() or "codex"
        self.model = model.strip()
        self.timeout = timeout if timeout and timeout > 0 else DEFAULT_TIMEOUT

    def run(self, workdir: str, args: Sequence[str]) -> bytes:
        """Run the binary in workdir; a non-zero exit raises ProxyError."""
        try:
            completed = subprocess.run(
                [self.binary, *args],
                cwd=workdir or None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProxyError(f"timed out after {self.timeout:g}s") from exc
        except OSError as exc:
            raise ProxyError(str(exc)) from exc
        if completed.returncode != 0:
            raise ProxyError(f"exit status {completed.returncode}")
        return completed.stdout


class LockedExecutor:
    """Serialises runs of another executor."""

    def __init__(self, inner: _Executor) -> None:
        self.inner = inner
        self._lock = threading.Lock()

    def run(self, workdir: str, args: Sequence[str]) -> bytes:
        """Run the wrapped executor while holding the lock."""
        with self._lock:
            return self.inner.run(workdir, args)


class CodexProxyServer:
    """WSGI application serving POST /chat and keeping per-chat transcripts."""

    def __init__(self, config: Optional[ServerConfig] = None) -> None:
        cfg = config if config is not None else ServerConfig()
        self.workdir = cfg.work_dir.strip() or "."
        self.state_dir = cfg.state_dir.strip() or os.path.join(self.workdir, ".codexproxy")
        self.token = cfg.auth_token.strip()
        self.model = cfg.model.strip()
        self.danger_full_access = cfg.danger_full_access
        self.executor: _Executor = (
            cfg.executor
            if cfg.executor is not None
            else CLIExecutor(cfg.codex_bin, cfg.model, cfg.timeout)
        )
        self.researcher: _Researcher = (
            cfg.researcher if cfg.researcher is not None else WebResearcher()
        )
        self.audit = cfg.audit_log if cfg.audit_log is not None else AuditLog(self.state_dir)
        self.policy = Policy(
            danger_full_access=cfg.danger_full_access or cfg.policy.danger_full_access,
            require_confirm=cfg.policy.require_confirm,
        )

    @property
    def execution_mode(self) -> str:
        return "danger-full-access" if self.danger_full_access else "full-auto"

    def chat(self, chat_id: int, message: str) -> str:
        """Answer one message for a chat and record it in the transcript."""
        turns = self._load_turns(chat_id)
        goal_id, prompt_message = extract_goal_id(message)

        decision = self.policy.evaluate(prompt_message)
        if decision.requires_confirmation:
            raise ProxyError("host-critical request requires explicit confirmation")
        if not decision.allowed:
            raise ProxyError(
                f"request blocked by execution policy ({decision.risk.value})"
            )

        research = self._run_research(prompt_message)
        prompt = build_prompt(turns, prompt_message, research)
        args = build_exec_args(self.model, prompt, self.danger_full_access)
        try:
            output = self.executor.run(self.workdir, args)
        except Exception as exc:
            self._record(chat_id, goal_id, message, prompt, "")
            raise ProxyError(f"codex exec failed: {exc}") from exc

        reply = parse_reply(output)
        if not reply.strip():
            self._record(chat_id, goal_id, message, prompt, "")
            raise ProxyError("codex returned empty reply")

        turns = [
            *turns,
            {"role": "user", "content": prompt_message},
            {"role": "assistant", "content": reply},
        ]
        self._save_turns(chat_id, turns)
        self._record(chat_id, goal_id, message, prompt, reply)
        return reply

    def __call__(
        self, environ: Mapping[str, Any], start_response: Callable[..., Any]
    ) -> Iterable[bytes]:
        status, headers, body = self._handle(environ)
        start_response(status, headers)
        return [body]

    def _handle(self, environ: Mapping[str, Any]) -> tuple[str, list[tuple[str, str]], bytes]:
        if environ.get("PATH_INFO", "") != "/chat":
            return _text_response(HTTPStatus.NOT_FOUND, "404 page not found")
        if environ.get("REQUEST_METHOD", "GET").upper() != "POST":
            return _text_response(HTTPStatus.METHOD_NOT_ALLOWED, "method not allowed")
        if self.token and not valid_bearer_token(
            environ.get("HTTP_AUTHORIZATION", ""), self.token
        ):
            return _text_response(HTTPStatus.UNAUTHORIZED, "unauthorized")

        try:
            chat_id, message = _decode_request(_read_body(environ))
        except ValueError:
            return _text_response(HTTPStatus.BAD_REQUEST, "invalid json body")
        message = message.strip()
        if chat_id == 0 or not message:
            return _text_response(
                HTTPStatus.BAD_REQUEST, "chat_id and message are required"
            )

        try:
            reply = self.chat(chat_id, message)
        except ProxyError as exc:
            return _text_response(HTTPStatus.BAD_GATEWAY, str(exc))

        body = (json.dumps({"reply": reply}, ensure_ascii=False) + "\n").encode("utf-8")
        return (
            _status_line(HTTPStatus.OK),
            [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
            body,
        )

    def _run_research(self, message: str) -> list[SearchResult]:
        if self.researcher is None or not needs_explicit_research(message):
            return []
        try:
            return list(
                self.researcher.research(
                    message, RESEARCH_RECENCY_DAYS, RESEARCH_MAX_RESULTS
                )
                or []
            )
        except Exception:
            return []

    def _record(
        self, chat_id: int, goal_id: str, raw_message: str, prompt: str, reply: str
    ) -> None:
        record = AuditRecord(
            timestamp=datetime.now(timezone.utc),
            chat_id=chat_id,
            goal_id=goal_id.strip(),
            raw_user_message=raw_message.strip(),
            prompt_hash=hash_prompt(prompt),
            final_reply=reply.strip(),
            execution_mode=self.execution_mode,
        )
        try:
            self.audit.append(record)
        except OSError:
            pass

    def _turns_path(self, chat_id: int) -> Path:
        return Path(self.state_dir) / f"{chat_id}.json"

    def _load_turns(self, chat_id: int) -> list[dict[str, str]]:
        try:
            text = self._turns_path(chat_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as exc:
            raise ProxyError(f"read proxy chat state: {exc}") from exc
        try:
            return _decode_turns(json.loads(text))
        except ValueError as exc:
            raise ProxyError(f"decode proxy chat state: {exc}") from exc

    def _save_turns(self, chat_id: int, turns: list[dict[str, str]]) -> None:
        path = self._turns_path(chat_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ProxyError(f"create proxy state dir: {exc}") from exc
        try:
            path.write_text(json.dumps(turns, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as exc:
            raise ProxyError(f"write proxy chat state: {exc}") from exc


def _status_line(status: HTTPStatus) -> str:
    return f"{status.value} {status.phrase}"


def _text_response(
    status: HTTPStatus, message: str
) -> tuple[str, list[tuple[str, str]], bytes]:
    body = (message + "\n").encode("utf-8")
    headers = [
        ("Content-Type", "text/plain; charset=utf-8"),
        ("X-Content-Type-Options", "nosniff"),
        ("Content-Length", str(len(body))),
    ]
    return _status_line(status), headers, body


def _read_body(environ: Mapping[str, Any]) -> bytes:
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    stream = environ.get("wsgi.input")
    if stream is None or length <= 0:
        return b""
    return stream.read(length)


def _decode_request(raw: bytes) -> tuple[int, str]:
    text = raw.decode("utf-8").lstrip()
    payload, _ = json.JSONDecoder().raw_decode(text)
    if payload is None:
        return 0, ""
    if not isinstance(payload, dict):
        raise ValueError("request must be a JSON object")
    chat_id = payload.get("chat_id")
    if chat_id is None:
        chat_id = 0
    if isinstance(chat_id, bool) or not isinstance(chat_id, int):
        raise ValueError("chat_id must be an integer")
    message = payload.get("message")
    if message is None:
        message = ""
    if not isinstance(message, str):
        raise ValueError("message must be a string")
    return chat_id, message


def _decode_turns(payload: Any) -> list[dict[str, str]]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise ValueError("turns must be a JSON array")
    turns = []
    for item in payload:
        if item is None:
            item = {}
        if not isinstance(item, dict):
            raise ValueError("turn must be a JSON object")
        role = item.get("role") or ""
        content = item.get("content") or ""
        if not isinstance(role, str) or not isinstance(content, str):
            raise ValueError("turn fields must be strings")
        turns.append({"role": role, "content": content})
    return turns


def build_exec_args(model: str, prompt: str, danger_full_access: bool) -> list[str]:
    """Return the codex command-line arguments for one prompt."""
    args = ["exec", "--skip-git-repo-check"]
    if danger_full_access:
        args.append("--dangerously-bypass-approvals-and-sandbox")
    else:
        args.append("--full-auto")
    args.append("--json")
    if model.strip():
        args += ["-m", model.strip()]
    args.append(prompt)
    return args


def build_prompt(
    turns: Sequence[Mapping[str, str]],
    message: str,
    research_results: Sequence[SearchResult],
) -> str:
    """Compose the prompt from prior turns, research context and the new message."""
    wants_research = needs_explicit_research(message)
    if not turns and not research_results and not wants_research:
        return message.strip()

    lines = [
        "You are continuing the same Telegram conversation.",
        "Use prior context where it matters and answer the newest user message directly.",
    ]
    if wants_research:
        lines.append(
            "For current/latest/time-sensitive facts, use the explicit research path "
            "first and include sources in the final answer."
        )
    if research_results:
        lines += ["", "Research context:"]
        for number, result in enumerate(research_results, start=1):
            lines.append(f"{number}. {result.title.strip()}")
            lines.append("   URL: " + result.url.strip())
            if result.snippet.strip():
                lines.append("   Snippet: " + result.snippet.strip())
    if turns:
        lines += ["", "Conversation so far:"]
        for item in list(turns)[-MAX_TURNS_KEPT:]:
            role = item.get("role", "").strip().lower()
            label = "Assistant" if role == "assistant" else "User"
            lines.append(f"{label}: {item.get('content', '').strip()}")
    lines += ["", "New user message:", message.strip()]
    prompt = "\n".join(lines)
    return prompt[-MAX_PROMPT_CHARS:]


def parse_reply(data: bytes | str) -> str:
    """Return the last reply found in codex output, JSON events or plain lines."""
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    last = ""
    for line in text.strip().split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            last = line
            continue
        candidate = _extract_reply_candidate(payload)
        if candidate.strip():
            last = candidate.strip()
    return last.strip()


def _extract_reply_candidate(value: Any) -> str:
    if not isinstance(value, dict):
        return ""
    candidate = _first_non_empty_string(value, _REPLY_KEYS)
    if candidate:
        return candidate
    if _string_value(value.get("type")).lower() == "item.completed":
        item = value.get("item")
        if isinstance(item, dict) and _string_value(item.get("type")).lower() == "agent_message":
            return _first_non_empty_string(item, _AGENT_MESSAGE_KEYS)
    return ""


def _first_non_empty_string(obj: Mapping[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        value = _string_value(obj.get(key)).strip()
        if value:
            return value
    return ""


def _string_value(value: Any) -> str:
    return value if isinstance(value, str) else ""


def extract_goal_id(message: str) -> tuple[str, str]:
    """Split a leading "[goal:ID]" tag off a message; returns (goal_id, rest)."""
    text = message.strip()
    if not text.startswith(_GOAL_PREFIX):
        return "", text
    end = text.find("]")
    if end <= len(_GOAL_PREFIX):
        return "", text
    return text[len(_GOAL_PREFIX):end].strip(), text[end + 1:].strip()


def valid_bearer_token(header: str, expected: str) -> bool:
    """Check an Authorization header against the expected bearer token."""
    if not expected.strip():
        return True
    if not header.startswith(_BEARER_PREFIX):
        return False
    return header[len(_BEARER_PREFIX):].strip() == expected


def hash_prompt(prompt: str) -> str:
    """Return the hex SHA-256 of the prompt."""
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()


def default_listen_addr() -> str:
    """Return the address the proxy listens on by default."""
    return DEFAULT_LISTEN_ADDR