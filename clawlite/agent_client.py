"""Client for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any

from clawlite.config import AgentConfig

_ERROR_BODY_LIMIT = 4096


class AgentError(Exception):
    """Raised when the agent endpoint cannot produce a reply."""


class AgentClient:
    """Sends single-turn chat completion requests to a configured provider."""

    def __init__(self, cfg: AgentConfig, timeout: float = 60.0) -> None:
        self.base_url = cfg.base_url.rstrip("/")
        self.api_key = cfg.api_key.strip()
        self.model = cfg.model.strip()
        self.system_prompt = cfg.system_prompt.strip()
        self.timeout = timeout

    def generate_reply(self, user_text: str, model_override: str = "") -> str:
        """Ask the model to answer user_text and return the trimmed reply."""
        model = model_override.strip() or self.model
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": user_text})
        body = json.dumps(
            {"model": model, "messages": messages}, ensure_ascii=False
        ).encode("utf-8")

        request = urllib.request.Request(
            self.base_url + "/chat/completions",
            data=body,
            method="POST",
            headers={
                "Authorization": "Bearer " + self.api_key,
                "Content-Type": "application/json",
            },
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                if response.status != 200:
                    detail = response.read(_ERROR_BODY_LIMIT)
                    raise AgentError(_status_message(response.status, detail))
                raw = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read(_ERROR_BODY_LIMIT)
            raise AgentError(_status_message(exc.code, detail)) from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise AgentError(f"legacy agent request failed: {exc}") from exc

        content = _first_choice_content(raw).strip()
        if not content:
            raise AgentError("empty message content in legacy agent response")
        return content


def _status_message(status: int, detail: bytes) -> str:
    text = detail.decode("utf-8", errors="replace").strip()
    return f"legacy agent returned status {status}: {text}"


def _first_choice_content(raw: bytes) -> str:
    try:
        payload: Any = json.loads(raw.decode("utf-8", errors="replace"))
    except ValueError as exc:
        raise AgentError(f"decode response: {exc}") from exc
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise AgentError("decode response: response must be a JSON object")
    choices = payload.get("choices") or []
    if not isinstance(choices, list):
        raise AgentError("decode response: choices must be an array")
    if not choices:
        raise AgentError("empty choices in legacy agent response")
    first = choices[0] or {}
    if not isinstance(first, dict):
        raise AgentError("decode response: choice must be an object")
    message = first.get("message") or {}
    if not isinstance(message, dict):
        raise AgentError("decode response: message must be an object")
    content = message.get("content")
    if content is None:
        return ""
    if not isinstance(content, str):
        raise AgentError("decode response: content must be a string")
    return content