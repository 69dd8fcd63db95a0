"""HTTP client for the codex chat proxy."""

from __future__ import annotations

import json
import urllib.error
import urllib.request

_RESPONSE_LIMIT = 64 * 1024
_DEFAULT_TIMEOUT = 120.0
_REPLY_FIELDS = ("reply", "output", "text")


class CodexProxyError(Exception):
    """Raised when the codex proxy cannot be reached or refuses a request."""


class HTTPCodexProxy:
    """Forwards chat messages to a codex proxy's /chat endpoint."""

    def __init__(self, url: str, token: str = "", timeout: float = _DEFAULT_TIMEOUT) -> None:
        self.url = url.strip()
        self.token = token.strip()
        self.timeout = timeout if timeout and timeout > 0 else _DEFAULT_TIMEOUT

    def chat(self, chat_id: int, message: str) -> str:
        """Send a message and return the proxy's reply, or "" when it is empty."""
        if not self.url:
            raise CodexProxyError("codex proxy url is not configured")
        body = json.dumps(
            {"chat_id": chat_id, "message": message.strip()}, ensure_ascii=False
        ).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = "Bearer " + self.token
        request = urllib.request.Request(self.url, data=body, method="POST", headers=headers)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                status = response.status
                data = response.read(_RESPONSE_LIMIT)
        except urllib.error.HTTPError as exc:
            detail = exc.read(_RESPONSE_LIMIT).decode("utf-8", errors="replace").strip()
            raise CodexProxyError(f"codex proxy status {exc.code}: {detail}") from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise CodexProxyError(f"codex proxy request failed: {exc}") from exc

        if not 200 <= status < 300:
            detail = data.decode("utf-8", errors="replace").strip()
            raise CodexProxyError(f"codex proxy status {status}: {detail}")
        return parse_codex_proxy_reply(data).strip()


def parse_codex_proxy_reply(data: bytes | str) -> str:
    """Take reply, output or text from a JSON body, else the raw trimmed body."""
    raw = (data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data).strip()
    if not raw:
        return ""
    try:
        payload = json.loads(raw)
    except ValueError:
        return raw
    if not isinstance(payload, dict):
        return raw
    values = [payload.get(key) for key in _REPLY_FIELDS]
    if any(value is not None and not isinstance(value, str) for value in values):
        return raw
    for value in values:
        if value and value.strip():
            return value.strip()
    return raw