# clawlite

Building blocks for a small chat assistant: configuration loading and
validation, per-chat memory with summarising compaction, an OpenAI-compatible
agent client, and a WSGI application that answers chat messages by running
the `codex` command-line tool in a working directory while keeping a short
transcript for each chat.

The package has no dependencies outside the standard library.

## Installation

```
pip install .
```

Tests need the `test` extra:

```
pip install ".[test]"
pytest
```

## The codex chat endpoint

`clawlite.proxy_server.CodexProxyServer` is a WSGI application serving
`POST /chat`. It can be run with any WSGI server, for example the one in the
standard library:

```python
from wsgiref.simple_server import make_server

from clawlite.proxy_server import CodexProxyServer, ServerConfig

app = CodexProxyServer(ServerConfig(
    work_dir="/path/to/project",
    auth_token="token",
    timeout=600,
))
make_server("127.0.0.1", 8099, app).serve_forever()
```

`ServerConfig` fields:

| Field | Default | Meaning |
| --- | --- | --- |
| `work_dir` | `.` | directory where `codex` runs |
| `state_dir` | `<work_dir>/.codexproxy` | per-chat transcripts and `audit.jsonl` |
| `auth_token` | none | bearer token required on `/chat` |
| `codex_bin` | `codex` | path of the codex executable |
| `model` | none | model passed to codex with `-m` |
| `timeout` | 600 seconds | timeout for each codex run |
| `danger_full_access` | off | run codex with `--dangerously-bypass-approvals-and-sandbox` instead of `--full-auto` |
| `executor`, `researcher`, `audit_log`, `policy` | built in | replacements for the codex runner, web research, audit log and execution policy |

`default_listen_addr()` returns `127.0.0.1:8099`.

Send a message:

```
curl -X POST http://127.0.0.1:8099/chat \
  -H "Authorization: Bearer token" \
  -d '{"chat_id": 42, "message": "inspect the repo"}'
```

The answer is `{"reply": "..."}`. Missing fields give 400, a wrong token 401,
other methods 405, and a failed or empty codex run 502 with the error text.
A message may start with `[goal:<id>]`; the id is recorded in the audit log
and stripped from the prompt. Requests that look host-critical (for example
`reboot` or `rm -rf /`) are refused unless full access is enabled.

`CodexProxyServer.chat(chat_id, message)` does the same work without HTTP and
raises `ProxyError` on failure.

## Library use

```python
from clawlite.config import load
from clawlite.agent_client import AgentClient
from clawlite.memory import MemoryStore

cfg = load("config.json")
client = AgentClient(cfg.agent, timeout=60)
store = MemoryStore(cfg.runtime.data_dir, cfg.runtime.history_turns)

reply = client.generate_reply("hello", "")
store.append_exchange(42, "hello", reply)
```

Other modules:

- `clawlite.config` reads, fills defaults for, validates and writes the JSON
  configuration (`load`, `save`, `Config`); invalid settings raise `ConfigError`.
- `clawlite.proxy_client.HTTPCodexProxy` posts messages to a running chat
  endpoint and returns its reply.
- `clawlite.policy.classify_risk` rates a command as informational, mutating
  or host-critical; `Policy.evaluate` decides whether it may run.
- `clawlite.research.WebResearcher` runs web searches through a search
  backend you supply; `needs_explicit_research` spots time-sensitive questions.
- `clawlite.audit.AuditLog` appends and reads JSON Lines audit records.
- `clawlite.error_policy.classify_execution_error` maps upstream failures to
  a kind, and `format_user_facing_execution_error` gives a message for users.
- `clawlite.confirm_store.ConfirmStore` keeps pending confirmations per chat.
- `clawlite.context_recovery.truncate_tool_output_for_context` shortens long
  tool output, keeping its head and tail.
- `clawlite.buildinfo.build_version_string` formats a version and commit.

## What is not included

- There is no command to start the chat endpoint; run `CodexProxyServer` with
  a WSGI server of your choice as shown above.
- There is no chat bot loop: nothing here polls a messaging service or sends
  replies back to it.
- No web search backend ships with the package. Without one,
  `WebResearcher` returns no results and prompts carry no research context.