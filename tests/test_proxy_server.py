import io
import json
import sys
from wsgiref.util import setup_testing_defaults

import pytest

from clawlite.audit import AuditLog
from clawlite.policy import Policy
from clawlite.proxy_server import (
    CLIExecutor,
    CodexProxyServer,
    LockedExecutor,
    ProxyError,
    ServerConfig,
    build_exec_args,
    build_prompt,
    default_listen_addr,
    extract_goal_id,
    hash_prompt,
    parse_reply,
    valid_bearer_token,
)
from clawlite.research import SearchResult


class FakeExecutor:
    def __init__(self, reply=b"", error=None):
        self.calls = []
        self.reply = reply
        self.error = error

    def run(self, workdir, args):
        self.calls.append((workdir, list(args)))
        if self.error is not None:
            raise self.error
        return bytes(self.reply)


class FakeResearcher:
    def __init__(self, results):
        self.calls = []
        self.results = results

    def research(self, query, recency_days, max_results):
        self.calls.append((query, recency_days, max_results))
        return list(self.results)


def call_app(app, body=b"", method="POST", path="/chat", authorization=None):
    if isinstance(body, str):
        body = body.encode("utf-8")
    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "CONTENT_LENGTH": str(len(body)),
        "CONTENT_TYPE": "application/json",
        "wsgi.input": io.BytesIO(body),
    }
    if authorization is not None:
        environ["HTTP_AUTHORIZATION"] = authorization
    setup_testing_defaults(environ)
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    chunks = app(environ, start_response)
    return int(captured["status"].split()[0]), captured["headers"], b"".join(chunks)


@pytest.fixture
def dirs(tmp_path):
    return str(tmp_path / "work"), str(tmp_path / "state")


def make_server(dirs, **kwargs):
    workdir, state_dir = dirs
    return CodexProxyServer(ServerConfig(work_dir=workdir, state_dir=state_dir, **kwargs))


def test_first_turn_runs_codex_exec(dirs):
    executor = FakeExecutor(reply=b'{"reply":"first reply"}')
    server = make_server(dirs, executor=executor)

    status, headers, body = call_app(server, '{"chat_id":42,"message":"inspect the repo"}')

    assert status == 200
    assert headers["Content-Type"] == "application/json"
    assert len(executor.calls) == 1
    workdir, args = executor.calls[0]
    assert workdir == dirs[0]
    assert args == ["exec", "--skip-git-repo-check", "--full-auto", "--json", "inspect the repo"]
    assert json.loads(body)["reply"] == "first reply"


def test_follow_up_includes_history(dirs):
    executor = FakeExecutor(reply=b'{"reply":"second reply"}')
    server = make_server(dirs, executor=executor)

    first_status, _, _ = call_app(server, '{"chat_id":9,"message":"first task"}')
    assert first_status == 200

    executor.reply = b'{"reply":"follow up reply"}'
    status, _, body = call_app(server, '{"chat_id":9,"message":"what changed?"}')

    assert status == 200
    assert len(executor.calls) == 2
    second_prompt = executor.calls[1][1][-1]
    for fragment in (
        "Conversation so far:",
        "User: first task",
        "Assistant: second reply",
        "New user message:\nwhat changed?",
    ):
        assert fragment in second_prompt
    assert json.loads(body)["reply"] == "follow up reply"


def test_transcript_is_persisted_per_chat(dirs):
    server = make_server(dirs, executor=FakeExecutor(reply=b'{"reply":"ok"}'))
    assert server.chat(42, "hello there") == "ok"

    with open(f"{dirs[1]}/42.json", encoding="utf-8") as handle:
        stored = json.load(handle)
    assert stored == [
        {"role": "user", "content": "hello there"},
        {"role": "assistant", "content": "ok"},
    ]


def test_executor_failure_returns_bad_gateway(dirs):
    server = make_server(dirs, executor=FakeExecutor(error=RuntimeError("codex failed")))

    status, _, body = call_app(server, '{"chat_id":1,"message":"hello"}')

    assert status == 502
    assert "codex failed" in body.decode()


def test_executor_failure_is_audited_without_reply(dirs):
    server = make_server(dirs, executor=FakeExecutor(error=RuntimeError("codex failed")))
    with pytest.raises(ProxyError, match="codex exec failed: codex failed"):
        server.chat(3, "hello")

    records = AuditLog(dirs[1]).read_all()
    assert len(records) == 1
    assert records[0].final_reply == ""
    assert records[0].raw_user_message == "hello"


def test_empty_reply_is_an_error(dirs):
    server = make_server(dirs, executor=FakeExecutor(reply=b"   \n"))
    status, _, body = call_app(server, '{"chat_id":5,"message":"hello"}')
    assert status == 502
    assert "codex returned empty reply" in body.decode()


def test_rejects_invalid_token(dirs):
    server = make_server(
        dirs, auth_token="secret", executor=FakeExecutor(reply=b'{"reply":"ok"}')
    )
    status, _, _ = call_app(
        server, '{"chat_id":1,"message":"hello"}', authorization="Bearer wrong"
    )
    assert status == 401


def test_accepts_valid_token(dirs):
    server = make_server(
        dirs, auth_token="token", executor=FakeExecutor(reply=b'{"reply":"ok"}')
    )
    status, _, body = call_app(
        server, '{"chat_id":1,"message":"hello"}', authorization="Bearer token"
    )
    assert status == 200
    assert json.loads(body) == {"reply": "ok"}


def test_rejects_non_post(dirs):
    server = make_server(dirs, executor=FakeExecutor(reply=b"ok"))
    status, _, body = call_app(server, method="GET")
    assert status == 405
    assert body == b"method not allowed\n"


def test_unknown_path_is_not_found(dirs):
    server = make_server(dirs, executor=FakeExecutor(reply=b"ok"))
    status, _, _ = call_app(server, '{"chat_id":1,"message":"hi"}', path="/other")
    assert status == 404


@pytest.mark.parametrize("body", ["", "not json", "[1,2]", '{"chat_id":"x","message":"hi"}'])
def test_invalid_json_body(dirs, body):
    server = make_server(dirs, executor=FakeExecutor(reply=b"ok"))
    status, _, payload = call_app(server, body)
    assert status == 400
    assert payload == b"invalid json body\n"


@pytest.mark.parametrize("body", ['{"message":"hi"}', '{"chat_id":1,"message":"   "}'])
def test_missing_fields(dirs, body):
    executor = FakeExecutor(reply=b"ok")
    server = make_server(dirs, executor=executor)
    status, _, payload = call_app(server, body)
    assert status == 400
    assert payload == b"chat_id and message are required\n"
    assert executor.calls == []


def test_host_critical_blocked_without_full_access(dirs):
    executor = FakeExecutor(reply=b"ok")
    server = make_server(dirs, executor=executor)
    with pytest.raises(ProxyError, match=r"blocked by execution policy \(host-critical\)"):
        server.chat(1, "please reboot the host")
    assert executor.calls == []


def test_host_critical_requires_confirmation_when_enabled(dirs):
    server = make_server(
        dirs,
        executor=FakeExecutor(reply=b"ok"),
        policy=Policy(danger_full_access=True, require_confirm=True),
    )
    with pytest.raises(ProxyError, match="requires explicit confirmation"):
        server.chat(1, "reboot")


def test_danger_full_access_runs_and_audits_mode(dirs):
    executor = FakeExecutor(reply=b'{"reply":"rebooting"}')
    server = make_server(dirs, executor=executor, danger_full_access=True)
    assert server.chat(7, "reboot") == "rebooting"
    assert "--dangerously-bypass-approvals-and-sandbox" in executor.calls[0][1]
    assert AuditLog(dirs[1]).read_all()[0].execution_mode == "danger-full-access"


def test_parse_reply_prefers_agent_message_from_json_stream():
    stream = "\n".join(
        [
            '{"type":"thread.started","thread_id":"abc"}',
            '{"type":"turn.started"}',
            '{"type":"item.completed","item":{"id":"item_0","type":"agent_message","text":"OK"}}',
            '{"type":"turn.completed","usage":{"input_tokens":10,"output_tokens":2}}',
        ]
    )
    assert parse_reply(stream.encode()) == "OK"


def test_parse_reply_falls_back_to_plain_lines():
    assert parse_reply(b"first line\n\nlast line\n") == "last line"
    assert parse_reply(b"") == ""


def test_build_exec_args_includes_dangerous_bypass_when_enabled():
    assert build_exec_args("gpt-5-codex", "check host status", True) == [
        "exec",
        "--skip-git-repo-check",
        "--dangerously-bypass-approvals-and-sandbox",
        "--json",
        "-m",
        "gpt-5-codex",
        "check host status",
    ]


def test_audit_log_captures_prompt_and_reply_metadata(dirs):
    server = make_server(dirs, executor=FakeExecutor(reply=b'{"reply":"host looks healthy"}'))
    status, _, _ = call_app(
        server, '{"chat_id":42,"message":"[goal:goal-123] inspect the host status"}'
    )
    assert status == 200

    records = AuditLog(dirs[1]).read_all()
    assert len(records) == 1
    record = records[0]
    assert record.chat_id == 42
    assert record.goal_id == "goal-123"
    assert record.raw_user_message == "[goal:goal-123] inspect the host status"
    assert record.final_reply == "host looks healthy"
    assert len(record.prompt_hash) == 64
    assert record.execution_mode == "full-auto"


def test_audit_log_captures_goal_id_from_runtime_propagated_message(dirs):
    executor = FakeExecutor(reply=b'{"reply":"done"}')
    server = make_server(dirs, executor=executor)
    status, _, _ = call_app(
        server, '{"chat_id":99,"message":"[goal:runtime-goal-9] inspect disk usage"}'
    )
    assert status == 200

    records = AuditLog(dirs[1]).read_all()
    assert len(records) == 1
    assert records[0].goal_id == "runtime-goal-9"
    assert records[0].raw_user_message == "[goal:runtime-goal-9] inspect disk usage"
    assert executor.calls[0][1][-1] == "inspect disk usage"


def test_prompt_mentions_research_path_when_user_needs_current_info():
    prompt = build_prompt(
        [],
        "what is the latest OpenAI news today?",
        [
            SearchResult(
                title="Latest OpenAI News",
                url="https://example.com/openai-news",
                snippet="Current update summary.",
            )
        ],
    )
    lowered = prompt.lower()
    for fragment in (
        "explicit research",
        "include sources",
        "Research context:",
        "https://example.com/openai-news",
    ):
        assert fragment.lower() in lowered


def test_server_runs_research_for_time_sensitive_messages(dirs):
    researcher = FakeResearcher(
        [SearchResult(title="News", url="https://example.com/news", snippet="")]
    )
    executor = FakeExecutor(reply=b'{"reply":"here"}')
    server = make_server(dirs, executor=executor, researcher=researcher)

    server.chat(11, "what is the latest release?")

    assert researcher.calls == [("what is the latest release?", 7, 5)]
    prompt = executor.calls[0][1][-1]
    assert "1. News" in prompt
    assert "   URL: https://example.com/news" in prompt
    assert "Snippet:" not in prompt


def test_server_skips_research_for_plain_messages(dirs):
    researcher = FakeResearcher([])
    server = make_server(dirs, executor=FakeExecutor(reply=b"fine"), researcher=researcher)
    assert server.chat(12, "inspect the repo") == "fine"
    assert researcher.calls == []


def test_build_prompt_plain_message_is_returned_as_is():
    assert build_prompt([], "  inspect the repo  ", []) == "inspect the repo"


def test_build_prompt_keeps_only_recent_turns():
    turns = [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"turn-{i:02d}"}
        for i in range(14)
    ]
    prompt = build_prompt(turns, "next", [])
    assert "turn-00" not in prompt
    assert "turn-01" not in prompt
    assert "User: turn-02" in prompt
    assert "Assistant: turn-13" in prompt


def test_build_prompt_is_truncated_to_limit():
    prompt = build_prompt([{"role": "user", "content": "x"}], "a" * 20000, [])
    assert len(prompt) == 16000
    assert prompt.endswith("a")


@pytest.mark.parametrize(
    "message, expected",
    [
        ("[goal:goal-123] inspect", ("goal-123", "inspect")),
        ("  [goal: g1 ]   rest  ", ("g1", "rest")),
        ("[goal:] nothing", ("", "[goal:] nothing")),
        ("[goal:unterminated", ("", "[goal:unterminated")),
        ("plain text", ("", "plain text")),
    ],
)
def test_extract_goal_id(message, expected):
    assert extract_goal_id(message) == expected


@pytest.mark.parametrize(
    "header, expected_token, ok",
    [
        ("Bearer token", "token", True),
        ("Bearer  token ", "token", True),
        ("Bearer wrong", "token", False),
        ("token", "token", False),
        ("", "", True),
    ],
)
def test_valid_bearer_token(header, expected_token, ok):
    assert valid_bearer_token(header, expected_token) is ok


def test_hash_prompt_is_sha256_hex():
    assert hash_prompt("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert hash_prompt("a") != hash_prompt("b")


def test_default_listen_addr():
    assert default_listen_addr() == "127.0.0.1:8099"


def test_default_state_dir_lives_under_workdir(tmp_path):
    server = CodexProxyServer(ServerConfig(work_dir=str(tmp_path), executor=FakeExecutor()))
    assert server.state_dir == str(tmp_path / ".codexproxy")


def test_locked_executor_delegates():
    inner = FakeExecutor(reply=b"inner output")
    locked = LockedExecutor(inner)
    assert locked.run("/work", ["a", "b"]) == b"inner output"
    assert inner.calls == [("/work", ["a", "b"])]


def test_cli_executor_returns_combined_output(tmp_path):
    executor = CLIExecutor(sys.executable, timeout=30)
    output = executor.run(
        str(tmp_path),
        ["-c", "import sys; print('out'); sys.stderr.write('err\\n')"],
    )
    text = output.decode().replace("\r\n", "\n")
    assert "out\n" in text
    assert "err\n" in text


def test_cli_executor_nonzero_exit_raises(tmp_path):
    executor = CLIExecutor(sys.executable, timeout=30)
    with pytest.raises(ProxyError, match="exit status 3"):
        executor.run(str(tmp_path), ["-c", "import sys; sys.exit(3)"])


def test_cli_executor_timeout_raises(tmp_path):
    executor = CLIExecutor(sys.executable, timeout=0.2)
    with pytest.raises(ProxyError, match="timed out"):
        executor.run(str(tmp_path), ["-c", "import time; time.sleep(5)"])


def test_cli_executor_defaults():
    executor = CLIExecutor("  ", " model ", 0)
    assert executor.binary == "codex"
    assert executor.model == "model"
    assert executor.timeout == 600