import json

from beads_console.agent import (
    AUTH_EXPIRED_MESSAGE,
    ChunkType,
    ClaudeCliConversation,
    claude_cli_factory,
    is_auth_error,
    parse_stderr_line,
    parse_stream_line,
)
from beads_console.auth import CredentialStore


def _line(payload: dict) -> str:
    return json.dumps(payload)


def test_assistant_message_yields_text_then_tools() -> None:
    chunks = parse_stream_line(
        _line(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Looking at the code"},
                        {"type": "tool_use", "name": "Read", "input": {"file_path": "a.py"}},
                    ]
                },
            }
        )
    )
    assert [chunk.type for chunk in chunks] == [ChunkType.TEXT, ChunkType.TOOL_USE]
    assert chunks[0].content == "Looking at the code"
    assert chunks[1].tool_name == "Read"
    assert chunks[1].tool_input == {"file_path": "a.py"}


def test_deltas_and_tool_results() -> None:
    (delta,) = parse_stream_line(_line({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "hi"}}))
    assert delta.content == "hi"

    (result,) = parse_stream_line(
        _line({"type": "user", "message": {"content": [{"type": "tool_result", "content": "ok"}]}})
    )
    assert result.type == ChunkType.TOOL_RESULT
    assert result.tool_result == "ok"


def test_result_message_carries_usage() -> None:
    (done,) = parse_stream_line(
        _line(
            {
                "type": "result",
                "result": "finished",
                "usage": {"input_tokens": 10, "cache_read_input_tokens": 5, "output_tokens": 7},
                "total_cost_usd": 0.02,
            }
        )
    )
    assert done.type == ChunkType.DONE
    assert done.usage.input_tokens == 15
    assert done.usage.output_tokens == 7


def test_errors_and_auth_failures() -> None:
    (error,) = parse_stream_line(_line({"type": "error", "error": {"message": "rate limited"}}))
    assert (error.type, error.content) == (ChunkType.ERROR, "rate limited")

    (auth,) = parse_stream_line(_line({"type": "result", "is_error": True, "result": "Invalid API key"}))
    assert (auth.type, auth.content) == (ChunkType.AUTH_EXPIRED, AUTH_EXPIRED_MESSAGE)

    (plain,) = parse_stream_line("Please run /login to continue")
    assert plain.type == ChunkType.AUTH_EXPIRED


def test_noise_is_ignored() -> None:
    assert parse_stream_line("") == []
    assert parse_stream_line("not json at all") == []
    assert parse_stream_line(_line({"type": "system", "subtype": "init"})) == []
    assert parse_stderr_line("Loading config...") == []
    assert parse_stderr_line("fatal error: oops")[0].type == ChunkType.ERROR


def test_auth_text_in_assistant_prose_is_not_an_auth_failure() -> None:
    chunks = parse_stream_line(
        _line({"type": "assistant", "message": {"content": [{"type": "text", "text": "Return 401 Unauthorized"}]}})
    )
    assert chunks[0].type == ChunkType.TEXT
    assert is_auth_error("Return 401 Unauthorized")


def test_cli_arguments_and_environment(tmp_path) -> None:
    credentials = CredentialStore(tmp_path / "token")
    credentials.save_token("oauth-123\n")
    conversation = ClaudeCliConversation(tmp_path, model="opus", command="claude", credentials=credentials)

    first = conversation.build_args("do it", continuation=False)
    assert first[:3] == ["claude", "-p", "do it"]
    assert "--dangerously-skip-permissions" in first
    assert "-c" not in first
    assert conversation.build_args("more", continuation=True)[-1] == "-c"

    env = conversation._env()
    assert env["CI"] == "true"
    assert env["CLAUDE_CODE_OAUTH_TOKEN"] == "oauth-123"

    assert credentials.clear() is True
    assert credentials.get_token() is None
    assert credentials.clear() is False


def test_read_only_mode_uses_plan_permissions(tmp_path) -> None:
    conversation = ClaudeCliConversation(
        tmp_path, credentials=CredentialStore(tmp_path / "token"), skip_permissions=False
    )
    args = conversation.build_args("look", continuation=False)
    assert "--dangerously-skip-permissions" not in args
    assert args[args.index("--permission-mode") + 1] == "plan"


def test_memory_tools_are_passed_to_the_cli(tmp_path) -> None:
    factory = claude_cli_factory(CredentialStore(tmp_path / "token"), memory_tools=True)
    conversation = factory(str(tmp_path))

    args = conversation.build_args("go", continuation=True)
    config = json.loads(args[args.index("--mcp-config") + 1])
    assert config["mcpServers"]["beads-memory"]["args"] == ["mcp", "--project", str(tmp_path.resolve())]
    assert args[-1] == "-c"

    without = claude_cli_factory(CredentialStore(tmp_path / "token"), memory_tools=False)(str(tmp_path))
    assert "--mcp-config" not in without.build_args("go", continuation=False)
