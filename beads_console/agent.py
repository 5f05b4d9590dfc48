"""Agent process transport.

The run engine talks to an agent through ``AgentConversation``: ``send``
streams typed ``AgentChunk`` values for one response, ``interrupt`` and
``cancel`` stop it. ``ClaudeCliConversation`` drives the Claude Code CLI in
``stream-json`` mode, one process per response, continuing the previous
conversation with ``-c``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from .auth import CredentialStore
from .config import settings
from .errors import AgentSpawnError
from .mcp_server import memory_mcp_config

logger = logging.getLogger(__name__)

AUTH_EXPIRED_MESSAGE = "Your Claude authentication has expired. Please log in again."
STREAM_LIMIT = 16 * 1024 * 1024


class ChunkType(StrEnum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    AUTH_EXPIRED = "auth_expired"
    DONE = "done"


@dataclass(frozen=True)
class AgentUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float | None = None
    duration_ms: int | None = None


@dataclass(frozen=True)
class AgentChunk:
    type: ChunkType
    content: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_result: Any = None
    usage: AgentUsage | None = None


class AgentConversation(Protocol):
    """One agent conversation bound to a task run."""

    returncode: int | None

    def send(self, prompt: str) -> AsyncIterator[AgentChunk]: ...

    async def interrupt(self) -> None: ...

    async def cancel(self) -> None: ...


AgentFactory = Callable[[str], AgentConversation]


def is_auth_error(text: str) -> bool:
    lowered = text.lower()
    return (
        "invalid api key" in lowered
        or "please run /login" in lowered
        or ("authentication" in lowered and "expired" in lowered)
        or "unauthorized" in lowered
    )


def _auth_or(chunk: AgentChunk) -> AgentChunk:
    if is_auth_error(chunk.content):
        return AgentChunk(type=ChunkType.AUTH_EXPIRED, content=AUTH_EXPIRED_MESSAGE)
    return chunk


def parse_stream_line(line: str) -> list[AgentChunk]:
    """Translate one line of ``--output-format stream-json`` into chunks.

    Lines that are not JSON are only inspected for authentication failures.
    Lifecycle and system messages produce nothing.
    """
    line = line.strip()
    if not line:
        return []
    try:
        data = json.loads(line)
    except ValueError:
        if is_auth_error(line):
            return [AgentChunk(type=ChunkType.AUTH_EXPIRED, content=AUTH_EXPIRED_MESSAGE)]
        logger.debug("Ignoring non-JSON agent output: %s", line[:100])
        return []
    if not isinstance(data, dict):
        return []

    message_type = data.get("type")
    if message_type == "assistant":
        chunks: list[AgentChunk] = []
        texts: list[str] = []
        for block in (data.get("message") or {}).get("content") or []:
            if block.get("type") == "text" and block.get("text"):
                texts.append(block["text"])
            elif block.get("type") == "tool_use":
                chunks.append(
                    AgentChunk(
                        type=ChunkType.TOOL_USE,
                        tool_name=block.get("name"),
                        tool_input=block.get("input") or {},
                    )
                )
        if texts:
            chunks.insert(0, AgentChunk(type=ChunkType.TEXT, content="\n".join(texts)))
        return chunks

    if message_type == "content_block_delta":
        delta = data.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            return [AgentChunk(type=ChunkType.TEXT, content=delta["text"])]
        return []

    if message_type == "content_block_start":
        block = data.get("content_block") or {}
        if block.get("type") == "tool_use":
            return [AgentChunk(type=ChunkType.TOOL_USE, tool_name=block.get("name"))]
        return []

    if message_type == "result":
        if data.get("is_error"):
            return [_auth_or(AgentChunk(type=ChunkType.ERROR, content=str(data.get("result") or "Unknown error")))]
        usage = data.get("usage") or {}
        return [
            AgentChunk(
                type=ChunkType.DONE,
                content=str(data.get("result") or ""),
                usage=AgentUsage(
                    input_tokens=(usage.get("input_tokens") or 0) + (usage.get("cache_read_input_tokens") or 0),
                    output_tokens=usage.get("output_tokens") or 0,
                    cost_usd=data.get("total_cost_usd"),
                    duration_ms=data.get("duration_ms"),
                ),
            )
        ]

    if message_type == "user":
        for block in (data.get("message") or {}).get("content") or []:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                return [AgentChunk(type=ChunkType.TOOL_RESULT, tool_result=block.get("content"))]
        return []

    if message_type == "error":
        error = data.get("error")
        if isinstance(error, dict):
            message = error.get("message") or json.dumps(error)
        else:
            message = str(error or "Unknown error")
        return [_auth_or(AgentChunk(type=ChunkType.ERROR, content=message))]

    # system, message_start, message_delta, message_stop and anything new
    return []


def parse_stderr_line(line: str) -> list[AgentChunk]:
    """Stderr carries status noise too; only auth failures and errors count."""
    line = line.strip()
    if not line:
        return []
    if is_auth_error(line):
        return [AgentChunk(type=ChunkType.AUTH_EXPIRED, content=AUTH_EXPIRED_MESSAGE)]
    lowered = line.lower()
    if "error" in lowered or "failed" in lowered:
        return [AgentChunk(type=ChunkType.ERROR, content=line)]
    return []


class ClaudeCliConversation:
    """Drives ``claude -p`` for a project directory."""

    def __init__(
        self,
        project_path: str | Path,
        *,
        model: str | None = None,
        command: str | None = None,
        credentials: CredentialStore | None = None,
        skip_permissions: bool = True,
        mcp_config: dict[str, Any] | None = None,
    ) -> None:
        self.project_path = Path(project_path)
        self.model = model or settings.claude_model
        self.command = command or settings.claude_cmd
        self.credentials = credentials or CredentialStore()
        self.skip_permissions = skip_permissions
        self.mcp_config = mcp_config
        self.returncode: int | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._turns = 0

    def build_args(self, prompt: str, *, continuation: bool) -> list[str]:
        args = [self.command, "-p", prompt, "--output-format", "stream-json", "--verbose", "--model", self.model]
        if self.skip_permissions:
            args.append("--dangerously-skip-permissions")
        else:
            args += ["--permission-mode", "plan"]
        if self.mcp_config:
            args += ["--mcp-config", json.dumps(self.mcp_config)]
        if continuation:
            args.append("-c")
        return args

    def _env(self) -> dict[str, str]:
        env = {**os.environ, "CI": "true"}
        token = self.credentials.get_token()
        if token:
            env["CLAUDE_CODE_OAUTH_TOKEN"] = token
        return env

    async def send(self, prompt: str) -> AsyncIterator[AgentChunk]:
        args = self.build_args(prompt, continuation=self._turns > 0)
        self._turns += 1
        self.returncode = None
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=self.project_path,
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise AgentSpawnError(f"Failed to start {self.command}: {exc}") from exc
        self._process = process
        logger.debug("Started %s (pid %s) in %s", self.command, process.pid, self.project_path)

        queue: asyncio.Queue[AgentChunk | None] = asyncio.Queue()

        async def pump(stream: asyncio.StreamReader, parse: Callable[[str], list[AgentChunk]]) -> None:
            async for raw in stream:
                for chunk in parse(raw.decode("utf-8", errors="replace")):
                    await queue.put(chunk)

        readers = asyncio.gather(pump(process.stdout, parse_stream_line), pump(process.stderr, parse_stderr_line))
        readers.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while (chunk := await queue.get()) is not None:
                yield chunk
            await readers
            self.returncode = await process.wait()
            logger.debug("%s exited with code %s", self.command, self.returncode)
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not readers.done():
                readers.cancel()
            self.returncode = process.returncode

    async def interrupt(self) -> None:
        """Ask the current response to stop, like Ctrl-C in a terminal."""
        process = self._process
        if process is not None and process.returncode is None:
            process.send_signal(signal.SIGINT)

    async def cancel(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            process.kill()
            await process.wait()


def claude_cli_factory(
    credentials: CredentialStore | None = None, *, memory_tools: bool | None = None
) -> AgentFactory:
    """Factory for Claude CLI conversations, wired to the project memory server by default."""
    if memory_tools is None:
        memory_tools = settings.memory_mcp_enabled

    def _factory(project_path: str) -> AgentConversation:
        mcp_config = memory_mcp_config(project_path) if memory_tools else None
        return ClaudeCliConversation(project_path, credentials=credentials, mcp_config=mcp_config)

    return _factory
