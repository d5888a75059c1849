"""MCP tool registry consumed by the tool-loop provider.

Servers are declared in ``mcp.json``::

    {
      "mcpServers": {
        "github": {
          "command": "npx",
          "args": ["-y", "@modelcontextprotocol/server-github"],
          "env": {"GITHUB_PERSONAL_ACCESS_TOKEN": "${GITHUB_TOKEN}"}
        }
      }
    }

A bare mapping of servers (without ``mcpServers``) is accepted too. ``${NAME}``
placeholders are replaced with environment values. Each server is started over
stdio on first use; its tools are advertised as ``<server>_<tool>``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import threading
from concurrent.futures import Future
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, TextContent, Tool

from codebot.engine.loop_thread import LoopThread

logger = logging.getLogger(__name__)

_ENV_PLACEHOLDER_RE = re.compile(r"\$\{([A-Z0-9_]+)\}")
_UNSAFE_NAME_CHARS_RE = re.compile(r"[^a-zA-Z0-9_]+")
_MAX_TOOL_NAME = 64


class ToolExecutionError(RuntimeError):
    """A single tool invocation failed."""


@dataclass(slots=True)
class ToolSpec:
    """Tool declaration advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})


class ToolRegistry(Protocol):
    """Protocol implemented by tool registries."""

    def list_tools(self) -> list[ToolSpec]:
        """Return tools available to the model."""

    def call_tool(self, name: str, args: dict[str, Any]) -> str:
        """Invoke a tool and return its text output."""

    def close(self) -> None:
        """Release servers or clients held by the registry."""


class McpToolRegistry:
    """Tools served by MCP servers over stdio.

    All sessions live on one private event loop. A supervisor task opens them
    and keeps them open until ``close``; calls from worker threads are
    scheduled onto that loop and awaited with ``timeout_seconds``.
    """

    def __init__(
        self,
        servers: dict[str, StdioServerParameters],
        *,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.servers = servers
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._started = False
        self._loop: LoopThread | None = None
        self._supervisor: Future[None] | None = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._sessions: dict[str, ClientSession] = {}
        self._aliases: dict[str, tuple[str, str]] = {}
        self._specs: list[ToolSpec] = []

    @classmethod
    def from_file(cls, path: Path | None, *, timeout_seconds: float = 120.0) -> McpToolRegistry:
        """Load server declarations; a missing path yields an empty registry."""

        if path is None or not path.exists():
            return cls({}, timeout_seconds=timeout_seconds)
        return cls(load_mcp_servers(path), timeout_seconds=timeout_seconds)

    def start(self) -> None:
        """Start every configured server once and collect its tools."""

        with self._lock:
            if self._started:
                return
            self._started = True
            if not self.servers:
                return
            logger.info("Starting MCP servers: %s", ", ".join(self.servers))
            self._loop = LoopThread("mcp-clients")
            self._supervisor = self._loop.submit(self._supervise())
            try:
                self._loop.run(self._ready.wait(), timeout=self.timeout_seconds)
            except TimeoutError:
                logger.warning("MCP servers not ready after %ss", self.timeout_seconds)

    def list_tools(self) -> list[ToolSpec]:
        self.start()
        return list(self._specs)

    def call_tool(self, name: str, args: dict[str, Any]) -> str:
        self.start()
        target = self._aliases.get(name)
        if target is None or self._loop is None:
            raise ToolExecutionError(f"Unknown tool: {name}")
        server_name, tool_name = target
        session = self._sessions[server_name]
        try:
            result = self._loop.run(
                session.call_tool(tool_name, args or {}),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            raise ToolExecutionError(
                f"Tool {name} timed out after {self.timeout_seconds:g}s",
            ) from error
        except McpError as error:
            raise ToolExecutionError(f"Tool {name} failed: {error}") from error
        text = render_tool_result(result)
        if result.isError:
            raise ToolExecutionError(f"Tool {name} reported an error: {text[:500]}")
        return text

    def close(self) -> None:
        with self._lock:
            loop, supervisor = self._loop, self._supervisor
            self._loop = None
            self._supervisor = None
        if loop is None:
            return
        loop.call_soon(self._closing.set)
        if supervisor is not None:
            try:
                supervisor.result(timeout=10)
            except Exception as error:  # noqa: BLE001
                logger.warning("MCP servers did not shut down cleanly: %s", error)
        loop.close()

    async def _supervise(self) -> None:
        async with AsyncExitStack() as stack:
            try:
                for server_name, params in self.servers.items():
                    session = await self._connect(server_name, params, stack)
                    if session is not None:
                        self._sessions[server_name] = session
                await self._refresh_tools()
            finally:
                self._ready.set()
            await self._closing.wait()

    async def _connect(
        self,
        server_name: str,
        params: StdioServerParameters,
        stack: AsyncExitStack,
    ) -> ClientSession | None:
        server_stack = AsyncExitStack()
        try:
            read, write = await server_stack.enter_async_context(stdio_client(params))
            session = await server_stack.enter_async_context(
                ClientSession(
                    read,
                    write,
                    read_timeout_seconds=timedelta(seconds=self.timeout_seconds),
                ),
            )
            await session.initialize()
        except Exception as error:  # noqa: BLE001
            logger.warning("MCP server %s failed to start: %s", server_name, error)
            await server_stack.aclose()
            return None
        await stack.enter_async_context(server_stack)
        return session

    async def _refresh_tools(self) -> None:
        self._aliases.clear()
        self._specs.clear()
        for server_name, session in self._sessions.items():
            try:
                listed = await session.list_tools()
            except Exception as error:  # noqa: BLE001
                logger.warning("Failed to list tools for MCP server %s: %s", server_name, error)
                continue
            for tool in listed.tools:
                self._add_tool(server_name, tool)
        logger.info("MCP tools available: %s", len(self._specs))

    def _add_tool(self, server_name: str, tool: Tool) -> None:
        alias = tool_alias(server_name, tool.name, self._aliases)
        self._aliases[alias] = (server_name, tool.name)
        description = f"[{server_name}]"
        if tool.description:
            description = f"{description} {tool.description}"
        schema = tool.inputSchema if isinstance(tool.inputSchema, dict) else {"type": "object"}
        self._specs.append(ToolSpec(name=alias, description=description, input_schema=schema))


def load_mcp_servers(path: Path) -> dict[str, StdioServerParameters]:
    """Parse ``mcp.json`` into stdio launch parameters, skipping entries without a command."""

    raw = json.loads(path.read_text("utf-8"))
    if not isinstance(raw, dict):
        raise TypeError(f"Expected JSON object in {path}")
    declared = raw.get("mcpServers", raw)
    if not isinstance(declared, dict):
        raise TypeError(f"mcpServers must be an object in {path}")

    servers: dict[str, StdioServerParameters] = {}
    for name, entry in declared.items():
        if not isinstance(entry, dict) or not entry.get("command"):
            logger.warning("Skipping MCP server %r without a command", name)
            continue
        resolved = substitute_env_vars(entry)
        extra_env = resolved.get("env") or {}
        servers[str(name)] = StdioServerParameters(
            command=str(resolved["command"]),
            args=[str(arg) for arg in resolved.get("args") or []],
            env={**os.environ, **{str(key): str(value) for key, value in extra_env.items()}},
        )
    return servers


def render_tool_result(result: CallToolResult) -> str:
    """Text content joined by newlines; other content and structured output as JSON."""

    parts: list[str] = []
    for item in result.content:
        if isinstance(item, TextContent):
            parts.append(item.text)
        else:
            parts.append(
                json.dumps(item.model_dump(mode="json", exclude_none=True), ensure_ascii=False),
            )
    if not parts and result.structuredContent is not None:
        parts.append(json.dumps(result.structuredContent, ensure_ascii=False))
    return "\n".join(parts)


def tool_alias(server_name: str, tool_name: str, taken: dict[str, Any] | set[str]) -> str:
    """Model-safe ``<server>_<tool>`` name, suffixed ``_2``, ``_3``… on collision."""

    stem = safe_tool_name(f"{server_name}_{tool_name}") or safe_tool_name(tool_name) or "tool"
    alias = stem
    index = 2
    while alias in taken:
        alias = f"{stem}_{index}"
        index += 1
    return alias


def safe_tool_name(name: str) -> str:
    return _UNSAFE_NAME_CHARS_RE.sub("_", name.strip()).strip("_")[:_MAX_TOOL_NAME]


def substitute_env_vars(value: Any) -> Any:
    """Recursively replace ``${NAME}`` with environment values (empty when unset)."""

    if isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    if isinstance(value, dict):
        return {key: substitute_env_vars(item) for key, item in value.items()}
    if isinstance(value, str):
        return _ENV_PLACEHOLDER_RE.sub(lambda match: os.getenv(match.group(1), ""), value)
    return value
