"""Provider lookup by name with default fallback."""

from __future__ import annotations

import logging

from codebot.config import Settings
from codebot.engine.providers.base import Provider
from codebot.engine.providers.local_agent import LocalAgentProvider
from codebot.engine.providers.tool_loop import ToolLoopProvider
from codebot.engine.tools import McpToolRegistry, ToolRegistry

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Resolves provider names; unknown names fall back to the default provider."""

    def __init__(self, providers: dict[str, Provider], *, default: str) -> None:
        normalized = {name.strip().lower(): provider for name, provider in providers.items()}
        if default.strip().lower() not in normalized:
            raise ValueError(
                f"Default provider {default!r} is not registered. "
                f"Known providers: {', '.join(sorted(normalized))}.",
            )
        self._providers = normalized
        self.default = default.strip().lower()

    def names(self) -> list[str]:
        return sorted(self._providers)

    def normalize(self, name: str | None) -> str:
        """Return the registered provider name that ``name`` resolves to."""

        key = (name or "").strip().lower()
        if key in self._providers:
            return key
        if key:
            logger.warning("Unknown provider %r, using %r", name, self.default)
        return self.default

    def get(self, name: str | None) -> Provider:
        return self._providers[self.normalize(name)]

    def close(self) -> None:
        """Release resources held by providers (tool servers, clients)."""

        for name, provider in self._providers.items():
            close = getattr(provider, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as error:  # noqa: BLE001
                logger.warning("Closing provider %s failed: %s", name, error)


def build_provider_registry(
    settings: Settings,
    *,
    tool_registry: ToolRegistry | None = None,
) -> ProviderRegistry:
    """Wire the local coding agent and the remote tool-loop model."""

    tools = tool_registry or McpToolRegistry.from_file(
        settings.tool_loop.mcp_config_path,
        timeout_seconds=settings.tool_loop.tool_timeout_seconds,
    )
    local_agent = LocalAgentProvider(settings.agent)
    tool_loop = ToolLoopProvider(settings.tool_loop, tools)
    return ProviderRegistry(
        {local_agent.name: local_agent, tool_loop.name: tool_loop},
        default=settings.jobs.default_provider,
    )
