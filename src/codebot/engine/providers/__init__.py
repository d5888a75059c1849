"""Execution backends for queued jobs."""

from codebot.engine.providers.base import (
    ExecutionContext,
    Provider,
    ProviderError,
    SpawnError,
)
from codebot.engine.providers.local_agent import LocalAgentProvider
from codebot.engine.providers.registry import ProviderRegistry, build_provider_registry
from codebot.engine.providers.tool_loop import ToolLoopProvider

__all__ = [
    "ExecutionContext",
    "LocalAgentProvider",
    "Provider",
    "ProviderError",
    "ProviderRegistry",
    "SpawnError",
    "ToolLoopProvider",
    "build_provider_registry",
]
