from __future__ import annotations

from conductor.backends.base import (
    AssistantMessage,
    BackendProcessError,
    CliAgentAdapter,
    DecodedEvent,
    ResultMetadata,
    SpawnOptions,
    SpawnSpec,
    ToolServer,
    UnrecognizedLine,
)
from conductor.backends.claude import ClaudeCodeAdapter
from conductor.backends.codex import CodexAdapter
from conductor.config import ConductorConfig

ADAPTERS: dict[str, type[CliAgentAdapter]] = {
    "claude": ClaudeCodeAdapter,
    "codex": CodexAdapter,
}


def build_adapters(config: ConductorConfig) -> dict[str, CliAgentAdapter]:
    return {name: adapter_cls(config) for name, adapter_cls in ADAPTERS.items()}


__all__ = [
    "ADAPTERS",
    "AssistantMessage",
    "BackendProcessError",
    "ClaudeCodeAdapter",
    "CliAgentAdapter",
    "CodexAdapter",
    "DecodedEvent",
    "ResultMetadata",
    "SpawnOptions",
    "SpawnSpec",
    "ToolServer",
    "UnrecognizedLine",
    "build_adapters",
]
