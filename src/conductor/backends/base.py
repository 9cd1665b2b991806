from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from conductor.config import ConductorConfig

TOOL_SERVER_TOOLS = [
    "conductor_context",
    "conductor_record",
    "conductor_decide",
    "conductor_artifact",
    "conductor_phase_complete",
]


class BackendProcessError(RuntimeError):
    """Raised when an agent process cannot be driven as requested."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


@dataclass(slots=True)
class ToolServer:
    """Stdio MCP server handed to a spawned agent."""

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    @property
    def tool_names(self) -> list[str]:
        return [f"mcp__{self.name}__{tool}" for tool in TOOL_SERVER_TOOLS]

    def to_mcp_config(self) -> dict[str, Any]:
        return {
            "mcpServers": {
                self.name: {
                    "type": "stdio",
                    "command": self.command,
                    "args": list(self.args),
                    "env": dict(self.env),
                }
            }
        }


@dataclass(slots=True)
class SpawnOptions:
    prompt: str
    working_dir: str
    permission_mode: str
    system_prompt: str | None = None
    allowed_tools: list[str] | None = None
    agents: dict[str, Any] | None = None
    mcp_config_path: str | None = None
    tool_server: ToolServer | None = None
    resume_token: str | None = None
    model: str | None = None


@dataclass(slots=True)
class SpawnSpec:
    command: str
    args: list[str]
    env: dict[str, str] = field(default_factory=dict)
    initial_input: str | None = None
    close_stdin_after_initial_input: bool = False


@dataclass(slots=True)
class AssistantMessage:
    message: Any
    parent_tool_use_id: str | None = None


@dataclass(slots=True)
class ResultMetadata:
    data: dict[str, Any]


@dataclass(slots=True)
class DecodedEvent:
    """One parsed stdout event; each field is extracted independently."""

    raw: dict[str, Any]
    token: str | None = None
    resume_token: str | None = None
    assistant: AssistantMessage | None = None
    result: ResultMetadata | None = None


@dataclass(slots=True)
class UnrecognizedLine:
    line: str
    reason: str


ParsedLine = DecodedEvent | UnrecognizedLine


def as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def pick_str(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


class CliAgentAdapter(ABC):
    """Turns spawn options into a command line and decodes its JSON-lines stdout."""

    name: str = "agent"
    supports_interactive_input: bool = False
    waits_for_input_after_result: bool = False
    exits_after_turn: bool = False

    def __init__(self, config: ConductorConfig | None = None) -> None:
        self.config = config or ConductorConfig.default()

    @abstractmethod
    def build_spawn_spec(self, options: SpawnOptions) -> SpawnSpec:
        """Return the concrete command, args, env and stdin payload for a spawn."""

    @abstractmethod
    def format_user_input(self, text: str) -> str:
        """Encode a user message for the process stdin."""

    @abstractmethod
    def decode(self, event: dict[str, Any]) -> DecodedEvent:
        """Map one adapter-specific event object onto the shared vocabulary."""

    def parse_line(self, line: str) -> ParsedLine:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return UnrecognizedLine(line=line, reason="not json")
        if not isinstance(event, dict):
            return UnrecognizedLine(line=line, reason="not an object")
        return self.decode(event)
