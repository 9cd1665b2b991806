from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

AgentType = Literal["claude", "codex"]

DEFAULT_ENV_PASSTHROUGH = [
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "SHELL",
    "LANG",
    "LC_ALL",
    "TERM",
    "TMPDIR",
    "XDG_CONFIG_HOME",
    "ANTHROPIC_API_KEY",
    "CLAUDE_CONFIG_DIR",
    "OPENAI_API_KEY",
    "CODEX_HOME",
]


@dataclass(slots=True)
class StorageConfig:
    data_dir: str = "~/.conductor/data"

    @property
    def root(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def state_dir(self) -> Path:
        return self.root / "state"

    @property
    def content_dir(self) -> Path:
        return self.root / "content"

    @property
    def worktrees_dir(self) -> Path:
        return self.root / "worktrees"


@dataclass(slots=True)
class ClaudeConfig:
    path: str = "claude"
    default_model: str = "sonnet"
    default_permission_mode: str = "default"


@dataclass(slots=True)
class CodexConfig:
    path: str = "codex"
    default_model: str = "gpt-5-codex"


@dataclass(slots=True)
class EngineConfig:
    default_permission_mode: str = "bypassPermissions"
    default_agent_type: AgentType = "claude"
    max_loop_iterations: int = 20
    branch_prefix: str = "conductor"


@dataclass(slots=True)
class ProcessConfig:
    terminate_grace_seconds: float = 2.0
    sigterm_timeout_seconds: float = 3.0
    kill_grace_seconds: float = 1.0
    max_line_bytes: int = 8 * 1024 * 1024
    env_passthrough: list[str] = field(default_factory=lambda: list(DEFAULT_ENV_PASSTHROUGH))


@dataclass(slots=True)
class PreferencesConfig:
    message_preview_length: int = 500


@dataclass(slots=True)
class BridgeConfig:
    poll_seconds: float = 2.0


@dataclass(slots=True)
class ToolServerConfig:
    name: str = "conductor"
    command: str = ""
    args: list[str] = field(default_factory=lambda: ["-m", "conductor", "tool-server"])


SECTION_ORDER = [
    "storage",
    "claude",
    "codex",
    "engine",
    "process",
    "preferences",
    "bridge",
    "tool_server",
]


@dataclass(slots=True)
class ConductorConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    codex: CodexConfig = field(default_factory=CodexConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    process: ProcessConfig = field(default_factory=ProcessConfig)
    preferences: PreferencesConfig = field(default_factory=PreferencesConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    tool_server: ToolServerConfig = field(default_factory=ToolServerConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            storage=StorageConfig(**data.get("storage", {})),
            claude=ClaudeConfig(**data.get("claude", {})),
            codex=CodexConfig(**data.get("codex", {})),
            engine=EngineConfig(**data.get("engine", {})),
            process=ProcessConfig(**data.get("process", {})),
            preferences=PreferencesConfig(**data.get("preferences", {})),
            bridge=BridgeConfig(**data.get("bridge", {})),
            tool_server=ToolServerConfig(**data.get("tool_server", {})),
        )

    def to_dict(self) -> dict:
        return {section: asdict(getattr(self, section)) for section in SECTION_ORDER}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
