from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Literal

from loguru import logger

SessionStatus = Literal["active", "paused", "waiting_approval", "completed"]
AgentStatus = Literal["spawning", "running", "waiting", "completed", "failed"]
ApprovalType = Literal["phase_gate", "escalation", "agent_idle", "needs_input", "decision"]
ApprovalStatus = Literal["pending", "approved", "rejected"]
ApprovalPolicy = Literal["none", "before", "after"]
MessageType = Literal["user", "assistant", "result", "system"]
RelayMode = Literal["off", "summary", "previous", "all"]
LoopCondition = Literal["agent_signal", "approval"]
GitMode = Literal["worktree", "main", "branch"]
Isolation = Literal["worktree", "in_place"]

TERMINAL_AGENT_STATUSES = frozenset({"completed", "failed"})
LIVE_AGENT_STATUSES = frozenset({"spawning", "running", "waiting"})
RELAY_MODES = ("off", "summary", "previous", "all")


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class Repo:
    __table__: ClassVar[str] = "repos"

    id: str
    name: str
    local_path: str
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Workspace:
    __table__: ClassVar[str] = "workspaces"

    id: str
    name: str
    repo_ids: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Workflow:
    __table__: ClassVar[str] = "workflows"

    id: str
    name: str
    description: str | None = None
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Phase:
    __table__: ClassVar[str] = "phases"

    id: str
    workflow_id: str
    ordinal: int
    name: str
    prompt_template: str
    allowed_tools: str | None = None
    agents: str | None = None
    approval: ApprovalPolicy = "none"
    config: str | None = None
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Session:
    __table__: ClassVar[str] = "sessions"

    id: str
    workflow_id: str
    workspace_id: str
    status: SessionStatus = "active"
    current_phase: int = 0
    context: str | None = None
    description: str | None = None
    loop_state: str | None = None
    git_strategy: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None


@dataclass(slots=True)
class Agent:
    __table__: ClassVar[str] = "agents"

    id: str
    session_id: str
    phase_id: str
    name: str
    status: AgentStatus = "spawning"
    agent_type: str = "claude"
    working_dir: str | None = None
    worktree_path: str | None = None
    worktree_manifest: str | None = None
    branch: str | None = None
    resume_token: str | None = None
    completion_signal: str | None = None
    phase_summary: str | None = None
    loop_iteration: int | None = None
    created_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None


@dataclass(slots=True)
class Approval:
    __table__: ClassVar[str] = "approvals"

    id: str
    session_id: str
    type: ApprovalType
    summary: str
    agent_id: str | None = None
    status: ApprovalStatus = "pending"
    payload: str | None = None
    resolved_by: str | None = None
    response: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    resolved_at: str | None = None

    def payload_dict(self) -> dict[str, Any]:
        return decode_json_object(self.payload, what=f"approval {self.id} payload") or {}


@dataclass(slots=True)
class Message:
    __table__: ClassVar[str] = "messages"

    id: str
    agent_id: str
    session_id: str
    type: MessageType
    content_preview: str
    content_path: str | None = None
    parent_tool_use_id: str | None = None
    metadata: str | None = None
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Artifact:
    __table__: ClassVar[str] = "artifacts"

    id: str
    session_id: str
    phase_id: str
    agent_id: str
    name: str
    file_path: str
    status: Literal["draft", "final"] = "draft"
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Decision:
    __table__: ClassVar[str] = "decisions"

    id: str
    session_id: str
    question: str
    choice: str
    agent_id: str | None = None
    rationale: str | None = None
    alternatives: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    status: Literal["active", "invalidated"] = "active"
    origin: Literal["agent", "human"] = "agent"
    created_at: str = field(default_factory=utcnow_iso)


def decode_json_object(raw: str | None, *, what: str) -> dict[str, Any] | None:
    """Decode a stored JSON object; malformed or non-object values count as absent."""
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring unparsable {what}: {raw[:80]!r}")
        return None
    if not isinstance(value, dict):
        logger.warning(f"Ignoring non-object {what}")
        return None
    return value


def decode_string_list(raw: str | None, *, what: str) -> list[str] | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring unparsable {what}: {raw[:80]!r}")
        return None
    if not isinstance(value, list):
        return None
    return [str(item) for item in value]


@dataclass(slots=True)
class GitStrategy:
    mode: GitMode = "worktree"
    branch: str | None = None
    isolation: Isolation = "worktree"
    create: bool = False

    @property
    def in_place(self) -> bool:
        if self.mode == "main":
            return True
        return self.mode == "branch" and self.isolation == "in_place"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GitStrategy | None:
        mode = data.get("mode")
        if mode not in ("worktree", "main", "branch"):
            return None
        if mode == "branch" and not isinstance(data.get("branch"), str):
            return None
        isolation = data.get("isolation", "worktree")
        return cls(
            mode=mode,
            branch=data.get("branch") if mode == "branch" else None,
            isolation=isolation if isolation in ("worktree", "in_place") else "worktree",
            create=bool(data.get("create", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        if self.mode != "branch":
            return {"mode": self.mode}
        return asdict(self)

    def encode(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def decode(cls, raw: str | None) -> GitStrategy | None:
        data = decode_json_object(raw, what="git strategy")
        return cls.from_dict(data) if data is not None else None


@dataclass(slots=True)
class PhaseConfig:
    permission_mode: str | None = None
    agent_type: str | None = None
    git_strategy: GitStrategy | None = None
    relay: RelayMode = "off"
    loop_to: int | None = None
    max_iterations: int | None = None
    loop_condition: LoopCondition = "agent_signal"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseConfig:
        strategy = data.get("git_strategy")
        relay = data.get("relay", "off")
        loop_to = data.get("loop_to")
        max_iterations = data.get("max_iterations")
        condition = data.get("loop_condition")
        return cls(
            permission_mode=data.get("permission_mode"),
            agent_type=data.get("agent_type"),
            git_strategy=GitStrategy.from_dict(strategy) if isinstance(strategy, dict) else None,
            relay=relay if relay in RELAY_MODES else "off",
            loop_to=loop_to if isinstance(loop_to, int) and not isinstance(loop_to, bool) else None,
            max_iterations=max_iterations if isinstance(max_iterations, int) else None,
            loop_condition="approval" if condition == "approval" else "agent_signal",
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.permission_mode is not None:
            data["permission_mode"] = self.permission_mode
        if self.agent_type is not None:
            data["agent_type"] = self.agent_type
        if self.git_strategy is not None:
            data["git_strategy"] = self.git_strategy.to_dict()
        if self.relay != "off":
            data["relay"] = self.relay
        if self.loop_to is not None:
            data["loop_to"] = self.loop_to
        if self.max_iterations is not None:
            data["max_iterations"] = self.max_iterations
        if self.loop_condition != "agent_signal":
            data["loop_condition"] = self.loop_condition
        return data

    def encode(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def decode(cls, raw: str | None) -> PhaseConfig:
        data = decode_json_object(raw, what="phase config")
        return cls.from_dict(data) if data is not None else cls()


@dataclass(slots=True)
class LoopState:
    iterations: int
    loop_origin_ordinal: int

    def encode(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def decode(cls, raw: str | None) -> LoopState | None:
        data = decode_json_object(raw, what="loop state")
        if data is None:
            return None
        iterations = data.get("iterations")
        origin = data.get("loop_origin_ordinal")
        if not isinstance(iterations, int) or not isinstance(origin, int):
            return None
        return cls(iterations=iterations, loop_origin_ordinal=origin)


@dataclass(slots=True)
class ManifestEntry:
    repo_name: str
    repo_path: str
    worktree_path: str
    branch: str | None = None


def encode_manifest(entries: list[ManifestEntry]) -> str:
    return json.dumps([asdict(entry) for entry in entries])


def decode_manifest(raw: str | None) -> list[ManifestEntry] | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring unparsable worktree manifest")
        return None
    if not isinstance(value, list):
        return None
    entries: list[ManifestEntry] = []
    for item in value:
        if isinstance(item, dict) and "repo_path" in item and "worktree_path" in item:
            entries.append(
                ManifestEntry(
                    repo_name=str(item.get("repo_name", "")),
                    repo_path=str(item["repo_path"]),
                    worktree_path=str(item["worktree_path"]),
                    branch=item.get("branch"),
                )
            )
    return entries or None
