from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
import sys
import tempfile
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from conductor.backends import (
    BackendProcessError,
    CliAgentAdapter,
    DecodedEvent,
    SpawnOptions,
    SpawnSpec,
    ToolServer,
    UnrecognizedLine,
    build_adapters,
)
from conductor.backends.base import AssistantMessage, as_dict
from conductor.backends.escalation import extract_escalation
from conductor.config import ConductorConfig
from conductor.errors import NotFoundError, PreconditionError
from conductor.events import (
    AgentCompleted,
    AgentInit,
    AgentMessage,
    AgentStatusChanged,
    AgentToken,
    AgentTurnEnded,
    EventBus,
    EscalationRequested,
)
from conductor.models import (
    LIVE_AGENT_STATUSES,
    TERMINAL_AGENT_STATUSES,
    Agent,
    Approval,
    Message,
    MessageType,
    Phase,
    PhaseConfig,
    Repo,
    Session,
    Workspace,
    decode_json_object,
    decode_manifest,
    decode_string_list,
    new_id,
    utcnow_iso,
)
from conductor.state.content import LocalContentStore
from conductor.state.store import Store

PLACEHOLDER_INPUT = "Continue."


@dataclass(slots=True)
class SpawnRequest:
    session_id: str
    phase_id: str
    name: str
    prompt: str
    working_dir: str
    agent_type: str = "claude"
    permission_mode: str | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] | None = None
    agents: dict[str, Any] | None = None
    worktree_path: str | None = None
    worktree_manifest: str | None = None
    branch: str | None = None
    resume_token: str | None = None
    loop_iteration: int | None = None


@dataclass(slots=True)
class LiveAgent:
    id: str
    session_id: str
    phase_id: str
    name: str
    agent_type: str
    adapter: CliAgentAdapter
    process: asyncio.subprocess.Process
    detached: bool
    killed: bool = False
    reader: asyncio.Task[None] | None = None
    stderr_reader: asyncio.Task[None] | None = None
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=50))


def build_result_preview(metadata: dict[str, Any]) -> str:
    cost = metadata.get("total_cost_usd")
    if isinstance(cost, (int, float)) and not isinstance(cost, bool):
        return f"Cost: ${cost:.4f}"
    usage = as_dict(metadata.get("usage"))
    if usage is not None:
        total = usage.get("total_tokens")
        if isinstance(total, int):
            return f"Usage: {total} tokens"
        tokens_in = usage.get("input_tokens")
        tokens_out = usage.get("output_tokens")
        if isinstance(tokens_in, int) or isinstance(tokens_out, int):
            tokens_in = tokens_in if isinstance(tokens_in, int) else 0
            tokens_out = tokens_out if isinstance(tokens_out, int) else 0
            return f"Usage: {tokens_in} in / {tokens_out} out"
    return "Run complete"


class AgentManager:
    """Owns the OS processes behind agent rows.

    One reader task per live process decodes stdout line by line, so events
    from one agent are handled strictly in order. Agent statuses only move
    between live states; completed and failed are never overwritten.
    """

    def __init__(
        self,
        store: Store,
        content: LocalContentStore,
        bus: EventBus,
        config: ConductorConfig,
        *,
        adapters: dict[str, CliAgentAdapter] | None = None,
    ) -> None:
        self.store = store
        self.content = content
        self.bus = bus
        self.config = config
        self.adapters = adapters if adapters is not None else build_adapters(config)
        self._active: dict[str, LiveAgent] = {}
        self._escalation_keys: dict[str, set[str]] = {}
        self._completed: set[str] = set()
        self._background: set[asyncio.Task[None]] = set()

    def adapter_for(self, agent_type: str) -> CliAgentAdapter:
        adapter = self.adapters.get(agent_type)
        if adapter is None:
            raise PreconditionError(f"Unknown agent type: {agent_type}")
        return adapter

    def get_active_agents(self, session_id: str | None = None) -> list[LiveAgent]:
        return [
            live
            for live in self._active.values()
            if session_id is None or live.session_id == session_id
        ]

    def is_live(self, agent_id: str) -> bool:
        return agent_id in self._active

    async def wait_for_exit(self, agent_id: str) -> None:
        live = self._active.get(agent_id)
        if live is not None and live.reader is not None:
            await asyncio.shield(live.reader)

    def build_tool_server(self, agent_id: str, session_id: str, phase_id: str) -> ToolServer:
        settings = self.config.tool_server
        env = {key: os.environ[key] for key in ("PATH", "HOME", "USER") if key in os.environ}
        env.update(
            {
                "CONDUCTOR_DATA_DIR": str(self.config.storage.root),
                "CONDUCTOR_AGENT_ID": agent_id,
                "CONDUCTOR_SESSION_ID": session_id,
                "CONDUCTOR_PHASE_ID": phase_id,
            }
        )
        return ToolServer(
            name=settings.name,
            command=settings.command or sys.executable,
            args=list(settings.args),
            env=env,
        )

    @staticmethod
    def _mcp_config_path(agent_id: str) -> Path:
        return Path(tempfile.gettempdir()) / "conductor-mcp" / f"{agent_id}.json"

    def write_mcp_config(self, agent_id: str, server: ToolServer) -> str:
        path = self._mcp_config_path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(server.to_mcp_config(), indent=2), encoding="utf-8")
        return str(path)

    def _child_env(self, extra: dict[str, str]) -> dict[str, str]:
        env = {
            key: os.environ[key] for key in self.config.process.env_passthrough if key in os.environ
        }
        env.update(extra)
        return env

    async def _set_status(
        self,
        agent_id: str,
        status: str,
        *,
        expect: frozenset[str] | set[str] = LIVE_AGENT_STATUSES,
    ) -> Agent | None:
        changes: dict[str, Any] = {"status": status}
        if status in TERMINAL_AGENT_STATUSES:
            changes["completed_at"] = utcnow_iso()
        updated = await self.store.update(
            Agent, agent_id, expect={"status": set(expect)}, **changes
        )
        if updated is not None:
            await self.bus.publish(
                AgentStatusChanged(agent_id=agent_id, session_id=updated.session_id, status=status)
            )
        return updated

    async def spawn_agent(self, request: SpawnRequest) -> str:
        adapter = self.adapter_for(request.agent_type)
        agent_id = new_id()
        await self.store.insert(
            Agent(
                id=agent_id,
                session_id=request.session_id,
                phase_id=request.phase_id,
                name=request.name,
                status="spawning",
                agent_type=request.agent_type,
                working_dir=request.working_dir,
                worktree_path=request.worktree_path,
                worktree_manifest=request.worktree_manifest,
                branch=request.branch,
                resume_token=request.resume_token,
                loop_iteration=request.loop_iteration,
            )
        )
        server = self.build_tool_server(agent_id, request.session_id, request.phase_id)
        spec = adapter.build_spawn_spec(
            SpawnOptions(
                prompt=request.prompt,
                working_dir=request.working_dir,
                permission_mode=(
                    request.permission_mode or self.config.claude.default_permission_mode
                ),
                system_prompt=request.system_prompt,
                allowed_tools=request.allowed_tools,
                agents=request.agents,
                mcp_config_path=self.write_mcp_config(agent_id, server),
                tool_server=server,
                resume_token=request.resume_token,
            )
        )
        await self._launch(
            agent_id,
            session_id=request.session_id,
            phase_id=request.phase_id,
            name=request.name,
            agent_type=request.agent_type,
            adapter=adapter,
            spec=spec,
            working_dir=request.working_dir,
            initial_text=request.prompt,
        )
        return agent_id

    async def _launch(
        self,
        agent_id: str,
        *,
        session_id: str,
        phase_id: str,
        name: str,
        agent_type: str,
        adapter: CliAgentAdapter,
        spec: SpawnSpec,
        working_dir: str,
        initial_text: str | None,
    ) -> None:
        logger.info(
            f"[agent:{name}] Spawning ({agent_type}): {spec.command} "
            f"{' '.join(spec.args[:8])} ... (cwd: {working_dir})"
        )
        detached = os.name == "posix"
        try:
            process = await asyncio.create_subprocess_exec(
                spec.command,
                *spec.args,
                cwd=working_dir,
                env=self._child_env(spec.env),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.config.process.max_line_bytes,
                start_new_session=detached,
            )
        except OSError as exc:
            logger.error(f"[agent:{name}] Spawn error: {exc}")
            await self._set_status(agent_id, "failed")
            self._forget(agent_id)
            return

        logger.info(f"[agent:{name}] Process PID: {process.pid}")
        live = LiveAgent(
            id=agent_id,
            session_id=session_id,
            phase_id=phase_id,
            name=name,
            agent_type=agent_type,
            adapter=adapter,
            process=process,
            detached=detached,
        )
        self._active[agent_id] = live
        await self._set_status(agent_id, "running")
        live.stderr_reader = asyncio.create_task(self._drain_stderr(live))
        live.reader = asyncio.create_task(self._pump(live))

        if spec.initial_input is not None and initial_text is not None:
            try:
                await self._write_input(
                    live,
                    initial_text,
                    transport=spec.initial_input,
                    close_after=spec.close_stdin_after_initial_input,
                    check_interactive=False,
                )
            except (BackendProcessError, PreconditionError):
                logger.error(f"[agent:{name}] Failed to send initial prompt")
                await self.kill_agent(agent_id)
                raise

    async def _drain_stderr(self, live: LiveAgent) -> None:
        stream = live.process.stderr
        if stream is None:
            return
        async for raw_line in stream:
            text = raw_line.decode("utf-8", errors="replace").rstrip()
            if text:
                live.stderr_tail.append(text)
                logger.debug(f"[agent:{live.name}] stderr: {text}")

    async def _pump(self, live: LiveAgent) -> None:
        stdout = live.process.stdout
        line_count = 0
        while stdout is not None:
            try:
                raw_line = await stdout.readline()
            except ValueError as exc:
                await self.bus.report(
                    "agent_manager", f"Dropped oversized line: {exc}", agent_id=live.id
                )
                continue
            if not raw_line:
                break
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            line_count += 1
            parsed = live.adapter.parse_line(line)
            if isinstance(parsed, UnrecognizedLine):
                logger.debug(f"[agent:{live.name}] Skipping line #{line_count} ({parsed.reason})")
                continue
            try:
                await self._handle_event(live, parsed)
            except Exception as exc:
                await self.bus.report("agent_manager", exc, agent_id=live.id, line=line_count)

        code = await live.process.wait()
        if live.stderr_reader is not None:
            await live.stderr_reader
        if self._active.get(live.id) is live:
            del self._active[live.id]
        logger.info(f"[agent:{live.name}] Exited with code={code} after {line_count} lines")
        if code != 0 and live.stderr_tail:
            logger.error(f"[agent:{live.name}] stderr:\n" + "\n".join(live.stderr_tail))
        try:
            await self._handle_exit(live, code)
        except Exception as exc:
            await self.bus.report("agent_manager", exc, agent_id=live.id, exit_code=code)

    async def _handle_event(self, live: LiveAgent, event: DecodedEvent) -> None:
        if event.token:
            await self.bus.publish(AgentToken(agent_id=live.id, text=event.token))
        if event.resume_token:
            await self.store.update(Agent, live.id, resume_token=event.resume_token)
            await self.bus.publish(AgentInit(agent_id=live.id, resume_token=event.resume_token))
        await self._maybe_escalate(live, event.raw)
        if event.assistant is not None:
            await self._persist_assistant(live, event.assistant)
            return
        if event.result is not None:
            metadata = event.result.data
            await self._persist_message(
                live.id,
                live.session_id,
                "result",
                build_result_preview(metadata),
                metadata=json.dumps(metadata),
            )
            await self._handle_result(live)

    async def _persist_message(
        self,
        agent_id: str,
        session_id: str,
        type: MessageType,
        content: str,
        *,
        preview_source: str | None = None,
        parent_tool_use_id: str | None = None,
        metadata: str | None = None,
    ) -> Message:
        preview_len = self.config.preferences.message_preview_length
        message_id = new_id()
        content_path = None
        if len(content) > preview_len:
            content_path = f"sessions/{session_id}/agents/{agent_id}/messages/{message_id}.json"
            await self.content.write(content_path, content)
        preview_source = content if preview_source is None else preview_source
        message = Message(
            id=message_id,
            agent_id=agent_id,
            session_id=session_id,
            type=type,
            content_preview=preview_source[:preview_len],
            content_path=content_path,
            parent_tool_use_id=parent_tool_use_id,
            metadata=metadata,
        )
        await self.store.insert(message)
        await self.bus.publish(
            AgentMessage(
                agent_id=agent_id,
                message_id=message_id,
                type=type,
                preview=message.content_preview,
            )
        )
        return message

    async def _persist_assistant(self, live: LiveAgent, assistant: AssistantMessage) -> None:
        await self._persist_message(
            live.id,
            live.session_id,
            "assistant",
            json.dumps(assistant.message, ensure_ascii=False),
            parent_tool_use_id=assistant.parent_tool_use_id,
        )

    async def _maybe_escalate(self, live: LiveAgent, raw: dict[str, Any]) -> None:
        request = extract_escalation(raw)
        if request is None:
            return
        keys = self._escalation_keys.setdefault(live.id, set())
        if request.key in keys:
            return
        keys.add(request.key)
        await self._persist_message(
            live.id,
            live.session_id,
            "system",
            request.summary,
            metadata=json.dumps({"escalation": request.payload}),
        )
        logger.info(f"[agent:{live.name}] Escalation requested: {request.summary}")
        await self.bus.publish(
            EscalationRequested(
                agent_id=live.id,
                session_id=live.session_id,
                summary=request.summary,
                payload=request.payload,
            )
        )

    async def _emit_completed(self, agent_id: str) -> None:
        if agent_id in self._completed:
            return
        self._completed.add(agent_id)
        await self.bus.publish(AgentCompleted(agent_id=agent_id))

    async def _handle_result(self, live: LiveAgent) -> None:
        agent = await self.store.get(Agent, live.id)
        if agent is None:
            return
        if agent.status in TERMINAL_AGENT_STATUSES:
            if agent.status == "completed":
                await self._emit_completed(live.id)
            self.terminate_process(live.id)
            return
        adapter = live.adapter
        if agent.status == "running" and (
            adapter.waits_for_input_after_result or adapter.exits_after_turn
        ):
            if await self._set_status(live.id, "waiting", expect={"running"}):
                await self.bus.publish(AgentTurnEnded(agent_id=live.id, session_id=live.session_id))

    async def _handle_exit(self, live: LiveAgent, code: int) -> None:
        agent = await self.store.get(Agent, live.id)
        if agent is None:
            self._forget(live.id)
            return
        final_status = agent.status
        if final_status not in TERMINAL_AGENT_STATUSES:
            stays_waiting = (
                live.adapter.exits_after_turn
                and code == 0
                and final_status == "waiting"
                and not live.killed
            )
            if not stays_waiting:
                target = "completed" if code == 0 and not live.killed else "failed"
                updated = await self._set_status(live.id, target)
                if updated is not None:
                    final_status = target
                else:
                    current = await self.store.get(Agent, live.id)
                    final_status = current.status if current is not None else target

        if final_status == "completed":
            await self._emit_completed(live.id)
        self._completed.discard(live.id)
        if final_status in TERMINAL_AGENT_STATUSES:
            self._forget(live.id)

    def _forget(self, agent_id: str) -> None:
        self._escalation_keys.pop(agent_id, None)
        with contextlib.suppress(FileNotFoundError):
            self._mcp_config_path(agent_id).unlink()

    def _send_signal(self, live: LiveAgent, sig: signal.Signals) -> None:
        try:
            if live.detached:
                os.killpg(live.process.pid, sig)
            else:
                live.process.send_signal(sig)
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.warning(f"[agent:{live.name}] Could not send {sig.name}: {exc}")

    @staticmethod
    async def _wait_exit(live: LiveAgent, timeout: float) -> bool:
        if live.process.returncode is not None:
            return True
        try:
            await asyncio.wait_for(live.process.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    def terminate_process(self, agent_id: str) -> None:
        """Schedule a graceful shutdown of a process whose agent is already terminal."""
        live = self._active.get(agent_id)
        if live is None:
            return
        task = asyncio.create_task(self._terminate(live))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _terminate(self, live: LiveAgent) -> None:
        logger.info(f"[agent:{live.name}] Terminating process (agent status is terminal)")
        process_config = self.config.process
        if live.process.stdin is not None and not live.process.stdin.is_closing():
            live.process.stdin.close()
        if await self._wait_exit(live, process_config.terminate_grace_seconds):
            return
        logger.warning(f"[agent:{live.name}] Still alive after stdin close; sending SIGTERM")
        self._send_signal(live, signal.SIGTERM)
        if await self._wait_exit(live, process_config.sigterm_timeout_seconds):
            return
        logger.warning(f"[agent:{live.name}] SIGTERM timeout; sending SIGKILL")
        self._send_signal(live, signal.SIGKILL)

    async def kill_agent(self, agent_id: str) -> None:
        live = self._active.get(agent_id)
        if live is not None:
            live.killed = True
            grace = self.config.process.kill_grace_seconds
            self._send_signal(live, signal.SIGTERM)
            if not await self._wait_exit(live, grace):
                logger.warning(f"[agent:{live.name}] SIGTERM timeout; forcing kill")
                self._send_signal(live, signal.SIGKILL)
                await self._wait_exit(live, grace)
            if self._active.get(agent_id) is live:
                del self._active[agent_id]
        await self._set_status(agent_id, "failed")
        self._forget(agent_id)

    async def shutdown(self) -> None:
        for live in list(self._active.values()):
            await self.kill_agent(live.id)

    async def _write_input(
        self,
        live: LiveAgent,
        text: str,
        *,
        transport: str | None = None,
        close_after: bool = False,
        check_interactive: bool = True,
    ) -> None:
        stdin = live.process.stdin
        if stdin is None or stdin.is_closing() or live.process.returncode is not None:
            raise PreconditionError(f"Agent {live.id} is not accepting input")
        if check_interactive and not live.adapter.supports_interactive_input:
            raise PreconditionError(
                f"Agent {live.id} ({live.agent_type}) does not support follow-up input"
            )
        payload = live.adapter.format_user_input(text if transport is None else transport)
        try:
            stdin.write(payload.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise BackendProcessError(
                f"Agent {live.id} stdin closed: {exc}", backend=live.agent_type
            ) from exc
        if close_after:
            stdin.close()
        message = {"role": "user", "content": [{"type": "text", "text": text}]}
        await self._persist_message(
            live.id,
            live.session_id,
            "user",
            json.dumps(message, ensure_ascii=False),
            preview_source=text,
        )

    async def send_input(self, agent_id: str, text: str) -> None:
        if not text.strip():
            text = PLACEHOLDER_INPUT
        live = self._active.get(agent_id)
        if live is not None and live.process.returncode is None:
            await self._write_input(live, text)
            await self._set_status(agent_id, "running", expect={"waiting"})
            return
        await self._respawn(agent_id, text)

    async def _respawn(self, agent_id: str, text: str) -> None:
        agent = await self.store.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        if agent.status != "waiting":
            raise PreconditionError(f"Agent {agent_id} is not waiting for input")
        phase = await self.store.get(Phase, agent.phase_id)
        phase_config = PhaseConfig.decode(phase.config if phase else None)
        agent_type = phase_config.agent_type or agent.agent_type
        adapter = self.adapter_for(agent_type)
        if not adapter.exits_after_turn:
            raise PreconditionError(f"Agent {agent_id} is not accepting input")

        working_dir = await self._resolve_working_dir(agent)
        server = self.build_tool_server(agent_id, agent.session_id, agent.phase_id)
        spec = adapter.build_spawn_spec(
            SpawnOptions(
                prompt=text,
                working_dir=working_dir,
                permission_mode=(
                    phase_config.permission_mode or self.config.engine.default_permission_mode
                ),
                allowed_tools=decode_string_list(
                    phase.allowed_tools if phase else None, what="allowed tools"
                ),
                agents=decode_json_object(phase.agents if phase else None, what="agents"),
                mcp_config_path=self.write_mcp_config(agent_id, server),
                tool_server=server,
                resume_token=agent.resume_token,
            )
        )
        logger.info(f"[agent:{agent.name}] Re-spawning to deliver follow-up input")
        await self._launch(
            agent_id,
            session_id=agent.session_id,
            phase_id=agent.phase_id,
            name=agent.name,
            agent_type=agent_type,
            adapter=adapter,
            spec=spec,
            working_dir=working_dir,
            initial_text=text,
        )

    async def _resolve_working_dir(self, agent: Agent) -> str:
        manifest = decode_manifest(agent.worktree_manifest)
        if manifest:
            return str(Path(manifest[0].worktree_path).parent)
        if agent.worktree_path:
            return agent.worktree_path
        if agent.working_dir:
            return agent.working_dir
        session = await self.store.require(Session, agent.session_id)
        workspace = await self.store.require(Workspace, session.workspace_id)
        for repo_id in workspace.repo_ids:
            repo = await self.store.get(Repo, repo_id)
            if repo is not None:
                return repo.local_path
        raise PreconditionError(f"No working directory recoverable for agent {agent.id}")

    async def handle_escalation_resolution(self, approval: Approval) -> None:
        if not approval.agent_id:
            return
        notes = (approval.response or "").strip()
        if approval.status == "approved":
            guidance = "Proceed with the requested action and report the outcome."
        else:
            guidance = "Do not run the blocked action. Propose a safer alternative."
        prompt = f"System approval update: your escalation request was {approval.status}."
        if notes:
            prompt += f"\nReviewer notes: {notes}"
        prompt += f"\n{guidance}"
        try:
            await self.send_input(approval.agent_id, prompt)
        except (PreconditionError, NotFoundError, BackendProcessError) as exc:
            await self.bus.report(
                "agent_manager",
                f"Failed to relay escalation resolution: {exc}",
                agent_id=approval.agent_id,
            )
