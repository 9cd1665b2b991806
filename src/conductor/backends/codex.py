from __future__ import annotations

import json
from typing import Any

from conductor.backends.base import (
    TOOL_SERVER_TOOLS,
    AssistantMessage,
    CliAgentAdapter,
    DecodedEvent,
    ResultMetadata,
    SpawnOptions,
    SpawnSpec,
    as_dict,
    pick_str,
)

TOOL_CALL_ITEM_TYPES = {"mcp_tool_call", "tool_call", "function_call"}


class CodexAdapter(CliAgentAdapter):
    name = "codex"
    supports_interactive_input = False
    waits_for_input_after_result = False
    exits_after_turn = True

    @staticmethod
    def _override(args: list[str], key: str, value: Any) -> None:
        args.extend(["-c", f"{key}={json.dumps(value, ensure_ascii=False)}"])

    def build_spawn_spec(self, options: SpawnOptions) -> SpawnSpec:
        args = ["-C", options.working_dir, "exec"]
        if options.resume_token:
            args.extend(["resume", options.resume_token])
        args.extend(["--json", "--skip-git-repo-check"])

        model = options.model or self.config.codex.default_model
        if model:
            args.extend(["--model", model])
        # User-global codex config may pin reasoning values gpt-5 models reject.
        if model and "gpt-5" in model:
            self._override(args, "model_reasoning_effort", "high")

        if options.permission_mode == "bypassPermissions":
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            args.append("--full-auto")

        server = options.tool_server
        if server is not None:
            prefix = f"mcp_servers.{server.name}"
            self._override(args, f"{prefix}.command", server.command)
            self._override(args, f"{prefix}.args", list(server.args))
            for key, value in server.env.items():
                self._override(args, f"{prefix}.env.{key}", value)
            if options.allowed_tools:
                marker = f"mcp__{server.name}__"
                merged = [*options.allowed_tools, *(marker + tool for tool in TOOL_SERVER_TOOLS)]
                enabled = list(
                    dict.fromkeys(
                        tool.removeprefix(marker) for tool in merged if tool.startswith(marker)
                    )
                )
                if enabled:
                    self._override(args, f"{prefix}.enabled_tools", enabled)

        initial_input = options.prompt
        if options.system_prompt:
            initial_input = f"{options.system_prompt}\n\n{options.prompt}"
        return SpawnSpec(
            command=self.config.codex.path or "codex",
            args=args,
            initial_input=initial_input,
            close_stdin_after_initial_input=True,
        )

    def format_user_input(self, text: str) -> str:
        return f"{text}\n"

    @staticmethod
    def _extract_token(event: dict[str, Any], event_type: str) -> str | None:
        if event_type.endswith("_delta") and isinstance(event.get("delta"), str):
            return event["delta"]
        if event_type == "item.updated":
            item = as_dict(event.get("item"))
            if item is None:
                return None
            if isinstance(item.get("delta"), str):
                return item["delta"]
            delta = as_dict(item.get("delta"))
            if delta is not None and isinstance(delta.get("text"), str):
                return delta["text"]
        return None

    @staticmethod
    def _agent_message_text(item: dict[str, Any]) -> str | None:
        direct = pick_str(item.get("text"))
        if direct:
            return direct
        content = item.get("content")
        if not isinstance(content, list):
            return None
        parts: list[str] = []
        for block in content:
            block = as_dict(block)
            if block is None:
                continue
            text = pick_str(block.get("text"), block.get("value"))
            if text:
                parts.append(text)
        return "".join(parts) or None

    @staticmethod
    def _tool_input(item: dict[str, Any]) -> dict[str, Any]:
        for key in ("input", "arguments"):
            value = as_dict(item.get(key))
            if value is not None:
                return value
        arguments = item.get("arguments")
        if isinstance(arguments, str):
            try:
                parsed = json.loads(arguments)
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return {}

    def _assistant(self, item: dict[str, Any]) -> AssistantMessage | None:
        item_type = item.get("type")
        if item_type == "agent_message":
            text = self._agent_message_text(item)
            if not text:
                return None
            block: dict[str, Any] = {"type": "text", "text": text}
        elif item_type in TOOL_CALL_ITEM_TYPES:
            name = pick_str(item.get("name"), item.get("tool_name"), item.get("tool")) or "tool"
            block = {"type": "server_tool_use", "name": name, "input": self._tool_input(item)}
        elif item_type == "reasoning":
            thinking = pick_str(item.get("text"), item.get("summary"), item.get("content"))
            if not thinking:
                return None
            block = {"type": "thinking", "thinking": thinking}
        else:
            return None
        return AssistantMessage(message={"role": "assistant", "content": [block]})

    def decode(self, event: dict[str, Any]) -> DecodedEvent:
        event_type = pick_str(event.get("type")) or ""
        decoded = DecodedEvent(raw=event, token=self._extract_token(event, event_type))
        if event_type in ("thread.started", "session.started"):
            decoded.resume_token = pick_str(event.get("thread_id"), event.get("session_id"))
        if event_type == "item.completed":
            item = as_dict(event.get("item"))
            if item is not None:
                decoded.assistant = self._assistant(item)
        if event_type in ("turn.completed", "exec.completed"):
            decoded.result = ResultMetadata(
                data={
                    "usage": event.get("usage"),
                    "thread_id": pick_str(event.get("thread_id")),
                    "turn_id": pick_str(event.get("turn_id")),
                }
            )
        return decoded
