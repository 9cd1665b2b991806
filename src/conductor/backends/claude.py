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
)


class ClaudeCodeAdapter(CliAgentAdapter):
    name = "claude"
    supports_interactive_input = True
    waits_for_input_after_result = True
    exits_after_turn = False

    def build_spawn_spec(self, options: SpawnOptions) -> SpawnSpec:
        args = [
            "--print",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]
        if options.system_prompt:
            args.extend(["--system-prompt", options.system_prompt])
        if options.agents:
            args.extend(["--agents", json.dumps(options.agents, ensure_ascii=False)])
        if options.model:
            args.extend(["--model", options.model])

        permission_mode = (
            options.permission_mode or self.config.claude.default_permission_mode or "default"
        )
        args.extend(["--permission-mode", permission_mode])
        if permission_mode == "bypassPermissions":
            args.append("--dangerously-skip-permissions")

        if options.mcp_config_path:
            args.extend(["--mcp-config", options.mcp_config_path])
            server_name = (
                options.tool_server.name if options.tool_server else self.config.tool_server.name
            )
            merged = list(options.allowed_tools or [])
            merged.extend(f"mcp__{server_name}__{tool}" for tool in TOOL_SERVER_TOOLS)
            args.extend(["--allowedTools", ",".join(merged)])
        elif options.allowed_tools:
            args.extend(["--allowedTools", ",".join(options.allowed_tools)])

        if options.resume_token:
            args.extend(["--resume", options.resume_token])

        return SpawnSpec(
            command=self.config.claude.path or "claude",
            args=args,
            initial_input=options.prompt,
            close_stdin_after_initial_input=False,
        )

    def format_user_input(self, text: str) -> str:
        message = {"role": "user", "content": [{"type": "text", "text": text}]}
        return json.dumps({"type": "user", "message": message}, ensure_ascii=False) + "\n"

    @staticmethod
    def _extract_token(event: dict[str, Any]) -> str | None:
        for candidate in (event, as_dict(event.get("event"))):
            if candidate is None:
                continue
            event_type = candidate.get("type")
            delta = as_dict(candidate.get("delta"))
            if (
                event_type == "content_block_delta"
                and delta is not None
                and delta.get("type") == "text_delta"
                and isinstance(delta.get("text"), str)
                and delta["text"]
            ):
                return delta["text"]
            if event_type == "message_delta" and isinstance(candidate.get("text"), str):
                return candidate["text"]
        return None

    def decode(self, event: dict[str, Any]) -> DecodedEvent:
        decoded = DecodedEvent(raw=event, token=self._extract_token(event))
        event_type = event.get("type")
        if (
            event_type == "system"
            and event.get("subtype") == "init"
            and isinstance(event.get("session_id"), str)
        ):
            decoded.resume_token = event["session_id"]
        if event_type == "assistant":
            parent = event.get("parent_tool_use_id")
            decoded.assistant = AssistantMessage(
                message=event.get("message"),
                parent_tool_use_id=parent if isinstance(parent, str) and parent else None,
            )
        if event_type == "result":
            decoded.result = ResultMetadata(
                data={
                    "total_cost_usd": event.get("total_cost_usd"),
                    "usage": event.get("usage"),
                    "session_id": event.get("session_id"),
                }
            )
        return decoded
