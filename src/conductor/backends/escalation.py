from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any

from conductor.backends.base import as_dict, pick_str

ID_KEYS = ("request_id", "requestId", "id")
TOOL_KEYS = ("tool_name", "toolName", "tool")


@dataclass(slots=True)
class EscalationRequest:
    key: str
    summary: str
    payload: dict[str, Any]


def _pick(record: dict[str, Any] | None, keys: tuple[str, ...]) -> str | None:
    if record is None:
        return None
    return pick_str(*(record.get(key) for key in keys))


def _looks_like_escalation(type_text: str) -> bool:
    if "command" in type_text and "blocked" in type_text:
        return True
    markers = ("permission", "approval", "escalat", "needs approval")
    return any(marker in type_text for marker in markers)


def extract_escalation(event: dict[str, Any]) -> EscalationRequest | None:
    """Sniff a raw stdout event for a permission or approval request.

    Works on the event's type and status fields only, so it applies to every
    adapter. The key is the explicit request id, or a hash of the event.
    """
    nested = as_dict(event.get("event"))
    item = as_dict(event.get("item"))
    type_text = " ".join(
        part or ""
        for part in (
            pick_str(event.get("type")),
            _pick(nested, ("type",)),
            _pick(nested, ("subtype",)),
            _pick(item, ("type",)),
            _pick(item, ("status", "state")),
            _pick(event, ("status", "state")),
        )
    ).lower()
    if not _looks_like_escalation(type_text):
        return None

    request_id = _pick(event, ID_KEYS) or _pick(nested, ID_KEYS) or _pick(item, ID_KEYS)
    tool_name = (
        _pick(event, TOOL_KEYS) or _pick(nested, TOOL_KEYS) or _pick(item, (*TOOL_KEYS, "name"))
    )
    nested_input = as_dict(nested.get("input")) if nested else None
    item_input = (as_dict(item.get("input")) or as_dict(item.get("arguments"))) if item else None
    command = (
        _pick(event, ("command",))
        or _pick(nested, ("command",))
        or _pick(nested_input, ("command",))
        or _pick(item, ("command",))
        or _pick(item_input, ("command",))
    )

    if tool_name:
        summary = f"Permission requested for tool: {tool_name}"
    elif command:
        summary = f"Permission requested for command: {command}"
    else:
        summary = "Agent requested elevated permissions"

    key = request_id or hashlib.sha256(
        json.dumps(event, sort_keys=True, ensure_ascii=False).encode("utf-8")
    ).hexdigest()
    return EscalationRequest(
        key=key,
        summary=summary,
        payload={
            "request_id": request_id,
            "tool_name": tool_name,
            "command": command,
            "raw_event": event,
        },
    )
