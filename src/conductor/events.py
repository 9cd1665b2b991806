from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from loguru import logger

from conductor.models import Approval


@dataclass(slots=True, frozen=True)
class AgentStatusChanged:
    agent_id: str
    session_id: str
    status: str


@dataclass(slots=True, frozen=True)
class AgentToken:
    agent_id: str
    text: str


@dataclass(slots=True, frozen=True)
class AgentInit:
    agent_id: str
    resume_token: str


@dataclass(slots=True, frozen=True)
class AgentMessage:
    agent_id: str
    message_id: str
    type: str
    preview: str


@dataclass(slots=True, frozen=True)
class AgentCompleted:
    agent_id: str


@dataclass(slots=True, frozen=True)
class AgentTurnEnded:
    agent_id: str
    session_id: str


@dataclass(slots=True, frozen=True)
class EscalationRequested:
    agent_id: str
    session_id: str
    summary: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SessionStatusChanged:
    session_id: str
    status: str


@dataclass(slots=True, frozen=True)
class PhaseAdvanced:
    session_id: str
    phase_name: str
    phase_number: int
    total_phases: int


@dataclass(slots=True, frozen=True)
class ApprovalCreated:
    approval: Approval


@dataclass(slots=True, frozen=True)
class ApprovalResolved:
    approval: Approval


@dataclass(slots=True, frozen=True)
class NonFatalError:
    source: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


E = TypeVar("E")
Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Typed publish channel; one subscriber list per event class."""

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> Callable[[], None]:
        self._subscribers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: object) -> None:
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                if isinstance(event, NonFatalError):
                    logger.exception(f"Non-fatal error subscriber failed: {exc}")
                    continue
                await self.report(
                    "event_bus",
                    exc,
                    event=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )

    async def report(self, source: str, error: BaseException | str, **context: Any) -> None:
        """Record a swallowed failure on the non-fatal channel."""
        message = str(error) or type(error).__name__
        logger.warning(f"[{source}] {message}")
        await self.publish(NonFatalError(source=source, message=message, context=dict(context)))
