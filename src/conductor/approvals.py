from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from loguru import logger

from conductor.errors import PreconditionError
from conductor.events import ApprovalCreated, ApprovalResolved, EventBus
from conductor.models import Approval, ApprovalStatus, ApprovalType, new_id, utcnow_iso
from conductor.state.store import Store

if TYPE_CHECKING:
    from conductor.bridge import ApprovalBridge


class ApprovalRouter:
    """Registry of pending human decisions."""

    def __init__(self, store: Store, bus: EventBus, bridge: ApprovalBridge | None = None) -> None:
        self.store = store
        self.bus = bus
        self.bridge = bridge

    async def create_approval(
        self,
        session_id: str,
        type: ApprovalType,
        summary: str,
        *,
        payload: dict[str, Any] | None = None,
        agent_id: str | None = None,
    ) -> Approval:
        approval = Approval(
            id=new_id(),
            session_id=session_id,
            agent_id=agent_id,
            type=type,
            summary=summary,
            payload=json.dumps(payload) if payload is not None else None,
        )
        # Known before persisted, so a bridge poll never sees it as foreign.
        if self.bridge is not None:
            self.bridge.mark_known(approval.id)
        await self.store.insert(approval)
        logger.info(f"Approval {approval.id} ({type}) created: {summary}")
        await self.bus.publish(ApprovalCreated(approval=approval))
        return approval

    async def resolve_approval(
        self,
        approval_id: str,
        status: ApprovalStatus,
        *,
        response: str | None = None,
        resolved_by: str = "user",
    ) -> Approval:
        if status not in ("approved", "rejected"):
            raise PreconditionError(f"Cannot resolve an approval as {status!r}")
        current = await self.store.require(Approval, approval_id)
        updated = await self.store.update(
            Approval,
            approval_id,
            expect={"status": "pending"},
            status=status,
            response=response,
            resolved_by=resolved_by,
            resolved_at=utcnow_iso(),
        )
        if updated is None:
            raise PreconditionError(f"Approval {approval_id} is already {current.status}")
        logger.info(f"Approval {approval_id} ({updated.type}) {status}")
        await self.bus.publish(ApprovalResolved(approval=updated))
        return updated

    async def get_approval(self, approval_id: str) -> Approval | None:
        return await self.store.get(Approval, approval_id)

    async def list_pending(self, session_id: str | None = None) -> list[Approval]:
        filters: dict[str, Any] = {"status": "pending"}
        if session_id is not None:
            filters["session_id"] = session_id
        return await self.store.select(Approval, descending=True, **filters)
