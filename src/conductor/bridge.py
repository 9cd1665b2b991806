from __future__ import annotations

import asyncio
import contextlib

from loguru import logger

from conductor.events import ApprovalCreated, EventBus
from conductor.models import Approval
from conductor.state.store import Store


class ApprovalBridge:
    """Republishes approvals written by other processes, such as the tool server."""

    def __init__(self, store: Store, bus: EventBus, *, poll_seconds: float = 2.0) -> None:
        self.store = store
        self.bus = bus
        self.poll_seconds = poll_seconds
        self._known: set[str] = set()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def mark_known(self, approval_id: str) -> None:
        self._known.add(approval_id)

    def is_known(self, approval_id: str) -> bool:
        return approval_id in self._known

    async def start(self) -> None:
        if self.running:
            return
        for approval in await self.store.select(Approval, status="pending"):
            self._known.add(approval.id)
        self._task = asyncio.create_task(self._run())
        logger.info(f"Approval bridge polling every {self.poll_seconds}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.poll_seconds)
            try:
                await self.poll_once()
            except Exception as exc:
                await self.bus.report("approval_bridge", exc)

    async def poll_once(self) -> list[Approval]:
        pending = await self.store.select(Approval, status="pending")
        pending_ids = {approval.id for approval in pending}
        for stale_id in self._known - pending_ids:
            row = await self.store.get(Approval, stale_id)
            if row is not None and row.status != "pending":
                self._known.discard(stale_id)

        published: list[Approval] = []
        for approval in pending:
            if approval.id in self._known:
                continue
            self._known.add(approval.id)
            logger.info(f"Bridged external approval {approval.id} ({approval.type})")
            await self.bus.publish(ApprovalCreated(approval=approval))
            published.append(approval)
        return published
