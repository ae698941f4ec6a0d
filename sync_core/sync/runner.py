"""
Background sync runs.

start() opens the log entry, schedules the attempt as an asyncio task and
returns the log id right away, so HTTP callers can poll the audit log
instead of holding a request open for the whole sync.
"""
from __future__ import annotations
from collections import OrderedDict
from typing import Any, Optional, Union
import asyncio
import logging

from sync_core.audit import SyncLogEntry, SyncOperation, SyncTrigger
from sync_core.integrations.canonical import Direction, EntityType
from sync_core.sync.orchestrator import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)


class SyncRunner:
    def __init__(self, orchestrator: SyncOrchestrator, keep_results: int = 200):
        self.orchestrator = orchestrator
        self.keep_results = keep_results
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel: dict[str, asyncio.Event] = {}
        # Outcomes of finished runs nobody has collected yet, oldest first
        self._finished: OrderedDict[str, Union[SyncResult, BaseException]] = OrderedDict()

    @property
    def active_runs(self) -> int:
        return len(self._tasks)

    async def start(
        self,
        entity_type: EntityType | str,
        operation: SyncOperation | str,
        direction: Direction | str | None = None,
        options: dict[str, Any] | None = None,
        trigger: SyncTrigger | str = SyncTrigger.MANUAL,
    ) -> str:
        log_id = await self.orchestrator.open_log(entity_type, operation, direction, trigger)
        cancel = asyncio.Event()
        task = asyncio.create_task(
            self.orchestrator.sync_entity(
                entity_type, operation, direction, options,
                trigger=trigger, log_id=log_id, cancel=cancel,
            ),
            name=f"sync-{log_id}",
        )
        self._cancel[log_id] = cancel
        self._tasks[log_id] = task
        task.add_done_callback(lambda done: self._collect(log_id, done))
        logger.info("Scheduled %s sync %s", SyncOperation(operation).value, log_id)
        return log_id

    def _collect(self, log_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(log_id, None)
        self._cancel.pop(log_id, None)

        if task.cancelled():
            outcome: Union[SyncResult, BaseException] = asyncio.CancelledError()
            logger.warning("Sync %s task was cancelled", log_id)
        elif task.exception() is not None:
            outcome = task.exception()
            logger.error("Sync %s task failed", log_id, exc_info=outcome)
        else:
            outcome = task.result()

        self._finished[log_id] = outcome
        while len(self._finished) > self.keep_results:
            self._finished.popitem(last=False)

    async def status(self, log_id: str) -> Optional[SyncLogEntry]:
        return await self.orchestrator.audit_log.get_log_entry(log_id)

    async def result(self, log_id: str) -> SyncResult:
        """Wait for a started run to finish and hand over its result (once)."""
        task = self._tasks.get(log_id)
        if task is not None:
            await asyncio.wait([task])
        if log_id not in self._finished:
            raise KeyError(f"No sync run started with log id {log_id}")
        outcome = self._finished.pop(log_id)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def cancel(self, log_id: str) -> bool:
        """Ask a run to stop at the next batch boundary."""
        event = self._cancel.get(log_id)
        if event is None:
            return False
        event.set()
        return True

    def is_running(self, log_id: str) -> bool:
        return log_id in self._tasks

    async def shutdown(self) -> None:
        for event in self._cancel.values():
            event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._finished.clear()
