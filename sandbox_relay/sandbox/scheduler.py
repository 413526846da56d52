# sandbox_relay/sandbox/scheduler.py
"""
Periodic eviction of old sandbox sessions.

Runs as an asyncio task beside request handling. Each tick evicts sessions
older than `max_age_hours` and, when a retention is configured, reaps
workspace directories of sessions that are long gone. A failing tick is
logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

import structlog

from .models import BatchResult
from .orchestrator import SandboxOrchestrator

logger = structlog.get_logger(__name__)


class CleanupScheduler:
    def __init__(
        self,
        orchestrator: SandboxOrchestrator,
        interval_secs: float = 3600.0,
        max_age_hours: float = 24.0,
        workspace_retention_hours: Optional[float] = None,
    ):
        if interval_secs <= 0:
            raise ValueError("interval_secs must be positive")
        self.orchestrator = orchestrator
        self.interval_secs = interval_secs
        self.max_age_hours = max_age_hours
        self.workspace_retention_hours = workspace_retention_hours
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="sandbox-cleanup")
        logger.info("cleanup_scheduler_started", interval_secs=self.interval_secs, max_age_hours=self.max_age_hours)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("cleanup_scheduler_stopped")

    async def run_once(self) -> BatchResult:
        logger.info("running_cleanup_job")
        result = await self.orchestrator.cleanup_old_sessions(self.max_age_hours)
        if self.workspace_retention_hours is not None:
            await self.orchestrator.reap_workspaces(self.workspace_retention_hours)
        if result.total:
            logger.info("cleanup_job_done", **result.to_dict())
        return result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_secs)
            try:
                await self.run_once()
            except Exception:
                logger.exception("cleanup_job_failed")
