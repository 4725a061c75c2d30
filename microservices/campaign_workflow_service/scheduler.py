"""
Scheduler Loop

Leases due enrollments in batches and hands each to the step executor.
Failures are isolated per enrollment: one bad enrollment is logged and
its lease released, the rest of the batch continues.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Optional

from core.config import SchedulerConfig
from .models import utcnow
from .protocols import SchedulerLeaseConflict, WorkflowRepositoryProtocol
from .step_executor import StepExecutor

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Polls the store for due enrollments and executes them"""

    def __init__(
        self,
        repository: WorkflowRepositoryProtocol,
        executor: StepExecutor,
        config: Optional[SchedulerConfig] = None,
        owner: Optional[str] = None,
    ):
        self.repository = repository
        self.executor = executor
        self.config = config or SchedulerConfig()
        self.owner = owner or f"scheduler-{uuid.uuid4().hex[:8]}"
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """
        Run one pass over due enrollments.

        Returns:
            Number of enrollments executed without error
        """
        now = now or utcnow()
        leased = await self.repository.lease_due(
            now, self.config.batch_size, self.owner, self.config.lease_seconds
        )
        if leased:
            logger.debug(f"{self.owner} leased {len(leased)} enrollments")

        processed = 0
        for enrollment in leased:
            try:
                await self.executor.execute(enrollment, now)
                processed += 1
            except SchedulerLeaseConflict as e:
                logger.info(f"Skipping enrollment changed concurrently: {e}")
            except Exception as e:
                logger.error(f"Error executing enrollment {enrollment.enrollment_id}: {e}", exc_info=True)
            finally:
                try:
                    await self.repository.release_lease(enrollment.enrollment_id, self.owner)
                except Exception as e:
                    logger.error(f"Failed to release lease on {enrollment.enrollment_id}: {e}")

        return processed

    async def run_forever(self) -> None:
        """Poll until stop() is called"""
        self._running = True
        logger.info(f"Scheduler {self.owner} started")
        while self._running:
            leased_full_batch = False
            try:
                processed = await self.run_once()
                leased_full_batch = processed >= self.config.batch_size
            except Exception as e:
                logger.error(f"Scheduler pass failed: {e}", exc_info=True)

            if not leased_full_batch:
                await asyncio.sleep(self.config.poll_interval_seconds)
        logger.info(f"Scheduler {self.owner} stopped")

    def start(self) -> asyncio.Task:
        """Run the loop as a background task"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
