"""Polling driver that ticks due enrollments."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from .config import SchedulerConfig
from .enrollment import EnrollmentTracker
from .execute import StepExecutor, TickResult, TickState

logger = logging.getLogger(__name__)


class BatchReport(BaseModel):
    """Outcome of one ``run_due`` pass."""

    due: int = 0
    results: List[TickResult] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)

    def count(self, state: TickState) -> int:
        return sum(1 for r in self.results if r.state == state)


class Scheduler:
    """Ticks every due enrollment, several at a time.

    One enrollment failing does not stop the batch; the error is logged and
    reported, and the enrollment is picked up again on the next pass.
    """

    def __init__(
        self,
        executor: StepExecutor,
        tracker: EnrollmentTracker,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._executor = executor
        self._tracker = tracker
        self._config = config or SchedulerConfig()

    async def run_due(self) -> BatchReport:
        due = await self._tracker.due(limit=self._config.batch_size)
        report = BatchReport(due=len(due))
        if not due:
            return report

        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def run_one(enrollment_id: str) -> None:
            async with semaphore:
                try:
                    report.results.append(await self._executor.tick(enrollment_id))
                except Exception as exc:
                    logger.exception(f"Tick failed for enrollment {enrollment_id}")
                    report.errors[enrollment_id] = str(exc)

        await asyncio.gather(*(run_one(e.id) for e in due))
        logger.debug(
            f"Ticked {len(report.results)} of {report.due} due enrollments "
            f"({len(report.errors)} errors)"
        )
        return report

    async def run(
        self, poll_interval: Optional[float] = None, lifespan: Optional[float] = None
    ) -> None:
        """Poll until cancelled, or for ``lifespan`` seconds when given."""
        interval = poll_interval if poll_interval is not None else self._config.poll_interval
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Scheduler started (poll every {interval}s)")
        while True:
            report = await self.run_due()
            if report.due:
                logger.info(
                    f"Processed {len(report.results)} enrollments, {len(report.errors)} errors"
                )
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await asyncio.sleep(interval)
        logger.info("Scheduler stopped")
