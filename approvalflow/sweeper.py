"""Periodic scan for elapsed deadlines and due WAIT steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .constants import DEFAULT_SWEEP_INTERVAL_SECONDS
from .coordinator import ExecutionCoordinator
from .exceptions import WorkflowError
from .models import StepStatus, WorkflowStatus, utcnow
from .persistence import InstanceStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    resumed: List[str] = field(default_factory=list)
    expired_steps: List[str] = field(default_factory=list)
    expired_instances: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.resumed) + len(self.expired_steps) + len(self.expired_instances)


class TimeoutSweeper:
    """Resumes due WAIT steps and fails work whose ``timeout_at`` has passed."""

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        instances: InstanceStore,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._coordinator = coordinator
        self._instances = instances
        self.interval_seconds = interval_seconds

    async def sweep_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        for execution in await self._instances.list_due_wait_executions(now):
            try:
                await self._coordinator.resume_wait_step(execution.id)
                report.resumed.append(execution.id)
            except WorkflowError as exc:
                logger.warning(f"Could not resume WAIT step {execution.id}: {exc}")
            except Exception:
                logger.exception(f"Resuming WAIT step {execution.id} failed")

        for execution in await self._instances.list_expired_executions(now):
            try:
                expired = await self._coordinator.expire_step(execution.id, now)
            except WorkflowError as exc:
                logger.warning(f"Could not expire step {execution.id}: {exc}")
                continue
            except Exception:
                logger.exception(f"Expiring step {execution.id} failed")
                continue
            if expired.status is StepStatus.TIMEOUT:
                report.expired_steps.append(expired.id)

        for instance in await self._instances.list_expired_instances(now):
            try:
                expired = await self._coordinator.expire_instance(instance.id, now)
            except WorkflowError as exc:
                logger.warning(f"Could not expire instance {instance.id}: {exc}")
                continue
            except Exception:
                logger.exception(f"Expiring instance {instance.id} failed")
                continue
            if expired.status is WorkflowStatus.FAILED:
                report.expired_instances.append(expired.id)

        if report.total:
            logger.info(
                f"Sweep resumed {len(report.resumed)} WAIT steps, expired "
                f"{len(report.expired_steps)} steps and {len(report.expired_instances)} instances"
            )
        return report

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Sweep every ``interval_seconds`` until ``lifespan`` seconds elapse.

        Args:
            lifespan: Maximum time in seconds to keep sweeping. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            await self.sweep_once()
            await asyncio.sleep(self.interval_seconds)
