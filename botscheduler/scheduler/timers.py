"""Timer table: one live APScheduler timer per job id.

The table is the only owner of APScheduler job objects. Callers get a
TimerHandle snapshot back and address timers by job id.
"""
import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.job import Job as APJob
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from loguru import logger

logger = logger.bind(module="scheduler.timers")

TimerCallback = Callable[[str], Awaitable[None]]


def create_scheduler(timezone: str = "UTC") -> AsyncIOScheduler:
    """Create and configure the APScheduler instance."""
    return AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Combine missed runs
            "max_instances": 1,  # One instance per job
            "misfire_grace_time": None,  # Run late timers however late
        },
        timezone=timezone,
    )


@dataclass(frozen=True)
class TimerHandle:
    """Immutable view of an armed timer.

    For cron timers ``fire_at`` is the next run time as APScheduler sees it
    when the handle is read through TimerTable.get().
    """
    job_id: str
    fire_at: datetime
    cron: str | None = None
    timezone: str | None = None


class TimerTable:
    """Registry of live timers keyed by job id.

    Arming an id that is already armed is rejected and logged; the existing
    timer is kept.
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None):
        self._scheduler = scheduler or create_scheduler()
        self._timers: dict[str, APJob] = {}
        self._handles: dict[str, TimerHandle] = {}

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    async def shutdown(self) -> None:
        """Drop every timer and stop the underlying scheduler.

        AsyncIOScheduler queues its shutdown on the event loop, so this yields
        once to let it run. The scheduler is stopped on return and a later
        start() starts it again.
        """
        for job_id in list(self._timers):
            self.cancel(job_id)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            await asyncio.sleep(0)
        if self._scheduler.running:
            logger.warning("Scheduler still running after shutdown")

    def arm(
        self,
        job_id: str,
        fire_at: datetime,
        callback: TimerCallback,
        cron: str | None = None,
        timezone: str | None = None,
    ) -> TimerHandle | None:
        """Arm a timer for a job.

        Args:
            job_id: Job identifier
            fire_at: Instant of the (first) firing
            callback: Coroutine function called with the job id on fire
            cron: Cron expression for fixed-pattern timers
            timezone: Timezone the cron expression is evaluated in

        Returns:
            The new handle, or None if the id was already armed
        """
        if job_id in self._timers:
            logger.warning(f"Timer for {job_id} is already armed, not re-arming")
            return None

        trigger: Any
        if cron:
            trigger = CronTrigger.from_crontab(cron, timezone=timezone or "UTC")
        else:
            trigger = DateTrigger(run_date=fire_at)

        self._timers[job_id] = self._scheduler.add_job(
            func=callback,
            trigger=trigger,
            id=job_id,
            name=f"timer:{job_id}",
            args=[job_id],
        )
        handle = TimerHandle(job_id=job_id, fire_at=fire_at, cron=cron, timezone=timezone)
        self._handles[job_id] = handle
        logger.debug(f"Armed timer {job_id} at {fire_at.isoformat()}")
        return handle

    def cancel(self, job_id: str) -> bool:
        """Cancel a job's timer. Missing ids are a no-op.

        Returns:
            True if a timer was removed from the table
        """
        timer = self._timers.pop(job_id, None)
        self._handles.pop(job_id, None)
        if timer is None:
            return False

        try:
            self._scheduler.remove_job(timer.id)
        except JobLookupError:
            # Date timers are dropped by APScheduler once they have fired
            pass
        logger.debug(f"Cancelled timer {job_id}")
        return True

    def is_armed(self, job_id: str) -> bool:
        return job_id in self._timers

    def get(self, job_id: str) -> TimerHandle | None:
        handle = self._handles.get(job_id)
        if handle is None or not handle.cron:
            return handle

        # Pending jobs of a scheduler that has not started have no next_run_time
        aps_job = self._scheduler.get_job(job_id)
        next_run = getattr(aps_job, "next_run_time", None) if aps_job else None
        return replace(handle, fire_at=next_run) if next_run else handle

    def armed_ids(self) -> list[str]:
        return list(self._timers)

    def __len__(self) -> int:
        return len(self._timers)
