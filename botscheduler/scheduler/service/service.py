"""Scheduler service: persistent reminders plus the watch poll ticks.

Per job id the service moves through Unloaded -> Armed -> Fired and then
either Rearmed (repeating) or Deleted (one-shot). Fixed-pattern jobs stay
armed on their cron pattern and are never deleted by a firing.
"""
from datetime import datetime, timezone

from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from ...config import Settings, settings as default_settings
from ..executor import JobExecutor, ReminderDueHandler
from ..models import Job
from ..poller import DiffPoller
from ..recurrence import (
    catch_up,
    compute_next_fire,
    datetime_to_ms,
    describe_rule,
    ms_to_datetime,
    validate_job_schedule,
)
from ..timers import TimerHandle, TimerTable
from ..types import JobKind, PollOutcome, SchedulerStatus
from .store import JobStore

logger = logger.bind(module="scheduler.service")

POLL_TICK_ID = "__watch_poll__"
BACKFILL_TICK_ID = "__watch_backfill__"


class SchedulerService:
    """Orchestrates the job store, timer table and recurrence engine.

    Example:
        store = JobStore(settings.data_dir)
        executor = JobExecutor(commands, provider, sink)
        service = SchedulerService(store, executor)
        await service.start()

        await service.insert(Job(
            kind=JobKind.REMINDER,
            owner="user_123",
            channel="chan_1",
            message="stand-up",
            fire_at_ms=now_ms() + 60_000,
            repeat=True,
            recurrence_rule="1d",
        ))
    """

    def __init__(
        self,
        store: JobStore,
        executor: JobExecutor,
        timers: TimerTable | None = None,
        poller: DiffPoller | None = None,
        on_due: ReminderDueHandler | None = None,
        config: Settings | None = None,
    ):
        """Initialize the service.

        Args:
            store: Durable job store
            executor: Bridge to the host's command, data and notification capabilities
            timers: Timer table, created on the default APScheduler setup if omitted
            poller: Diff poller, created from store and executor if omitted
            on_due: Explicit "reminder due" handler, defaults to the executor
            config: Settings, defaults to the environment-loaded settings
        """
        self.config = config or default_settings
        self.store = store
        self.executor = executor
        self.timers = timers or TimerTable()
        self.poller = poller or DiffPoller(
            store, executor, queue_command=self.config.queue_command
        )
        self.on_due: ReminderDueHandler = on_due or executor
        self._running = False

        # A store-level delete must never leave a live timer behind
        self.store.add_delete_hook(self._cancel_many)

    @property
    def is_running(self) -> bool:
        return self._running

    # ============== Lifecycle ==============

    async def start(self) -> None:
        """Start the scheduler.

        Opens the store, arms every stored reminder, starts the poll and
        backfill ticks and runs one backfill sweep.
        """
        if self._running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting job scheduler...")
        await self.store.initialize()
        self.timers.start()

        await self.load_all()

        aps = self.timers.scheduler
        aps.add_job(
            self.poller.run_tick,
            IntervalTrigger(seconds=self.config.poll_interval_seconds),
            id=POLL_TICK_ID,
            name="watch poll",
            replace_existing=True,
        )
        aps.add_job(
            self.poller.run_backfill,
            IntervalTrigger(seconds=self.config.backfill_interval_seconds),
            id=BACKFILL_TICK_ID,
            name="watch name backfill",
            replace_existing=True,
        )
        await self.poller.run_backfill()

        self._running = True
        await self.log_inventory()
        logger.info(f"Scheduler started with {len(self.timers)} armed reminders")

    async def stop(self) -> None:
        """Stop timers and close the store."""
        if not self._running:
            return

        logger.info("Stopping job scheduler...")
        await self.timers.shutdown()
        await self.store.close()
        self._running = False
        logger.info("Scheduler stopped")

    # ============== Loading & Arming ==============

    async def load_all(self) -> int:
        """Arm a timer for every stored reminder, oldest first.

        Reminders that already have a live timer are skipped, so calling this
        twice arms each reminder once.

        Returns:
            Number of newly armed reminders
        """
        armed = 0
        for job in await self.store.list_jobs(JobKind.REMINDER):
            if await self.load_reminder(job):
                armed += 1
        return armed

    async def load_reminder(self, job: Job) -> TimerHandle | None:
        """Compute a reminder's first fire instant and arm its timer."""
        if self.timers.is_armed(job.id):
            logger.debug(f"Reminder {job.id} is already queued")
            return None

        try:
            schedule = compute_next_fire(
                job,
                overdue_delay_seconds=self.config.overdue_delay_seconds,
                default_timezone=self.config.default_timezone,
            )
        except ValueError as e:
            logger.error(f"Cannot schedule reminder {job.id}: {e}")
            return None

        logger.info(f"Loading reminder: {job.id} ({describe_rule(job)})")
        handle = self.timers.arm(
            job.id,
            schedule.fire_at,
            self._fire,
            cron=schedule.cron,
            timezone=schedule.timezone,
        )
        if handle:
            logger.info(f"Queued reminder: {job.id} at {schedule.fire_at.isoformat()}")
        return handle

    # ============== Firing ==============

    async def _fire(self, job_id: str) -> None:
        """Timer callback: dispatch the reminder, then reschedule or delete."""
        job = await self.store.get(job_id)
        if job is None:
            logger.warning(f"Reminder {job_id} fired but no longer exists")
            self.timers.cancel(job_id)
            return

        try:
            await self.on_due(job)
        except Exception as e:
            logger.error(f"Reminder {job_id} dispatch failed: {e}")

        if job.is_fixed_pattern:
            # The cron timer re-fires on its own
            return

        if job.repeat and job.recurrence_rule:
            await self._rearm(job)
            return

        logger.info(f"Deleting {job_id} ...")
        self.timers.cancel(job_id)
        if await self.store.remove(job_id):
            logger.info(f"Deleted {job_id}.")

    async def _rearm(self, job: Job) -> None:
        self.timers.cancel(job.id)

        now = datetime.now(timezone.utc)
        fire_at = ms_to_datetime(job.fire_at_ms) if job.fire_at_ms is not None else now
        next_fire = catch_up(fire_at, job.recurrence_rule or "", now)
        await self.store.update(job.id, fire_at_ms=datetime_to_ms(next_fire))

        fresh = await self.store.get(job.id)
        if fresh is None:
            # Removed while we were firing
            logger.info(f"Reminder {job.id} was removed, not re-arming")
            return
        await self.load_reminder(fresh)

    # ============== Cancellation ==============

    def cancel(self, job_id: str) -> bool:
        """Cancel a reminder's timer without touching the store."""
        logger.info(f"Cancelling reminder: {job_id}")
        cancelled = self.timers.cancel(job_id)
        if cancelled:
            logger.info(f"Dequeued {job_id}.")
        return cancelled

    async def _cancel_many(self, job_ids: list[str]) -> None:
        for job_id in job_ids:
            if self.timers.is_armed(job_id):
                self.cancel(job_id)

    # ============== Store Facade ==============

    async def insert(self, job: Job) -> str:
        """Persist a job; reminders are armed immediately.

        Raises:
            InvalidJobError: If the record violates a model invariant
            InvalidRecurrenceRule: If a reminder's rule cannot be scheduled
        """
        job.validate()
        if job.kind == JobKind.REMINDER:
            validate_job_schedule(job)
        job_id = await self.store.insert(job)
        if job.kind == JobKind.REMINDER:
            await self.load_reminder(job)
        return job_id

    async def get(self, job_id: str) -> Job | None:
        return await self.store.get(job_id)

    async def update(self, job_id: str, upsert: bool = False, **values) -> int:
        return await self.store.update(job_id, upsert=upsert, **values)

    async def remove(self, job_id: str) -> int:
        return await self.store.remove(job_id)

    async def list_jobs(self, kind: JobKind, owner: str | None = None) -> list[Job]:
        return await self.store.list_jobs(kind, owner)

    async def clear(self, kind: JobKind, owner: str | None = None) -> int:
        return await self.store.clear(kind, owner)

    # ============== Watches ==============

    async def poll_watches(self, owner: str | None = None) -> list[PollOutcome]:
        """Run the diff poll now; owner-scoped calls return results instead of notifying."""
        return await self.poller.poll(owner)

    async def process_queues(self) -> int:
        """Drain queued watch requests and backfill missing watch names."""
        drained = await self.poller.drain_queue()
        await self.poller.backfill_names()
        return drained

    # ============== Status ==============

    async def log_inventory(self) -> None:
        """Log every reminder, watch and queued request."""
        logger.info("Reminders")
        for job in await self.store.list_jobs(JobKind.REMINDER):
            logger.info(
                f"id={job.id} owner={job.owner} channel={job.channel} "
                f"message={job.message} schedule={describe_rule(job)}"
            )

        logger.info("Watches")
        for job in await self.store.list_jobs(JobKind.WATCH):
            logger.info(
                f"id={job.id} owner={job.owner} channel={job.channel} "
                f"item={job.item_id} args={job.args} created_at_ms={job.created_at_ms}"
            )

        logger.info("Watch queue")
        for job in await self.store.list_jobs(JobKind.WATCH_QUEUE):
            logger.info(str(job.to_dict()))

    async def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self._running,
            timers_armed=len(self.timers),
            jobs_by_kind=await self.store.count_by_kind(),
        )
