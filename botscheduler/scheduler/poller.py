"""Diff poller for Watch jobs.

On every tick each Watch job re-runs its command in background mode. The
reply is compared to the last stored result and a notification goes out only
when it changed. The same module holds the display-name backfill sweep and
the WatchQueue drain.
"""
import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from .executor import JobExecutor
from .models import Job
from .types import JobKind, PollOutcome

if TYPE_CHECKING:
    from .service.store import JobStore

logger = logger.bind(module="scheduler.poller")


class DiffPoller:
    """Polls Watch jobs and notifies on changed results.

    Example:
        poller = DiffPoller(store, executor)

        # Background tick: notifies channels
        await poller.poll()

        # Manual trigger for one owner: returns results instead
        outcomes = await poller.poll(owner="user_123")
    """

    def __init__(
        self,
        store: "JobStore",
        executor: JobExecutor,
        queue_command: str = "market",
    ):
        self.store = store
        self.executor = executor
        self.queue_command = queue_command

    # ============== Diff Poll ==============

    async def poll(self, owner: str | None = None) -> list[PollOutcome]:
        """Poll every Watch job, optionally only one owner's.

        Args:
            owner: Owner filter for a manual trigger. When set, fresh results
                are returned to the caller and no notification is sent.

        Returns:
            One outcome per polled job
        """
        if not await self.executor.provider_ready():
            logger.warning("Data provider not ready, skipping poll")
            return []

        # An empty owner means no filter, same as the store
        scoped = bool(owner)
        jobs = await self.store.list_jobs(JobKind.WATCH, owner or None)
        if not jobs:
            return []

        return list(await asyncio.gather(*(self._poll_one(job, scoped) for job in jobs)))

    async def _poll_one(self, job: Job, scoped: bool) -> PollOutcome:
        logger.info(f"Processing id={job.id} owner={job.owner} item={job.item_id} args={job.args}")
        try:
            result = await self.executor.run_command(job, JobKind.WATCH.value, is_background=True)
        except Exception as e:
            logger.error(f"Watch command failed for {job.id}: {e}")
            return PollOutcome(job_id=job.id, error=str(e))

        reply = result.reply
        if reply == job.last_result:
            logger.info(f"No changes for {job.id}: {job.owner} - {job.args}")
            return PollOutcome(job_id=job.id, reply=reply)

        logger.info(f"There were changes for {job.id}: {job.owner} - {job.args}")
        await self.store.update(job.id, last_result=reply)

        notified = False
        if not scoped:
            notified = await self.executor.notify(job.channel, reply)
        return PollOutcome(job_id=job.id, reply=reply, changed=True, notified=notified)

    async def run_tick(self) -> None:
        """Background tick entry point; never raises into the timer."""
        try:
            outcomes = await self.poll()
            changed = sum(1 for o in outcomes if o.changed)
            logger.debug(f"Poll tick: {len(outcomes)} watches, {changed} changed")
        except Exception as e:
            logger.error(f"Poll tick failed: {e}")

    # ============== Backfill ==============

    async def backfill_names(self) -> int:
        """Resolve display names for Watch jobs that lack one.

        Best effort: lookup failures are logged and skipped.

        Returns:
            Number of jobs that received a display name
        """
        jobs = await self.store.list_jobs(JobKind.WATCH)
        missing = [job for job in jobs if not job.display_name and job.item_id]
        if not missing:
            return 0

        results = await asyncio.gather(*(self._backfill_one(job) for job in missing))
        filled = sum(1 for ok in results if ok)
        logger.info(f"Backfilled {filled}/{len(missing)} watch names")
        return filled

    async def _backfill_one(self, job: Job) -> bool:
        logger.debug(f"Resolving name for {job.id} item={job.item_id}")
        try:
            info = await self.executor.lookup(job.item_id or "")
        except Exception as e:
            logger.warning(f"Name lookup failed for {job.id}: {e}")
            return False

        if not info.display_name:
            return False
        await self.store.update(job.id, display_name=info.display_name)
        return True

    async def run_backfill(self) -> None:
        try:
            await self.backfill_names()
        except Exception as e:
            logger.error(f"Backfill sweep failed: {e}")

    # ============== Queue Drain ==============

    async def drain_queue(self) -> int:
        """Replay queued watch requests, then delete the whole queue.

        Each request runs the queue command as if it had just arrived; its
        reply goes to the request's channel. Individual failures do not stop
        the queue from being cleared.

        Returns:
            Number of queued requests processed
        """
        queued = await self.store.list_jobs(JobKind.WATCH_QUEUE)
        await asyncio.gather(*(self._replay(job) for job in queued))
        await self.store.clear(JobKind.WATCH_QUEUE)
        if queued:
            logger.info(f"Drained {len(queued)} queued watch requests")
        return len(queued)

    async def _replay(self, job: Job) -> None:
        logger.info(f"Processing queued request {job.id} owner={job.owner} args={job.args}")
        try:
            result = await self.executor.run_command(job, self.queue_command, is_background=False)
        except Exception as e:
            logger.error(f"Queued request {job.id} failed: {e}")
            return
        if result.reply:
            await self.executor.notify(job.channel, result.reply)
