"""Job executor: the bridge between the scheduler and the host bot.

The host supplies three capabilities:
- CommandExecutor: runs a bot command with a synthetic context
- DataProvider: looks up external item details
- NotificationSink: delivers text to a channel

JobExecutor wraps them with the scheduler's error policy: notification
failures are logged, never raised.
"""
from typing import Awaitable, Callable, Protocol

from loguru import logger

from .models import Job, flatten_args
from .types import CommandContext, CommandResult, ItemInfo, JobKind

logger = logger.bind(module="scheduler.executor")


# ============== Protocol Definitions ==============

class CommandExecutor(Protocol):
    """Protocol for running bot commands."""

    async def run(
        self,
        context: CommandContext,
        tokens: list[str],
        is_background: bool,
    ) -> CommandResult:
        """Run a command and return its reply."""
        ...


class DataProvider(Protocol):
    """Protocol for external item lookups."""

    async def lookup(self, item_id: str) -> ItemInfo:
        """Look up an item by its id."""
        ...


class NotificationSink(Protocol):
    """Protocol for sending notifications."""

    async def send(self, channel_id: str, text: str) -> None:
        """Send text to a channel."""
        ...


# Explicit "reminder due" callback invoked by the scheduler on every fire
ReminderDueHandler = Callable[[Job], Awaitable[None]]


class JobExecutor:
    """Executes jobs through the host's command, data and notification capabilities.

    This is the default "reminder due" handler of the scheduler and the
    command path used by the diff poller.
    """

    def __init__(
        self,
        command_executor: CommandExecutor,
        data_provider: DataProvider | None = None,
        notification_sink: NotificationSink | None = None,
    ):
        """Initialize executor with host capabilities.

        Args:
            command_executor: Implementation that runs bot commands
            data_provider: Implementation for item lookups
            notification_sink: Implementation for sending notifications
        """
        self.command_executor = command_executor
        self.data_provider = data_provider
        self.notification_sink = notification_sink

    async def __call__(self, job: Job) -> None:
        await self.execute_reminder(job)

    async def execute_reminder(self, job: Job) -> CommandResult:
        """Dispatch a due reminder.

        The reminder command runs in background mode; a non-empty reply is
        delivered to the job's channel.
        """
        logger.info(f"Reminder due: {job.id} owner={job.owner} channel={job.channel}")
        result = await self.run_command(job, JobKind.REMINDER.value, is_background=True)
        reply = result.reply or job.message
        if reply:
            await self.notify(job.channel, reply)
        return result

    async def run_command(
        self,
        job: Job,
        command: str,
        is_background: bool,
    ) -> CommandResult:
        """Run a command with a synthetic context built from the job."""
        context = CommandContext(
            channel_id=job.channel,
            owner_id=job.owner,
            command=command,
            job_id=job.id,
        )
        return await self.command_executor.run(context, flatten_args(job.args), is_background)

    async def lookup(self, item_id: str) -> ItemInfo:
        if not self.data_provider:
            raise RuntimeError("No data provider configured")
        return await self.data_provider.lookup(item_id)

    async def provider_ready(self) -> bool:
        """Ask the data provider whether it can serve lookups.

        Providers without a ``ready`` method are always ready.
        """
        if self.data_provider and hasattr(self.data_provider, "ready"):
            return bool(await self.data_provider.ready())
        return True

    async def notify(self, channel_id: str, text: str) -> bool:
        """Send a notification; failures are logged and reported as False."""
        if not self.notification_sink:
            logger.warning(f"No notification sink configured, dropping message for {channel_id}")
            return False

        try:
            await self.notification_sink.send(channel_id, text)
            return True
        except Exception as e:
            logger.error(f"Failed to send notification to {channel_id}: {e}")
            return False
