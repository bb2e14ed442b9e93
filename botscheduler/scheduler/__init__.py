"""Persistent recurring-job scheduler and watch diff poller."""
from .executor import CommandExecutor, DataProvider, JobExecutor, NotificationSink
from .models import Job
from .poller import DiffPoller
from .service import JobStore, SchedulerService
from .timers import TimerHandle, TimerTable
from .types import (
    BotSchedulerError,
    CommandContext,
    CommandResult,
    InvalidJobError,
    InvalidRecurrenceRule,
    ItemInfo,
    JobKind,
    JobStoreError,
    PollOutcome,
    ScheduleKind,
)

__all__ = [
    "BotSchedulerError",
    "CommandContext",
    "CommandExecutor",
    "CommandResult",
    "DataProvider",
    "DiffPoller",
    "InvalidJobError",
    "InvalidRecurrenceRule",
    "ItemInfo",
    "Job",
    "JobExecutor",
    "JobKind",
    "JobStore",
    "JobStoreError",
    "NotificationSink",
    "PollOutcome",
    "ScheduleKind",
    "SchedulerService",
    "TimerHandle",
    "TimerTable",
]
