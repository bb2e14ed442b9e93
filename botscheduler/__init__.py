"""botscheduler: persistent reminders and watch polling for chat bots."""
from .scheduler import (
    Job,
    JobExecutor,
    JobKind,
    JobStore,
    ScheduleKind,
    SchedulerService,
)

__version__ = "0.1.0"

__all__ = [
    "Job",
    "JobExecutor",
    "JobKind",
    "JobStore",
    "ScheduleKind",
    "SchedulerService",
]
