"""Core type definitions for the scheduler system.

This module defines:
- Job kinds and schedule kinds
- Errors raised by the scheduler
- Host-facing value types (command context/result, item info)
- Status types
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ============== Job Kinds ==============

class JobKind(str, Enum):
    """Kind of a persisted job; selects dispatch behavior."""
    REMINDER = "remind"         # Timed reminder, armed in the TimerTable
    WATCH = "watch"             # Diff-polled external value
    WATCH_QUEUE = "watchqueue"  # Deferred watch registration request
    TIMEZONE = "timezone"       # Per-owner timezone preference, keyed by owner


class ScheduleKind(str, Enum):
    """How a timed job's fire instant is derived."""
    ABSOLUTE = "absolute"            # Fire at the stored fire_at_ms
    FIXED_PATTERN = "fixed_pattern"  # Fire on a recurring cron pattern


# ============== Errors ==============

class BotSchedulerError(Exception):
    """Base class for scheduler errors."""


class JobStoreError(BotSchedulerError):
    """The backing store failed. Never retried internally."""


class InvalidJobError(BotSchedulerError, ValueError):
    """A job record violates a model invariant."""


class InvalidRecurrenceRule(BotSchedulerError, ValueError):
    """A recurrence rule cannot be parsed or does not advance time."""


# ============== Host Value Types ==============

@dataclass
class CommandContext:
    """Synthetic message context handed to the CommandExecutor.

    There is no live transport session behind it; the host resolves
    channel_id and owner_id itself.
    """
    channel_id: str
    owner_id: str
    command: str
    job_id: str | None = None


@dataclass
class CommandResult:
    """Reply produced by one CommandExecutor run."""
    reply: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class ItemInfo:
    """Item details returned by the DataProvider."""
    item_id: str
    display_name: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


# ============== Result Types ==============

@dataclass
class PollOutcome:
    """Result of diff-polling one Watch job."""
    job_id: str
    reply: str | None = None
    changed: bool = False
    notified: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "reply": self.reply,
            "changed": self.changed,
            "notified": self.notified,
            "error": self.error,
        }


@dataclass
class SchedulerStatus:
    """Status of the scheduler service."""
    running: bool
    timers_armed: int
    jobs_by_kind: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "timers_armed": self.timers_armed,
            "jobs_by_kind": self.jobs_by_kind,
        }
