"""Data models for persisted jobs."""
import json
import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Any

from .types import JobKind, ScheduleKind, InvalidJobError


def _now_ms() -> int:
    return int(time.time() * 1000)


# Fields that may be absent. Absent is None; "" and [] are present-but-empty.
OPTIONAL_FIELDS = (
    "args",
    "fire_at_ms",
    "recurrence_rule",
    "time_zone",
    "message",
    "item_id",
    "last_result",
    "display_name",
)


@dataclass
class Job:
    """A persisted unit of deferred or recurring work."""
    # Identity
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    kind: JobKind = JobKind.REMINDER
    owner: str = ""
    channel: str = ""

    # Command parameters
    args: list[str] | None = None

    # Timing
    created_at_ms: int = field(default_factory=_now_ms)
    fire_at_ms: int | None = None
    repeat: bool = False
    recurrence_rule: str | None = None
    schedule_kind: ScheduleKind = ScheduleKind.ABSOLUTE
    time_zone: str | None = None

    # Payload
    message: str | None = None
    item_id: str | None = None

    # Diff state
    last_result: str | None = None
    display_name: str | None = None

    @property
    def is_fixed_pattern(self) -> bool:
        return self.schedule_kind == ScheduleKind.FIXED_PATTERN

    def validate(self) -> None:
        """Check model invariants.

        Raises:
            InvalidJobError: If the record is inconsistent
        """
        if not self.id:
            raise InvalidJobError("Job id must not be empty")
        if self.repeat and not self.recurrence_rule:
            raise InvalidJobError(f"Job {self.id} repeats but has no recurrence rule")
        if self.is_fixed_pattern and not self.recurrence_rule:
            raise InvalidJobError(f"Job {self.id} uses a fixed pattern but has no rule")
        if (self.kind == JobKind.REMINDER
                and not self.is_fixed_pattern
                and self.fire_at_ms is None):
            raise InvalidJobError(f"Reminder {self.id} has no fire time")
        if self.args is not None and not all(isinstance(a, str) for a in self.args):
            raise InvalidJobError(f"Job {self.id} args must be strings")

    def to_dict(self) -> dict[str, Any]:
        """Convert to a sparse dictionary; absent optional fields are omitted."""
        d: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "owner": self.owner,
            "channel": self.channel,
            "created_at_ms": self.created_at_ms,
            "repeat": self.repeat,
            "schedule_kind": self.schedule_kind.value,
        }
        for name in OPTIONAL_FIELDS:
            value = getattr(self, name)
            if value is not None:
                d[name] = list(value) if name == "args" else value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Create from dictionary."""
        job = cls(
            id=data.get("id") or uuid.uuid4().hex,
            kind=JobKind(data.get("kind", JobKind.REMINDER.value)),
            owner=data.get("owner", ""),
            channel=data.get("channel", ""),
            created_at_ms=data.get("created_at_ms", _now_ms()),
            repeat=bool(data.get("repeat", False)),
            schedule_kind=ScheduleKind(
                data.get("schedule_kind", ScheduleKind.ABSOLUTE.value)
            ),
        )
        for name in OPTIONAL_FIELDS:
            if name in data and data[name] is not None:
                value = data[name]
                setattr(job, name, list(value) if name == "args" else value)
        return job


# ============== Arg Encoding ==============

def encode_args(args: list[str] | None) -> str | None:
    """Encode args for storage as a JSON array."""
    if args is None:
        return None
    return json.dumps(list(args), ensure_ascii=False)


def decode_args(blob: str | None) -> list[str] | None:
    """Decode a stored JSON array back into args."""
    if blob is None:
        return None
    value = json.loads(blob)
    if not isinstance(value, list):
        raise InvalidJobError(f"Stored args are not a list: {blob!r}")
    return [str(v) for v in value]


def flatten_args(args: list[str] | None) -> list[str]:
    """Flatten stored args into the token sequence the command parser expects.

    Argument groups are joined with ", " and re-split on single spaces, the
    same shape the tokens had when the user first typed the command.
    """
    if not args:
        return []
    return ", ".join(args).split(" ")


def job_field_names() -> set[str]:
    return {f.name for f in fields(Job)}
