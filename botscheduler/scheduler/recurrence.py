"""Recurrence calculation utilities.

Computes next fire instants for timed jobs: interval rules such as ``30m`` or
``1M`` are applied as date transforms, fixed patterns are cron expressions
evaluated with croniter. Everything here is pure.
"""
import calendar
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .models import Job
from .types import InvalidRecurrenceRule

_RULE_RE = re.compile(r"^\s*(\d+)\s*([a-zA-Z]+)\s*$")

_UNIT_ALIASES = {
    "s": "s", "sec": "s", "secs": "s", "second": "s", "seconds": "s",
    "m": "m", "min": "m", "mins": "m", "minute": "m", "minutes": "m",
    "h": "h", "hr": "h", "hrs": "h", "hour": "h", "hours": "h",
    "d": "d", "day": "d", "days": "d",
    "w": "w", "wk": "w", "week": "w", "weeks": "w",
    "M": "M", "mo": "M", "month": "M", "months": "M",
    "y": "y", "yr": "y", "year": "y", "years": "y",
}

_FIXED_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}

_UNIT_NAMES = {
    "s": "second", "m": "minute", "h": "hour", "d": "day",
    "w": "week", "M": "month", "y": "year",
}


@dataclass(frozen=True)
class FireSchedule:
    """What to hand the TimerTable for a job.

    ``cron`` and ``timezone`` are only set for fixed-pattern jobs; the timer
    then re-fires on the pattern by itself.
    """
    fire_at: datetime
    cron: str | None = None
    timezone: str | None = None


def now_ms() -> int:
    """Get current timestamp in milliseconds."""
    return int(time.time() * 1000)


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def datetime_to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def parse_rule(rule: str) -> tuple[int, str]:
    """Parse an interval rule into (amount, unit).

    Args:
        rule: Rule token such as ``"30m"``, ``"2 days"`` or ``"1M"``

    Returns:
        Amount and canonical unit (one of ``s m h d w M y``)

    Raises:
        InvalidRecurrenceRule: If the rule is malformed or does not advance time
    """
    match = _RULE_RE.match(rule or "")
    if not match:
        raise InvalidRecurrenceRule(f"Invalid recurrence rule: {rule!r}")

    amount = int(match.group(1))
    raw_unit = match.group(2)
    # "M" is months, "m" is minutes; only long forms are case-insensitive
    unit = _UNIT_ALIASES.get(raw_unit) or _UNIT_ALIASES.get(raw_unit.lower())
    if unit is None or (len(raw_unit) == 1 and raw_unit not in _UNIT_ALIASES):
        raise InvalidRecurrenceRule(f"Unknown unit in recurrence rule: {rule!r}")
    if amount <= 0:
        raise InvalidRecurrenceRule(f"Recurrence rule does not advance time: {rule!r}")
    return amount, unit


def _add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def apply_transform(dt: datetime, rule: str) -> datetime:
    """Advance ``dt`` by one step of ``rule``."""
    amount, unit = parse_rule(rule)
    if unit == "M":
        result = _add_months(dt, amount)
    elif unit == "y":
        result = _add_months(dt, amount * 12)
    else:
        result = dt + _FIXED_UNITS[unit] * amount

    if result <= dt:
        raise InvalidRecurrenceRule(f"Recurrence rule does not advance time: {rule!r}")
    return result


def catch_up(
    fire_at: datetime,
    rule: str,
    now: datetime,
    max_steps: int | None = None,
) -> datetime:
    """Advance a missed fire instant to the first one strictly after ``now``.

    A future ``fire_at`` is returned unchanged.

    Args:
        fire_at: Declared next fire instant
        rule: Interval rule applied per step
        now: Current time
        max_steps: Optional upper bound on the number of transforms

    Returns:
        The first instant in the rule's sequence that is greater than ``now``
    """
    parse_rule(rule)
    next_at = fire_at
    steps = 0
    while next_at <= now:
        next_at = apply_transform(next_at, rule)
        steps += 1
        if max_steps is not None and steps > max_steps:
            raise InvalidRecurrenceRule(
                f"Catch-up for rule {rule!r} exceeded {max_steps} steps"
            )
    return next_at


def resolve_timezone(name: str | None, default: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo(name or default)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidRecurrenceRule(f"Unknown timezone: {name!r}") from e


def validate_cron_expression(expression: str) -> bool:
    """Validate a 5-part cron expression."""
    if not expression or len(expression.split()) != 5:
        return False
    return croniter.is_valid(expression)


def next_pattern_fire(
    expression: str,
    tz_name: str | None,
    now: datetime,
    default_timezone: str = "UTC",
) -> datetime:
    """Next instant of a cron pattern evaluated in the job's timezone."""
    if not validate_cron_expression(expression):
        raise InvalidRecurrenceRule(f"Invalid cron expression: {expression!r}")
    tz = resolve_timezone(tz_name, default_timezone)
    next_local = croniter(expression, now.astimezone(tz)).get_next(datetime)
    return next_local.astimezone(timezone.utc)


def validate_job_schedule(job: Job) -> None:
    """Reject a timed job whose rule or timezone cannot be scheduled."""
    if job.is_fixed_pattern:
        if not validate_cron_expression(job.recurrence_rule or ""):
            raise InvalidRecurrenceRule(f"Invalid cron expression: {job.recurrence_rule!r}")
        if job.time_zone:
            resolve_timezone(job.time_zone)
    elif job.repeat:
        parse_rule(job.recurrence_rule or "")


def compute_next_fire(
    job: Job,
    now: datetime | None = None,
    overdue_delay_seconds: float = 1.0,
    default_timezone: str = "UTC",
) -> FireSchedule:
    """Compute the instant to arm next for a timed job.

    - Fixed-pattern jobs derive it from the pattern alone.
    - A past-due repeating job is caught up along its rule.
    - A past-due one-shot job fires after ``overdue_delay_seconds``.
    - A future fire time is used as-is.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    if job.is_fixed_pattern:
        tz_name = job.time_zone or default_timezone
        fire_at = next_pattern_fire(job.recurrence_rule or "", tz_name, now)
        return FireSchedule(fire_at=fire_at, cron=job.recurrence_rule, timezone=tz_name)

    if job.fire_at_ms is None:
        raise InvalidRecurrenceRule(f"Job {job.id} has no fire time")

    fire_at = ms_to_datetime(job.fire_at_ms)
    if fire_at > now:
        return FireSchedule(fire_at=fire_at)

    if job.repeat and job.recurrence_rule:
        return FireSchedule(fire_at=catch_up(fire_at, job.recurrence_rule, now))

    return FireSchedule(fire_at=now + timedelta(seconds=overdue_delay_seconds))


def describe_rule(job: Job) -> str:
    """Human-readable description of a job's schedule, for logs."""
    if job.is_fixed_pattern:
        return f"cron '{job.recurrence_rule}' ({job.time_zone or 'default tz'})"

    when = (
        ms_to_datetime(job.fire_at_ms).strftime("%Y-%m-%d %H:%M:%S UTC")
        if job.fire_at_ms is not None else "unscheduled"
    )
    if not job.repeat or not job.recurrence_rule:
        return f"once at {when}"

    try:
        amount, unit = parse_rule(job.recurrence_rule)
    except InvalidRecurrenceRule:
        return f"at {when}, rule {job.recurrence_rule!r}"
    name = _UNIT_NAMES[unit]
    every = f"every {name}" if amount == 1 else f"every {amount} {name}s"
    return f"{every}, next at {when}"
