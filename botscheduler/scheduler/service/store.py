"""SQLite job store with YAML snapshot export.

Architecture:
- SQLite database (jobs.db): the single source of truth for job records.
  One column per Job field; NULL means the optional field is absent, so an
  empty string or an empty args list survives a round trip.
- YAML file (jobs.yaml): optional human-readable snapshot written on demand.

Store failures are wrapped in JobStoreError and surfaced to the caller; the
store never retries.
"""
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator

import yaml
from loguru import logger

from ..models import Job, OPTIONAL_FIELDS, decode_args, encode_args, job_field_names
from ..recurrence import validate_job_schedule
from ..types import InvalidJobError, JobKind, JobStoreError, ScheduleKind

logger = logger.bind(module="scheduler.store")

DeleteHook = Callable[[list[str]], Awaitable[None]]

# ============== SQL Schema ==============

_INIT_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    id              TEXT PRIMARY KEY,
    kind            TEXT NOT NULL,
    owner           TEXT NOT NULL,
    channel         TEXT NOT NULL,
    args            TEXT,
    created_at_ms   INTEGER NOT NULL,
    fire_at_ms      INTEGER,
    repeat          INTEGER NOT NULL DEFAULT 0,
    recurrence_rule TEXT,
    schedule_kind   TEXT NOT NULL DEFAULT 'absolute',
    time_zone       TEXT,
    message         TEXT,
    item_id         TEXT,
    last_result     TEXT,
    display_name    TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_kind_owner ON jobs(kind, owner, created_at_ms);
"""

_COLUMNS = (
    "id", "kind", "owner", "channel", "args", "created_at_ms", "fire_at_ms",
    "repeat", "recurrence_rule", "schedule_kind", "time_zone", "message",
    "item_id", "last_result", "display_name",
)


def _to_column(name: str, value: Any) -> Any:
    """Convert a Job attribute value to its SQLite column value."""
    if name == "args":
        return encode_args(value)
    if name in ("kind", "schedule_kind") and value is not None:
        return value.value if hasattr(value, "value") else str(value)
    if name == "repeat":
        return 1 if value else 0
    return value


def _row_to_job(row: sqlite3.Row) -> Job:
    job = Job(
        id=row["id"],
        kind=JobKind(row["kind"]),
        owner=row["owner"],
        channel=row["channel"],
        created_at_ms=row["created_at_ms"],
        repeat=bool(row["repeat"]),
        schedule_kind=ScheduleKind(row["schedule_kind"]),
    )
    for name in OPTIONAL_FIELDS:
        value = row[name]
        if value is None:
            continue
        setattr(job, name, decode_args(value) if name == "args" else value)
    return job


# Changing any of these re-checks that a reminder can still be scheduled
_SCHEDULE_FIELDS = {"repeat", "recurrence_rule", "schedule_kind", "time_zone"}


def _merge(job: Job, values: dict[str, Any]) -> Job:
    """Return a copy of job with values applied."""
    merged = replace(job, **values)
    try:
        merged.kind = JobKind(merged.kind)
        merged.schedule_kind = ScheduleKind(merged.schedule_kind)
    except ValueError as e:
        raise InvalidJobError(f"Job {job.id}: {e}") from e
    if merged.args is not None:
        merged.args = list(merged.args)
    return merged


class JobStore:
    """SQLite-backed durable job store.

    Thread-safety: SQLite handles its own locking; all calls come from the
    single scheduler event loop.
    """

    def __init__(self, data_dir: str | Path, db_name: str = "jobs.db"):
        """Initialize store.

        Args:
            data_dir: Directory to store the database and YAML snapshot
            db_name: Database file name, or ":memory:" for a private database
        """
        self.data_dir = Path(data_dir).expanduser()
        self.db_path = db_name if db_name == ":memory:" else str(self.data_dir / db_name)
        self.yaml_path = self.data_dir / "jobs.yaml"
        self._db: sqlite3.Connection | None = None
        self._delete_hooks: list[DeleteHook] = []

    # ============== Lifecycle ==============

    async def initialize(self) -> None:
        """Open SQLite and create the schema."""
        if self._db is not None:
            return
        self.data_dir.mkdir(parents=True, exist_ok=True)

        with self._errors("open database"):
            self._db = sqlite3.connect(self.db_path, check_same_thread=False)
            self._db.row_factory = sqlite3.Row
            self._db.execute("PRAGMA journal_mode=WAL")
            self._db.execute("PRAGMA synchronous=NORMAL")
            self._db.executescript(_INIT_SQL)

        logger.info(f"Store initialized at {self.db_path}")

    async def close(self) -> None:
        """Close store."""
        if self._db:
            self._db.close()
            self._db = None

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise JobStoreError("Job store is not initialized")
        return self._db

    @contextmanager
    def _errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as e:
            logger.error(f"Store failed to {action}: {e}")
            raise JobStoreError(f"Failed to {action}: {e}") from e

    # ============== Delete Hooks ==============

    def add_delete_hook(self, hook: DeleteHook) -> None:
        """Register a coroutine awaited with the ids about to be deleted."""
        self._delete_hooks.append(hook)

    async def _run_delete_hooks(self, job_ids: list[str]) -> None:
        if not job_ids:
            return
        for hook in self._delete_hooks:
            await hook(job_ids)

    # ============== Job CRUD ==============

    async def insert(self, job: Job) -> str:
        """Insert a new job.

        Timezone preference records are keyed by their owner.

        Returns:
            The job id
        """
        if job.kind == JobKind.TIMEZONE:
            job.id = job.owner
        job.validate()

        values = [_to_column(name, getattr(job, name)) for name in _COLUMNS]
        placeholders = ", ".join("?" * len(_COLUMNS))
        with self._errors(f"insert job {job.id}"):
            self.db.execute(
                f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
            self.db.commit()

        logger.debug(f"Inserted {job.kind.value} job {job.id} for {job.owner}")
        return job.id

    async def get(self, job_id: str) -> Job | None:
        """Get a job by ID."""
        with self._errors(f"get job {job_id}"):
            row = self.db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    async def update(self, job_id: str, upsert: bool = False, **values: Any) -> int:
        """Set the given fields on a job.

        Passing None for an optional field makes it absent again. The merged
        record is validated before anything is written.

        Args:
            job_id: Job identifier
            upsert: Create the job from ``values`` when it does not exist
            **values: Field names and their new values

        Returns:
            Number of affected rows (0 if the job does not exist)

        Raises:
            ValueError: If a field is unknown or is ``id``
            InvalidJobError: If the merged record violates a model invariant
            InvalidRecurrenceRule: If a reminder's new rule cannot be scheduled
        """
        if not values:
            return 0
        unknown = set(values) - (job_field_names() - {"id"})
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        current = await self.get(job_id)
        if current is None and not upsert:
            return 0

        merged = _merge(current or Job(id=job_id), values)
        if current is None and merged.kind == JobKind.TIMEZONE and not merged.owner:
            merged.owner = job_id
        merged.validate()
        if merged.kind == JobKind.REMINDER and _SCHEDULE_FIELDS & set(values):
            validate_job_schedule(merged)

        if current is None:
            return await self._upsert(merged, values)

        assignments = ", ".join(f"{name} = ?" for name in values)
        params = [_to_column(name, getattr(merged, name)) for name in values]
        with self._errors(f"update job {job_id}"):
            cursor = self.db.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ?",
                params + [job_id],
            )
            self.db.commit()
        return cursor.rowcount

    async def _upsert(self, job: Job, values: dict[str, Any]) -> int:
        # Another writer may have created the row since the read above
        assignments = ", ".join(f"{name} = excluded.{name}" for name in values)
        placeholders = ", ".join("?" * len(_COLUMNS))
        with self._errors(f"upsert job {job.id}"):
            cursor = self.db.execute(
                f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {assignments}",
                [_to_column(name, getattr(job, name)) for name in _COLUMNS],
            )
            self.db.commit()
        logger.debug(f"Upserted {job.kind.value} job {job.id} for {job.owner}")
        return cursor.rowcount

    async def remove(self, job_id: str) -> int:
        """Delete one job.

        Returns:
            Number of deleted rows (0 if the job does not exist)
        """
        if await self.get(job_id) is not None:
            await self._run_delete_hooks([job_id])

        with self._errors(f"remove job {job_id}"):
            cursor = self.db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self.db.commit()
        return cursor.rowcount

    async def list_jobs(self, kind: JobKind, owner: str | None = None) -> list[Job]:
        """List jobs of a kind, optionally for one owner, oldest first."""
        where, params = self._filter(kind, owner)
        with self._errors(f"list {kind.value} jobs"):
            rows = self.db.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at_ms ASC, rowid ASC",
                params,
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    async def clear(self, kind: JobKind, owner: str | None = None) -> int:
        """Delete every job of a kind, optionally for one owner.

        Delete hooks run first with the matching ids, so live timers are
        cancelled before their records disappear.

        Returns:
            Number of deleted rows
        """
        matching = await self.list_jobs(kind, owner)
        await self._run_delete_hooks([job.id for job in matching])

        where, params = self._filter(kind, owner)
        with self._errors(f"clear {kind.value} jobs"):
            cursor = self.db.execute(f"DELETE FROM jobs {where}", params)
            self.db.commit()

        logger.info(
            f"Cleared {cursor.rowcount} {kind.value} jobs"
            + (f" for {owner}" if owner else "")
        )
        return cursor.rowcount

    @staticmethod
    def _filter(kind: JobKind, owner: str | None) -> tuple[str, list[Any]]:
        conditions = ["kind = ?"]
        params: list[Any] = [kind.value]
        if owner:
            conditions.append("owner = ?")
            params.append(owner)
        return f"WHERE {' AND '.join(conditions)}", params

    # ============== Statistics ==============

    async def count_by_kind(self) -> dict[str, int]:
        """Count jobs by kind."""
        with self._errors("count jobs"):
            rows = self.db.execute(
                "SELECT kind, COUNT(*) AS cnt FROM jobs GROUP BY kind"
            ).fetchall()
        return {row["kind"]: row["cnt"] for row in rows}

    # ============== Export ==============

    async def export_to_yaml(self, path: str | Path | None = None) -> Path:
        """Write a YAML snapshot of every job (atomic).

        Returns:
            Path of the written file
        """
        target = Path(path) if path else self.yaml_path
        with self._errors("read jobs for export"):
            rows = self.db.execute(
                "SELECT * FROM jobs ORDER BY created_at_ms ASC, rowid ASC"
            ).fetchall()

        data = {"jobs": [_row_to_job(row).to_dict() for row in rows]}

        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write("# botscheduler job snapshot (read-only, regenerated on export)\n\n")
            yaml.dump(
                data,
                f,
                default_flow_style=False,
                allow_unicode=True,
                sort_keys=False,
            )
        temp_path.replace(target)
        logger.debug(f"Exported {len(rows)} jobs to {target}")
        return target
