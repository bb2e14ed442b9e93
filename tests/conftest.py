"""Shared fixtures and fakes for the scheduler tests."""
from pathlib import Path
from typing import Any, Callable

import pytest
import pytest_asyncio

from botscheduler.config import Settings
from botscheduler.scheduler.executor import JobExecutor
from botscheduler.scheduler.recurrence import now_ms
from botscheduler.scheduler.service import JobStore, SchedulerService
from botscheduler.scheduler.types import CommandContext, CommandResult, ItemInfo, JobKind
from botscheduler.scheduler.models import Job


class FakeCommandExecutor:
    """Records every run and answers from a per-command reply table."""

    def __init__(self) -> None:
        self.calls: list[tuple[CommandContext, list[str], bool]] = []
        self.replies: dict[str, Any] = {}
        self.fail_commands: set[str] = set()

    def reply_with(self, command: str, reply: str | Callable[[CommandContext], str]) -> None:
        self.replies[command] = reply

    async def run(
        self,
        context: CommandContext,
        tokens: list[str],
        is_background: bool,
    ) -> CommandResult:
        self.calls.append((context, tokens, is_background))
        if context.command in self.fail_commands:
            raise RuntimeError(f"{context.command} exploded")
        reply = self.replies.get(context.command, "")
        if callable(reply):
            reply = reply(context)
        return CommandResult(reply=reply)

    def calls_for(self, command: str) -> list[tuple[CommandContext, list[str], bool]]:
        return [c for c in self.calls if c[0].command == command]


class FakeDataProvider:
    def __init__(self, names: dict[str, str] | None = None, ready: bool = True) -> None:
        self.names = names or {}
        self.is_ready = ready
        self.lookups: list[str] = []

    async def lookup(self, item_id: str) -> ItemInfo:
        self.lookups.append(item_id)
        if item_id not in self.names:
            raise KeyError(item_id)
        return ItemInfo(item_id=item_id, display_name=self.names[item_id])

    async def ready(self) -> bool:
        return self.is_ready


class FakeSink:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def send(self, channel_id: str, text: str) -> None:
        if self.fail:
            raise ConnectionError("channel unavailable")
        self.sent.append((channel_id, text))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path, poll_interval_seconds=3600, overdue_delay_seconds=0.05)


@pytest_asyncio.fixture
async def store(tmp_path: Path):
    job_store = JobStore(tmp_path)
    await job_store.initialize()
    yield job_store
    await job_store.close()


@pytest.fixture
def commands() -> FakeCommandExecutor:
    return FakeCommandExecutor()


@pytest.fixture
def provider() -> FakeDataProvider:
    return FakeDataProvider()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def executor(commands, provider, sink) -> JobExecutor:
    return JobExecutor(commands, provider, sink)


@pytest_asyncio.fixture
async def service(store, executor, settings):
    svc = SchedulerService(store, executor, config=settings)
    yield svc
    await svc.timers.shutdown()


def make_reminder(**overrides: Any) -> Job:
    values: dict[str, Any] = {
        "kind": JobKind.REMINDER,
        "owner": "user_1",
        "channel": "chan_1",
        "message": "drink water",
        "fire_at_ms": now_ms() + 60_000,
    }
    values.update(overrides)
    return Job(**values)


def make_watch(**overrides: Any) -> Job:
    values: dict[str, Any] = {
        "kind": JobKind.WATCH,
        "owner": "user_1",
        "channel": "chan_1",
        "args": ["sword of doom", "price<500"],
        "item_id": "item_42",
    }
    values.update(overrides)
    return Job(**values)
