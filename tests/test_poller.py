"""Tests for the watch diff poller, name backfill and queue drain."""
import pytest

from botscheduler.scheduler.executor import JobExecutor
from botscheduler.scheduler.poller import DiffPoller
from botscheduler.scheduler.types import CommandContext, JobKind, JobStoreError
from conftest import FakeSink, make_watch


@pytest.fixture
def poller(store, executor) -> DiffPoller:
    return DiffPoller(store, executor, queue_command="market")


class TestDiffPoll:
    """Tests for change detection."""

    @pytest.mark.asyncio
    async def test_unchanged_result_sends_nothing(self, poller, store, commands, sink):
        job_id = await store.insert(make_watch(last_result="10"))
        commands.reply_with("watch", "10")

        outcomes = await poller.poll()

        assert [o.changed for o in outcomes] == [False]
        assert sink.sent == []
        assert (await store.get(job_id)).last_result == "10"

    @pytest.mark.asyncio
    async def test_changed_result_notifies_once_and_persists(self, poller, store, commands, sink):
        job_id = await store.insert(make_watch(last_result="10"))
        commands.reply_with("watch", "12")

        outcomes = await poller.poll()

        assert outcomes[0].changed is True
        assert outcomes[0].notified is True
        assert sink.sent == [("chan_1", "12")]
        assert (await store.get(job_id)).last_result == "12"

    @pytest.mark.asyncio
    async def test_two_identical_polls_notify_once(self, poller, store, commands, sink):
        await store.insert(make_watch(last_result=None))
        commands.reply_with("watch", "7 listings")

        await poller.poll()
        await poller.poll()

        assert sink.sent == [("chan_1", "7 listings")]

    @pytest.mark.asyncio
    async def test_command_gets_flattened_tokens_in_background(self, poller, store, commands):
        await store.insert(make_watch(args=["sword of doom", "price<500"]))

        await poller.poll()

        context, tokens, is_background = commands.calls[0]
        assert context.command == "watch"
        assert tokens == ["sword", "of", "doom,", "price<500"]
        assert is_background is True

    @pytest.mark.asyncio
    async def test_owner_scoped_poll_returns_instead_of_notifying(self, poller, store, commands, sink):
        mine = await store.insert(make_watch(owner="user_1", last_result="10"))
        await store.insert(make_watch(owner="user_2", last_result="10"))
        commands.reply_with("watch", "15")

        outcomes = await poller.poll(owner="user_1")

        assert [o.job_id for o in outcomes] == [mine]
        assert outcomes[0].reply == "15"
        assert outcomes[0].changed is True
        assert outcomes[0].notified is False
        assert sink.sent == []
        assert (await store.get(mine)).last_result == "15"

    @pytest.mark.asyncio
    async def test_owner_scoped_poll_returns_unchanged_results(self, poller, store, commands):
        await store.insert(make_watch(owner="user_1", last_result="10"))
        commands.reply_with("watch", "10")

        outcomes = await poller.poll(owner="user_1")

        assert outcomes[0].reply == "10"
        assert outcomes[0].changed is False

    @pytest.mark.asyncio
    async def test_empty_owner_is_an_unscoped_poll(self, poller, store, commands, sink):
        await store.insert(make_watch(owner="a", channel="c1", last_result="10", created_at_ms=1))
        await store.insert(make_watch(owner="b", channel="c2", last_result="10", created_at_ms=2))
        commands.reply_with("watch", "12")

        outcomes = await poller.poll(owner="")

        assert [o.notified for o in outcomes] == [True, True]
        assert sorted(sink.sent) == [("c1", "12"), ("c2", "12")]

    @pytest.mark.asyncio
    async def test_change_to_empty_reply_notifies_once(self, poller, store, commands, sink):
        job_id = await store.insert(make_watch(last_result="10"))
        commands.reply_with("watch", "")

        await poller.poll()
        await poller.poll()

        assert sink.sent == [("chan_1", "")]
        assert (await store.get(job_id)).last_result == ""

    @pytest.mark.asyncio
    async def test_failed_command_is_isolated(self, poller, store, commands, sink):
        def reply(context: CommandContext) -> str:
            if context.job_id == "broken":
                raise RuntimeError("scraper down")
            return "20"

        await store.insert(make_watch(id="broken", created_at_ms=1))
        await store.insert(make_watch(id="fine", created_at_ms=2))
        commands.reply_with("watch", reply)

        outcomes = await poller.poll()

        by_id = {o.job_id: o for o in outcomes}
        assert by_id["broken"].error == "scraper down"
        assert by_id["fine"].changed is True
        assert sink.sent == [("chan_1", "20")]

    @pytest.mark.asyncio
    async def test_failed_notification_still_persists(self, store, commands):
        executor = JobExecutor(commands, notification_sink=FakeSink(fail=True))
        poller = DiffPoller(store, executor)
        job_id = await store.insert(make_watch(last_result="1"))
        commands.reply_with("watch", "2")

        outcomes = await poller.poll()

        assert outcomes[0].notified is False
        assert (await store.get(job_id)).last_result == "2"

    @pytest.mark.asyncio
    async def test_poll_skipped_when_provider_not_ready(self, poller, store, provider, commands):
        provider.is_ready = False
        await store.insert(make_watch())

        assert await poller.poll() == []
        assert commands.calls == []

    @pytest.mark.asyncio
    async def test_run_tick_swallows_store_errors(self, poller, store):
        store.db.execute("DROP TABLE jobs")
        await poller.run_tick()

    @pytest.mark.asyncio
    async def test_poll_surfaces_store_errors(self, poller, store):
        store.db.execute("DROP TABLE jobs")
        with pytest.raises(JobStoreError):
            await poller.poll()


class TestBackfill:
    """Tests for display-name backfill."""

    @pytest.mark.asyncio
    async def test_missing_names_are_filled(self, poller, store, provider):
        provider.names = {"item_42": "Sword of Doom"}
        named = await store.insert(make_watch(id="named", display_name="Kept"))
        unnamed = await store.insert(make_watch(id="unnamed"))

        filled = await poller.backfill_names()

        assert filled == 1
        assert (await store.get(unnamed)).display_name == "Sword of Doom"
        assert (await store.get(named)).display_name == "Kept"
        assert provider.lookups == ["item_42"]

    @pytest.mark.asyncio
    async def test_lookup_failures_are_skipped(self, poller, store, provider):
        provider.names = {"item_1": "Shield"}
        await store.insert(make_watch(id="ok", item_id="item_1"))
        await store.insert(make_watch(id="missing", item_id="item_404"))

        assert await poller.backfill_names() == 1
        assert (await store.get("missing")).display_name is None


class TestQueueDrain:
    """Tests for replaying queued watch requests."""

    @pytest.mark.asyncio
    async def test_queue_replayed_then_cleared(self, poller, store, commands, sink):
        commands.reply_with("market", lambda ctx: f"watching for {ctx.owner_id}")
        await store.insert(make_watch(kind=JobKind.WATCH_QUEUE, owner="a", channel="c1", created_at_ms=1))
        await store.insert(make_watch(kind=JobKind.WATCH_QUEUE, owner="b", channel="c2", created_at_ms=2))

        drained = await poller.drain_queue()

        assert drained == 2
        assert await store.list_jobs(JobKind.WATCH_QUEUE) == []
        assert sorted(sink.sent) == [("c1", "watching for a"), ("c2", "watching for b")]
        assert all(is_background is False for _, _, is_background in commands.calls)

    @pytest.mark.asyncio
    async def test_queue_cleared_even_when_requests_fail(self, poller, store, commands):
        commands.fail_commands.add("market")
        await store.insert(make_watch(kind=JobKind.WATCH_QUEUE))

        assert await poller.drain_queue() == 1
        assert await store.list_jobs(JobKind.WATCH_QUEUE) == []

    @pytest.mark.asyncio
    async def test_drain_leaves_watches_alone(self, poller, store):
        watch_id = await store.insert(make_watch())
        await store.insert(make_watch(kind=JobKind.WATCH_QUEUE))

        await poller.drain_queue()

        assert await store.get(watch_id) is not None


class TestServiceWatches:
    """Tests for the watch entry points on the scheduler service."""

    @pytest.mark.asyncio
    async def test_poll_watches_for_owner(self, service, store, commands, sink):
        await store.insert(make_watch(owner="user_1", last_result="3"))
        commands.reply_with("watch", "4")

        outcomes = await service.poll_watches(owner="user_1")

        assert [o.reply for o in outcomes] == ["4"]
        assert sink.sent == []

    @pytest.mark.asyncio
    async def test_process_queues_drains_then_backfills(self, service, store, provider):
        provider.names = {"item_42": "Sword of Doom"}
        watch_id = await store.insert(make_watch())
        await store.insert(make_watch(kind=JobKind.WATCH_QUEUE))

        assert await service.process_queues() == 1
        assert await store.list_jobs(JobKind.WATCH_QUEUE) == []
        assert (await store.get(watch_id)).display_name == "Sword of Doom"
