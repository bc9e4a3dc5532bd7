"""Tests for bot supervision and metrics export."""
import asyncio
import time

import orjson

from lunarbot.bots.manager import BotManager
from lunarbot.jobs.queue import JobQueue
from lunarbot.jobs.supervisor import BotSupervisor, MetricsExporter
from lunarbot.models import BotState


def _supervisor(adapters, tmp_path, health_window=300):
    bots = BotManager(adapters=adapters, health_window_seconds=health_window)
    exporter = MetricsExporter(tmp_path / "metrics.jsonl")
    return bots, BotSupervisor(bots, exporter=exporter, queues=[JobQueue("tasks")])


def test_unresponsive_running_bot_is_recycled(adapters, tmp_path):
    """A running bot silent past the health window is marked error, then restarted once its task lets go."""
    bots, supervisor = _supervisor(adapters, tmp_path)

    async def scenario():
        created = await bots.create_bot("fake")
        await bots.assign_task("t1", created.bot_id)
        marked = await supervisor.run_once(now=time.time() + 301)
        held_state = bots.get_bot(created.bot_id).state
        await bots.complete_task("t1", False)
        recycled = await supervisor.run_once()
        return created.bot_id, marked, held_state, recycled

    bot_id, marked, held_state, recycled = asyncio.run(scenario())

    assert marked == {"checked": 1, "restarted": 0, "removed": 0, "marked_error": 1}
    assert held_state == BotState.ERROR
    assert recycled == {"checked": 1, "restarted": 1, "removed": 0, "marked_error": 0}
    bot = bots.get_bot(bot_id)
    assert bot.state == BotState.IDLE
    assert bots.bot_for_task("t1") is None


def test_recycled_bot_is_not_shared_with_next_task(adapters, fake_factory, tmp_path):
    """While the stalled task still drives the adapter, the next task gets a fresh bot."""
    bots, supervisor = _supervisor(adapters, tmp_path)

    async def scenario():
        first = await bots.acquire_bot("fake", "task-A")
        await supervisor.run_once(now=time.time() + 1000)
        second = await bots.acquire_bot("fake", "task-B")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.success and second.success
    assert second.bot_id != first.bot_id
    assert len(fake_factory.created) == 2
    held = bots.get_bot(first.bot_id)
    assert held.state == BotState.ERROR
    assert held.draining_task_id == "task-A"
    assert fake_factory.created[0].cleanups == 0


def test_old_jobs_cleaned_each_pass(adapters, tmp_path):
    cleaned = []

    def cleanup():
        cleaned.append(True)
        return 2

    bots = BotManager(adapters=adapters)
    supervisor = BotSupervisor(
        bots, exporter=MetricsExporter(tmp_path / "metrics.jsonl"), job_cleanups=[cleanup, cleanup]
    )

    asyncio.run(supervisor.run_once())

    assert cleaned == [True, True]
    assert supervisor.clean_jobs() == 4


def test_idle_bot_with_closed_session_is_restarted(adapters, fake_factory, tmp_path):
    bots, supervisor = _supervisor(adapters, tmp_path)

    async def scenario():
        await bots.create_bot("fake")
        await fake_factory.created[0].cleanup()
        return await supervisor.run_once()

    summary = asyncio.run(scenario())

    assert summary["marked_error"] == 1
    assert summary["restarted"] == 1
    assert fake_factory.created[0].running is True


def test_bot_failing_restart_is_removed(adapters, fake_factory, tmp_path):
    bots, supervisor = _supervisor(adapters, tmp_path)

    async def scenario():
        created = await bots.create_bot("fake")
        await bots.mark_error(created.bot_id, "Target page crashed")
        fake_factory.init_ok = False
        return await supervisor.run_once()

    summary = asyncio.run(scenario())

    assert summary["removed"] == 1
    assert bots.list_bots() == []


def test_healthy_bots_are_left_alone(adapters, tmp_path):
    bots, supervisor = _supervisor(adapters, tmp_path)

    async def scenario():
        await bots.create_bot("fake")
        return await supervisor.run_once()

    summary = asyncio.run(scenario())
    assert summary == {"checked": 1, "restarted": 0, "removed": 0, "marked_error": 0}


def test_metrics_snapshot_appended(adapters, tmp_path):
    bots, supervisor = _supervisor(adapters, tmp_path)

    async def scenario():
        await bots.create_bot("fake")
        await supervisor.run_once()
        await supervisor.run_once()

    asyncio.run(scenario())

    lines = (tmp_path / "metrics.jsonl").read_bytes().splitlines()
    assert len(lines) == 2
    snapshot = orjson.loads(lines[-1])
    assert snapshot["bots"]["totalBots"] == 1
    assert snapshot["bots"]["idleBots"] == 1
    assert snapshot["tasks"]["name"] == "tasks"
    assert "uptime" in snapshot
