"""Tests for the purchase task pipeline running on the job queue."""
import asyncio

import pytest

from lunarbot.bots.manager import BotManager
from lunarbot.config import config
from lunarbot.jobs.queue import JobQueue, JobState
from lunarbot.jobs.task_worker import TaskWorker
from lunarbot.models import (
    BotConfig,
    BotState,
    CheckoutInfo,
    CheckoutProfile,
    StoreAccount,
    TaskStatus,
    WatchlistItem,
    WatchlistStatus,
)

from conftest import timeout_result


@pytest.fixture
def task_attempts(monkeypatch):
    """Set the job-level attempt count used for every submitted task."""

    def _set(attempts):
        monkeypatch.setattr(config, "TASK_ATTEMPTS", attempts)
        monkeypatch.setattr(config, "TASK_BACKOFF_SECONDS", 1.0)

    _set(1)
    return _set


@pytest.fixture
def run_task(db, vault, adapters, dispatcher, fake_sleep):
    """Submit task-1 and run the queue until it settles."""

    async def _run(retry_attempts=1, before=None):
        bots = BotManager(adapters=adapters)
        worker = TaskWorker(
            db,
            bots,
            vault,
            dispatcher,
            bot_config=BotConfig(retry_attempts=retry_attempts, delay_between_actions=0),
            sleep=fake_sleep,
        )
        queue = JobQueue("tasks", sleep=fake_sleep)
        worker.register(queue)
        if before is not None:
            await before()
        job = await worker.submit(queue, await db.get_task("task-1"))
        await queue.start()
        await queue.join()
        await queue.stop()
        await dispatcher.drain()
        return job, bots, await db.get_task("task-1")

    return _run


def test_successful_purchase(db, seed, run_task, fake_factory, channel, task_attempts):
    async def scenario():
        await seed()
        job, bots, task = await run_task()
        return job, bots, task, await db.list_purchase_history("user-1")

    job, bots, task, history = asyncio.run(scenario())

    assert job.state == JobState.COMPLETED
    assert task.status == TaskStatus.COMPLETED
    assert task.attempts == 1
    assert task.result["purchased"] is True
    assert task.result["order_reference"] == "ORDER-1"
    assert task.completed_at is not None
    assert fake_factory.credentials == [("alice@example.com", "hunter2")]
    assert fake_factory.calls == [
        "login",
        "get_product_details",
        "add_to_cart",
        "proceed_to_checkout",
        "complete_purchase",
    ]
    assert [r.order_reference for r in history] == ["ORDER-1"]
    assert [n.type for n in channel.sent] == ["purchase_completed"]

    bot = bots.list_bots()[0]
    assert bot.state == BotState.IDLE
    assert bot.performance.successful_tasks == 1
    assert bot.account_id == "acct-1"


def test_cart_only_task_skips_purchase(db, seed, run_task, fake_factory, task_attempts):
    """The bot holding the filled basket is retired so no later task checks it out."""

    async def scenario():
        await seed(complete_checkout=False)
        _, bots, task = await run_task()
        return bots, task, await db.list_purchase_history()

    bots, task, history = asyncio.run(scenario())

    assert task.status == TaskStatus.COMPLETED
    assert task.result["purchased"] is False
    assert "complete_purchase" not in fake_factory.calls
    assert history == []
    assert bots.list_bots() == []
    assert fake_factory.created[0].cleanups == 1


def test_checkout_profile_is_filled(db, seed, run_task, fake_factory, task_attempts):
    info = CheckoutInfo(
        email="alice@example.com",
        first_name="Alice",
        last_name="Jansen",
        address="Dorpstraat 1",
        city="Utrecht",
        postal_code="3511AA",
        country="NL",
    )

    async def scenario():
        await db.save_checkout_profile(CheckoutProfile(id="cp-1", user_id="user-1", info=info))
        await seed(checkout_profile_id="cp-1")
        _, _, task = await run_task()
        return task

    task = asyncio.run(scenario())
    assert task.status == TaskStatus.COMPLETED
    assert fake_factory.calls.index("fill_checkout_info") < fake_factory.calls.index("complete_purchase")


def test_add_to_cart_timeouts_retried_by_queue(seed, run_task, fake_factory, fake_sleep, task_attempts):
    """Two timeouts then success: the job completes on its third attempt."""
    task_attempts(3)
    fake_factory.failures["add_to_cart"] = [timeout_result(), timeout_result()]

    async def scenario():
        await seed()
        return await run_task(retry_attempts=1)

    job, bots, task = asyncio.run(scenario())

    assert job.state == JobState.COMPLETED
    assert job.retries == 2
    assert task.status == TaskStatus.COMPLETED
    assert task.attempts == 3
    assert fake_factory.calls.count("add_to_cart") == 3
    # The idle bot is reused across attempts
    assert len(fake_factory.created) == 1
    assert bots.list_bots()[0].performance.total_tasks == 3
    assert fake_sleep.delays == [1, 2]


def test_add_to_cart_timeouts_retried_within_step(seed, run_task, fake_factory, task_attempts):
    fake_factory.failures["add_to_cart"] = [timeout_result(), timeout_result()]

    async def scenario():
        await seed()
        return await run_task(retry_attempts=3)

    job, _, task = asyncio.run(scenario())

    assert job.state == JobState.COMPLETED
    assert job.retries == 0
    assert task.status == TaskStatus.COMPLETED
    assert task.attempts == 1
    assert fake_factory.calls.count("add_to_cart") == 3
    assert fake_factory.calls.count("login") == 1


def test_add_to_cart_timeouts_exhaust_attempts(seed, run_task, fake_factory, channel, task_attempts):
    task_attempts(2)
    fake_factory.failures["add_to_cart"] = [timeout_result(), timeout_result()]

    async def scenario():
        await seed()
        return await run_task(retry_attempts=1)

    job, bots, task = asyncio.run(scenario())

    assert job.state == JobState.FAILED
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 2
    assert "Timeout 30000ms exceeded" in task.error_message
    assert "\n" not in task.error_message
    assert "complete_purchase" not in fake_factory.calls
    assert [n.type for n in channel.sent] == ["purchase_failed"]
    assert bots.list_bots()[0].performance.failed_tasks == 2


def test_undecryptable_credentials_fail_without_retry(db, vault, seed, run_task, fake_factory, task_attempts):
    """A key mismatch is fatal: one attempt, no bot started."""
    task_attempts(3)

    async def scenario():
        await seed()
        await db.save_store_account(
            StoreAccount(
                id="acct-1",
                user_id="user-1",
                store_type="fake",
                encrypted_username="not-a-token",
                encrypted_password="not-a-token",
            )
        )
        return await run_task()

    job, bots, task = asyncio.run(scenario())

    assert job.state == JobState.FAILED
    assert job.retries == 0
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 1
    assert "ENCRYPTION_KEY" in task.error_message
    assert fake_factory.created == []
    assert bots.list_bots() == []


def test_bot_initialization_failure_is_not_retried(seed, run_task, fake_factory, task_attempts):
    task_attempts(3)
    fake_factory.init_ok = False

    async def scenario():
        await seed()
        return await run_task()

    job, bots, task = asyncio.run(scenario())

    assert job.attempts_made == 1
    assert task.status == TaskStatus.FAILED
    assert "browser crashed" in task.error_message
    assert bots.list_bots() == []


def test_price_over_budget_fails_before_cart(seed, run_task, fake_factory, task_attempts):
    task_attempts(3)

    async def scenario():
        await seed(max_price=40.0)
        return await run_task()

    job, bots, task = asyncio.run(scenario())

    assert job.attempts_made == 1
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "Price 50.00 exceeds maximum price 40.00"
    assert "add_to_cart" not in fake_factory.calls
    bot = bots.list_bots()[0]
    assert bot.state == BotState.IDLE
    assert bot.performance.failed_tasks == 1


def test_unavailable_product_fails(seed, run_task, fake_factory, task_attempts):
    fake_factory.product = fake_factory.product.model_copy(update={"availability": False})

    async def scenario():
        await seed()
        return await run_task()

    _, _, task = asyncio.run(scenario())

    assert task.status == TaskStatus.FAILED
    assert task.error_message == "Product is not available"


def test_inactive_account_fails(seed, run_task, fake_factory, task_attempts):
    async def scenario():
        await seed(account_active=False)
        return await run_task()

    _, _, task = asyncio.run(scenario())

    assert task.status == TaskStatus.FAILED
    assert task.error_message == "Store account not found or inactive"
    assert fake_factory.created == []


def test_task_cancelled_before_start_is_skipped(db, seed, run_task, fake_factory, task_attempts):
    async def cancel():
        await db.transition_task_status("task-1", TaskStatus.CANCELLED)

    async def scenario():
        await seed()
        return await run_task(before=cancel)

    job, _, task = asyncio.run(scenario())

    assert job.state == JobState.COMPLETED
    assert job.result == {"skipped": "cancelled"}
    assert task.status == TaskStatus.CANCELLED
    assert task.attempts == 0
    assert fake_factory.created == []


def test_task_cancelled_mid_run_discards_result(db, seed, run_task, fake_factory, channel, task_attempts):
    """Cancellation is honoured at the next step; the spawned watchlist item is released."""

    async def cancel():
        await db.transition_task_status("task-1", TaskStatus.CANCELLED)

    fake_factory.hooks["add_to_cart"] = cancel

    async def scenario():
        await seed(watchlist_item_id="w-1")
        await db.save_watchlist_item(
            WatchlistItem(
                id="w-1",
                user_id="user-1",
                product_id="prod-1",
                auto_purchase=True,
                status=WatchlistStatus.PURCHASING,
            )
        )
        job, bots, task = await run_task()
        return job, bots, task, await db.get_watchlist_item("w-1"), await db.list_purchase_history()

    job, bots, task, item, history = asyncio.run(scenario())

    assert job.result == {"cancelled": True}
    assert task.status == TaskStatus.CANCELLED
    assert task.result == {}
    assert "proceed_to_checkout" not in fake_factory.calls
    assert item.status == WatchlistStatus.MONITORING
    assert history == []
    assert channel.sent == []
    assert bots.list_bots()[0].state == BotState.IDLE


def test_watchlist_item_marked_purchased(db, seed, run_task, task_attempts):
    async def scenario():
        await seed(watchlist_item_id="w-1")
        await db.save_watchlist_item(
            WatchlistItem(
                id="w-1",
                user_id="user-1",
                product_id="prod-1",
                status=WatchlistStatus.PURCHASING,
            )
        )
        await run_task()
        return await db.get_watchlist_item("w-1")

    assert asyncio.run(scenario()).status == WatchlistStatus.PURCHASED


def test_failed_task_releases_watchlist_item(db, seed, run_task, task_attempts):
    async def scenario():
        await seed(watchlist_item_id="w-1", max_price=10.0)
        await db.save_watchlist_item(
            WatchlistItem(
                id="w-1",
                user_id="user-1",
                product_id="prod-1",
                status=WatchlistStatus.PURCHASING,
            )
        )
        await run_task()
        return await db.get_watchlist_item("w-1")

    assert asyncio.run(scenario()).status == WatchlistStatus.MONITORING


def test_dead_session_marks_bot_error(seed, run_task, fake_factory, task_attempts):
    """A browser that died during the task is moved to error for the supervisor."""

    async def crash():
        await fake_factory.created[0].cleanup()

    fake_factory.hooks["login"] = crash
    fake_factory.failures["login"] = [timeout_result("login")]

    async def scenario():
        await seed()
        return await run_task()

    _, bots, task = asyncio.run(scenario())

    assert task.status == TaskStatus.FAILED
    assert bots.list_bots()[0].state == BotState.ERROR
