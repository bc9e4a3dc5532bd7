"""Tests for product monitoring, alerts and auto-purchase gating."""
import asyncio

import pytest

from lunarbot.bots.retry import RetryPolicy
from lunarbot.errors import BusinessRuleError, TransientError
from lunarbot.jobs.monitor import (
    MonitoringService,
    ProductMonitor,
    is_price_drop_alert,
    monitor_job_id,
    price_change_percent,
    should_auto_purchase,
)
from lunarbot.jobs.queue import Job, JobOptions, JobQueue
from lunarbot.models import BotConfig, Product, ProductInfo, WatchlistItem, WatchlistStatus
from lunarbot.scrape.rate_limit import RateLimiter
from lunarbot.scrape.scraper import BrowserProductScraper

from conftest import timeout_result


class FakeScraper:
    """Returns scripted ProductInfo (or raises) per product id."""

    def __init__(self):
        self.responses = {}
        self.scraped = []

    async def scrape(self, product):
        self.scraped.append(product.id)
        response = self.responses[product.id]
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        pass


def _info(price, available=True, name="Widget"):
    return ProductInfo(name=name, price=price, availability=available, url="https://shop.test/p/widget")


@pytest.fixture
def scraper():
    return FakeScraper()


@pytest.fixture
def submitted():
    return []


@pytest.fixture
def monitor(db, scraper, dispatcher, submitted, fake_sleep):
    async def submit(task):
        submitted.append(task)

    return ProductMonitor(
        db,
        scraper,
        dispatcher,
        submit_task=submit,
        price_threshold=5.0,
        batch_size=2,
        batch_delay=5.0,
        purchase_priority=10,
        sleep=fake_sleep,
    )


def _watch(**fields):
    values = dict(id="w-1", user_id="user-1", product_id="prod-1")
    values.update(fields)
    return WatchlistItem(**values)


@pytest.mark.parametrize(
    "old,new,expected",
    [(100.0, 95.0, -5.0), (100.0, 110.0, 10.0), (None, 5.0, None), (0.0, 5.0, None), (5.0, None, None)],
)
def test_price_change_percent(old, new, expected):
    assert price_change_percent(old, new) == (pytest.approx(expected) if expected is not None else None)


def test_price_drop_threshold():
    """Below-threshold changes and increases never alert; drops at the threshold do."""
    assert not is_price_drop_alert(-4.99, 5.0)
    assert is_price_drop_alert(-5.0, 5.0)
    assert is_price_drop_alert(-12.0, 5.0)
    assert not is_price_drop_alert(12.0, 5.0)
    assert not is_price_drop_alert(None, 5.0)


def test_should_auto_purchase_gates():
    item = _watch(auto_purchase=True, max_price=90.0)

    assert should_auto_purchase(item, _info(85.0), has_active_account=True)
    assert should_auto_purchase(item, _info(90.0), has_active_account=True)
    assert not should_auto_purchase(item, _info(95.0), has_active_account=True)
    assert not should_auto_purchase(item, _info(85.0, available=False), has_active_account=True)
    assert not should_auto_purchase(item, _info(85.0), has_active_account=False)
    assert not should_auto_purchase(item, _info(None), has_active_account=True)
    assert not should_auto_purchase(_watch(auto_purchase=False), _info(85.0), has_active_account=True)
    assert not should_auto_purchase(
        _watch(auto_purchase=True, status=WatchlistStatus.PURCHASING), _info(85.0), has_active_account=True
    )
    # No budget means any available price
    assert should_auto_purchase(_watch(auto_purchase=True), _info(None), has_active_account=True)


def test_price_drop_then_auto_purchase(db, seed, monitor, scraper, submitted, channel):
    """100 -> 95 only alerts; 85 is within budget and spawns one high-priority task."""
    scraper.responses["prod-1"] = [_info(95.0), _info(85.0), _info(85.0)]

    async def scenario():
        await seed(price=100.0)
        await db.save_watchlist_item(_watch(auto_purchase=True, max_price=90.0))

        first = await monitor.check_product("prod-1")
        after_first = (await db.get_product("prod-1"), await db.get_watchlist_item("w-1"))
        second = await monitor.check_product("prod-1")
        third = await monitor.check_product("prod-1")
        await monitor.dispatcher.drain()
        return first, after_first, second, third, await db.get_watchlist_item("w-1"), await db.get_price_history("prod-1")

    first, (product, item_after_first), second, third, item, history = asyncio.run(scenario())

    assert first.spawned_task_ids == []
    assert first.change_percent == pytest.approx(-5.0)
    assert [a.alert_type for a in first.alerts] == ["price_change"]
    assert product.current_price == 95.0
    assert item_after_first.status == WatchlistStatus.MONITORING

    assert len(second.spawned_task_ids) == 1
    assert item.status == WatchlistStatus.PURCHASING
    assert item.last_attempt_at is not None
    assert [t.id for t in submitted] == second.spawned_task_ids
    task = submitted[0]
    assert task.priority == 10
    assert task.max_price == 90.0
    assert task.watchlist_item_id == "w-1"
    assert task.store_account_id == "acct-1"

    # Already purchasing: the next cycle does not fire again
    assert third.spawned_task_ids == []
    assert third.alerts == []
    assert [p["price"] for p in history] == [85.0, 85.0, 95.0]

    sent = [n.type for n in channel.sent]
    assert sent.count("price_drop") == 2
    assert sent.count("auto_purchase_started") == 1


def test_small_price_change_updates_snapshot_without_alert(db, seed, monitor, scraper, channel):
    scraper.responses["prod-1"] = _info(98.0)

    async def scenario():
        await seed(price=100.0)
        await db.save_watchlist_item(_watch())
        outcome = await monitor.check_product("prod-1")
        await monitor.dispatcher.drain()
        return outcome, await db.get_product("prod-1"), await db.list_alerts("prod-1")

    outcome, product, alerts = asyncio.run(scenario())

    assert outcome.alerts == []
    assert product.current_price == 98.0
    assert alerts == []
    assert channel.sent == []


def test_price_increase_alerts_without_notifying(db, seed, monitor, scraper, channel):
    scraper.responses["prod-1"] = _info(120.0)

    async def scenario():
        await seed(price=100.0)
        await db.save_watchlist_item(_watch())
        outcome = await monitor.check_product("prod-1")
        await monitor.dispatcher.drain()
        return outcome

    outcome = asyncio.run(scenario())
    assert [a.alert_type for a in outcome.alerts] == ["price_change"]
    assert channel.sent == []


def test_stock_change_alert(db, seed, monitor, scraper, channel):
    scraper.responses["prod-1"] = _info(50.0, available=True)

    async def scenario():
        await seed(price=50.0, available=False)
        await db.save_watchlist_item(_watch())
        outcome = await monitor.check_product("prod-1")
        await monitor.dispatcher.drain()
        return outcome, await db.get_product("prod-1")

    outcome, product = asyncio.run(scenario())

    assert [a.alert_type for a in outcome.alerts] == ["stock_change"]
    assert outcome.alerts[0].message == "Stock status changed from Out of Stock to In Stock"
    assert product.is_available is True
    assert [n.type for n in channel.sent] == ["stock_change"]


def test_no_active_account_never_fires(db, seed, monitor, scraper, submitted):
    scraper.responses["prod-1"] = _info(50.0)

    async def scenario():
        await seed(price=50.0, account_active=False)
        await db.save_watchlist_item(_watch(auto_purchase=True))
        outcome = await monitor.check_product("prod-1")
        return outcome, await db.get_watchlist_item("w-1")

    outcome, item = asyncio.run(scenario())
    assert outcome.spawned_task_ids == []
    assert submitted == []
    assert item.status == WatchlistStatus.MONITORING


def test_overlapping_checks_fire_once(db, seed, monitor, scraper, submitted):
    """Two concurrent cycles observing the same item spawn a single task."""
    scraper.responses["prod-1"] = _info(50.0)

    async def scenario():
        await seed(price=50.0)
        await db.save_watchlist_item(_watch(auto_purchase=True))
        return await asyncio.gather(monitor.check_product("prod-1"), monitor.check_product("prod-1"))

    outcomes = asyncio.run(scenario())
    assert sum(len(o.spawned_task_ids) for o in outcomes) == 1
    assert len(submitted) == 1


def test_failed_enqueue_reverts_item(db, seed, scraper, dispatcher):
    scraper.responses["prod-1"] = _info(50.0)

    async def broken_submit(task):
        raise RuntimeError("queue unavailable")

    monitor = ProductMonitor(db, scraper, dispatcher, submit_task=broken_submit)

    async def scenario():
        await seed(price=50.0)
        await db.save_watchlist_item(_watch(auto_purchase=True))
        outcome = await monitor.check_product("prod-1")
        return outcome, await db.get_watchlist_item("w-1")

    outcome, item = asyncio.run(scenario())
    assert outcome.spawned_task_ids == []
    assert item.status == WatchlistStatus.MONITORING


def test_scan_isolates_failures(db, monitor, scraper, fake_sleep):
    """One failing scrape neither aborts its batch nor the scan."""
    scraper.responses = {
        "p1": _info(10.0),
        "p2": TransientError("Timeout 30000ms exceeded"),
        "p3": _info(30.0),
    }

    async def scenario():
        for product_id in ("p1", "p2", "p3"):
            await db.save_product(
                Product(
                    id=product_id,
                    store_type="fake",
                    name=product_id,
                    url=f"https://shop.test/{product_id}",
                    is_available=True,
                )
            )
        await db.save_product(
            Product(id="p4", store_type="fake", name="p4", url="https://shop.test/p4", is_active=False)
        )
        return await monitor.check_all_products(), await db.get_product("p2")

    stats, untouched = asyncio.run(scenario())

    assert stats == {"products": 3, "checked": 2, "failed": 1, "alerts": 0, "auto_purchases": 0}
    assert sorted(scraper.scraped) == ["p1", "p2", "p3"]
    assert untouched.last_checked is None
    # Two batches of two: one pause between them
    assert fake_sleep.delays == [5.0]


def test_scan_without_products(monitor):
    stats = asyncio.run(monitor.check_all_products())
    assert stats["products"] == 0


def _service(db, monitor):
    return MonitoringService(db, JobQueue("monitoring"), monitor, interval_minutes=5, scan_interval_minutes=30)


def test_schedule_monitoring_twice_keeps_one_job(db, seed, monitor, scraper):
    scraper.responses["prod-1"] = _info(50.0)

    async def scenario():
        await seed()
        await db.save_watchlist_item(_watch())
        service = _service(db, monitor)
        service.register()
        await service.queue.start()
        first = await service.schedule_monitoring("w-1")
        await service.schedule_monitoring("w-1")
        scheduled = [job.id for job in service.queue.scheduler.get_jobs()]
        await service.queue.stop()
        return first, scheduled, service.queue.repeatable_jobs()

    first, scheduled, repeatable = asyncio.run(scenario())

    assert first == {"success": True, "message": "Monitoring scheduled successfully"}
    assert scheduled == [monitor_job_id("w-1")]
    assert repeatable == [{"id": "monitor-w-1", "name": "monitor-product", "every": 300}]


def test_schedule_unknown_item(db, monitor):
    result = asyncio.run(_service(db, monitor).schedule_monitoring("missing"))
    assert result == {"success": False, "message": "Watchlist item not found"}


def test_schedule_all_and_stop_all(db, seed, monitor):
    async def scenario():
        await seed()
        await db.save_watchlist_item(_watch(id="w-1"))
        await db.save_watchlist_item(_watch(id="w-2"))
        await db.save_watchlist_item(_watch(id="w-3", status=WatchlistStatus.PAUSED))
        service = _service(db, monitor)
        await service.start_scan_loop()
        scheduled = await service.schedule_all_monitoring()
        count = len(service.queue.repeatable_jobs())
        stopped = await service.stop_all_monitoring()
        return scheduled, count, stopped, service.queue.repeatable_jobs()

    scheduled, count, stopped, remaining = asyncio.run(scenario())

    assert scheduled["message"] == "Scheduled monitoring for 2 items"
    assert count == 3
    assert stopped["message"] == "Stopped monitoring for 2 items"
    assert [job["id"] for job in remaining] == ["scan-products"]


def test_monitor_job_stops_for_purchased_item(db, seed, monitor, scraper):
    async def scenario():
        await seed()
        await db.save_watchlist_item(_watch(status=WatchlistStatus.PURCHASED))
        service = _service(db, monitor)
        await service.schedule_monitoring("w-1")
        job = Job(
            id="run-1",
            name="monitor-product",
            payload={"watchlist_item_id": "w-1", "product_id": "prod-1", "store_type": "fake", "user_id": "user-1"},
            options=JobOptions(),
        )
        return await service.process_monitor_job(job), service.queue.repeatable_jobs()

    result, repeatable = asyncio.run(scenario())
    assert result == {"action": "stopped"}
    assert repeatable == []
    assert scraper.scraped == []


def test_monitor_job_checks_product(db, seed, monitor, scraper):
    scraper.responses["prod-1"] = _info(50.0)

    async def scenario():
        await seed(price=50.0)
        await db.save_watchlist_item(_watch())
        service = _service(db, monitor)
        job = Job(
            id="run-1",
            name="monitor-product",
            payload={"watchlist_item_id": "w-1", "product_id": "prod-1", "store_type": "fake", "user_id": "user-1"},
            options=JobOptions(),
        )
        return await service.process_monitor_job(job)

    result = asyncio.run(scenario())
    assert result == {"action": "monitoring", "price": 50.0, "available": True, "tasks": []}


def test_configure_auto_purchase_requires_account(db, seed, monitor):
    async def scenario():
        await seed(account_active=False)
        await db.save_watchlist_item(_watch())
        await _service(db, monitor).configure_auto_purchase("w-1", True, max_price=80.0)

    with pytest.raises(BusinessRuleError, match="active fake store account"):
        asyncio.run(scenario())


def test_configure_auto_purchase_updates_and_schedules(db, seed, monitor):
    async def scenario():
        await seed()
        await db.save_watchlist_item(_watch())
        service = _service(db, monitor)
        item = await service.configure_auto_purchase("w-1", True, max_price=80.0, quantity=2)
        return item, service.queue.repeatable_jobs()

    item, repeatable = asyncio.run(scenario())
    assert item.auto_purchase is True
    assert item.max_price == 80.0
    assert item.quantity == 2
    assert [job["id"] for job in repeatable] == ["monitor-w-1"]


def test_browser_scraper_reuses_session_and_retries(fake_factory, adapters):
    fake_factory.failures["get_product_details"] = [timeout_result("get product details")]
    scraper = BrowserProductScraper(
        BotConfig(retry_attempts=2),
        adapters=adapters,
        rate_limiter=RateLimiter(1000),
        policy=RetryPolicy(attempts=2, min_delay=0, max_delay=0, retry_on=(TransientError,)),
    )
    product = Product(id="prod-1", store_type="fake", name="Widget", url="https://shop.test/p/widget")

    async def scenario():
        first = await scraper.scrape(product)
        second = await scraper.scrape(product)
        await scraper.close()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.price == 50.0
    assert second.availability is True
    assert len(fake_factory.created) == 1
    assert fake_factory.calls.count("get_product_details") == 3
    assert fake_factory.created[0].cleanups == 1


def test_browser_scraper_recreates_dead_session(fake_factory, adapters):
    scraper = BrowserProductScraper(BotConfig(retry_attempts=1), adapters=adapters, rate_limiter=RateLimiter(1000))
    product = Product(id="prod-1", store_type="fake", name="Widget", url="https://shop.test/p/widget")

    async def scenario():
        await scraper.scrape(product)
        await fake_factory.created[0].cleanup()
        await scraper.scrape(product)

    asyncio.run(scenario())
    assert len(fake_factory.created) == 2
