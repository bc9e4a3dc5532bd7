"""Product monitoring: change detection, alerts and auto-purchase gating."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from lunarbot.config import config
from lunarbot.errors import BusinessRuleError
from lunarbot.jobs.queue import Job, JobOptions, JobQueue
from lunarbot.models import (
    MonitorJob,
    Notification,
    Product,
    ProductAlert,
    ProductInfo,
    Task,
    WatchlistItem,
    WatchlistStatus,
)
from lunarbot.notify.dispatcher import NotificationDispatcher
from lunarbot.scrape.scraper import ProductScraper
from lunarbot.store.db import Database, new_id
from lunarbot.store.supabase_mirror import SupabaseMirror

logger = logging.getLogger(__name__)

MONITOR_PRODUCT = "monitor-product"
SCAN_PRODUCTS = "scan-products"

TaskSubmitter = Callable[[Task], Awaitable[Any]]


def monitor_job_id(watchlist_item_id: str) -> str:
    return f"monitor-{watchlist_item_id}"


def price_change_percent(old_price: Optional[float], new_price: Optional[float]) -> Optional[float]:
    """Signed percentage change, None when either price is unknown or the old price is zero."""
    if old_price is None or new_price is None or old_price == 0:
        return None
    return (new_price - old_price) / old_price * 100


def is_price_drop_alert(change_percent: Optional[float], threshold: float) -> bool:
    return change_percent is not None and change_percent < 0 and abs(change_percent) >= threshold


def should_auto_purchase(item: WatchlistItem, info: ProductInfo, has_active_account: bool) -> bool:
    """Fire only for an enabled, monitoring item whose product is available and within budget."""
    if not item.auto_purchase or item.status != WatchlistStatus.MONITORING:
        return False
    if not info.availability:
        return False
    if item.max_price is not None and (info.price is None or info.price > item.max_price):
        return False
    return has_active_account


def _stock_label(available: bool) -> str:
    return "In Stock" if available else "Out of Stock"


@dataclass
class CheckOutcome:
    product_id: str
    info: ProductInfo
    change_percent: Optional[float] = None
    alerts: list[ProductAlert] = field(default_factory=list)
    spawned_task_ids: list[str] = field(default_factory=list)


class ProductMonitor:
    """Compares live product data with the stored snapshot and acts on the difference."""

    def __init__(
        self,
        db: Database,
        scraper: ProductScraper,
        dispatcher: NotificationDispatcher,
        submit_task: TaskSubmitter,
        mirror: Optional[SupabaseMirror] = None,
        price_threshold: float = config.PRICE_CHANGE_THRESHOLD,
        batch_size: int = config.SCAN_BATCH_SIZE,
        batch_delay: float = config.SCAN_BATCH_DELAY_SECONDS,
        purchase_priority: int = config.AUTO_PURCHASE_PRIORITY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.scraper = scraper
        self.dispatcher = dispatcher
        self.submit_task = submit_task
        self.mirror = mirror
        self.price_threshold = price_threshold
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.purchase_priority = purchase_priority
        self._sleep = sleep

    async def check_product(self, product_id: str) -> Optional[CheckOutcome]:
        """Scrape one product, persist the snapshot, raise alerts and fire auto-purchases.

        Scrape failures propagate; the snapshot is only touched after a successful scrape.
        """
        product = await self.db.get_product(product_id)
        if product is None or not product.is_active:
            logger.debug(f"Product {product_id} missing or inactive, skipping")
            return None

        info = await self.scraper.scrape(product)
        outcome = CheckOutcome(product_id=product.id, info=info)
        watchers = await self.db.list_watchlist_for_product(product.id)

        if product.is_available != info.availability:
            outcome.alerts.append(await self._stock_changed(product, info, watchers))

        if info.price is not None and product.current_price is not None and info.price != product.current_price:
            outcome.change_percent = price_change_percent(product.current_price, info.price)
            alert = await self._price_changed(product, info, outcome.change_percent, watchers)
            if alert is not None:
                outcome.alerts.append(alert)

        await self.db.update_product_snapshot(product.id, info.name, info.price, info.availability)
        if info.price is not None:
            await self.db.add_price_point(product.id, info.price)

        outcome.spawned_task_ids = await self._auto_purchase(product, info, watchers)
        return outcome

    async def _record_alert(self, alert: ProductAlert) -> ProductAlert:
        await self.db.add_alert(alert)
        if self.mirror is not None:
            await self.mirror.record_alert(alert)
        return alert

    async def _stock_changed(
        self, product: Product, info: ProductInfo, watchers: list[WatchlistItem]
    ) -> ProductAlert:
        message = (
            f"Stock status changed from {_stock_label(product.is_available)} "
            f"to {_stock_label(info.availability)}"
        )
        logger.info(f"Stock change for {product.name}: {message}")
        alert = await self._record_alert(
            ProductAlert(
                id=new_id(),
                product_id=product.id,
                alert_type="stock_change",
                old_value=product.is_available,
                new_value=info.availability,
                message=message,
            )
        )
        for item in watchers:
            if item.alert_on_stock:
                self.dispatcher.dispatch(
                    Notification(
                        user_id=item.user_id,
                        type="stock_change",
                        title=f"{info.name} is now {'in stock' if info.availability else 'out of stock'}",
                        message=message,
                        data={"product_id": product.id, "url": product.url, "available": info.availability},
                    )
                )
        return alert

    async def _price_changed(
        self,
        product: Product,
        info: ProductInfo,
        change_percent: Optional[float],
        watchers: list[WatchlistItem],
    ) -> Optional[ProductAlert]:
        """Alert when the change reaches the threshold; notify watchers only for drops."""
        if change_percent is None:
            return None
        logger.info(
            f"Price change for {product.name}: {product.current_price} -> {info.price} ({change_percent:+.2f}%)"
        )
        if abs(change_percent) < self.price_threshold:
            return None

        message = f"Price changed from €{product.current_price} to €{info.price} ({change_percent:+.2f}%)"
        alert = await self._record_alert(
            ProductAlert(
                id=new_id(),
                product_id=product.id,
                alert_type="price_change",
                old_value=product.current_price,
                new_value=info.price,
                message=message,
            )
        )
        if is_price_drop_alert(change_percent, self.price_threshold):
            for item in watchers:
                if item.alert_on_price_drop:
                    self.dispatcher.dispatch(
                        Notification(
                            user_id=item.user_id,
                            type="price_drop",
                            title=f"Price drop for {info.name}",
                            message=f"{info.name} dropped {abs(change_percent):.2f}% to €{info.price}",
                            data={"product_id": product.id, "old_price": product.current_price, "new_price": info.price},
                        )
                    )
        return alert

    async def _auto_purchase(
        self, product: Product, info: ProductInfo, watchers: list[WatchlistItem]
    ) -> list[str]:
        spawned = []
        for item in watchers:
            if not should_auto_purchase(item, info, has_active_account=True):
                continue
            account = await self.db.find_active_store_account(item.user_id, product.store_type)
            if not should_auto_purchase(item, info, has_active_account=account is not None):
                logger.info(f"Watchlist item {item.id}: no active {product.store_type} account, not purchasing")
                continue

            # Another cycle may have fired already
            if not await self.db.transition_watchlist_status(
                item.id, WatchlistStatus.MONITORING, WatchlistStatus.PURCHASING, touch_attempt=True
            ):
                logger.info(f"Watchlist item {item.id} is no longer monitoring, skipping auto-purchase")
                continue

            profile = await self.db.find_checkout_profile(item.user_id)
            task = Task(
                id=new_id(),
                user_id=item.user_id,
                product_id=product.id,
                store_account_id=account.id,
                checkout_profile_id=profile.id if profile else None,
                watchlist_item_id=item.id,
                priority=self.purchase_priority,
                quantity=item.quantity,
                max_price=item.max_price,
            )
            try:
                await self.db.save_task(task)
                await self.submit_task(task)
            except Exception as e:
                logger.error(f"Failed to enqueue auto-purchase for watchlist item {item.id}: {e}", exc_info=True)
                await self.db.transition_watchlist_status(
                    item.id, WatchlistStatus.PURCHASING, WatchlistStatus.MONITORING
                )
                continue

            spawned.append(task.id)
            logger.info(f"Auto-purchase task {task.id} created for watchlist item {item.id} at €{info.price}")
            self.dispatcher.dispatch(
                Notification(
                    user_id=item.user_id,
                    type="auto_purchase_started",
                    title=f"Auto-purchase started for {info.name}",
                    message=f"{info.name} is available at €{info.price}",
                    data={"task_id": task.id, "product_id": product.id, "watchlist_item_id": item.id},
                )
            )
        return spawned

    async def _safe_check(self, product: Product) -> Optional[CheckOutcome]:
        try:
            return await self.check_product(product.id)
        except Exception as e:
            logger.error(f"Error checking product {product.name} ({product.id}): {e}")
            return None

    async def check_all_products(self) -> dict[str, int]:
        """Check every active product in fixed-size concurrent batches."""
        products = await self.db.list_active_products()
        stats = {"products": len(products), "checked": 0, "failed": 0, "alerts": 0, "auto_purchases": 0}
        if not products:
            logger.info("No products to monitor")
            return stats

        logger.info(f"Monitoring {len(products)} products")
        for start in range(0, len(products), self.batch_size):
            batch = products[start : start + self.batch_size]
            outcomes = await asyncio.gather(*(self._safe_check(product) for product in batch))
            for outcome in outcomes:
                if outcome is None:
                    stats["failed"] += 1
                    continue
                stats["checked"] += 1
                stats["alerts"] += len(outcome.alerts)
                stats["auto_purchases"] += len(outcome.spawned_task_ids)
            if start + self.batch_size < len(products):
                await self._sleep(self.batch_delay)
        logger.info(
            f"Scan finished: {stats['checked']} checked, {stats['failed']} failed, "
            f"{stats['alerts']} alerts, {stats['auto_purchases']} auto-purchases"
        )
        return stats


class MonitoringService:
    """Schedules repeating per-watchlist-item jobs and the batch scan on the monitoring queue."""

    def __init__(
        self,
        db: Database,
        queue: JobQueue,
        monitor: ProductMonitor,
        interval_minutes: float = config.MONITOR_INTERVAL_MINUTES,
        scan_interval_minutes: float = config.SCAN_INTERVAL_MINUTES,
    ):
        self.db = db
        self.queue = queue
        self.monitor = monitor
        self.interval_minutes = interval_minutes
        self.scan_interval_minutes = scan_interval_minutes

    def register(self) -> None:
        self.queue.register(MONITOR_PRODUCT, self.process_monitor_job)
        self.queue.register(SCAN_PRODUCTS, self.process_scan_job)

    async def process_monitor_job(self, job: Job) -> dict[str, Any]:
        payload = MonitorJob.model_validate(job.payload)
        item = await self.db.get_watchlist_item(payload.watchlist_item_id)
        if item is None or item.status in (WatchlistStatus.PURCHASED, WatchlistStatus.FAILED):
            self.queue.remove_job(monitor_job_id(payload.watchlist_item_id))
            return {"action": "stopped"}
        if item.status == WatchlistStatus.PAUSED:
            return {"action": "paused"}

        outcome = await self.monitor.check_product(item.product_id)
        if outcome is None:
            return {"action": "skipped"}
        action = "purchasing" if outcome.spawned_task_ids else ("alert" if outcome.alerts else "monitoring")
        return {
            "action": action,
            "price": outcome.info.price,
            "available": outcome.info.availability,
            "tasks": outcome.spawned_task_ids,
        }

    async def process_scan_job(self, job: Job) -> dict[str, int]:
        return await self.monitor.check_all_products()

    async def schedule_monitoring(self, watchlist_item_id: str) -> dict[str, Any]:
        """Idempotent: the job id is fixed per item, so rescheduling replaces the previous job."""
        item = await self.db.get_watchlist_item(watchlist_item_id)
        if item is None:
            return {"success": False, "message": "Watchlist item not found"}
        product = await self.db.get_product(item.product_id)
        if product is None:
            return {"success": False, "message": "Product not found"}

        payload = MonitorJob(
            watchlist_item_id=item.id,
            product_id=product.id,
            store_type=product.store_type,
            user_id=item.user_id,
            max_price=item.max_price,
            auto_purchase=item.auto_purchase,
        )
        await self.queue.enqueue(
            MONITOR_PRODUCT,
            payload,
            JobOptions(job_id=monitor_job_id(item.id), repeat_every=self.interval_minutes * 60),
        )
        return {"success": True, "message": "Monitoring scheduled successfully"}

    async def stop_monitoring(self, watchlist_item_id: str) -> dict[str, Any]:
        self.queue.remove_job(monitor_job_id(watchlist_item_id))
        return {"success": True, "message": "Monitoring stopped successfully"}

    async def schedule_all_monitoring(self) -> dict[str, Any]:
        items = await self.db.list_watchlist_items(WatchlistStatus.MONITORING)
        scheduled = 0
        for item in items:
            result = await self.schedule_monitoring(item.id)
            if result["success"]:
                scheduled += 1
            else:
                logger.warning(f"Could not schedule watchlist item {item.id}: {result['message']}")
        return {"success": True, "message": f"Scheduled monitoring for {scheduled} items"}

    async def stop_all_monitoring(self) -> dict[str, Any]:
        stopped = 0
        for job in self.queue.repeatable_jobs():
            if job["name"] == MONITOR_PRODUCT and self.queue.remove_job(job["id"]):
                stopped += 1
        return {"success": True, "message": f"Stopped monitoring for {stopped} items"}

    async def start_scan_loop(self) -> None:
        await self.queue.enqueue(
            SCAN_PRODUCTS,
            {},
            JobOptions(job_id=SCAN_PRODUCTS, repeat_every=self.scan_interval_minutes * 60),
        )

    async def stop_scan_loop(self) -> None:
        self.queue.remove_job(SCAN_PRODUCTS)

    async def configure_auto_purchase(
        self,
        watchlist_item_id: str,
        enabled: bool,
        max_price: Optional[float] = None,
        quantity: int = 1,
    ) -> WatchlistItem:
        """Enabling requires an active store account for the product's store."""
        item = await self.db.get_watchlist_item(watchlist_item_id)
        if item is None:
            raise BusinessRuleError("Watchlist item not found")
        if quantity < 1:
            raise BusinessRuleError("Quantity must be at least 1")
        if enabled:
            product = await self.db.get_product(item.product_id)
            if product is None:
                raise BusinessRuleError("Product not found")
            account = await self.db.find_active_store_account(item.user_id, product.store_type)
            if account is None:
                raise BusinessRuleError(
                    f"An active {product.store_type} store account is required for auto-purchase"
                )
        await self.db.update_watchlist_settings(item.id, enabled, max_price, quantity)
        if item.status == WatchlistStatus.MONITORING:
            await self.schedule_monitoring(item.id)
        return await self.db.get_watchlist_item(item.id)

    def monitoring_stats(self) -> dict[str, Any]:
        stats = self.queue.stats()
        stats["total"] = sum(stats[state] for state in ("waiting", "active", "completed", "failed"))
        return stats

    def cleanup_old_jobs(self) -> int:
        return self.queue.clean()
