"""Purchase task pipeline executed by the task queue workers."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from lunarbot.auth.vault import CredentialVault
from lunarbot.bots.base import StoreBot
from lunarbot.bots.manager import BotManager, default_bot_config
from lunarbot.bots.registry import get_adapter_factory
from lunarbot.bots.retry import RetryPolicy, with_retry
from lunarbot.config import config
from lunarbot.errors import (
    BotInitializationError,
    BusinessRuleError,
    TaskCancelledError,
    TransientError,
)
from lunarbot.jobs.queue import Job, JobOptions, JobQueue
from lunarbot.models import (
    BotConfig,
    BotResult,
    CheckoutProfile,
    Notification,
    Product,
    ProductInfo,
    PurchaseJob,
    PurchaseRecord,
    Task,
    TaskStatus,
    WatchlistStatus,
)
from lunarbot.notify.dispatcher import NotificationDispatcher
from lunarbot.parse.redact import user_facing_error
from lunarbot.store.db import Database, new_id
from lunarbot.store.supabase_mirror import SupabaseMirror

logger = logging.getLogger(__name__)

EXECUTE_TASK = "execute-task"
INTERRUPTED_MESSAGE = "Task was interrupted before it finished"


def job_options_for(task: Task) -> JobOptions:
    return JobOptions(
        priority=task.priority,
        attempts=config.TASK_ATTEMPTS,
        backoff=config.TASK_BACKOFF_SECONDS,
        job_id=f"task-{task.id}",
    )


class TaskWorker:
    """
    Runs one purchase task per job:

    mark running -> load records -> decrypt credentials -> acquire bot -> login
    -> product details -> availability/price check -> add to cart -> checkout
    -> (fill checkout info, complete purchase) -> release bot -> persist.

    Each browser step is retried through ``with_retry`` using the bot's
    retry_attempts; a step that still fails raises TransientError so the queue
    can retry the whole job. Business-rule and credential failures end the task
    without retry.
    """

    def __init__(
        self,
        db: Database,
        bots: BotManager,
        vault: CredentialVault,
        dispatcher: NotificationDispatcher,
        mirror: Optional[SupabaseMirror] = None,
        bot_config: Optional[BotConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.bots = bots
        self.vault = vault
        self.dispatcher = dispatcher
        self.mirror = mirror
        self.bot_config = bot_config or default_bot_config()
        self._sleep = sleep

    def register(self, queue: JobQueue) -> None:
        queue.register(EXECUTE_TASK, self.process, on_failed=self.on_failed)

    async def submit(self, queue: JobQueue, task: Task) -> Job:
        """Enqueue an already persisted task."""
        payload = PurchaseJob(
            task_id=task.id,
            user_id=task.user_id,
            product_id=task.product_id,
            store_account_id=task.store_account_id,
            proxy_id=task.proxy_id,
            priority=task.priority,
        )
        job = await queue.enqueue(EXECUTE_TASK, payload, job_options_for(task))
        logger.info(f"Task {task.id} enqueued as job {job.id} (priority {task.priority})")
        return job

    def _step_policy(self) -> RetryPolicy:
        delay = self.bot_config.delay_between_actions / 1000
        return RetryPolicy(
            attempts=self.bot_config.retry_attempts,
            min_delay=delay,
            max_delay=delay * 3,
            retry_on=(TransientError,),
        )

    async def _check_cancelled(self, task_id: str) -> None:
        task = await self.db.get_task(task_id)
        if task is None or task.status == TaskStatus.CANCELLED:
            raise TaskCancelledError(f"Task {task_id} was cancelled")

    async def _step(
        self,
        task_id: str,
        name: str,
        operation: Callable[[], Awaitable[BotResult]],
    ) -> BotResult:
        await self._check_cancelled(task_id)

        async def attempt() -> BotResult:
            result = await operation()
            if result.success:
                return result
            reason = result.error or result.message
            if result.retryable:
                raise TransientError(reason)
            raise BusinessRuleError(reason)

        return await with_retry(attempt, self._step_policy(), name=name, sleep=self._sleep)

    async def _load(self, task: Task) -> tuple[Any, Product, Optional[CheckoutProfile]]:
        account = await self.db.get_store_account(task.store_account_id)
        if account is None or not account.is_active:
            raise BusinessRuleError("Store account not found or inactive")
        product = await self.db.get_product(task.product_id)
        if product is None:
            raise BusinessRuleError("Product not found")
        profile = None
        if task.checkout_profile_id:
            profile = await self.db.get_checkout_profile(task.checkout_profile_id)
            if profile is None:
                raise BusinessRuleError("Checkout profile not found")
        try:
            get_adapter_factory(account.store_type, self.bots.adapters)
        except ValueError as e:
            raise BusinessRuleError(str(e)) from e
        return account, product, profile

    async def process(self, job: Job) -> dict[str, Any]:
        payload = PurchaseJob.model_validate(job.payload)
        task_id = payload.task_id

        if not await self.db.transition_task_status(task_id, TaskStatus.RUNNING):
            task = await self.db.get_task(task_id)
            if task is None:
                raise BusinessRuleError(f"Task {task_id} not found")
            logger.info(f"Task {task_id} is {task.status.value}, not running it")
            return {"skipped": task.status.value}

        task = await self.db.get_task(task_id)
        account, product, profile = await self._load(task)

        username = self.vault.decrypt(account.encrypted_username)
        password = self.vault.decrypt(account.encrypted_password)

        proxy = None
        if task.proxy_id:
            proxy_record = await self.db.get_proxy(task.proxy_id)
            if proxy_record is not None and proxy_record.is_active:
                proxy = proxy_record.to_config()

        await self._check_cancelled(task_id)
        acquired = await self.bots.acquire_bot(
            account.store_type, task_id, self.bot_config, proxy, account_id=account.id
        )
        if not acquired:
            raise BotInitializationError(acquired.message)
        bot = self.bots.get_bot(acquired.bot_id)
        logger.info(f"Task {task_id} running on bot {bot.id} (attempt {job.attempts_made})")

        success = False
        try:
            result = await self._pipeline(task, product, profile, bot.adapter, username, password)
            result["bot_id"] = bot.id
            success = True
        except TaskCancelledError:
            logger.info(f"Task {task_id} cancelled during execution, result discarded")
            await self._release_spawned_item(task)
            return {"cancelled": True}
        finally:
            await self.bots.complete_task(task_id, success)
            if not success and not bot.adapter.status().get("is_running"):
                await self.bots.mark_error(bot.id, "Browser session died during task")

        if not result["purchased"]:
            # The basket still holds this task's items; no later task may check them out
            await self.bots.remove_bot(bot.id)

        if not await self.db.transition_task_status(task_id, TaskStatus.COMPLETED, result=result):
            logger.info(f"Task {task_id} was cancelled before completion, result discarded")
            await self._release_spawned_item(task)
            return {"cancelled": True}

        await self._on_completed(task, result)
        return result

    async def _pipeline(
        self,
        task: Task,
        product: Product,
        profile: Optional[CheckoutProfile],
        adapter: StoreBot,
        username: str,
        password: str,
    ) -> dict[str, Any]:
        task_id = task.id

        await self._step(task_id, "login", lambda: adapter.login(username, password))

        details = await self._step(task_id, "get_product_details", lambda: adapter.get_product_details(product.url))
        info = ProductInfo.model_validate(details.data["product"])

        if not info.availability:
            raise BusinessRuleError("Product is not available")
        if task.max_price is not None and info.price is not None and info.price > task.max_price:
            raise BusinessRuleError(f"Price {info.price:.2f} exceeds maximum price {task.max_price:.2f}")

        item_ref = product.sku or product.url
        await self._step(task_id, "add_to_cart", lambda: adapter.add_to_cart(item_ref, task.quantity))
        await self._step(task_id, "proceed_to_checkout", adapter.proceed_to_checkout)

        result: dict[str, Any] = {
            "price": info.price,
            "quantity": task.quantity,
            "purchased": False,
            "order_reference": None,
        }
        if not task.complete_checkout:
            result["message"] = "Product added to cart, checkout not completed"
            return result

        if profile is not None:
            await self._step(task_id, "fill_checkout_info", lambda: adapter.fill_checkout_info(profile.info))
        purchase = await self._step(task_id, "complete_purchase", adapter.complete_purchase)
        result.update(
            purchased=True,
            order_reference=purchase.data.get("order_reference"),
            message=purchase.message,
        )
        return result

    async def _on_completed(self, task: Task, result: dict[str, Any]) -> None:
        if result.get("purchased"):
            record = PurchaseRecord(
                id=new_id(),
                task_id=task.id,
                user_id=task.user_id,
                product_id=task.product_id,
                order_reference=result.get("order_reference"),
                price_paid=result.get("price"),
                quantity=task.quantity,
            )
            await self.db.add_purchase_record(record)
            if self.mirror is not None:
                await self.mirror.record_purchase(record)

        if task.watchlist_item_id:
            await self.db.transition_watchlist_status(
                task.watchlist_item_id, WatchlistStatus.PURCHASING, WatchlistStatus.PURCHASED
            )

        logger.info(f"Task {task.id} completed: {result.get('message')}")
        self.dispatcher.dispatch(
            Notification(
                user_id=task.user_id,
                type="purchase_completed",
                title="Purchase completed",
                message=result.get("message") or "Task completed",
                data={"task_id": task.id, "product_id": task.product_id, **result},
            )
        )

    async def _release_spawned_item(self, task: Task) -> None:
        """Let the next monitoring cycle try again."""
        if task.watchlist_item_id:
            await self.db.transition_watchlist_status(
                task.watchlist_item_id, WatchlistStatus.PURCHASING, WatchlistStatus.MONITORING
            )

    async def interrupt(self, task_id: str, message: str = INTERRUPTED_MESSAGE) -> bool:
        """Fail a task left running by a worker that no longer exists and free its watchlist item."""
        task = await self.db.get_task(task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return False
        if not await self.db.transition_task_status(task_id, TaskStatus.FAILED, error_message=message):
            return False
        await self._release_spawned_item(task)
        logger.warning(f"Task {task_id} failed: {message}")
        return True

    async def on_failed(self, job: Job, exc: BaseException) -> None:
        """Final failure: persist the redacted message and free the watchlist item."""
        task_id = job.payload.get("task_id")
        message = user_facing_error(exc)
        if not await self.db.transition_task_status(task_id, TaskStatus.FAILED, error_message=message):
            logger.info(f"Task {task_id} already terminal, failure not recorded")
            return
        task = await self.db.get_task(task_id)
        if task is None:
            return
        await self._release_spawned_item(task)
        self.dispatcher.dispatch(
            Notification(
                user_id=task.user_id,
                type="purchase_failed",
                title="Purchase failed",
                message=message,
                data={"task_id": task.id, "product_id": task.product_id, "attempts": job.attempts_made},
            )
        )
