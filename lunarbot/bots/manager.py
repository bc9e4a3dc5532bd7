"""Bot registry: tracks bot instances, their state, counters and task assignment."""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from lunarbot.bots.base import StoreBot
from lunarbot.bots.registry import AdapterFactory, get_adapter_factory, normalize_store_type
from lunarbot.config import config
from lunarbot.models import BotConfig, BotState, ProxyConfig

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Bot is not available"


@dataclass
class BotPerformance:
    total_tasks: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    average_execution_time: float = 0.0

    def record(self, success: bool, duration: float) -> None:
        self.total_tasks += 1
        if success:
            self.successful_tasks += 1
        else:
            self.failed_tasks += 1
        # Rolling mean over all completed tasks
        self.average_execution_time += (duration - self.average_execution_time) / self.total_tasks


@dataclass
class BotInstance:
    id: str
    name: str
    store_type: str
    adapter: StoreBot
    config: BotConfig
    proxy: Optional[ProxyConfig] = None
    state: BotState = BotState.IDLE
    performance: BotPerformance = field(default_factory=BotPerformance)
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    account_id: Optional[str] = None
    current_task_id: Optional[str] = None
    task_started_at: Optional[float] = None
    # Task whose pipeline still holds the adapter after the bot was detached from it
    draining_task_id: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def proxy_key(self) -> Optional[str]:
        return self.proxy.key if self.proxy else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "store_type": self.store_type,
            "state": self.state.value,
            "proxy": self.proxy_key,
            "current_task_id": self.current_task_id,
            "draining_task_id": self.draining_task_id,
            "last_activity": self.last_activity,
            "last_error": self.last_error,
            "performance": {
                "total_tasks": self.performance.total_tasks,
                "successful_tasks": self.performance.successful_tasks,
                "failed_tasks": self.performance.failed_tasks,
                "average_execution_time": round(self.performance.average_execution_time, 3),
            },
        }


@dataclass
class OperationResult:
    success: bool
    message: str
    bot_id: Optional[str] = None

    def __bool__(self) -> bool:
        return self.success


def success_rate(successful: int, total: int) -> float:
    """Percentage with two decimals, 0 when nothing ran."""
    if total <= 0:
        return 0
    return round(successful / total * 10000) / 100


class BotManager:
    """Owns every bot instance. All state changes happen under one lock."""

    def __init__(
        self,
        adapters: Optional[Mapping[str, AdapterFactory]] = None,
        health_window_seconds: float = config.BOT_HEALTH_WINDOW_SECONDS,
    ):
        self.adapters = adapters
        self.health_window_seconds = health_window_seconds
        self._bots: dict[str, BotInstance] = {}
        self._task_to_bot: dict[str, str] = {}
        self._draining: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _new_bot_id(self) -> str:
        return f"bot_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    async def create_bot(
        self,
        store_type: str,
        bot_config: Optional[BotConfig] = None,
        proxy: Optional[ProxyConfig] = None,
        name: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> OperationResult:
        """Construct and initialize an adapter. Nothing is registered when initialization fails."""
        try:
            factory = get_adapter_factory(store_type, self.adapters)
        except ValueError as e:
            return OperationResult(False, str(e))

        bot_config = bot_config or BotConfig()
        adapter = factory(bot_config, proxy)
        try:
            result = await adapter.initialize()
        except Exception as e:
            result = None
            error = str(e)
        else:
            error = result.error or result.message
        if result is None or not result.success:
            await self._safe_cleanup(adapter)
            logger.error(f"Failed to initialize {store_type} bot: {error}")
            return OperationResult(False, f"Failed to initialize bot: {error}")

        bot_id = self._new_bot_id()
        bot = BotInstance(
            id=bot_id,
            name=name or f"{normalize_store_type(store_type)}-{bot_id[-6:]}",
            store_type=normalize_store_type(store_type),
            adapter=adapter,
            config=bot_config,
            proxy=proxy,
            account_id=account_id,
        )
        async with self._lock:
            self._bots[bot_id] = bot
        logger.info(f"Bot {bot_id} created for {bot.store_type}")
        return OperationResult(True, "Bot created successfully", bot_id)

    def get_bot(self, bot_id: str) -> Optional[BotInstance]:
        return self._bots.get(bot_id)

    def list_bots(self) -> list[BotInstance]:
        return list(self._bots.values())

    def available_bots(self, store_type: Optional[str] = None) -> list[BotInstance]:
        wanted = normalize_store_type(store_type) if store_type else None
        return [
            bot
            for bot in self._bots.values()
            if bot.state == BotState.IDLE and (wanted is None or bot.store_type == wanted)
        ]

    def bot_for_task(self, task_id: str) -> Optional[BotInstance]:
        bot_id = self._task_to_bot.get(task_id)
        return self._bots.get(bot_id) if bot_id else None

    def _assign_locked(self, task_id: str, bot: BotInstance) -> None:
        now = time.time()
        bot.state = BotState.RUNNING
        bot.current_task_id = task_id
        bot.task_started_at = now
        bot.last_activity = now
        self._task_to_bot[task_id] = bot.id

    async def assign_task(self, task_id: str, bot_id: str) -> OperationResult:
        """Mark an idle bot running for task_id. Fails without side effects otherwise."""
        async with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None or bot.state != BotState.IDLE:
                return OperationResult(False, NOT_AVAILABLE, bot_id)
            if task_id in self._task_to_bot:
                return OperationResult(False, f"Task {task_id} is already assigned", bot_id)
            self._assign_locked(task_id, bot)
        logger.debug(f"Task {task_id} assigned to bot {bot_id}")
        return OperationResult(True, "Task assigned", bot_id)

    async def acquire_bot(
        self,
        store_type: str,
        task_id: str,
        bot_config: Optional[BotConfig] = None,
        proxy: Optional[ProxyConfig] = None,
        account_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Assign task_id to an idle bot, creating one when none fits.

        A bot is reused only for the same store, proxy and store account, so a
        session never carries one account's login or basket into another's task.
        """
        wanted = normalize_store_type(store_type)
        proxy_key = proxy.key if proxy else None
        async with self._lock:
            for bot in self._bots.values():
                if (
                    bot.state == BotState.IDLE
                    and bot.store_type == wanted
                    and bot.proxy_key == proxy_key
                    and bot.account_id == account_id
                ):
                    self._assign_locked(task_id, bot)
                    logger.debug(f"Reusing bot {bot.id} for task {task_id}")
                    return OperationResult(True, "Reused idle bot", bot.id)

        created = await self.create_bot(store_type, bot_config, proxy, account_id=account_id)
        if not created:
            return created
        assigned = await self.assign_task(task_id, created.bot_id)
        if not assigned:
            await self.remove_bot(created.bot_id)
        return assigned

    async def complete_task(self, task_id: str, success: bool) -> OperationResult:
        """Record the outcome and return the bot to idle. A detached bot keeps its state."""
        async with self._lock:
            bot_id = self._task_to_bot.pop(task_id, None) or self._draining.pop(task_id, None)
            bot = self._bots.get(bot_id) if bot_id else None
            if bot is None:
                return OperationResult(False, f"No bot assigned to task {task_id}")
            now = time.time()
            duration = now - (bot.task_started_at or now)
            bot.performance.record(success, duration)
            bot.current_task_id = None
            bot.task_started_at = None
            if bot.draining_task_id == task_id:
                bot.draining_task_id = None
            bot.last_activity = now
            if bot.state == BotState.RUNNING:
                bot.state = BotState.IDLE
        logger.debug(f"Task {task_id} completed on bot {bot_id} (success={success})")
        return OperationResult(True, "Task completed", bot_id)

    def _detach_task_locked(self, bot: BotInstance) -> None:
        """Drop the task mapping. The adapter stays held until that task calls complete_task."""
        task_id = bot.current_task_id
        if task_id:
            self._task_to_bot.pop(task_id, None)
            self._draining[task_id] = bot.id
            bot.draining_task_id = task_id
        bot.current_task_id = None

    async def mark_error(self, bot_id: str, message: str) -> OperationResult:
        """Move a bot to error, dropping its task mapping. Counters are untouched."""
        async with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None:
                return OperationResult(False, "Bot not found", bot_id)
            self._detach_task_locked(bot)
            bot.state = BotState.ERROR
            bot.last_error = message
        logger.warning(f"Bot {bot_id} moved to error: {message}")
        return OperationResult(True, "Bot marked as error", bot_id)

    async def _safe_cleanup(self, adapter: StoreBot) -> None:
        try:
            await adapter.cleanup()
        except Exception as e:
            logger.warning(f"Adapter cleanup failed: {e}")

    async def stop_bot(self, bot_id: str) -> OperationResult:
        async with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None:
                return OperationResult(False, "Bot not found", bot_id)
            self._detach_task_locked(bot)
            bot.state = BotState.STOPPED
        await self._safe_cleanup(bot.adapter)
        logger.info(f"Bot {bot_id} stopped")
        return OperationResult(True, "Bot stopped", bot_id)

    async def remove_bot(self, bot_id: str) -> OperationResult:
        async with self._lock:
            bot = self._bots.pop(bot_id, None)
            if bot is None:
                return OperationResult(False, "Bot not found", bot_id)
            if bot.current_task_id:
                self._task_to_bot.pop(bot.current_task_id, None)
            if bot.draining_task_id:
                self._draining.pop(bot.draining_task_id, None)
            bot.state = BotState.STOPPED
            bot.current_task_id = None
            bot.draining_task_id = None
        await self._safe_cleanup(bot.adapter)
        logger.info(f"Bot {bot_id} removed")
        return OperationResult(True, "Bot removed", bot_id)

    async def restart_bot(self, bot_id: str) -> OperationResult:
        """Re-initialize an errored or stopped bot in place, once no task holds its adapter."""
        async with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None:
                return OperationResult(False, "Bot not found", bot_id)
            if bot.state not in (BotState.ERROR, BotState.STOPPED):
                return OperationResult(False, f"Bot is {bot.state.value}, not restartable", bot_id)
            if bot.draining_task_id:
                return OperationResult(False, f"Bot is still held by task {bot.draining_task_id}", bot_id)
            # Keeps the bot out of acquire_bot while the browser restarts
            bot.state = BotState.STOPPED

        await self._safe_cleanup(bot.adapter)
        try:
            result = await bot.adapter.initialize()
            ok, error = result.success, result.error or result.message
        except Exception as e:
            ok, error = False, str(e)

        async with self._lock:
            if not ok:
                bot.state = BotState.ERROR
                bot.last_error = error
                logger.error(f"Bot {bot_id} restart failed: {error}")
                return OperationResult(False, f"Failed to restart bot: {error}", bot_id)
            bot.state = BotState.IDLE
            bot.last_error = None
            bot.last_activity = time.time()
        logger.info(f"Bot {bot_id} restarted")
        return OperationResult(True, "Bot restarted", bot_id)

    async def shutdown(self) -> None:
        for bot_id in list(self._bots):
            await self.remove_bot(bot_id)

    def bot_performance(self, bot_id: str) -> Optional[dict[str, Any]]:
        bot = self._bots.get(bot_id)
        if bot is None:
            return None
        perf = bot.performance
        return {
            "total_tasks": perf.total_tasks,
            "successful_tasks": perf.successful_tasks,
            "failed_tasks": perf.failed_tasks,
            "average_execution_time": perf.average_execution_time,
            "success_rate": success_rate(perf.successful_tasks, perf.total_tasks),
            "failure_rate": success_rate(perf.failed_tasks, perf.total_tasks),
        }

    def system_metrics(self) -> dict[str, Any]:
        bots = list(self._bots.values())
        total = sum(b.performance.total_tasks for b in bots)
        successful = sum(b.performance.successful_tasks for b in bots)
        by_state = {state.value: 0 for state in BotState}
        for bot in bots:
            by_state[bot.state.value] += 1
        return {
            "totalBots": len(bots),
            "activeBots": by_state[BotState.RUNNING.value],
            "idleBots": by_state[BotState.IDLE.value],
            "errorBots": by_state[BotState.ERROR.value],
            "stoppedBots": by_state[BotState.STOPPED.value],
            "totalTasks": total,
            "successfulTasks": successful,
            "failedTasks": sum(b.performance.failed_tasks for b in bots),
            "overallSuccessRate": success_rate(successful, total),
            "activeTasks": len(self._task_to_bot),
        }

    def health_check(self, now: Optional[float] = None) -> dict[str, bool]:
        """bot_id -> healthy. Healthy means the adapter reports running and activity is recent."""
        now = time.time() if now is None else now
        report = {}
        for bot_id, bot in self._bots.items():
            try:
                status = bot.adapter.status()
            except Exception as e:
                logger.warning(f"Status check failed for bot {bot_id}: {e}")
                report[bot_id] = False
                continue
            last_activity = max(bot.last_activity, status.get("last_activity") or 0)
            report[bot_id] = bool(status.get("is_running")) and (
                now - last_activity <= self.health_window_seconds
            )
        return report


def default_bot_config() -> BotConfig:
    return BotConfig(
        headless=config.BOT_HEADLESS,
        timeout=config.BOT_TIMEOUT_MS,
        retry_attempts=config.BOT_RETRY_ATTEMPTS,
        delay_between_actions=config.BOT_ACTION_DELAY_MS,
    )
