"""Owns and wires the bot registry, queues, workers and monitoring."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from lunarbot.auth.vault import CredentialVault
from lunarbot.bots.manager import BotManager, default_bot_config
from lunarbot.bots.registry import AdapterFactory
from lunarbot.config import config
from lunarbot.jobs.monitor import MonitoringService, ProductMonitor
from lunarbot.jobs.queue import Job, JobQueue
from lunarbot.jobs.supervisor import BotSupervisor, MetricsExporter
from lunarbot.jobs.task_worker import EXECUTE_TASK, TaskWorker
from lunarbot.models import BotConfig, Task, TaskStatus, WatchlistStatus
from lunarbot.notify.dispatcher import NotificationDispatcher
from lunarbot.scrape.scraper import BrowserProductScraper, ProductScraper
from lunarbot.store.db import Database
from lunarbot.store.supabase_mirror import SupabaseMirror

logger = logging.getLogger(__name__)


class Runtime:
    """One explicit object graph per process; nothing here is a module-level singleton."""

    def __init__(
        self,
        db: Optional[Database] = None,
        vault: Optional[CredentialVault] = None,
        adapters: Optional[Mapping[str, AdapterFactory]] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        scraper: Optional[ProductScraper] = None,
        mirror: Optional[SupabaseMirror] = None,
        bot_config: Optional[BotConfig] = None,
        exporter: Optional[MetricsExporter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db or Database()
        self.vault = vault or CredentialVault()
        self.bot_config = bot_config or default_bot_config()
        self.bots = BotManager(adapters=adapters)
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.mirror = mirror
        self.scraper = scraper or BrowserProductScraper(self.bot_config, adapters)

        self.task_queue = JobQueue("tasks", config.TASK_CONCURRENCY, sleep=sleep)
        self.monitor_queue = JobQueue("monitoring", config.MONITOR_CONCURRENCY, sleep=sleep)

        self.task_worker = TaskWorker(
            self.db,
            self.bots,
            self.vault,
            self.dispatcher,
            mirror=self.mirror,
            bot_config=self.bot_config,
            sleep=sleep,
        )
        self.task_worker.register(self.task_queue)

        self.monitor = ProductMonitor(
            self.db,
            self.scraper,
            self.dispatcher,
            submit_task=self.submit_task,
            mirror=self.mirror,
            sleep=sleep,
        )
        self.monitoring = MonitoringService(self.db, self.monitor_queue, self.monitor)
        self.monitoring.register()

        self.supervisor = BotSupervisor(
            self.bots,
            exporter=exporter,
            queues=[self.task_queue, self.monitor_queue],
            job_cleanups=[self.task_queue.clean, self.monitoring.cleanup_old_jobs],
        )
        self.supervisor.register(self.monitor_queue)

    @classmethod
    def from_config(cls) -> "Runtime":
        config.validate()
        return cls(mirror=SupabaseMirror.from_config())

    async def initialize(self) -> None:
        await self.db.initialize()
        if self.mirror is not None:
            await self.mirror.replay_spool()

    async def submit_task(self, task: Task) -> Job:
        return await self.task_worker.submit(self.task_queue, task)

    async def create_task(self, task: Task) -> Task:
        """Persist a new task as queued and enqueue it once."""
        task.status = TaskStatus.QUEUED
        await self.db.save_task(task)
        await self.submit_task(task)
        return task

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a queued or running task. A running pipeline stops at its next step."""
        cancelled = await self.db.transition_task_status(task_id, TaskStatus.CANCELLED)
        if cancelled:
            self.task_queue.remove_job(f"task-{task_id}")
            logger.info(f"Task {task_id} cancelled")
        return cancelled

    async def recover_tasks(self) -> dict[str, int]:
        """
        Pick up what a previous process left in the database.

        Queued tasks are enqueued again. Tasks still marked running lost their
        worker and are failed. A watchlist item stuck in purchasing with no
        queued task goes back to monitoring.
        """
        failed = 0
        for task in await self.db.list_tasks(TaskStatus.RUNNING):
            if await self.task_worker.interrupt(task.id):
                failed += 1

        queued = await self.db.list_tasks(TaskStatus.QUEUED)
        pending_items = set()
        for task in queued:
            await self.submit_task(task)
            if task.watchlist_item_id:
                pending_items.add(task.watchlist_item_id)

        released = 0
        for item in await self.db.list_watchlist_items(WatchlistStatus.PURCHASING):
            if item.id in pending_items:
                continue
            if await self.db.transition_watchlist_status(
                item.id, WatchlistStatus.PURCHASING, WatchlistStatus.MONITORING
            ):
                released += 1

        summary = {"requeued": len(queued), "failed": failed, "released": released}
        if any(summary.values()):
            logger.info(
                f"Recovered tasks: {len(queued)} requeued, {failed} failed, {released} watchlist items released"
            )
        return summary

    async def start(
        self,
        scan: bool = True,
        schedule_all: bool = True,
        supervise: bool = True,
        recover: bool = True,
    ) -> None:
        if recover:
            await self.recover_tasks()
        await self.task_queue.start()
        await self.monitor_queue.start()
        if scan:
            await self.monitoring.start_scan_loop()
        if schedule_all:
            result = await self.monitoring.schedule_all_monitoring()
            logger.info(result["message"])
        if supervise:
            await self.supervisor.schedule(self.monitor_queue, config.SUPERVISOR_INTERVAL_SECONDS)

    async def stop(self) -> None:
        await self.monitor_queue.stop()
        await self.task_queue.stop()
        # Jobs still active here lost their worker mid-run
        for job in self.task_queue.active_jobs(EXECUTE_TASK):
            await self.task_worker.interrupt(job.payload["task_id"])
        await self.scraper.close()
        await self.bots.shutdown()
        await self.dispatcher.drain()
        logger.info("Runtime stopped")
