"""Bot supervisor: recycles unhealthy bots, cleans old jobs and exports system metrics."""
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

import aiofiles
import orjson

from lunarbot.bots.manager import BotManager
from lunarbot.config import DATA_DIR
from lunarbot.jobs.queue import JobOptions, JobQueue
from lunarbot.models import BotState

logger = logging.getLogger(__name__)

METRICS_FILE = DATA_DIR / "metrics.jsonl"
SUPERVISE_BOTS = "supervise-bots"


class MetricsExporter:
    """Appends metric snapshots to a JSONL file."""

    def __init__(self, metrics_file: Path = METRICS_FILE):
        self.metrics_file = metrics_file
        self.start_time = time.time()

    async def export(self, metrics: dict[str, Any]) -> None:
        line = orjson.dumps({"ts": time.time(), "uptime": round(time.time() - self.start_time, 1), **metrics})
        async with aiofiles.open(self.metrics_file, "ab") as f:
            await f.write(line + b"\n")


class BotSupervisor:
    """
    Runs health_check and acts on it:

    - an idle bot whose session died is restarted
    - a running bot with no recent activity is marked error (its task fails on its own)
    - an error bot is restarted once its task has let go of it; if restart fails it is removed

    Each pass also drops old finished jobs through ``job_cleanups``.
    """

    def __init__(
        self,
        bots: BotManager,
        exporter: Optional[MetricsExporter] = None,
        queues: Optional[list[JobQueue]] = None,
        job_cleanups: Optional[list[Callable[[], int]]] = None,
    ):
        self.bots = bots
        self.exporter = exporter or MetricsExporter()
        self.queues = queues or []
        self.job_cleanups = job_cleanups or []

    async def run_once(self, now: Optional[float] = None) -> dict[str, int]:
        health = self.bots.health_check(now)
        summary = {"checked": len(health), "restarted": 0, "removed": 0, "marked_error": 0}

        for bot_id, healthy in health.items():
            bot = self.bots.get_bot(bot_id)
            if bot is None:
                continue
            if bot.state == BotState.RUNNING and not healthy:
                await self.bots.mark_error(bot_id, "Bot unresponsive")
                summary["marked_error"] += 1
            elif bot.state == BotState.IDLE and not bot.adapter.status().get("is_running"):
                await self.bots.mark_error(bot_id, "Browser session closed")
                summary["marked_error"] += 1

        for bot in self.bots.list_bots():
            if bot.state != BotState.ERROR:
                continue
            if bot.draining_task_id:
                logger.debug(f"Bot {bot.id} still held by task {bot.draining_task_id}, restart deferred")
                continue
            restarted = await self.bots.restart_bot(bot.id)
            if restarted:
                summary["restarted"] += 1
            else:
                await self.bots.remove_bot(bot.id)
                summary["removed"] += 1

        if any(summary[key] for key in ("restarted", "removed", "marked_error")):
            logger.info(
                f"Supervisor: {summary['marked_error']} marked error, "
                f"{summary['restarted']} restarted, {summary['removed']} removed"
            )
        self.clean_jobs()
        await self.export_metrics()
        return summary

    def clean_jobs(self) -> int:
        return sum(cleanup() for cleanup in self.job_cleanups)

    async def export_metrics(self) -> None:
        metrics: dict[str, Any] = {"bots": self.bots.system_metrics()}
        for queue in self.queues:
            metrics[queue.name] = queue.stats()
        try:
            await self.exporter.export(metrics)
        except OSError as e:
            logger.warning(f"Metrics export failed: {e}")

    def register(self, queue: JobQueue) -> None:
        queue.register(SUPERVISE_BOTS, lambda job: self.run_once())

    async def schedule(self, queue: JobQueue, interval_seconds: float) -> None:
        await queue.enqueue(SUPERVISE_BOTS, {}, JobOptions(job_id=SUPERVISE_BOTS, repeat_every=interval_seconds))
