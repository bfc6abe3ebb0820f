"""Background scheduling for stats recomputation.

Two pieces:
- CoalescingQueue: debounced, keyed work queue. At most one run is pending
  and one is in flight per key; requests that arrive while a run is waiting
  or executing merge into the next run. ``flush()`` skips the debounce window
  and waits for everything outstanding, so tests never depend on wall-clock
  delays.
- StatsScheduler: APScheduler cron job that refreshes server stats
  periodically, bounding staleness even when no uploads happen.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timezone
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from skagallery.logging import get_logger

if TYPE_CHECKING:
    from skagallery.config import Config
    from skagallery.stats import StatsAggregator

log = get_logger("scheduler")

Job = Callable[[], Awaitable[Any]]


class CoalescingQueue:
    """Runs keyed jobs after a debounce delay, merging bursts of requests.

    Attributes:
        delay_seconds: Debounce window before a requested job runs.
    """

    def __init__(self, delay_seconds: float = 1.0) -> None:
        self.delay_seconds = delay_seconds
        self._pending: dict[str, Job] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._flushing = asyncio.Event()

    def request(self, key: str, job: Job) -> None:
        """Ask for ``job`` to run under ``key``.

        If a run for the key is already waiting, this request replaces it.
        If one is executing, the job runs again once it finishes.
        """
        self._pending[key] = job
        if key not in self._workers:
            self._workers[key] = asyncio.create_task(self._worker(key))

    async def _wait_window(self) -> None:
        if self.delay_seconds <= 0 or self._flushing.is_set():
            return
        try:
            await asyncio.wait_for(self._flushing.wait(), timeout=self.delay_seconds)
        except TimeoutError:
            pass

    async def _worker(self, key: str) -> None:
        try:
            while key in self._pending:
                await self._wait_window()
                job = self._pending.pop(key)
                try:
                    await job()
                except Exception as e:
                    log.error("coalesced_job_failed", key=key, error=str(e))
        finally:
            self._workers.pop(key, None)

    async def flush(self) -> None:
        """Run everything pending now and wait until the queue is idle."""
        self._flushing.set()
        try:
            while self._workers:
                await asyncio.gather(*list(self._workers.values()), return_exceptions=True)
        finally:
            self._flushing.clear()

    async def close(self) -> None:
        """Cancel outstanding work without running it."""
        self._pending.clear()
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()


class StatsScheduler:
    """Periodic server stats refresh.

    Attributes:
        aggregator: StatsAggregator whose server stats are refreshed.
        config: Application configuration.
        scheduler: APScheduler instance.
    """

    JOB_ID = "refresh_server_stats"

    def __init__(self, aggregator: "StatsAggregator", config: "Config") -> None:
        self.aggregator = aggregator
        self.config = config

        tz_name = config.stats.timezone
        self._timezone = ZoneInfo(tz_name) if tz_name != "UTC" else timezone.utc

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,  # Combine missed executions
                "max_instances": 1,
                "misfire_grace_time": 3600,
            },
            timezone=self._timezone,
        )

    def start(self) -> None:
        """Register the refresh job (if configured) and start the scheduler."""
        cron = self.config.stats.refresh_cron
        if cron:
            self.scheduler.add_job(
                self._refresh,
                CronTrigger.from_crontab(cron, timezone=self._timezone),
                id=self.JOB_ID,
                replace_existing=True,
            )
        self.scheduler.start()
        log.info("scheduler_started", jobs=len(self.scheduler.get_jobs()), cron=cron)

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        log.info("scheduler_stopped")

    async def _refresh(self) -> None:
        try:
            stats = await self.aggregator.refresh_server_stats()
            log.info(
                "scheduled_refresh_complete",
                total_users=stats.total_users,
                total_images=stats.total_images,
            )
        except Exception as e:
            log.error("scheduled_refresh_failed", error=str(e))
