"""
Lease reaper for recovering stale job leases.

The queue runs the reaper at the start of every reserve() call, so a
crashed worker's job is reclaimed by the next poll on any queue. The same
reaper can also run as its own process, periodically or once (cron-style).
"""

import asyncio
import logging
import signal
from datetime import timedelta

import click

from jobqueue.config import QueueSettings, get_settings
from jobqueue.constants import SPAN_REAP_LEASES
from jobqueue.db import Database, JobRepository
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobqueue.observability.tracing import queue_span, reset_tracing, setup_tracing
from jobqueue.utils import Clock, utc_now

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers stale job leases.

    Each run:
    1. Finds jobs in RESERVED status leased more than reserve_timeout_sec ago
    2. Returns them to PENDING (optionally spending an attempt, and
       dead-lettering those that run out)
    3. Records metrics for monitoring

    Reclaiming is time-based: a worker that was merely slow may still
    finish the job after it has been handed to another worker.
    """

    def __init__(
        self,
        database: Database,
        settings: QueueSettings | None = None,
        *,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
        interval_seconds: int | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            database: Database handle.
            settings: Queue settings (lease timeout, attempt counting).
            clock: Source of the current time.
            metrics: Metrics collector.
            interval_seconds: Seconds between runs of the periodic loop.
        """
        self._db = database
        self._settings = settings or get_settings().queue
        self._clock = clock or utc_now
        self._metrics = metrics or get_metrics()
        self._interval = interval_seconds
        self._running = False
        self._stopped = asyncio.Event()

    @property
    def interval(self) -> int:
        """Seconds between runs of start()'s loop; read from settings on first use."""
        if self._interval is None:
            self._interval = get_settings().reaper_interval_seconds
        return self._interval

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True
        self._stopped.clear()

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False
        self._stopped.set()

    async def run_once(self) -> int:
        """
        Reclaim every stale lease in one transaction.

        Returns:
            Number of jobs reclaimed (returned to the queue or dead-lettered).

        Raises:
            StorageError: If the database update fails.
        """
        timeout = self._settings.reserve_timeout_sec
        count_attempt = self._settings.reap_counts_as_attempt
        now = self._clock()
        cutoff = now - timedelta(seconds=timeout)

        with queue_span(SPAN_REAP_LEASES, timeout_sec=timeout, counts_as_attempt=count_attempt) as span:
            async with self._db.transaction("reap") as session:
                returned, dead = await JobRepository(session).reclaim_stale_leases(
                    cutoff=cutoff,
                    now=now,
                    count_attempt=count_attempt,
                    dead_after_attempts=self._settings.dead_after_attempts,
                    error=f"Lease expired after {timeout} seconds" if count_attempt else None,
                )
            span.set_attribute("returned", returned)
            span.set_attribute("dead", dead)

        total = returned + dead
        if total > 0:
            logger.warning(
                "Reclaimed stale leases",
                extra={
                    "returned": returned,
                    "dead": dead,
                    "timeout_sec": timeout,
                    "counts_as_attempt": count_attempt,
                },
            )
            self._metrics.record_leases_reaped(total)
        if dead > 0:
            self._metrics.record_job_dead("lease_expired", dead)

        return total


async def run_async(once: bool = False) -> int:
    """Run the reaper process."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)
    metrics = setup_metrics(None if once else settings.prometheus_port)

    database = Database.from_settings(settings)
    await database.create_schema()

    reaper = Reaper(
        database,
        settings.queue,
        metrics=metrics,
        interval_seconds=settings.reaper_interval_seconds,
    )

    try:
        if once:
            recovered = await reaper.run_once()
            logger.info(f"Reaper run complete, reclaimed {recovered} leases")
            return recovered

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(reaper.stop())
            )

        await reaper.start()
        return 0
    finally:
        await database.dispose()
        reset_tracing()


@click.command()
@click.option("--once", is_flag=True, help="Reclaim stale leases once and exit.")
def run(once: bool) -> None:
    """Reclaim leases abandoned by crashed or stalled workers."""
    asyncio.run(run_async(once=once))


if __name__ == "__main__":
    run()
