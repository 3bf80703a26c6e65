"""
Worker process for executing jobs.

The worker polls one queue, runs each reserved job through the handler
registry and records the outcome with ack() or fail().
"""

import asyncio
import importlib
import logging
import os
import signal
import time
from collections.abc import Iterable

import click

from jobqueue.config import get_settings
from jobqueue.constants import RESERVE_ERROR_BACKOFF_SECONDS, SPAN_EXECUTE_JOB
from jobqueue.db import Database
from jobqueue.errors import QueueError, StorageError
from jobqueue.observability.logging import bind_context, job_log_context, setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobqueue.observability.tracing import instrument_sqlalchemy, queue_span, reset_tracing, setup_tracing
from jobqueue.queue import JobQueue
from jobqueue.types.job import JobContext, ReservedJob
from jobqueue.worker.handlers import HandlerRegistry, create_registry

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls for and executes jobs one at a time.

    Features:
    - Dispatch by job kind through an explicit HandlerRegistry
    - Idle sleep between empty polls, short pause after storage errors
    - Optional limits: single pass, max jobs, max wall-clock seconds
    - Graceful shutdown on SIGTERM/SIGINT (the current job finishes first)
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        *,
        queue_name: str | None = None,
        worker_id: str | None = None,
        once: bool = False,
        max_jobs: int = 0,
        max_seconds: float = 0,
        sleep_ms: int = 0,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: The job queue.
            registry: Handlers by job kind.
            queue_name: Queue to poll. Defaults to the queue's default.
            worker_id: Identifier for logs. Defaults to hostname + PID.
            once: Process at most one job, or exit on the first empty poll.
            max_jobs: Stop after this many jobs (0 = unlimited).
            max_seconds: Stop after this many seconds (0 = unlimited).
            sleep_ms: Idle sleep override; 0 uses the queue's setting.
            metrics: Metrics collector.
        """
        self.queue = queue
        self.registry = registry
        self.queue_name = queue_name or queue.default_queue
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.once = once
        self.max_jobs = max(0, max_jobs)
        self.max_seconds = max(0.0, max_seconds)
        self.sleep_ms = max(0, sleep_ms)

        self._running = False
        self._metrics = metrics or get_metrics()

    async def start(self) -> int:
        """
        Run the polling loop until stopped or a limit is reached.

        Returns:
            Number of jobs processed.
        """
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "queue": self.queue_name,
                "once": self.once,
                "max_jobs": self.max_jobs,
                "max_seconds": self.max_seconds,
                "sleep_ms": self.sleep_ms,
                "kinds": self.registry.kinds(),
            }
        )

        self._running = True
        started = time.monotonic()
        processed = 0

        while self._running:
            if self.max_seconds and time.monotonic() - started >= self.max_seconds:
                logger.info("Worker max seconds reached", extra={"max_seconds": self.max_seconds})
                break

            if self.max_jobs and processed >= self.max_jobs:
                logger.info("Worker max jobs reached", extra={"max_jobs": self.max_jobs})
                break

            try:
                job = await self.queue.reserve(self.queue_name)
            except StorageError as e:
                logger.error(
                    f"Error reserving job: {e}",
                    extra={"worker_id": self.worker_id}
                )
                await asyncio.sleep(RESERVE_ERROR_BACKOFF_SECONDS)
                continue

            if job is None:
                if self.once:
                    logger.info("Worker found queue empty, exiting")
                    break
                await self._idle()
                continue

            processed += 1
            await self.process(job)

            if self.once:
                break

        self._running = False
        logger.info(
            "Worker stopped",
            extra={
                "worker_id": self.worker_id,
                "processed": processed,
                "uptime_sec": round(time.monotonic() - started, 3),
            }
        )
        return processed

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.warning("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def process(self, job: ReservedJob) -> bool:
        """
        Execute a single reserved job and record its outcome.

        Failures to record the outcome are logged; the lease then expires
        and the job is offered again.

        Args:
            job: The reserved job.

        Returns:
            True if the handler succeeded.
        """
        context = JobContext.from_reserved(
            job,
            self.worker_id,
            dead_after_attempts=self.queue.settings.dead_after_attempts,
        )

        with job_log_context(job.id, job.queue, job.kind, context.attempt):
            return await self._run(job, context)

    async def _run(self, job: ReservedJob, context: JobContext) -> bool:
        logger.info(
            "Executing job",
            extra={
                "job_id": job.id,
                "kind": job.kind,
                "attempt": context.attempt,
                "max_attempts": job.max_attempts,
            }
        )

        start_time = time.perf_counter()
        with queue_span(
            SPAN_EXECUTE_JOB,
            job_id=job.id,
            kind=job.kind,
            attempt=context.attempt,
        ) as span:
            result = await self.registry.execute(context)
            span.set_attribute("success", result.success)

        duration = time.perf_counter() - start_time
        self._metrics.record_job_executed(
            kind=job.kind,
            status="succeeded" if result.success else "failed",
            duration_seconds=duration,
        )

        if result.success:
            try:
                await self.queue.ack(job.id)
            except QueueError:
                logger.exception("Failed to acknowledge job", extra={"job_id": job.id})
            else:
                logger.info(
                    "Job completed successfully",
                    extra={"job_id": job.id, "kind": job.kind, "duration": f"{duration:.2f}s"}
                )
            return True

        retry = result.retry and not job.no_retry
        error = result.error or "Unknown error"
        try:
            await self.queue.fail(job.id, error, retry=retry)
        except QueueError:
            logger.exception("Failed to record job failure", extra={"job_id": job.id})

        logger.error(
            "Job failed",
            extra={
                "job_id": job.id,
                "kind": job.kind,
                "error": error,
                "retry": retry,
                "attempt": context.attempt,
            }
        )
        return False

    async def _idle(self) -> None:
        if self.sleep_ms > 0:
            await asyncio.sleep(self.sleep_ms / 1000)
        else:
            await self.queue.sleep_when_empty()


def load_handlers(registry: HandlerRegistry, targets: Iterable[str]) -> HandlerRegistry:
    """
    Let application modules populate the registry.

    Each target is "package.module:function"; the function is called with
    the registry.
    """
    for target in targets:
        module_name, _, attr = target.partition(":")
        if not module_name or not attr:
            raise click.BadParameter(f"Expected module:function, got {target!r}")
        register = getattr(importlib.import_module(module_name), attr)
        register(registry)
        logger.info(f"Loaded handlers from {target}")
    return registry


async def run_async(
    queue_name: str | None = None,
    once: bool = False,
    max_jobs: int = 0,
    max_seconds: float = 0,
    sleep_ms: int = 0,
    handler_targets: Iterable[str] = (),
) -> int:
    """Run the worker process."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)
    metrics = setup_metrics(settings.prometheus_port)

    database = Database.from_settings(settings)
    instrument_sqlalchemy(database.engine)
    await database.create_schema()

    queue = JobQueue(database, settings.queue, metrics=metrics)
    registry = load_handlers(create_registry(), handler_targets)

    worker = Worker(
        queue,
        registry,
        queue_name=queue_name,
        worker_id=settings.worker_id,
        once=once,
        max_jobs=max_jobs,
        max_seconds=max_seconds,
        sleep_ms=sleep_ms,
        metrics=metrics,
    )
    bind_context(worker_id=worker.worker_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        return await worker.start()
    finally:
        await database.dispose()
        reset_tracing()


@click.command()
@click.option("--queue", "queue_name", default=None, help="Queue to poll (default: configured default queue).")
@click.option("--once", is_flag=True, help="Process at most one job, then exit.")
@click.option("--max-jobs", type=click.IntRange(min=0), default=0, help="Exit after this many jobs.")
@click.option("--max-seconds", type=click.FloatRange(min=0), default=0, help="Exit after this many seconds.")
@click.option("--sleep-ms", type=click.IntRange(min=0), default=0, help="Idle sleep between empty polls.")
@click.option(
    "--handlers",
    "handler_targets",
    multiple=True,
    metavar="MODULE:FUNCTION",
    help="Callable that registers application handlers; may be repeated.",
)
def run(
    queue_name: str | None,
    once: bool,
    max_jobs: int,
    max_seconds: float,
    sleep_ms: int,
    handler_targets: tuple[str, ...],
) -> None:
    """Poll the queue and execute jobs."""
    asyncio.run(
        run_async(
            queue_name=queue_name,
            once=once,
            max_jobs=max_jobs,
            max_seconds=max_seconds,
            sleep_ms=sleep_ms,
            handler_targets=handler_targets,
        )
    )


if __name__ == "__main__":
    run()
