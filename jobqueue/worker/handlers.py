"""
Job handler registry and built-in handlers.

Job handlers must be idempotent - they may be executed multiple times
for the same job when a lease expires while the first run is still going.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from jobqueue.errors import ValidationError
from jobqueue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Handlers may return None or a plain dict (the output) to signal success
JobHandler = Callable[[JobContext], Awaitable[JobResult | dict[str, Any] | None]]


class HandlerRegistry:
    """
    Mapping from job kind to the coroutine that processes it.

    Populated once at worker startup and consulted for every reserved job.
    The queue itself never sees handler types.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, kind: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            kind: The job kind this handler processes.

        Returns:
            Decorator function.

        Example:
            @registry.register("sms.send_campaign")
            async def send_campaign(context: JobContext) -> JobResult:
                ...
        """
        def decorator(handler: JobHandler) -> JobHandler:
            self.add(kind, handler)
            return handler
        return decorator

    def add(self, kind: str, handler: JobHandler) -> None:
        """Register handler for kind, replacing any earlier one."""
        if not kind or not kind.strip():
            raise ValidationError("Handler kind cannot be empty.")
        if kind in self._handlers:
            logger.warning(f"Replacing handler for job kind: {kind}")
        self._handlers[kind] = handler
        logger.debug(f"Registered handler for job kind: {kind}")

    def get(self, kind: str) -> JobHandler | None:
        """
        Get the handler for a job kind.

        Returns:
            The handler function or None if not found.
        """
        return self._handlers.get(kind)

    def kinds(self) -> list[str]:
        """List all registered job kinds."""
        return list(self._handlers.keys())

    def __contains__(self, kind: object) -> bool:
        return kind in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    async def execute(self, context: JobContext) -> JobResult:
        """
        Execute a job using the handler registered for its kind.

        A missing handler is a non-retryable failure. Exceptions raised by
        the handler become a retryable failed result. None and dict returns
        count as success; any other return value is a non-retryable failure.

        Args:
            context: The job context.

        Returns:
            JobResult from the handler.
        """
        handler = self.get(context.kind)

        if handler is None:
            logger.error(
                f"No handler for job kind: {context.kind}",
                extra={"job_id": context.job_id}
            )
            return JobResult(
                success=False,
                error=f"No handler registered for job kind: {context.kind}",
                retry=False,
            )

        try:
            result = await handler(context)
        except Exception as e:
            logger.exception(
                "Handler raised exception",
                extra={"job_id": context.job_id, "kind": context.kind, "error": str(e)}
            )
            return JobResult(
                success=False,
                error=f"Handler exception: {type(e).__name__}: {e}",
            )

        if isinstance(result, JobResult):
            return result
        if result is None:
            return JobResult(success=True)
        if isinstance(result, dict) and all(isinstance(key, str) for key in result):
            return JobResult(success=True, output=result)

        logger.error(
            "Handler returned unsupported result",
            extra={"job_id": context.job_id, "kind": context.kind, "result_type": type(result).__name__},
        )
        return JobResult(
            success=False,
            error=(
                f"Handler for {context.kind} returned {type(result).__name__}, "
                "expected JobResult, dict with string keys or None"
            ),
            retry=False,
        )


# ============================================================================
# Built-in job handlers
# ============================================================================


async def handle_echo(context: JobContext) -> JobResult:
    """
    Echo handler for smoke tests.

    Simply returns the input payload as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": context.job_id, "attempt": context.attempt}
    )

    return JobResult(
        success=True,
        output={"echo": context.payload},
    )


async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleep handler for exercising lease timeouts.

    Payload may contain:
    - duration_seconds: How long to sleep
    """
    payload = context.payload if isinstance(context.payload, dict) else {}
    duration = float(payload.get("duration_seconds", 1))

    logger.info(
        "Sleep job starting",
        extra={"job_id": context.job_id, "duration": duration}
    )

    await asyncio.sleep(duration)

    return JobResult(
        success=True,
        output={"slept_for": duration},
    )


async def handle_failing_job(context: JobContext) -> JobResult:
    """
    Handler that always fails - for exercising retry and dead-lettering.
    """
    logger.info(
        "Failing job executing (will fail)",
        extra={"job_id": context.job_id, "attempt": context.attempt}
    )

    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
    )


BUILTIN_HANDLERS: dict[str, JobHandler] = {
    "echo": handle_echo,
    "sleep": handle_sleep,
    "failing_job": handle_failing_job,
}


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    """Add the diagnostic handlers to a registry."""
    for kind, handler in BUILTIN_HANDLERS.items():
        registry.add(kind, handler)
    return registry


def create_registry(extra: Iterable[tuple[str, JobHandler]] = ()) -> HandlerRegistry:
    """
    Build a registry with the built-in handlers plus any extra ones.

    Args:
        extra: (kind, handler) pairs registered after the built-ins.
    """
    registry = register_builtin_handlers(HandlerRegistry())
    for kind, handler in extra:
        registry.add(kind, handler)
    return registry
