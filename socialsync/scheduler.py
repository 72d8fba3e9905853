"""Worker pool and periodic jobs.

Every scheduled unit of work (a refresh scan, one connection's polling run)
is submitted to a shared :class:`WorkerPool`, which bounds how many run at
once. :class:`PeriodicJob` re-runs a coroutine on a fixed interval and never
overlaps with itself.

Example:
    >>> pool = WorkerPool(size=8)
    >>> job = PeriodicJob("refresh-scan", scheduler.scan_once, interval=60, pool=pool)
    >>> job.start()
    >>> ...
    >>> await job.stop()
    >>> await pool.shutdown(grace=10)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from socialsync.config import settings
from socialsync.errors import RETRYABLE_ERRORS
from socialsync.logging import logger
from socialsync.metrics import active_jobs
from socialsync.utils import utc_now

T = TypeVar("T")

JobFactory = Callable[[], Awaitable[Any]]


class wait_retry_after(wait_base):
    """Wait at least as long as the platform asked via Retry-After.

    Falls back to ``fallback`` when the last failure carries no hint.
    """

    def __init__(self, fallback: wait_base) -> None:
        self.fallback = fallback

    def __call__(self, retry_state: Any) -> float:
        delay = self.fallback(retry_state)
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay


def transient_retrying(
    max_attempts: int | None = None,
    retry_unknown_outcome: bool = True,
) -> AsyncRetrying:
    """Retry policy for TransientNetworkError: exponential backoff plus jitter.

    A Retry-After hint on the failure lengthens the wait, never shortens it.

    Args:
        max_attempts: Total attempts (defaults to ``settings.retry_max_attempts``)
        retry_unknown_outcome: Also retry failures that may have reached the
            platform; pass False for non-idempotent calls such as publishing
    """

    def retryable(exc: BaseException) -> bool:
        if not isinstance(exc, RETRYABLE_ERRORS):
            return False
        return retry_unknown_outcome or not getattr(exc, "outcome_unknown", False)

    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max_attempts or settings.retry_max_attempts),
        wait=wait_retry_after(
            wait_exponential(
                multiplier=settings.retry_backoff_multiplier,
                min=settings.retry_backoff_min_seconds,
                max=settings.retry_backoff_max_seconds,
            )
            + wait_random(0, settings.retry_jitter_seconds)
        ),
        retry=retry_if_exception(retryable),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
    )


# =============================================================================
# Worker Pool
# =============================================================================


class WorkerPool:
    """Bounded pool of asyncio tasks.

    Args:
        size: Maximum concurrently running jobs (defaults to settings.worker_pool_size)
    """

    def __init__(self, size: int | None = None) -> None:
        self.size = size or settings.worker_pool_size
        self._sem = asyncio.Semaphore(self.size)
        self._tasks: set[asyncio.Task] = set()
        self._accepting = True
        self._running = 0

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def in_flight(self) -> int:
        """Submitted jobs that have not finished (running or waiting for a slot)."""
        return len(self._tasks)

    @property
    def running(self) -> int:
        """Jobs currently holding a slot."""
        return self._running

    def submit(self, factory: JobFactory, name: str | None = None) -> asyncio.Task | None:
        """Schedule a job.

        Returns:
            The job's task, or None if the pool is shutting down
        """
        if not self._accepting:
            logger.debug(f"Worker pool closed, dropping job {name or factory}")
            return None

        task = asyncio.create_task(self._run(factory, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def run(self, factory: Callable[[], Awaitable[T]], name: str | None = None) -> T:
        """Submit a job and wait for its result.

        Raises:
            RuntimeError: If the pool is shutting down
        """
        task = self.submit(factory, name)
        if task is None:
            raise RuntimeError("Worker pool is shut down")
        return await task

    async def _run(self, factory: JobFactory, name: str | None) -> Any:
        async with self._sem:
            self._running += 1
            active_jobs.inc()
            try:
                return await factory()
            finally:
                self._running -= 1
                active_jobs.dec()

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"❌ Job {task.get_name()} failed: {type(exc).__name__}: {exc}")

    async def shutdown(self, grace: float | None = None) -> dict[str, int]:
        """Stop accepting jobs, wait up to ``grace`` seconds, cancel the rest.

        Returns:
            Dictionary with ``completed`` and ``cancelled`` job counts
        """
        self._accepting = False
        grace = settings.shutdown_grace_seconds if grace is None else grace
        pending = set(self._tasks)
        if not pending:
            return {"completed": 0, "cancelled": 0}

        logger.info(f"Waiting up to {grace}s for {len(pending)} in-flight job(s)")
        done, still_running = await asyncio.wait(pending, timeout=grace)

        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"⚠️ Cancelled {len(still_running)} job(s) after grace period")

        return {"completed": len(done), "cancelled": len(still_running)}


# =============================================================================
# Periodic Jobs
# =============================================================================


class PeriodicJob:
    """Runs a coroutine every ``interval`` seconds through a worker pool.

    A run that is still in flight when the next one is due (or when
    :meth:`run_once` is triggered manually) causes that run to be skipped.

    Args:
        name: Job name used in logs and task names
        func: Coroutine function to run
        interval: Seconds between run starts
        pool: Worker pool bounding concurrency
        initial_delay: Seconds to wait before the first run
    """

    def __init__(
        self,
        name: str,
        func: JobFactory,
        interval: float,
        pool: WorkerPool,
        initial_delay: float = 0.0,
    ) -> None:
        self.name = name
        self.func = func
        self.interval = interval
        self.pool = pool
        self.initial_delay = initial_delay
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._stopped = False
        self.stats: dict[str, Any] = {
            "runs": 0,
            "skipped": 0,
            "failures": 0,
            "last_run": None,
            "last_status": None,
        }

    @property
    def is_running(self) -> bool:
        """Whether a run is currently in flight."""
        return self._lock.locked()

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.started:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        if self.initial_delay > 0:
            await asyncio.sleep(self.initial_delay)

        while not self._stopped and self.pool.accepting:
            started = loop.time()
            await self.run_once()
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))

    async def run_once(self) -> bool:
        """Run the job now unless a run is already in flight.

        Returns:
            True if the job ran (successfully or not), False if skipped
        """
        if self._lock.locked():
            self.stats["skipped"] += 1
            logger.debug(f"Job {self.name} still running, skipping this run")
            return False

        async with self._lock:
            task = self.pool.submit(self.func, name=self.name)
            if task is None:
                return False

            start_time: datetime = utc_now()
            self.stats["runs"] += 1
            self.stats["last_run"] = start_time
            try:
                # stopping the job must not cancel the run; the pool owns it
                await asyncio.shield(task)
                self.stats["last_status"] = "success"
            except asyncio.CancelledError:
                self.stats["last_status"] = "cancelled"
                raise
            except Exception:
                # already logged by the pool
                self.stats["failures"] += 1
                self.stats["last_status"] = "error"
            return True

    async def stop(self) -> None:
        """Stop scheduling new runs and cancel the loop."""
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


__all__ = ["WorkerPool", "PeriodicJob", "transient_retrying", "wait_retry_after"]
