"""Tests for the worker pool, periodic jobs and the transient retry policy."""

import asyncio
from concurrent.futures import Future
from types import SimpleNamespace

import pytest
from tenacity import wait_fixed

from socialsync.errors import AuthExpiredError, TransientNetworkError
from socialsync.scheduler import PeriodicJob, WorkerPool, transient_retrying, wait_retry_after


def failed_state(exc: Exception, attempt_number: int = 1) -> SimpleNamespace:
    """Minimal tenacity retry state whose last attempt raised ``exc``."""
    outcome: Future = Future()
    outcome.set_exception(exc)
    return SimpleNamespace(attempt_number=attempt_number, outcome=outcome)


class TestTransientRetrying:
    """Tests for the tenacity retry policy."""

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        """Test transient failures are retried until success."""
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientNetworkError("503")
            return "ok"

        async for attempt in transient_retrying():
            with attempt:
                result = await flaky()

        assert result == "ok"
        assert calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Test the last transient error is re-raised."""
        calls = 0

        with pytest.raises(TransientNetworkError):
            async for attempt in transient_retrying(max_attempts=2):
                with attempt:
                    calls += 1
                    raise TransientNetworkError("timeout")

        assert calls == 2

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        """Test auth errors bypass the retry policy."""
        calls = 0

        with pytest.raises(AuthExpiredError):
            async for attempt in transient_retrying():
                with attempt:
                    calls += 1
                    raise AuthExpiredError("401")

        assert calls == 1

    @pytest.mark.asyncio
    async def test_unknown_outcome_not_retried_when_disabled(self):
        """Test failures that may have reached the platform can be excluded from retries."""
        calls = 0

        with pytest.raises(TransientNetworkError):
            async for attempt in transient_retrying(retry_unknown_outcome=False):
                with attempt:
                    calls += 1
                    raise TransientNetworkError("timed out", outcome_unknown=True)

        assert calls == 1

    def test_wait_honours_retry_after(self):
        """Test the backoff is stretched to the platform's Retry-After."""
        policy = transient_retrying()

        delay = policy.wait(failed_state(TransientNetworkError("429", retry_after=5.0)))

        assert delay >= 5.0

    def test_retry_after_never_shortens_backoff(self):
        """Test a short Retry-After leaves a longer backoff untouched."""
        wait = wait_retry_after(wait_fixed(10))

        assert wait(failed_state(TransientNetworkError("429", retry_after=1.0))) == 10
        assert wait(failed_state(TransientNetworkError("503"))) == 10
        assert wait(failed_state(RuntimeError("boom"))) == 10


class TestWorkerPool:
    """Tests for WorkerPool."""

    @pytest.mark.asyncio
    async def test_bounds_concurrency(self):
        """Test at most ``size`` jobs run at once."""
        pool = WorkerPool(size=2)
        running = 0
        peak = 0

        async def job():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        tasks = [pool.submit(job) for _ in range(5)]
        await asyncio.gather(*tasks)

        assert peak == 2
        assert pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        """Test run waits for the job's result."""
        pool = WorkerPool(size=1)

        async def job():
            return 42

        assert await pool.run(job) == 42

    @pytest.mark.asyncio
    async def test_shutdown_rejects_new_jobs(self):
        """Test a shut down pool refuses work."""
        pool = WorkerPool(size=1)
        await pool.shutdown(grace=0)

        async def job():
            return 1

        assert not pool.accepting
        assert pool.submit(job) is None
        with pytest.raises(RuntimeError):
            await pool.run(job)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_after_grace(self):
        """Test in-flight jobs finish within grace or are cancelled."""
        pool = WorkerPool(size=4)

        async def quick():
            await asyncio.sleep(0.01)

        async def slow():
            await asyncio.sleep(10)

        pool.submit(quick)
        pool.submit(slow)
        stats = await pool.shutdown(grace=0.2)

        assert stats == {"completed": 1, "cancelled": 1}

    @pytest.mark.asyncio
    async def test_failed_job_does_not_break_pool(self):
        """Test job exceptions are contained in their task."""
        pool = WorkerPool(size=1)

        async def broken():
            raise ValueError("boom")

        async def fine():
            return "ok"

        with pytest.raises(ValueError):
            await pool.run(broken)
        assert await pool.run(fine) == "ok"


class TestPeriodicJob:
    """Tests for PeriodicJob."""

    @pytest.mark.asyncio
    async def test_runs_repeatedly(self):
        """Test the job runs on its interval until stopped."""
        pool = WorkerPool(size=2)
        runs = 0

        async def tick():
            nonlocal runs
            runs += 1

        job = PeriodicJob("tick", tick, interval=0.01, pool=pool)
        job.start()
        await asyncio.sleep(0.1)
        await job.stop()

        assert runs >= 2
        assert job.stats["runs"] == runs
        assert job.stats["failures"] == 0
        assert not job.started

    @pytest.mark.asyncio
    async def test_never_overlaps(self):
        """Test a run in flight causes manual runs to be skipped."""
        pool = WorkerPool(size=4)
        release = asyncio.Event()

        async def blocking():
            await release.wait()

        job = PeriodicJob("blocking", blocking, interval=60, pool=pool)
        first = asyncio.create_task(job.run_once())
        await asyncio.sleep(0)

        assert job.is_running
        assert await job.run_once() is False
        assert job.stats["skipped"] == 1

        release.set()
        assert await first is True
        assert job.stats["runs"] == 1

    @pytest.mark.asyncio
    async def test_failures_counted(self):
        """Test failing runs are recorded and do not stop the job."""
        pool = WorkerPool(size=1)

        async def broken():
            raise TransientNetworkError("down")

        job = PeriodicJob("broken", broken, interval=60, pool=pool)

        assert await job.run_once() is True
        assert await job.run_once() is True
        assert job.stats["failures"] == 2
        assert job.stats["last_status"] == "error"

    @pytest.mark.asyncio
    async def test_initial_delay(self):
        """Test the first run waits for initial_delay."""
        pool = WorkerPool(size=1)
        runs = 0

        async def tick():
            nonlocal runs
            runs += 1

        job = PeriodicJob("delayed", tick, interval=60, pool=pool, initial_delay=3600)
        job.start()
        await asyncio.sleep(0.02)

        assert job.started
        assert runs == 0
        await job.stop()

    @pytest.mark.asyncio
    async def test_no_runs_after_pool_shutdown(self):
        """Test run_once is a no-op once the pool stops accepting."""
        pool = WorkerPool(size=1)
        await pool.shutdown(grace=0)

        async def tick():
            return None

        job = PeriodicJob("late", tick, interval=60, pool=pool)

        assert await job.run_once() is False
