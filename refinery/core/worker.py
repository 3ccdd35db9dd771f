"""Background workers that poll the job queues and run handlers.

``WorkerPool`` serves one queue with a fixed number of slots, each slot
running one job at a time. ``WorkflowWorker`` drives several pools together,
either until a single execution finishes or as a daemon.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from refinery.core.models import TERMINAL_EXECUTION_STATUSES, ExecutionStatus
from refinery.core.queue import Job, JobQueue
from refinery.core.state import Repository

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]

CLEANUP_INTERVAL = 60.0  # seconds between stale execution sweeps


class WorkerPool:
    """
    Runs a handler over jobs claimed from one queue.

    Design:
    - Claims are atomic in the database, so any number of pools and
      processes can share one queue
    - A failing handler fails the job; retry and cascade are queue policy
    - Blocking queue calls go through asyncio.to_thread
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 1,
        poll_interval: float = 1.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.running = False

    async def process_job(self, job: Job) -> bool:
        """Run the handler for one claimed job and settle it. Returns success."""
        try:
            result = await self.handler(job)
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.error(f"Queue {self.queue.name}: job {job.id} failed: {reason}")
            await asyncio.to_thread(self.queue.fail, job.id, reason)
            return False
        await asyncio.to_thread(self.queue.complete, job.id, result)
        return True

    async def run_once(self) -> int:
        """Claim up to ``concurrency`` jobs and run them in parallel.

        Returns the number of jobs processed.
        """
        jobs = []
        for _ in range(self.concurrency):
            job = await asyncio.to_thread(self.queue.claim)
            if job is None:
                break
            jobs.append(job)
        if jobs:
            await asyncio.gather(*(self.process_job(job) for job in jobs))
        return len(jobs)

    async def _slot(self, index: int) -> None:
        while self.running:
            try:
                job = await asyncio.to_thread(self.queue.claim)
                if job is None:
                    # Also delivers events left behind by a crashed process
                    await asyncio.to_thread(self.queue.dispatch_events)
                    await asyncio.sleep(self.poll_interval)
                    continue
                await self.process_job(job)
            except Exception as e:
                logger.error(f"Worker slot {index} on {self.queue.name} error: {e}")
                await asyncio.sleep(self.poll_interval)

    async def start(self) -> None:
        """Run all slots until ``stop()`` is called."""
        self.running = True
        logger.info(f"Queue {self.queue.name}: started {self.concurrency} slot(s)")
        await asyncio.gather(*(self._slot(i) for i in range(self.concurrency)))

    def stop(self) -> None:
        self.running = False


class WorkflowWorker:
    """
    Drives the orchestration and agent pools.

    Can run a single execution to completion (used by ``refinery run --wait``
    and tests) or run as a daemon with periodic stale cleanup.
    """

    def __init__(
        self,
        repo: Repository,
        pools: list[WorkerPool],
        poll_interval: float = 1.0,
        cleanup: Callable[[timedelta], list[str]] | None = None,
        stale_after: timedelta = timedelta(minutes=30),
    ):
        self.repo = repo
        self.pools = pools
        self.poll_interval = poll_interval
        self.cleanup = cleanup
        self.stale_after = stale_after
        self.running = False

    def get_execution_status(self, execution_id: str) -> ExecutionStatus | None:
        execution = self.repo.get_execution(execution_id)
        return execution.status if execution else None

    async def run_until_complete(
        self, execution_id: str, timeout: float | None = None
    ) -> ExecutionStatus | None:
        """
        Run pools until the execution is terminal.
        Returns final status.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None
        while True:
            status = await asyncio.to_thread(self.get_execution_status, execution_id)
            if status is None or status in TERMINAL_EXECUTION_STATUSES:
                return status
            if deadline is not None and loop.time() > deadline:
                logger.warning(f"Gave up waiting for {execution_id} after {timeout}s")
                return status

            processed = 0
            for pool in self.pools:
                processed += await pool.run_once()

            # Only sleep when no work was done (waiting for retries to come due).
            if processed == 0 and await self.redeliver_events() == 0:
                await asyncio.sleep(self.poll_interval)

    async def run_until_idle(self) -> int:
        """Process jobs until no pool has anything runnable. Returns jobs processed."""
        total = 0
        while True:
            processed = 0
            for pool in self.pools:
                processed += await pool.run_once()
            if processed == 0 and await self.redeliver_events() == 0:
                return total
            total += processed

    async def redeliver_events(self) -> int:
        """Retry outbox events whose listeners failed earlier. Returns deliveries."""
        delivered = 0
        for pool in self.pools:
            delivered += await asyncio.to_thread(pool.queue.dispatch_events)
        return delivered

    async def start_daemon(self) -> None:
        """Start daemon mode: all pools plus the stale cleanup loop."""
        self.running = True
        tasks = [asyncio.create_task(pool.start()) for pool in self.pools]
        loop = asyncio.get_running_loop()
        next_cleanup = loop.time()
        try:
            while self.running:
                if self.cleanup is not None and loop.time() >= next_cleanup:
                    try:
                        await asyncio.to_thread(self.cleanup, self.stale_after)
                    except Exception as e:
                        logger.error(f"Stale cleanup error: {e}")
                    next_cleanup = loop.time() + CLEANUP_INTERVAL
                await asyncio.sleep(self.poll_interval)
        finally:
            for pool in self.pools:
                pool.stop()
            await asyncio.gather(*tasks, return_exceptions=True)

    def stop(self) -> None:
        """Stop the worker daemon"""
        self.running = False
        for pool in self.pools:
            pool.stop()
