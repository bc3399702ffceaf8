"""Async worker draining the inbound queue with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .schemas import InboundMessageJob
from .service import IngestionCoordinator

if TYPE_CHECKING:
    from ..queues import InboundQueue

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


class InboundWorker:
    """Pull jobs from ``queue`` and hand them to the coordinator.

    At most ``concurrency`` jobs run at once. :meth:`stop` sets the stop event;
    :meth:`run` then stops taking new jobs and waits for the in-flight ones.
    A job that raises is re-queued until it has been attempted
    ``MAX_ATTEMPTS`` times, then dropped with an error log.
    """

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        queue: InboundQueue,
        *,
        concurrency: int = 10,
        poll_timeout: float = 1.0,
    ) -> None:
        self._coordinator = coordinator
        self._queue = queue
        self._semaphore = asyncio.Semaphore(concurrency)
        self._poll_timeout = poll_timeout
        self._stop = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()
        self.processed = 0
        self.failed = 0

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        while not self._stop.is_set():
            await self._semaphore.acquire()
            job = await self._queue.dequeue(timeout=self._poll_timeout)
            if job is None:
                self._semaphore.release()
                continue
            task = asyncio.create_task(self._handle(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def run_until_empty(self) -> None:
        """Process queued jobs until a poll comes back empty."""

        while True:
            job = await self._queue.dequeue(timeout=self._poll_timeout)
            if job is None:
                return
            await self._semaphore.acquire()
            await self._handle(job)

    async def _handle(self, job: InboundMessageJob) -> None:
        try:
            await self._coordinator.process_inbound(job)
            self.processed += 1
        except Exception:
            attempts = job.attempts + 1
            if attempts < MAX_ATTEMPTS:
                logger.exception(
                    "Job %s failed (attempt %s/%s); re-queueing", job.job_id, attempts, MAX_ATTEMPTS
                )
                await self._queue.requeue(job.model_copy(update={"attempts": attempts}))
            else:
                logger.exception("Job %s failed after %s attempts; dropping", job.job_id, attempts)
                self.failed += 1
        finally:
            self._semaphore.release()
