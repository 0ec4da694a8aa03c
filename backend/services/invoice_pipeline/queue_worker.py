"""
Invoice Hub - Invoice Queue Workers

One asyncio task per queue. Each worker owns its polling state:

- a fixed-interval loop (INVOICE_QUEUE_POLL_INTERVAL_SECONDS)
- notify(): a debounced wake-up (INVOICE_QUEUE_DEBOUNCE_SECONDS) used when
  something relevant changed, e.g. a job was enqueued or a webhook arrived
- an asyncio.Lock so cycles of the same queue never overlap in this process

Across processes, the atomic job claim is what prevents double processing.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .pipeline_config import QUEUE_DEBOUNCE_SECONDS, QUEUE_POLL_INTERVAL_SECONDS, QueueName
from .queue_processor import QueueProcessor, get_queue_definition

logger = logging.getLogger(__name__)


class QueueWorker:
    """Polling loop for a single queue."""

    def __init__(
        self,
        processor: QueueProcessor,
        queue: QueueName,
        interval_seconds: float = QUEUE_POLL_INTERVAL_SECONDS,
        debounce_seconds: float = QUEUE_DEBOUNCE_SECONDS,
    ):
        self.processor = processor
        self.queue = QueueName(queue)
        self.label = get_queue_definition(self.queue).label
        self.interval_seconds = interval_seconds
        self.debounce_seconds = debounce_seconds

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None

        self.cycles_run = 0
        self.last_run_at: Optional[str] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("[%s] Worker started (interval: %ss)", self.label, self.interval_seconds)

    async def stop(self):
        for task in (self._debounce_task, self._task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._debounce_task = None
        logger.info("[%s] Worker stopped", self.label)

    def notify(self):
        """Request a re-poll after the debounce delay. Bursts collapse into one cycle."""
        if self._debounce_task and not self._debounce_task.done():
            return
        self._debounce_task = asyncio.create_task(self._debounced_wake())

    async def _debounced_wake(self):
        await asyncio.sleep(self.debounce_seconds)
        self._wake.set()

    async def run_once(self) -> Dict[str, Any]:
        """Run one cycle now, waiting for any cycle already in progress."""
        async with self._lock:
            try:
                result = await self.processor.run_cycle(self.queue)
            except Exception as e:
                self.last_error = str(e)
                raise
            self.cycles_run += 1
            self.last_run_at = datetime.now(timezone.utc).isoformat()
            self.last_result = {k: v for k, v in result.items() if k != "results"}
            self.last_error = None
            return result

    async def _run(self):
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("[%s] Polling worker cancelled", self.label)
                break
            except Exception as e:
                logger.error("[%s] Worker error: %s", self.label, str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                logger.info("[%s] Polling worker cancelled", self.label)
                break
            self._wake.clear()

    def status(self) -> Dict[str, Any]:
        return {
            "queue": self.queue.value,
            "running": self.is_running,
            "busy": self.is_busy,
            "interval_seconds": self.interval_seconds,
            "cycles_run": self.cycles_run,
            "last_run_at": self.last_run_at,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }


class QueueWorkerPool:
    """The set of workers, one per queue."""

    def __init__(self, processor: QueueProcessor, **worker_kwargs):
        self.processor = processor
        self.workers: Dict[QueueName, QueueWorker] = {
            queue: QueueWorker(processor, queue, **worker_kwargs) for queue in QueueName
        }

    def get(self, queue) -> QueueWorker:
        return self.workers[QueueName(queue)]

    def start_all(self):
        for worker in self.workers.values():
            worker.start()

    async def stop_all(self):
        for worker in self.workers.values():
            await worker.stop()

    def notify(self, queue):
        self.get(queue).notify()

    def status(self) -> Dict[str, Any]:
        return {queue.value: worker.status() for queue, worker in self.workers.items()}
