"""
Precision Search Worker

Two entry points into the same controller (PrecisionSearchProcessor.run_one):
- Sweep: every sweep_interval, claim the oldest pending item and run it
- Listener: consume created/resumed notifications and run the item right away
  (scheduled-origin items are left for the sweep; retry backoff is honoured)

Usage:
- API process: started from server.py lifespan when PRECISION_SEARCH_WORKER_ENABLED
- API trigger: POST /api/precision-search/process
- Standalone: python -m precision_search.workers.precision_search_worker
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set

from precision_search.models import TriggerOrigin, utc_now
from precision_search.processor import PrecisionSearchProcessor
from precision_search.queue_service import QueueEvent, QueueNotifier, QueueService

logger = logging.getLogger(__name__)


class PrecisionSearchWorker:
    """
    Background worker for the precision search queue.

    This worker:
    1. Releases items stuck in processing by a dead process
    2. Claims the oldest pending item per sweep tick and runs it
    3. Runs newly created / resumed non-scheduled items as soon as they are announced
    """

    def __init__(
        self,
        processor: PrecisionSearchProcessor,
        queue_service: QueueService,
        notifier: Optional[QueueNotifier] = None,
        sweep_interval: int = 300,
        stale_after_seconds: Optional[float] = None,
    ):
        """
        Initialize the worker.

        Args:
            processor: Queue controller
            queue_service: Queue item store access
            notifier: Notification channel (None = sweep only)
            sweep_interval: Seconds between sweep ticks
            stale_after_seconds: Age after which a processing item is released
                (default: twice the processor's time budget)
        """
        self.processor = processor
        self.queue_service = queue_service
        self.notifier = notifier
        self.sweep_interval = sweep_interval
        self.stale_after_seconds = stale_after_seconds or processor.time_budget_seconds * 2
        self._running = False
        self._delayed: Set[asyncio.Task] = set()

    async def process_once(self) -> dict:
        """
        One sweep tick.

        Returns:
            Processing statistics
        """
        released = await self.queue_service.release_stale(self.stale_after_seconds)
        item = await self.queue_service.claim_next()

        stats = {
            "released_stale": released,
            "queue_items_processed": 0,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if item is None:
            return stats

        result = await self.processor.run_one(item.id, claim=False)
        stats.update({
            "queue_items_processed": 1,
            "queue_id": item.id,
            "outcome": result.outcome,
            "transactions_processed": result.transactions_processed,
            "transactions_with_matches": result.transactions_with_matches,
            "documents_connected": result.documents_connected,
        })
        return stats

    async def run_continuous(self):
        """
        Run the sweep until stopped.
        """
        self._running = True
        logger.info(f"Starting precision search sweep (interval={self.sweep_interval}s)")

        while self._running:
            try:
                stats = await self.process_once()

                if stats["queue_items_processed"] > 0:
                    logger.info(
                        f"Sweep processed queue item {stats['queue_id']}: {stats['outcome']}, "
                        f"{stats['transactions_processed']} transactions, "
                        f"{stats['documents_connected']} documents connected"
                    )

            except Exception as e:
                logger.error(f"Worker error: {e}")

            await asyncio.sleep(self.sweep_interval)

    async def listen(self, poll_timeout: float = 1.0):
        """Run items as soon as their created/resumed notification arrives."""
        if self.notifier is None:
            return
        self._running = True
        logger.info("Starting precision search listener")

        while self._running:
            event = await self.notifier.next_event(timeout=poll_timeout)
            if event is None:
                continue
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Listener error on queue item {event.queue_id}: {e}")

    async def handle_event(self, event: QueueEvent):
        if event.triggered_by == TriggerOrigin.SCHEDULED.value:
            return

        if event.available_at is not None and event.available_at > utc_now():
            task = asyncio.create_task(self._run_when_available(event))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
            return

        result = await self.processor.run_one(event.queue_id)
        logger.info(f"Listener ran queue item {event.queue_id}: {result.outcome}")

    async def _run_when_available(self, event: QueueEvent):
        delay = (event.available_at - utc_now()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        if not self._running:
            return
        try:
            await self.processor.run_one(event.queue_id)
        except Exception as e:
            logger.error(f"Delayed run of queue item {event.queue_id} failed: {e}")

    def stop(self):
        """Stop the sweep and listener loops."""
        self._running = False
        for task in list(self._delayed):
            task.cancel()
        logger.info("Precision search worker stopping...")


async def run_worker():
    """Run the sweep and listener as a standalone process."""
    from config import get_settings
    from logging_config import setup_logging
    from sentry_integration import init_sentry
    from database.connection import init_db
    from precision_search.factory import build_services

    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.is_production)
    init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    await init_db()

    services = build_services(settings)
    worker = PrecisionSearchWorker(
        processor=services.processor,
        queue_service=services.queue_service,
        notifier=services.notifier,
        sweep_interval=settings.PRECISION_SEARCH_SWEEP_INTERVAL_SECONDS,
    )

    try:
        await asyncio.gather(worker.run_continuous(), worker.listen())
    except (KeyboardInterrupt, asyncio.CancelledError):
        worker.stop()


if __name__ == "__main__":
    asyncio.run(run_worker())
