"""
Precision Search - Queue Controller

Runs one claimed queue item for one invocation:

    pending --claim--> processing --+--> completed
                                    +--> pending (continuation: budget spent, cursor kept)
                                    +--> pending (retry: fatal error, backoff via available_at)
                                    +--> failed  (retry cap reached)

Ordering:
- Incomplete transactions are visited by date descending, id tiebreak
- The cursor (last processed transaction id) is persisted after every
  transaction, so a continuation resumes right after it
- The wall-clock budget is checked once per transaction, before it starts

Error boundaries:
- Per candidate/message and per strategy: inside strategies.py
- Per transaction: error appended to the item, transaction counted, loop continues
- Per invocation: storage and ownership failures go down the retry path
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from logging_config import clear_job_context, set_job_context
from sentry_integration import capture_exception

from .audit import AuditEventType, log_precision_search_event
from .errors import AccessDeniedError, ConflictError, NotFoundError, RepositoryError
from .ingestion import EvidenceIngestionService
from .mail_client import MailboxClientFactory
from .models import (
    Collection,
    QueueItem,
    QueueScope,
    QueueStatus,
    SearchStrategy,
    Transaction,
    utc_now,
)
from .queue_service import QueueEventKind, QueueService
from .repository import ArrayUnion, Increment, Repository, Update
from .search_log import SearchLog
from .strategies import STRATEGY_EXECUTORS, StrategyConfig, StrategyContext, StrategyExecutor

logger = logging.getLogger(__name__)


class ProcessingOutcome:
    COMPLETED = "completed"
    CONTINUED = "continued"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ProcessingResult:
    """Counters are for this invocation only."""
    queue_id: str
    outcome: str
    transactions_processed: int = 0
    transactions_with_matches: int = 0
    documents_connected: int = 0
    cursor: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _BudgetExhausted(Exception):
    pass


class PrecisionSearchProcessor:
    """
    Queue controller for precision search items.

    Collaborators are injected so tests can supply in-memory stores, fake
    mail clients and a scripted clock.
    """

    def __init__(
        self,
        repository: Repository,
        queue_service: QueueService,
        ingestion: EvidenceIngestionService,
        mailbox_factory: Callable[[], MailboxClientFactory],
        query_suggester,
        email_classifier,
        config: Optional[StrategyConfig] = None,
        time_budget_seconds: float = 240.0,
        batch_size: int = 20,
        inter_transaction_delay: float = 0.05,
        retry_delays: Optional[List[int]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
        executors: Optional[Dict[SearchStrategy, StrategyExecutor]] = None,
    ):
        self.repository = repository
        self.queue_service = queue_service
        self.ingestion = ingestion
        self.mailbox_factory = mailbox_factory
        self.query_suggester = query_suggester
        self.email_classifier = email_classifier
        self.config = config or StrategyConfig()
        self.time_budget_seconds = time_budget_seconds
        self.batch_size = batch_size
        self.inter_transaction_delay = inter_transaction_delay
        self.retry_delays = retry_delays or [60, 300, 900]
        self.clock = clock
        self.sleep = sleep
        self.executors = executors or STRATEGY_EXECUTORS
        self.search_log = SearchLog(repository)

    # ==================== ENTRY POINT ====================

    async def run_one(self, queue_id: str, claim: bool = True) -> ProcessingResult:
        """
        Process one queue item until it completes, runs out of budget, or fails.

        Args:
            queue_id: Queue item id
            claim: Claim the item first (False when the caller already claimed it)
        """
        if claim:
            try:
                item = await self.queue_service.claim(queue_id)
            except (ConflictError, NotFoundError) as e:
                logger.info(f"Queue item {queue_id} not claimable: {e}")
                return ProcessingResult(queue_id=queue_id, outcome=ProcessingOutcome.SKIPPED)
        else:
            item = await self.repository.get(Collection.QUEUE, queue_id)
            if item is None:
                return ProcessingResult(queue_id=queue_id, outcome=ProcessingOutcome.SKIPPED)

        set_job_context(queue_id=item.id, owner_id=item.owner_id)
        result = ProcessingResult(queue_id=item.id, outcome=ProcessingOutcome.COMPLETED, cursor=item.cursor)
        try:
            ctx = self._context(item)
            if item.scope == QueueScope.SINGLE_TRANSACTION.value:
                await self._run_single(item, ctx, result)
            else:
                await self._run_all(item, ctx, result)
        except Exception as e:
            logger.error(f"Queue item {item.id} failed: {e}", exc_info=True)
            capture_exception(e, queue_id=item.id, retry_count=item.retry_count, owner_id=item.owner_id)
            await self._retry_or_fail(item, e, result)
        finally:
            clear_job_context()
        return result

    def _context(self, item: QueueItem) -> StrategyContext:
        return StrategyContext(
            repository=self.repository,
            ingestion=self.ingestion,
            mailboxes=self.mailbox_factory(),
            query_suggester=self.query_suggester,
            email_classifier=self.email_classifier,
            owner_id=item.owner_id,
            queue_id=item.id,
            config=self.config,
        )

    # ==================== SCOPES ====================

    async def _run_all(self, item: QueueItem, ctx: StrategyContext, result: ProcessingResult):
        start = self.clock()
        cursor = item.cursor

        try:
            while True:
                page = await self.repository.query(
                    Collection.TRANSACTIONS,
                    [("owner_id", "==", item.owner_id), ("is_complete", "==", False)],
                    order_by="date",
                    descending=True,
                    limit=self.batch_size,
                    start_after=cursor,
                )
                for transaction in page:
                    if self.clock() - start >= self.time_budget_seconds:
                        raise _BudgetExhausted()
                    await self._process_and_record(item, transaction, ctx, result)
                    cursor = transaction.id
                    if self.inter_transaction_delay:
                        await self.sleep(self.inter_transaction_delay)

                if len(page) < self.batch_size:
                    break
        except _BudgetExhausted:
            await self._persist_continuation(item, result)
            return

        await self._complete(item, result)

    async def _run_single(self, item: QueueItem, ctx: StrategyContext, result: ProcessingResult):
        transaction = await self.repository.get(Collection.TRANSACTIONS, item.transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {item.transaction_id} not found")
        if transaction.owner_id != item.owner_id:
            raise AccessDeniedError(f"Transaction {item.transaction_id} not owned by {item.owner_id}")

        await self._process_and_record(item, transaction, ctx, result)
        await self._complete(item, result)

    # ==================== PER TRANSACTION ====================

    async def _process_and_record(
        self, item: QueueItem, transaction: Transaction, ctx: StrategyContext, result: ProcessingResult
    ):
        errors: List[str] = []
        connected = 0
        try:
            connected, errors = await self._process_transaction(item, transaction, ctx)
        except RepositoryError:
            raise
        except Exception as e:
            errors = [f"{transaction.id}: {e}"]
            logger.error(f"Transaction {transaction.id} failed in queue item {item.id}: {e}")

        ops = [
            Update(Collection.QUEUE, item.id, {"cursor": transaction.id}),
            Increment(Collection.QUEUE, item.id, "transactions_processed", 1),
        ]
        if connected:
            ops.append(Increment(Collection.QUEUE, item.id, "transactions_with_matches", 1))
            ops.append(Increment(Collection.QUEUE, item.id, "documents_connected", connected))
        if errors:
            ops.append(ArrayUnion(Collection.QUEUE, item.id, "errors", errors))
        await self.repository.atomic_write(ops)

        result.transactions_processed += 1
        result.cursor = transaction.id
        if connected:
            result.transactions_with_matches += 1
            result.documents_connected += connected
        result.errors.extend(errors)

    async def _process_transaction(
        self, item: QueueItem, transaction: Transaction, ctx: StrategyContext
    ) -> Tuple[int, List[str]]:
        """
        Run strategies in priority order until one connects.

        Returns documents connected and the errors of strategies that failed.
        """
        current = await self.repository.get(Collection.TRANSACTIONS, transaction.id)
        if current is None or current.is_complete:
            return 0, []

        search = await self.search_log.open(current.id, item.id, item.owner_id, item.triggered_by)
        errors: List[str] = []
        connected = 0
        for name in item.strategies:
            executor = self.executors[SearchStrategy(name)]
            attempt = await executor.run(current, ctx)
            await self.search_log.record_attempt(search.id, attempt)
            if attempt.error:
                errors.append(f"{current.id}/{attempt.strategy}: {attempt.error}")
            connected += len(attempt.document_ids_connected)
            if attempt.matches_found > 0:
                break
        await self.search_log.finish(search.id)

        log_precision_search_event(
            AuditEventType.TRANSACTION_PROCESSED,
            queue_id=item.id,
            user_id=item.owner_id,
            details={"transaction_id": current.id, "documents_connected": connected},
        )
        return connected, errors

    # ==================== STATE TRANSITIONS ====================

    async def _complete(self, item: QueueItem, result: ProcessingResult):
        await self.repository.atomic_write([
            Update(
                Collection.QUEUE,
                item.id,
                {"status": QueueStatus.COMPLETED.value, "completed_at": utc_now()},
            ),
        ])
        result.outcome = ProcessingOutcome.COMPLETED
        log_precision_search_event(
            AuditEventType.JOB_COMPLETED,
            queue_id=item.id,
            user_id=item.owner_id,
            details={
                "transactions_processed": result.transactions_processed,
                "transactions_with_matches": result.transactions_with_matches,
                "documents_connected": result.documents_connected,
            },
        )

    async def _persist_continuation(self, item: QueueItem, result: ProcessingResult):
        await self.repository.atomic_write([
            Update(
                Collection.QUEUE,
                item.id,
                {
                    "status": QueueStatus.PENDING.value,
                    "started_at": None,
                    "available_at": utc_now(),
                },
            ),
            Increment(Collection.QUEUE, item.id, "continuation_count", 1),
        ])
        result.outcome = ProcessingOutcome.CONTINUED
        log_precision_search_event(
            AuditEventType.CONTINUATION_PERSISTED,
            queue_id=item.id,
            user_id=item.owner_id,
            details={"cursor": result.cursor, "transactions_processed": result.transactions_processed},
        )
        self.queue_service.publish(QueueEventKind.RESUMED, item)
        log_precision_search_event(AuditEventType.JOB_RESUMED, queue_id=item.id, user_id=item.owner_id)

    async def _retry_or_fail(self, item: QueueItem, error: Exception, result: ProcessingResult):
        retry_count = item.retry_count + 1
        message = str(error) or type(error).__name__
        result.errors.append(message)

        if retry_count >= item.max_retries:
            await self.repository.atomic_write([
                Update(
                    Collection.QUEUE,
                    item.id,
                    {
                        "status": QueueStatus.FAILED.value,
                        "retry_count": retry_count,
                        "last_error": message,
                        "completed_at": utc_now(),
                    },
                ),
                ArrayUnion(Collection.QUEUE, item.id, "errors", [message]),
            ])
            result.outcome = ProcessingOutcome.FAILED
            log_precision_search_event(
                AuditEventType.JOB_FAILED,
                queue_id=item.id,
                user_id=item.owner_id,
                details={"retry_count": retry_count, "error": message},
                success=False,
            )
            return

        delay = self.retry_delays[min(retry_count - 1, len(self.retry_delays) - 1)]
        available_at = utc_now() + timedelta(seconds=delay)
        await self.repository.atomic_write([
            Update(
                Collection.QUEUE,
                item.id,
                {
                    "status": QueueStatus.PENDING.value,
                    "retry_count": retry_count,
                    "last_error": message,
                    "started_at": None,
                    "available_at": available_at,
                },
            ),
            ArrayUnion(Collection.QUEUE, item.id, "errors", [message]),
        ])
        result.outcome = ProcessingOutcome.RETRY_SCHEDULED
        log_precision_search_event(
            AuditEventType.RETRY_SCHEDULED,
            queue_id=item.id,
            user_id=item.owner_id,
            details={"retry_count": retry_count, "delay_seconds": delay, "error": message},
            success=False,
        )
        self.queue_service.publish(QueueEventKind.RESUMED, item, available_at=available_at)
