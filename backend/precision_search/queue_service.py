"""
Precision Search - Queue Service

Queue item lifecycle outside the controller:
- enqueue (manual, upstream event, scheduled sweep)
- compare-and-set claim (pending -> processing)
- status, listing and stats
- stale-claim release for items abandoned by a crashed process

QueueNotifier is the in-process "job created / job resumed" channel the
worker listener consumes. Scheduled items are announced too; the listener
leaves them for the periodic sweep.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .audit import AuditEventType, log_precision_search_event
from .errors import AccessDeniedError, ConflictError, NotFoundError
from .models import (
    DEFAULT_STRATEGIES,
    Collection,
    QueueItem,
    QueueScope,
    QueueStatus,
    SearchStrategy,
    TriggerOrigin,
    generate_uuid,
    utc_now,
)
from .repository import Repository, Update, write_in_chunks

logger = logging.getLogger(__name__)


# ==================== NOTIFICATIONS ====================

class QueueEventKind(str, Enum):
    CREATED = "created"
    RESUMED = "resumed"


@dataclass
class QueueEvent:
    kind: QueueEventKind
    queue_id: str
    triggered_by: str
    available_at: Optional[datetime] = None


class QueueNotifier:
    """In-process notification channel for new and resumed queue items."""

    def __init__(self):
        self._events: "asyncio.Queue[QueueEvent]" = asyncio.Queue()

    def publish(self, event: QueueEvent):
        self._events.put_nowait(event)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[QueueEvent]:
        try:
            if timeout is None:
                return await self._events.get()
            return await asyncio.wait_for(self._events.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._events.qsize()


# ==================== SERVICE ====================

def normalize_strategies(strategies: Optional[Sequence[str]]) -> List[str]:
    """Validate strategy names and put them in priority order."""
    if not strategies:
        return [s.value for s in DEFAULT_STRATEGIES]
    requested = {SearchStrategy(s) for s in strategies}
    return [s.value for s in DEFAULT_STRATEGIES if s in requested]


class QueueService:
    """
    Service class for queue item management.
    """

    def __init__(self, repository: Repository, notifier: Optional[QueueNotifier] = None, max_retries: int = 3):
        self.repository = repository
        self.notifier = notifier
        self.max_retries = max_retries

    def publish(self, kind: QueueEventKind, item: QueueItem, available_at: Optional[datetime] = None):
        if self.notifier is None:
            return
        self.notifier.publish(QueueEvent(
            kind=kind,
            queue_id=item.id,
            triggered_by=item.triggered_by,
            available_at=available_at,
        ))

    async def enqueue(
        self,
        owner_id: str,
        scope: QueueScope = QueueScope.ALL_INCOMPLETE,
        triggered_by: TriggerOrigin = TriggerOrigin.MANUAL,
        transaction_id: Optional[str] = None,
        strategies: Optional[Sequence[str]] = None,
    ) -> QueueItem:
        """
        Create a queue item unless equivalent work is already pending.

        Raises:
            ValueError: scope and transaction id disagree, or unknown strategy
            NotFoundError / AccessDeniedError: target transaction invalid
        """
        scope = QueueScope(scope)
        triggered_by = TriggerOrigin(triggered_by)

        if scope == QueueScope.SINGLE_TRANSACTION:
            if not transaction_id:
                raise ValueError("transaction_id is required for single_transaction scope")
            transaction = await self.repository.get(Collection.TRANSACTIONS, transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if transaction.owner_id != owner_id:
                raise AccessDeniedError(f"Transaction {transaction_id} not owned by {owner_id}")
            to_process = 1
        else:
            if transaction_id:
                raise ValueError("transaction_id is only valid for single_transaction scope")
            to_process = await self.repository.count(
                Collection.TRANSACTIONS,
                [("owner_id", "==", owner_id), ("is_complete", "==", False)],
            )

        strategy_names = normalize_strategies(strategies)

        duplicate = await self.repository.first(
            Collection.QUEUE,
            [
                ("owner_id", "==", owner_id),
                ("status", "==", QueueStatus.PENDING.value),
                ("scope", "==", scope.value),
                ("transaction_id", "==", transaction_id),
            ],
        )
        if duplicate is not None:
            logger.info(f"Pending queue item {duplicate.id} already covers owner {owner_id} ({scope.value})")
            return duplicate

        item = QueueItem(
            id=generate_uuid(),
            owner_id=owner_id,
            scope=scope.value,
            transaction_id=transaction_id,
            triggered_by=triggered_by.value,
            strategies=strategy_names,
            transactions_to_process=to_process,
            max_retries=self.max_retries,
        )
        await self.repository.add(Collection.QUEUE, item)

        log_precision_search_event(
            AuditEventType.QUEUE_ITEM_CREATED,
            queue_id=item.id,
            user_id=owner_id,
            details={
                "scope": item.scope,
                "triggered_by": item.triggered_by,
                "transactions_to_process": to_process,
                "strategies": strategy_names,
            },
        )

        if triggered_by != TriggerOrigin.SCHEDULED:
            self.publish(QueueEventKind.CREATED, item)
        return item

    async def claim(self, item_id: str) -> QueueItem:
        """
        Move a pending item to processing.

        Raises:
            NotFoundError: item does not exist
            ConflictError: item is not pending (claimed elsewhere or finished)
        """
        await self.repository.atomic_write([
            Update(
                Collection.QUEUE,
                item_id,
                {"status": QueueStatus.PROCESSING.value, "started_at": utc_now()},
                expected={"status": QueueStatus.PENDING.value},
            ),
        ])
        item = await self.repository.get(Collection.QUEUE, item_id)
        log_precision_search_event(
            AuditEventType.QUEUE_ITEM_CLAIMED,
            queue_id=item_id,
            user_id=item.owner_id,
            details={"continuation_count": item.continuation_count, "retry_count": item.retry_count},
        )
        return item

    async def next_pending(self, now: Optional[datetime] = None) -> Optional[QueueItem]:
        """Oldest pending item whose backoff has elapsed."""
        return await self.repository.first(
            Collection.QUEUE,
            [
                ("status", "==", QueueStatus.PENDING.value),
                ("available_at", "<=", now or utc_now()),
            ],
            order_by="created_at",
        )

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[QueueItem]:
        item = await self.next_pending(now)
        if item is None:
            return None
        try:
            return await self.claim(item.id)
        except ConflictError:
            logger.info(f"Queue item {item.id} was claimed concurrently")
            return None

    async def get(self, item_id: str) -> Optional[QueueItem]:
        return await self.repository.get(Collection.QUEUE, item_id)

    async def list_for_owner(self, owner_id: str, limit: int = 20) -> List[QueueItem]:
        return await self.repository.query(
            Collection.QUEUE,
            [("owner_id", "==", owner_id)],
            order_by="created_at",
            descending=True,
            limit=limit,
        )

    async def get_queue_stats(self) -> Dict[str, int]:
        stats = {}
        for status in QueueStatus:
            stats[status.value] = await self.repository.count(Collection.QUEUE, [("status", "==", status.value)])
        stats["total"] = sum(stats.values())
        return stats

    async def release_stale(self, max_age_seconds: float, now: Optional[datetime] = None) -> int:
        """
        Return processing items older than max_age_seconds to pending.

        A claimed item only stays in processing past the time budget when the
        process running it died.
        """
        cutoff = (now or utc_now()) - timedelta(seconds=max_age_seconds)
        stale = await self.repository.query(
            Collection.QUEUE,
            [("status", "==", QueueStatus.PROCESSING.value), ("started_at", "<", cutoff)],
        )
        if not stale:
            return 0

        ops = [
            Update(
                Collection.QUEUE,
                item.id,
                {"status": QueueStatus.PENDING.value, "started_at": None},
                expected={"status": QueueStatus.PROCESSING.value},
            )
            for item in stale
        ]
        released = await write_in_chunks(self.repository, ops)
        logger.warning(f"Released {released} stale queue item(s)")
        for item in stale:
            self.publish(QueueEventKind.RESUMED, item)
        return released


# ==================== TRIGGERS ====================

async def trigger_manual_search(
    service: QueueService,
    owner_id: str,
    transaction_id: Optional[str] = None,
    strategies: Optional[Sequence[str]] = None,
) -> QueueItem:
    """User-initiated run for one transaction or all incomplete ones."""
    scope = QueueScope.SINGLE_TRANSACTION if transaction_id else QueueScope.ALL_INCOMPLETE
    return await service.enqueue(
        owner_id,
        scope=scope,
        triggered_by=TriggerOrigin.MANUAL,
        transaction_id=transaction_id,
        strategies=strategies,
    )


async def trigger_after_mail_sync(service: QueueService, owner_id: str) -> QueueItem:
    """New mail arrived for the owner; look for evidence for everything incomplete."""
    return await service.enqueue(owner_id, triggered_by=TriggerOrigin.UPSTREAM_EVENT)


async def trigger_scheduled_sweep_item(service: QueueService, owner_id: str) -> QueueItem:
    """Periodic catch-up item; picked up by the sweep, not the listener."""
    return await service.enqueue(owner_id, triggered_by=TriggerOrigin.SCHEDULED)
