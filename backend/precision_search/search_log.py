"""
Precision Search - Search-Attempt Log

One TransactionSearch per (transaction, queue item). Re-entering the same
queue item (continuation, retry) appends to the existing record.
"""

import logging

from .models import (
    Collection,
    SearchAttempt,
    SearchStatus,
    TransactionSearch,
    generate_uuid,
    utc_now,
)
from .repository import ArrayUnion, Increment, Repository, Update

logger = logging.getLogger(__name__)


class SearchLog:
    """Append-only attempt log backed by the repository."""

    def __init__(self, repository: Repository):
        self.repository = repository

    async def open(self, transaction_id: str, queue_id: str, owner_id: str, triggered_by: str) -> TransactionSearch:
        existing = await self.repository.first(
            Collection.SEARCHES,
            [("transaction_id", "==", transaction_id), ("queue_id", "==", queue_id)],
        )
        if existing is not None:
            return existing

        search = TransactionSearch(
            id=generate_uuid(),
            transaction_id=transaction_id,
            queue_id=queue_id,
            owner_id=owner_id,
            triggered_by=triggered_by,
        )
        return await self.repository.add(Collection.SEARCHES, search)

    async def record_attempt(self, search_id: str, attempt: SearchAttempt):
        """Append one attempt and roll its counters into the totals."""
        connected = len(attempt.document_ids_connected)
        ops = [
            ArrayUnion(Collection.SEARCHES, search_id, "strategies_attempted", [attempt.strategy]),
            ArrayUnion(Collection.SEARCHES, search_id, "attempts", [attempt.to_dict()]),
            Update(Collection.SEARCHES, search_id, {"updated_at": utc_now()}),
        ]
        if connected:
            ops.append(Increment(Collection.SEARCHES, search_id, "total_files_connected", connected))
            ops.append(Update(Collection.SEARCHES, search_id, {"automation_source": attempt.strategy}))
        if attempt.ai_calls:
            ops.append(Increment(Collection.SEARCHES, search_id, "total_ai_calls", attempt.ai_calls))
        if attempt.ai_tokens:
            ops.append(Increment(Collection.SEARCHES, search_id, "total_ai_tokens", attempt.ai_tokens))
        await self.repository.atomic_write(ops)

    async def finish(self, search_id: str):
        await self.repository.atomic_write([
            Update(Collection.SEARCHES, search_id, {"status": SearchStatus.COMPLETED.value, "updated_at": utc_now()}),
        ])

    async def for_transaction(self, transaction_id: str, owner_id: str):
        return await self.repository.query(
            Collection.SEARCHES,
            [("transaction_id", "==", transaction_id), ("owner_id", "==", owner_id)],
            order_by="created_at",
            descending=True,
        )
