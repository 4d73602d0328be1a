"""
Unit Tests for the Precision Search Repository

Runs the same contract against:
- InMemoryRepository
- SqlAlchemyRepository on an aiosqlite database file

Covers filters, keyset pagination, compare-and-set updates, array
operations and all-or-nothing writes.

Run with: pytest tests/test_precision_search_repository.py -v
"""

import pytest
from contextlib import asynccontextmanager

from database.connection import create_engine_for_url, init_db, make_session_factory
from precision_search.errors import ConflictError, NotFoundError
from precision_search.models import Collection, QueueItem, QueueStatus
from precision_search.repository import (
    ArrayRemove,
    ArrayUnion,
    Delete,
    Increment,
    InMemoryRepository,
    Put,
    Update,
    write_in_chunks,
)
from precision_search.sql_repository import SqlAlchemyRepository

from fakes import OWNER, dt, make_document, make_partner, make_transaction, seed

BACKENDS = ["memory", "sql"]


@asynccontextmanager
async def open_repository(kind, tmp_path):
    if kind == "memory":
        yield InMemoryRepository()
        return

    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'precision.db'}")
    await init_db(engine)
    try:
        yield SqlAlchemyRepository(make_session_factory(engine))
    finally:
        await engine.dispose()


@pytest.mark.parametrize("kind", BACKENDS)
class TestRepositoryContract:
    """Behaviour shared by every repository implementation."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            transaction = make_transaction(id="tx-1", document_ids=["doc-1"], rejected_document_ids=["doc-9"])
            await repository.add(Collection.TRANSACTIONS, transaction)

            stored = await repository.get(Collection.TRANSACTIONS, "tx-1")

            assert stored == transaction
            assert await repository.get(Collection.TRANSACTIONS, "missing") is None

    @pytest.mark.asyncio
    async def test_filters_and_count(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await seed(
                repository,
                Collection.TRANSACTIONS,
                make_transaction(id="tx-1", amount=-1000),
                make_transaction(id="tx-2", amount=-2000, is_complete=True),
                make_transaction(id="tx-3", amount=-3000, owner_id="user-2"),
                make_transaction(id="tx-4", amount=-4000, partner_id="p-1"),
            )

            incomplete = await repository.query(
                Collection.TRANSACTIONS,
                [("owner_id", "==", OWNER), ("is_complete", "==", False)],
                order_by="amount",
            )
            assert [t.id for t in incomplete] == ["tx-4", "tx-1"]

            assert await repository.count(Collection.TRANSACTIONS, [("owner_id", "==", OWNER)]) == 3
            assert await repository.count(Collection.TRANSACTIONS, [("partner_id", "==", None)]) == 3
            assert await repository.count(Collection.TRANSACTIONS, [("partner_id", "!=", "p-1")]) == 3

            selected = await repository.query(Collection.TRANSACTIONS, [("id", "in", ["tx-1", "tx-3"])])
            assert sorted(t.id for t in selected) == ["tx-1", "tx-3"]

    @pytest.mark.asyncio
    async def test_date_range_query(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await seed(
                repository,
                Collection.DOCUMENTS,
                make_document(id="early", extracted_date=dt(2023, 12, 1)),
                make_document(id="inside", extracted_date=dt(2024, 1, 10)),
                make_document(id="edge", extracted_date=dt(2024, 2, 14)),
                make_document(id="late", extracted_date=dt(2024, 3, 1)),
                make_document(id="undated", extracted_date=None),
            )

            rows = await repository.query(
                Collection.DOCUMENTS,
                [("extracted_date", ">=", dt(2023, 12, 16)), ("extracted_date", "<=", dt(2024, 2, 14))],
                order_by="extracted_date",
            )

            assert [d.id for d in rows] == ["inside", "edge"]

    @pytest.mark.asyncio
    async def test_array_contains(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await seed(
                repository,
                Collection.DOCUMENTS,
                make_document(id="linked", transaction_ids=["tx-1"]),
                make_document(id="free"),
            )

            rows = await repository.query(Collection.DOCUMENTS, [("transaction_ids", "array_contains", "tx-1")])

            assert [d.id for d in rows] == ["linked"]

    @pytest.mark.asyncio
    async def test_keyset_pagination_is_stable_on_ties(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await seed(
                repository,
                Collection.TRANSACTIONS,
                make_transaction(id="tx-a", date=dt(2024, 1, 10)),
                make_transaction(id="tx-b", date=dt(2024, 1, 20)),
                make_transaction(id="tx-c", date=dt(2024, 1, 20)),
                make_transaction(id="tx-d", date=dt(2024, 1, 5)),
                make_transaction(id="tx-e", date=dt(2024, 1, 15)),
            )

            seen = []
            cursor = None
            while True:
                page = await repository.query(
                    Collection.TRANSACTIONS,
                    [("owner_id", "==", OWNER)],
                    order_by="date",
                    descending=True,
                    limit=2,
                    start_after=cursor,
                )
                seen.extend(t.id for t in page)
                if len(page) < 2:
                    break
                cursor = page[-1].id

            assert seen == ["tx-c", "tx-b", "tx-e", "tx-a", "tx-d"]

    @pytest.mark.asyncio
    async def test_compare_and_set_update(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await repository.add(Collection.QUEUE, QueueItem(id="q-1", owner_id=OWNER))

            await repository.atomic_write([
                Update(Collection.QUEUE, "q-1", {"status": QueueStatus.PROCESSING.value},
                       expected={"status": QueueStatus.PENDING.value}),
            ])
            with pytest.raises(ConflictError):
                await repository.atomic_write([
                    Update(Collection.QUEUE, "q-1", {"status": QueueStatus.PROCESSING.value},
                           expected={"status": QueueStatus.PENDING.value}),
                ])

            stored = await repository.get(Collection.QUEUE, "q-1")
            assert stored.status == QueueStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_array_and_counter_operations(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await repository.add(Collection.TRANSACTIONS, make_transaction(id="tx-1", document_ids=["doc-1"]))
            await repository.add(Collection.QUEUE, QueueItem(id="q-1", owner_id=OWNER))

            await repository.atomic_write([
                ArrayUnion(Collection.TRANSACTIONS, "tx-1", "document_ids", ["doc-1", "doc-2"]),
                ArrayUnion(Collection.TRANSACTIONS, "tx-1", "rejected_document_ids", ["doc-3"]),
                ArrayRemove(Collection.TRANSACTIONS, "tx-1", "document_ids", ["doc-1"]),
                Increment(Collection.QUEUE, "q-1", "documents_connected", 2),
                Increment(Collection.QUEUE, "q-1", "documents_connected"),
            ])

            transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
            item = await repository.get(Collection.QUEUE, "q-1")
            assert transaction.document_ids == ["doc-2"]
            assert transaction.rejected_document_ids == ["doc-3"]
            assert item.documents_connected == 3

    @pytest.mark.asyncio
    async def test_array_union_of_dicts(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await repository.add(Collection.PARTNERS, make_partner(id="p-1"))
            link = {"url": "https://shop.example/invoice/1", "message_id": "m1"}

            await repository.atomic_write([ArrayUnion(Collection.PARTNERS, "p-1", "invoice_links", [link])])
            await repository.atomic_write([ArrayUnion(Collection.PARTNERS, "p-1", "invoice_links", [link])])

            partner = await repository.get(Collection.PARTNERS, "p-1")
            assert partner.invoice_links == [link]

    @pytest.mark.asyncio
    async def test_failed_write_leaves_store_untouched(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await repository.add(Collection.TRANSACTIONS, make_transaction(id="tx-1"))

            with pytest.raises(NotFoundError):
                await repository.atomic_write([
                    Update(Collection.TRANSACTIONS, "tx-1", {"is_complete": True}),
                    Put(Collection.DOCUMENTS, make_document(id="doc-new")),
                    ArrayUnion(Collection.DOCUMENTS, "doc-missing", "transaction_ids", ["tx-1"]),
                ])

            transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
            assert transaction.is_complete is False
            assert await repository.get(Collection.DOCUMENTS, "doc-new") is None

    @pytest.mark.asyncio
    async def test_delete(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await repository.add(Collection.DOCUMENTS, make_document(id="doc-1"))

            await repository.atomic_write([Delete(Collection.DOCUMENTS, "doc-1"), Delete(Collection.DOCUMENTS, "gone")])

            assert await repository.get(Collection.DOCUMENTS, "doc-1") is None

    @pytest.mark.asyncio
    async def test_first(self, kind, tmp_path):
        async with open_repository(kind, tmp_path) as repository:
            await seed(
                repository,
                Collection.TRANSACTIONS,
                make_transaction(id="tx-1", date=dt(2024, 1, 1)),
                make_transaction(id="tx-2", date=dt(2024, 1, 2)),
            )

            latest = await repository.first(Collection.TRANSACTIONS, [("owner_id", "==", OWNER)],
                                            order_by="date", descending=True)

            assert latest.id == "tx-2"
            assert await repository.first(Collection.TRANSACTIONS, [("owner_id", "==", "nobody")]) is None


class TestInMemoryRepository:
    """Behaviour specific to the dict-backed store."""

    @pytest.mark.asyncio
    async def test_records_are_copied(self):
        repository = InMemoryRepository()
        transaction = make_transaction(id="tx-1")
        await repository.add(Collection.TRANSACTIONS, transaction)

        transaction.document_ids.append("doc-1")
        fetched = await repository.get(Collection.TRANSACTIONS, "tx-1")
        fetched.document_ids.append("doc-2")

        stored = await repository.get(Collection.TRANSACTIONS, "tx-1")
        assert stored.document_ids == []

    @pytest.mark.asyncio
    async def test_write_in_chunks(self):
        repository = InMemoryRepository()
        ops = [Put(Collection.DOCUMENTS, make_document(id=f"doc-{i}")) for i in range(5)]

        written = await write_in_chunks(repository, ops, chunk_size=2)

        assert written == 5
        assert repository.write_count == 3
        assert await repository.count(Collection.DOCUMENTS) == 5

    @pytest.mark.asyncio
    async def test_unknown_operator(self):
        repository = InMemoryRepository()
        await repository.add(Collection.TRANSACTIONS, make_transaction(id="tx-1"))
        with pytest.raises(ValueError):
            await repository.query(Collection.TRANSACTIONS, [("amount", "~", 1)])
