"""
Unit Tests for Connect, Disconnect, Ingestion and Pattern Learning

Tests:
- connect: idempotent junction, both link lists, is_complete, ownership,
  concurrent connects of the same pair
- disconnect: junction removal, completeness recompute, rejection
- Pattern learning after mail-sourced connections
- Evidence ingestion: content dedup, soft-delete restore, mail provenance
- HTML email rendering to PDF
- Deterministic mock query suggestion and email classification

Run with: pytest tests/test_precision_search_connect.py -v
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from database.connection import create_engine_for_url, init_db, make_session_factory
from precision_search.connect import ConnectionProvenance, connect, connection_id_for, disconnect
from precision_search.email_parsing import MailAttachment
from precision_search.errors import AccessDeniedError, NotFoundError, RejectedDocumentError, RepositoryError
from precision_search.external import MockEmailClassifierClient, MockQuerySuggestionClient
from precision_search.html_renderer import html_invoice_filename, html_to_text_blocks, render_html_to_pdf
from precision_search.ingestion import EvidenceIngestionService, MailSource, content_hash
from precision_search.models import Collection, ConnectionType, DocumentSourceType
from precision_search.pattern_learning import INITIAL_PATTERN_CONFIDENCE, learn_from_connection
from precision_search.repository import InMemoryRepository, Put
from precision_search.sql_repository import SqlAlchemyRepository
from precision_search.storage import InMemoryBlobStorage, build_storage_path

from fakes import OWNER, dt, make_document, make_partner, make_transaction, seed


class RacingRepository(InMemoryRepository):
    """Another writer commits the same connection just before our write fails on the unique key."""

    async def atomic_write(self, ops):
        await super().atomic_write(ops)
        if any(isinstance(op, Put) and op.collection == Collection.CONNECTIONS for op in ops):
            raise RepositoryError("UNIQUE constraint failed: file_connections.document_id")


async def seeded_repository(*, transaction=None, document=None, partner=None):
    repository = InMemoryRepository()
    await seed(repository, Collection.TRANSACTIONS, transaction or make_transaction(id="tx-1"))
    await seed(repository, Collection.DOCUMENTS, document or make_document(id="doc-1"))
    if partner is not None:
        await seed(repository, Collection.PARTNERS, partner)
    return repository


class TestConnect:
    """Test the connect operation."""

    @pytest.mark.asyncio
    async def test_connect_links_both_sides(self):
        repository = await seeded_repository()

        result = await connect(repository, "doc-1", "tx-1", OWNER, connection_type=ConnectionType.AUTO_MATCHED,
                               confidence=88)

        transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
        document = await repository.get(Collection.DOCUMENTS, "doc-1")
        connection = await repository.get(Collection.CONNECTIONS, result.connection_id)

        assert result.already_connected is False
        assert transaction.document_ids == ["doc-1"]
        assert transaction.is_complete is True
        assert document.transaction_ids == ["tx-1"]
        assert connection.connection_type == "auto_matched"
        assert connection.confidence == 88
        assert connection.source_type == DocumentSourceType.UPLOAD.value

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        repository = await seeded_repository()

        first = await connect(repository, "doc-1", "tx-1", OWNER)
        second = await connect(repository, "doc-1", "tx-1", OWNER)

        assert second.already_connected is True
        assert second.connection_id == first.connection_id
        assert await repository.count(Collection.CONNECTIONS) == 1
        transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
        assert transaction.document_ids == ["doc-1"]

    @pytest.mark.asyncio
    async def test_lost_race_returns_existing_connection(self):
        repository = RacingRepository()
        await seed(repository, Collection.TRANSACTIONS, make_transaction(id="tx-1"))
        await seed(repository, Collection.DOCUMENTS, make_document(id="doc-1"))

        result = await connect(repository, "doc-1", "tx-1", OWNER)

        assert result.already_connected is True
        assert result.connection_id == connection_id_for("doc-1", "tx-1", OWNER)
        assert await repository.count(Collection.CONNECTIONS) == 1

    @pytest.mark.asyncio
    async def test_write_failure_without_connection_propagates(self):
        repository = await seeded_repository()
        repository.atomic_write = AsyncMock(side_effect=RepositoryError("disk full"))

        with pytest.raises(RepositoryError):
            await connect(repository, "doc-1", "tx-1", OWNER)

    @pytest.mark.asyncio
    async def test_concurrent_connects_on_sql_store(self, tmp_path):
        engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'connect.db'}")
        await init_db(engine)
        try:
            repository = SqlAlchemyRepository(make_session_factory(engine))
            await seed(repository, Collection.TRANSACTIONS, make_transaction(id="tx-1"))
            await seed(repository, Collection.DOCUMENTS, make_document(id="doc-1"))

            results = await asyncio.gather(
                connect(repository, "doc-1", "tx-1", OWNER, connection_type=ConnectionType.AUTO_MATCHED),
                connect(repository, "doc-1", "tx-1", OWNER, connection_type=ConnectionType.AUTO_MATCHED),
            )

            assert {r.connection_id for r in results} == {connection_id_for("doc-1", "tx-1", OWNER)}
            assert await repository.count(Collection.CONNECTIONS) == 1
            transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
            document = await repository.get(Collection.DOCUMENTS, "doc-1")
            assert transaction.document_ids == ["doc-1"]
            assert transaction.is_complete is True
            assert document.transaction_ids == ["tx-1"]
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_to_dict(self):
        repository = await seeded_repository()
        result = await connect(repository, "doc-1", "tx-1", OWNER)
        assert result.to_dict() == {"connectionId": result.connection_id, "alreadyConnected": False}

    @pytest.mark.asyncio
    async def test_missing_records(self):
        repository = await seeded_repository()
        with pytest.raises(NotFoundError):
            await connect(repository, "doc-missing", "tx-1", OWNER)
        with pytest.raises(NotFoundError):
            await connect(repository, "doc-1", "tx-missing", OWNER)

    @pytest.mark.asyncio
    async def test_other_owner_is_denied(self):
        repository = await seeded_repository(document=make_document(id="doc-1", owner_id="user-2"))
        with pytest.raises(AccessDeniedError):
            await connect(repository, "doc-1", "tx-1", OWNER)
        assert await repository.count(Collection.CONNECTIONS) == 0

    @pytest.mark.asyncio
    async def test_automation_cannot_reconnect_rejected_document(self):
        repository = await seeded_repository(
            transaction=make_transaction(id="tx-1", rejected_document_ids=["doc-1"])
        )

        with pytest.raises(RejectedDocumentError):
            await connect(repository, "doc-1", "tx-1", OWNER, connection_type=ConnectionType.AUTO_MATCHED)

        result = await connect(repository, "doc-1", "tx-1", OWNER, connection_type=ConnectionType.MANUAL)
        assert result.already_connected is False

    @pytest.mark.asyncio
    async def test_provenance_is_stored(self):
        repository = await seeded_repository()
        provenance = ConnectionProvenance(
            source_type="gmail",
            search_pattern="amazon has:attachment",
            strategy="email_attachment",
            mailbox_id="mb-1",
            mailbox_email="owner@example.com",
            message_id="m1",
            sender="billing@amazon.de",
            sender_name="Amazon",
        )

        result = await connect(repository, "doc-1", "tx-1", OWNER, provenance=provenance)

        connection = await repository.get(Collection.CONNECTIONS, result.connection_id)
        assert connection.search_pattern == "amazon has:attachment"
        assert connection.strategy == "email_attachment"
        assert connection.message_id == "m1"
        assert connection.sender == "billing@amazon.de"


class TestDisconnect:
    """Test the disconnect operation."""

    @pytest.mark.asyncio
    async def test_disconnect_and_reject(self):
        repository = await seeded_repository()
        await connect(repository, "doc-1", "tx-1", OWNER)

        result = await disconnect(repository, "doc-1", "tx-1", OWNER)

        transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
        document = await repository.get(Collection.DOCUMENTS, "doc-1")
        assert result.removed is True
        assert result.rejected is True
        assert result.is_complete is False
        assert transaction.document_ids == []
        assert transaction.is_complete is False
        assert transaction.rejected_document_ids == ["doc-1"]
        assert document.transaction_ids == []
        assert await repository.count(Collection.CONNECTIONS) == 0

    @pytest.mark.asyncio
    async def test_disconnect_without_reject(self):
        repository = await seeded_repository()
        await connect(repository, "doc-1", "tx-1", OWNER)

        result = await disconnect(repository, "doc-1", "tx-1", OWNER, reject=False)

        transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
        assert result.rejected is False
        assert transaction.rejected_document_ids == []

    @pytest.mark.asyncio
    async def test_remaining_documents_keep_transaction_complete(self):
        repository = await seeded_repository()
        await seed(repository, Collection.DOCUMENTS, make_document(id="doc-2"))
        await connect(repository, "doc-1", "tx-1", OWNER)
        await connect(repository, "doc-2", "tx-1", OWNER)

        result = await disconnect(repository, "doc-1", "tx-1", OWNER)

        transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
        assert result.is_complete is True
        assert transaction.document_ids == ["doc-2"]

    @pytest.mark.asyncio
    async def test_no_receipt_override_keeps_transaction_complete(self):
        repository = await seeded_repository(transaction=make_transaction(id="tx-1", no_receipt_override=True))
        await connect(repository, "doc-1", "tx-1", OWNER)

        result = await disconnect(repository, "doc-1", "tx-1", OWNER)

        assert result.is_complete is True

    @pytest.mark.asyncio
    async def test_disconnect_without_junction_still_rejects(self):
        repository = await seeded_repository()

        result = await disconnect(repository, "doc-1", "tx-1", OWNER)

        transaction = await repository.get(Collection.TRANSACTIONS, "tx-1")
        assert result.removed is False
        assert transaction.rejected_document_ids == ["doc-1"]


class TestPatternLearning:
    """Test pattern learning after mail-sourced connections."""

    @pytest.mark.asyncio
    async def test_connect_with_sender_learns_pattern(self):
        repository = await seeded_repository(
            transaction=make_transaction(id="tx-1", partner_id="p-1"),
            partner=make_partner(id="p-1"),
        )
        provenance = ConnectionProvenance(source_type="gmail", mailbox_id="mb-1", sender="billing@amazon.de")

        await connect(repository, "doc-1", "tx-1", OWNER, provenance=provenance)

        partner = await repository.get(Collection.PARTNERS, "p-1")
        assert partner.email_domains == ["amazon.de"]
        assert len(partner.source_patterns) == 1
        pattern = partner.source_patterns[0]
        assert pattern["domain"] == "amazon.de"
        assert pattern["mailbox_id"] == "mb-1"
        assert pattern["source_type"] == "gmail"
        assert pattern["confidence"] == INITIAL_PATTERN_CONFIDENCE
        assert pattern["usage_count"] == 1

    @pytest.mark.asyncio
    async def test_repeat_usage_bumps_counter(self):
        repository = InMemoryRepository()
        await seed(repository, Collection.PARTNERS, make_partner(id="p-1"))

        assert await learn_from_connection(repository, OWNER, "p-1", "a@amazon.de", mailbox_id="mb-1") is True
        assert await learn_from_connection(repository, OWNER, "p-1", "b@amazon.de", mailbox_id="mb-1") is True
        assert await learn_from_connection(repository, OWNER, "p-1", "a@amazon.de", mailbox_id="mb-2") is True

        partner = await repository.get(Collection.PARTNERS, "p-1")
        assert partner.email_domains == ["amazon.de"]
        assert [(p["mailbox_id"], p["usage_count"]) for p in partner.source_patterns] == [("mb-1", 2), ("mb-2", 1)]

    @pytest.mark.asyncio
    async def test_nothing_to_learn(self):
        repository = InMemoryRepository()
        await seed(repository, Collection.PARTNERS, make_partner(id="p-1", owner_id="user-2"))

        assert await learn_from_connection(repository, OWNER, None, "a@amazon.de") is False
        assert await learn_from_connection(repository, OWNER, "p-1", "not-an-address") is False
        assert await learn_from_connection(repository, OWNER, "p-1", "a@amazon.de") is False
        assert await learn_from_connection(repository, OWNER, "p-missing", "a@amazon.de") is False

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        repository = MagicMock()
        repository.get = AsyncMock(side_effect=RuntimeError("store offline"))

        assert await learn_from_connection(repository, OWNER, "p-1", "a@amazon.de") is False


class TestEvidenceIngestion:
    """Test evidence ingestion and dedup."""

    @pytest.fixture
    def repository(self):
        return InMemoryRepository()

    @pytest.fixture
    def storage(self):
        return InMemoryBlobStorage()

    @pytest.fixture
    def service(self, repository, storage):
        return EvidenceIngestionService(repository, storage)

    @pytest.mark.asyncio
    async def test_ingest_creates_document_and_blob(self, service, repository, storage):
        result = await service.ingest(OWNER, b"%PDF invoice", "Invoice 01/2024.pdf", "application/pdf")

        document = await repository.get(Collection.DOCUMENTS, result.document_id)
        assert result.created is True
        assert document.content_hash == content_hash(b"%PDF invoice")
        assert document.size_bytes == len(b"%PDF invoice")
        assert document.extraction_complete is False
        assert document.source_type == DocumentSourceType.UPLOAD.value
        assert document.storage_path.startswith(f"files/{OWNER}/")
        assert document.storage_path.endswith("_Invoice_01_2024.pdf")
        assert storage.blobs[document.storage_path] == b"%PDF invoice"
        assert document.download_url == f"memory://{document.storage_path}"

    @pytest.mark.asyncio
    async def test_same_content_is_deduplicated(self, service, repository, storage):
        first = await service.ingest(OWNER, b"same bytes", "a.pdf", "application/pdf")
        second = await service.ingest(OWNER, b"same bytes", "b.pdf", "application/pdf")

        assert second.created is False
        assert second.document_id == first.document_id
        assert len(storage.blobs) == 1
        assert await repository.count(Collection.DOCUMENTS) == 1

    @pytest.mark.asyncio
    async def test_dedup_is_per_owner(self, service, repository):
        first = await service.ingest(OWNER, b"same bytes", "a.pdf", "application/pdf")
        other = await service.ingest("user-2", b"same bytes", "a.pdf", "application/pdf")

        assert other.created is True
        assert other.document_id != first.document_id

    @pytest.mark.asyncio
    async def test_soft_deleted_duplicate_is_restored(self, service, repository):
        deleted = make_document(id="doc-old", content_hash=content_hash(b"bytes"), deleted_at=dt(2024, 1, 1))
        await seed(repository, Collection.DOCUMENTS, deleted)

        result = await service.ingest(OWNER, b"bytes", "a.pdf", "application/pdf")

        assert result.document_id == "doc-old"
        assert result.restored is True
        stored = await repository.get(Collection.DOCUMENTS, "doc-old")
        assert stored.deleted_at is None

    @pytest.mark.asyncio
    async def test_attachment_provenance(self, service, repository):
        mail = MailSource(
            message_id="m1",
            mailbox_id="mb-1",
            mailbox_email="owner@example.com",
            subject="Your invoice",
            sender_email="billing@amazon.de",
            sender_domain="amazon.de",
            sender_name="Amazon",
            email_date=dt(2024, 1, 14),
        )

        result = await service.ingest_attachment(
            OWNER, b"%PDF attachment", MailAttachment("att-1", "invoice.pdf", "application/pdf"), mail
        )

        document = await repository.get(Collection.DOCUMENTS, result.document_id)
        assert document.source_type == DocumentSourceType.GMAIL.value
        assert document.source_message_id == "m1"
        assert document.source_attachment_id == "att-1"
        assert document.sender_domain == "amazon.de"
        assert document.source_email_date == dt(2024, 1, 14)
        found = await service.find_by_source(OWNER, "m1", "att-1")
        assert found.id == result.document_id
        assert await service.find_by_source(OWNER, "m1", "att-2") is None

    @pytest.mark.asyncio
    async def test_html_invoice_is_rendered_and_deduplicated(self, service, repository, storage):
        html = "<html><body><h1>Thank you for your order</h1><p>Total 125,50 EUR</p></body></html>"
        mail = MailSource(
            message_id="m2",
            subject="Your order #123 - ACME!",
            sender_email="shop@acme.example",
            sender_name="ACME",
            email_date=dt(2024, 1, 15),
        )

        first = await service.ingest_html_invoice(OWNER, html, mail)
        second = await service.ingest_html_invoice(OWNER, html, mail)

        document = await repository.get(Collection.DOCUMENTS, first.document_id)
        assert first.created is True
        assert second.created is False
        assert document.source_type == DocumentSourceType.GMAIL_HTML_INVOICE.value
        assert document.mime_type == "application/pdf"
        assert document.file_name == "Your order 123  ACME_2024-01-15.pdf"
        assert storage.blobs[document.storage_path].startswith(b"%PDF")
        found = await service.find_html_invoice(OWNER, "m2")
        assert found.id == first.document_id


class TestHtmlRendering:
    """Test HTML email rendering."""

    def test_text_blocks_drop_scripts_and_styles(self):
        html = "<html><head><style>p {}</style></head><body><p>Total</p><br>125,50 EUR<script>x()</script></body></html>"
        assert html_to_text_blocks(html) == ["Total", "125,50 EUR"]

    def test_render_is_deterministic(self):
        html = "<p>Order <b>4711</b> &amp; more</p>"
        first = render_html_to_pdf(html, "Order 4711", "ACME <shop@acme.example>", dt(2024, 1, 15))
        second = render_html_to_pdf(html, "Order 4711", "ACME <shop@acme.example>", dt(2024, 1, 15))
        assert first.startswith(b"%PDF")
        assert first == second

    def test_filename(self):
        assert html_invoice_filename(None, None) == "invoice_undated.pdf"
        assert html_invoice_filename("Receipt", dt(2024, 3, 2)) == "Receipt_2024-03-02.pdf"

    def test_storage_path(self):
        assert build_storage_path(OWNER, "my file (1).pdf", 1700000000000) == f"files/{OWNER}/1700000000000_my_file__1_.pdf"


class TestMockExternalClients:
    """Test the deterministic stand-ins for the external services."""

    @pytest.mark.asyncio
    async def test_query_suggestions(self):
        client = MockQuerySuggestionClient()
        transaction = make_transaction(name="PAYPAL *SPOTIFY 1234567", partner_name="Spotify AB")

        without_partner = await client.suggest(transaction)
        with_partner = await client.suggest(
            transaction, make_partner(name="Spotify", email_domains=["spotify.com"])
        )

        assert without_partner.queries == ["spotify"]
        assert with_partner.queries == ["spotify", "from:spotify.com"]
        assert with_partner.usage.calls == 0

    @pytest.mark.asyncio
    async def test_email_classification(self):
        client = MockEmailClassifierClient()
        html = (
            "<p>Thank you for your order</p><p>Total: 125,50 EUR</p>"
            '<a href="https://shop.example/inv/1">Download invoice</a>'
            '<a href="https://shop.example/help">Help</a>'
        )

        analysis = await client.analyze("Order", "shop@shop.example", html, None, make_transaction())

        assert analysis.is_mail_invoice is True
        assert analysis.mail_invoice_confidence == pytest.approx(0.95)
        assert [link.url for link in analysis.invoice_links] == ["https://shop.example/inv/1"]
        assert analysis.has_invoice_link is True

    @pytest.mark.asyncio
    async def test_plain_email_is_not_an_invoice(self):
        client = MockEmailClassifierClient()
        analysis = await client.analyze("Lunch", "friend@example.com", "<p>See you at noon</p>", None,
                                        make_transaction())
        assert analysis.is_mail_invoice is False
        assert analysis.invoice_links == []
