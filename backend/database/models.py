"""
Precision Search - Database Models

Defines SQLAlchemy tables for:
- TransactionDB: bank statement lines and their matching state
- DocumentDB: uploaded / mail-ingested evidence
- FileConnectionDB: document <-> transaction junction
- PartnerDB, MailboxDB: strategy context
- PrecisionSearchQueueDB: resumable matching jobs
- TransactionSearchDB: per-transaction attempt log

Column names mirror the fields of precision_search.models so rows map
onto records one to one.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Integer, BigInteger, Boolean, Float, DateTime, JSON,
    UniqueConstraint, Index
)
from sqlalchemy.types import TypeDecorator

from database.connection import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that comes back as UTC on every backend."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class ColumnDictMixin:
    def to_dict(self):
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            result[column.name] = value.isoformat() if isinstance(value, datetime) else value
        return result


# ==================== TRANSACTIONS ====================

class TransactionDB(ColumnDictMixin, Base):
    """Bank statement line. Amount is signed, in minor units."""
    __tablename__ = 'transactions'

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    date = Column(UTCDateTime, nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default='EUR')
    name = Column(Text, nullable=False, default='')
    description = Column(Text, nullable=True)
    reference = Column(Text, nullable=True)
    partner_id = Column(String(36), nullable=True, index=True)
    partner_name = Column(String(255), nullable=True)
    document_ids = Column(JSON, nullable=False, default=list)
    is_complete = Column(Boolean, nullable=False, default=False, index=True)
    no_receipt_override = Column(Boolean, nullable=False, default=False)
    rejected_document_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index('ix_transactions_owner_incomplete_date', 'owner_id', 'is_complete', 'date'),
        {'extend_existing': True},
    )


# ==================== DOCUMENTS ====================

class DocumentDB(ColumnDictMixin, Base):
    """Evidence file; extracted_* columns are filled by the extraction service."""
    __tablename__ = 'documents'

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    content_hash = Column(String(64), nullable=False, index=True)
    file_name = Column(String(500), nullable=False, default='')
    mime_type = Column(String(100), nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    storage_path = Column(Text, nullable=True)
    download_url = Column(Text, nullable=True)
    source_type = Column(String(30), nullable=False, default='upload')

    # Extraction
    extracted_date = Column(UTCDateTime, nullable=True)
    extracted_amount = Column(BigInteger, nullable=True)
    extracted_currency = Column(String(3), nullable=True)
    extracted_partner = Column(String(255), nullable=True)
    extracted_text = Column(Text, nullable=True)
    partner_id = Column(String(36), nullable=True, index=True)
    extraction_complete = Column(Boolean, nullable=False, default=False)
    is_not_invoice = Column(Boolean, nullable=False, default=False)

    transaction_ids = Column(JSON, nullable=False, default=list)
    deleted_at = Column(UTCDateTime, nullable=True)

    # Mail provenance
    source_message_id = Column(String(255), nullable=True, index=True)
    source_attachment_id = Column(Text, nullable=True)
    source_mailbox_id = Column(String(36), nullable=True)
    source_mailbox_email = Column(String(255), nullable=True)
    source_subject = Column(Text, nullable=True)
    sender_email = Column(String(255), nullable=True)
    sender_domain = Column(String(255), nullable=True)
    sender_name = Column(String(255), nullable=True)
    source_email_date = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = {'extend_existing': True}


class FileConnectionDB(ColumnDictMixin, Base):
    """Junction table. One row per (document, transaction, owner)."""
    __tablename__ = 'file_connections'

    id = Column(String(36), primary_key=True)
    document_id = Column(String(36), nullable=False, index=True)
    transaction_id = Column(String(36), nullable=False, index=True)
    owner_id = Column(String(36), nullable=False, index=True)
    connection_type = Column(String(20), nullable=False, default='manual')
    confidence = Column(Float, nullable=True)
    source_type = Column(String(30), nullable=True)
    search_pattern = Column(Text, nullable=True)
    strategy = Column(String(30), nullable=True)
    mailbox_id = Column(String(36), nullable=True)
    mailbox_email = Column(String(255), nullable=True)
    message_id = Column(String(255), nullable=True)
    sender = Column(String(255), nullable=True)
    sender_name = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('document_id', 'transaction_id', 'owner_id', name='uq_file_connection'),
        {'extend_existing': True},
    )


# ==================== CONTEXT ====================

class PartnerDB(ColumnDictMixin, Base):
    __tablename__ = 'partners'

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    aliases = Column(JSON, nullable=False, default=list)
    email_domains = Column(JSON, nullable=False, default=list)
    website = Column(String(255), nullable=True)
    source_patterns = Column(JSON, nullable=False, default=list)
    invoice_links = Column(JSON, nullable=False, default=list)
    updated_at = Column(UTCDateTime, nullable=False)

    __table_args__ = {'extend_existing': True}


class MailboxDB(ColumnDictMixin, Base):
    __tablename__ = 'mailboxes'

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    provider = Column(String(20), nullable=False, default='gmail')
    is_active = Column(Boolean, nullable=False, default=True)
    needs_reauth = Column(Boolean, nullable=False, default=False)
    access_token = Column(Text, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = {'extend_existing': True}

    def to_dict(self):
        data = super().to_dict()
        data.pop("access_token", None)
        return data


# ==================== QUEUE ====================

class PrecisionSearchQueueDB(ColumnDictMixin, Base):
    """
    Precision search queue.

    Status flow: pending -> processing -> completed | failed,
    with processing -> pending for continuations and retries.
    """
    __tablename__ = 'precision_search_queue'

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), nullable=False, index=True)
    scope = Column(String(30), nullable=False)
    transaction_id = Column(String(36), nullable=True)
    triggered_by = Column(String(30), nullable=False)
    strategies = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, default='pending', index=True)

    transactions_to_process = Column(Integer, nullable=False, default=0)
    transactions_processed = Column(Integer, nullable=False, default=0)
    transactions_with_matches = Column(Integer, nullable=False, default=0)
    documents_connected = Column(Integer, nullable=False, default=0)
    cursor = Column(String(36), nullable=True)

    errors = Column(JSON, nullable=False, default=list)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    continuation_count = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, nullable=False, index=True)
    available_at = Column(UTCDateTime, nullable=False)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = {'extend_existing': True}


class TransactionSearchDB(ColumnDictMixin, Base):
    """Attempt log, one row per (transaction, queue item)."""
    __tablename__ = 'transaction_searches'

    id = Column(String(36), primary_key=True)
    transaction_id = Column(String(36), nullable=False, index=True)
    queue_id = Column(String(36), nullable=False, index=True)
    owner_id = Column(String(36), nullable=False)
    triggered_by = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default='processing')
    strategies_attempted = Column(JSON, nullable=False, default=list)
    attempts = Column(JSON, nullable=False, default=list)
    total_files_connected = Column(Integer, nullable=False, default=0)
    automation_source = Column(String(30), nullable=True)
    total_ai_calls = Column(Integer, nullable=False, default=0)
    total_ai_tokens = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('transaction_id', 'queue_id', name='uq_transaction_search_queue'),
        {'extend_existing': True},
    )
