"""
Precision Search - Data Types

Defines the records the queue engine reads and writes:
- Transaction: bank statement line plus matching state
- Document: uploaded or mail-ingested evidence
- Connection: junction between a Document and a Transaction
- Partner / Mailbox: context used by the strategies
- QueueItem: one resumable unit of matching work
- SearchAttempt / TransactionSearch: per-transaction attempt log

Optional fields are always present on the record and default to None.
"""

import uuid
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


class RecordMixin:
    """to_dict / from_dict shared by every stored record."""

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        names = set(cls.field_names())
        return cls(**{k: v for k, v in data.items() if k in names})


# ==================== ENUMS ====================

class Collection(str, Enum):
    """Logical collections behind the repository interface"""
    TRANSACTIONS = "transactions"
    DOCUMENTS = "documents"
    CONNECTIONS = "file_connections"
    PARTNERS = "partners"
    MAILBOXES = "mailboxes"
    QUEUE = "precision_search_queue"
    SEARCHES = "transaction_searches"


class SearchStrategy(str, Enum):
    """Matching strategies in priority order"""
    PARTNER_FILES = "partner_files"
    AMOUNT_FILES = "amount_files"
    EMAIL_ATTACHMENT = "email_attachment"
    EMAIL_INVOICE = "email_invoice"


DEFAULT_STRATEGIES = [
    SearchStrategy.PARTNER_FILES,
    SearchStrategy.AMOUNT_FILES,
    SearchStrategy.EMAIL_ATTACHMENT,
    SearchStrategy.EMAIL_INVOICE,
]


class QueueStatus(str, Enum):
    """Queue item lifecycle"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueScope(str, Enum):
    ALL_INCOMPLETE = "all_incomplete"
    SINGLE_TRANSACTION = "single_transaction"


class TriggerOrigin(str, Enum):
    """What created the queue item"""
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    UPSTREAM_EVENT = "upstream_event"


class ConnectionType(str, Enum):
    MANUAL = "manual"
    AUTO_MATCHED = "auto_matched"


class DocumentSourceType(str, Enum):
    """Where a document came from"""
    UPLOAD = "upload"
    GMAIL = "gmail"
    GMAIL_HTML_INVOICE = "gmail_html_invoice"


class SearchStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"


# ==================== RECORDS ====================

@dataclass
class Transaction(RecordMixin):
    """Bank statement line. Amount is signed, in minor units."""
    id: str
    owner_id: str
    date: datetime
    amount: int
    currency: str = "EUR"
    name: str = ""
    description: Optional[str] = None
    reference: Optional[str] = None
    partner_id: Optional[str] = None
    partner_name: Optional[str] = None
    document_ids: List[str] = field(default_factory=list)
    is_complete: bool = False
    no_receipt_override: bool = False
    rejected_document_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    def has_rejected(self, document_id: str) -> bool:
        return document_id in (self.rejected_document_ids or [])


@dataclass
class Document(RecordMixin):
    """Invoice/receipt evidence. Extracted fields are filled by the extraction service."""
    id: str
    owner_id: str
    content_hash: str
    file_name: str = ""
    mime_type: str = "application/pdf"
    size_bytes: int = 0
    storage_path: Optional[str] = None
    download_url: Optional[str] = None
    source_type: str = DocumentSourceType.UPLOAD.value
    extracted_date: Optional[datetime] = None
    extracted_amount: Optional[int] = None
    extracted_currency: Optional[str] = None
    extracted_partner: Optional[str] = None
    extracted_text: Optional[str] = None
    partner_id: Optional[str] = None
    transaction_ids: List[str] = field(default_factory=list)
    extraction_complete: bool = False
    is_not_invoice: bool = False
    deleted_at: Optional[datetime] = None
    source_message_id: Optional[str] = None
    source_attachment_id: Optional[str] = None
    source_mailbox_id: Optional[str] = None
    source_mailbox_email: Optional[str] = None
    source_subject: Optional[str] = None
    sender_email: Optional[str] = None
    sender_domain: Optional[str] = None
    sender_name: Optional[str] = None
    source_email_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Connection(RecordMixin):
    """Junction record. Unique per (document_id, transaction_id, owner_id)."""
    id: str
    document_id: str
    transaction_id: str
    owner_id: str
    connection_type: str = ConnectionType.MANUAL.value
    confidence: Optional[float] = None
    source_type: Optional[str] = None
    search_pattern: Optional[str] = None
    strategy: Optional[str] = None
    mailbox_id: Optional[str] = None
    mailbox_email: Optional[str] = None
    message_id: Optional[str] = None
    sender: Optional[str] = None
    sender_name: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Partner(RecordMixin):
    """
    Counterparty. source_patterns entries: domain, mailbox_id, source_type,
    confidence, usage_count, created_at, last_used_at.
    invoice_links entries: url, anchor_text, message_id, subject, discovered_at.
    """
    id: str
    owner_id: str
    name: str
    aliases: List[str] = field(default_factory=list)
    email_domains: List[str] = field(default_factory=list)
    website: Optional[str] = None
    source_patterns: List[Dict[str, Any]] = field(default_factory=list)
    invoice_links: List[Dict[str, Any]] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class Mailbox(RecordMixin):
    """A connected mailbox. Token refresh happens outside this subsystem."""
    id: str
    owner_id: str
    email: str
    provider: str = "gmail"
    is_active: bool = True
    needs_reauth: bool = False
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class QueueItem(RecordMixin):
    id: str
    owner_id: str
    scope: str = QueueScope.ALL_INCOMPLETE.value
    transaction_id: Optional[str] = None
    triggered_by: str = TriggerOrigin.MANUAL.value
    strategies: List[str] = field(default_factory=lambda: [s.value for s in DEFAULT_STRATEGIES])
    status: str = QueueStatus.PENDING.value
    transactions_to_process: int = 0
    transactions_processed: int = 0
    transactions_with_matches: int = 0
    documents_connected: int = 0
    cursor: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    continuation_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    available_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class SearchAttempt(RecordMixin):
    """One strategy run against one transaction."""
    strategy: str
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    search_params: Dict[str, Any] = field(default_factory=dict)
    candidates_found: int = 0
    candidates_evaluated: int = 0
    matches_found: int = 0
    document_ids_connected: List[str] = field(default_factory=list)
    best_score: Optional[int] = None
    invoice_links_found: List[str] = field(default_factory=list)
    error: Optional[str] = None
    ai_calls: int = 0
    ai_tokens: int = 0

    def record_match(self, document_id: str, score: Optional[int] = None):
        self.matches_found += 1
        self.document_ids_connected.append(document_id)
        if score is not None and (self.best_score is None or score > self.best_score):
            self.best_score = score

    def finish(self) -> "SearchAttempt":
        self.completed_at = utc_now()
        return self


@dataclass
class TransactionSearch(RecordMixin):
    """Attempt log for one transaction within one queue item."""
    id: str
    transaction_id: str
    queue_id: str
    owner_id: str
    triggered_by: str
    status: str = SearchStatus.PROCESSING.value
    strategies_attempted: List[str] = field(default_factory=list)
    attempts: List[Dict[str, Any]] = field(default_factory=list)
    total_files_connected: int = 0
    automation_source: Optional[str] = None
    total_ai_calls: int = 0
    total_ai_tokens: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


RECORD_TYPES = {
    Collection.TRANSACTIONS: Transaction,
    Collection.DOCUMENTS: Document,
    Collection.CONNECTIONS: Connection,
    Collection.PARTNERS: Partner,
    Collection.MAILBOXES: Mailbox,
    Collection.QUEUE: QueueItem,
    Collection.SEARCHES: TransactionSearch,
}
