"""
Precision Search - Connect Operation

Links a Document to a Transaction:
- Idempotent under (document_id, transaction_id, owner_id)
- Junction record, both link lists and is_complete written in one atomic write
- Set-union appends, so a retried write never duplicates ids
- Pattern learning afterwards (best-effort)

Disconnect is the inverse and can mark the document as rejected so
automation never suggests it for that transaction again.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from .audit import AuditEventType, log_precision_search_event
from .errors import AccessDeniedError, NotFoundError, RejectedDocumentError, RepositoryError
from .models import (
    Collection,
    Connection,
    ConnectionType,
    Document,
    Transaction,
)
from .pattern_learning import learn_from_connection
from .repository import ArrayRemove, ArrayUnion, Delete, Put, Repository, Update

logger = logging.getLogger(__name__)

# Namespace for junction ids derived from (owner, document, transaction)
CONNECTION_NAMESPACE = uuid.UUID("5b0e4c1e-7d3a-4f0b-9c52-2f6d8a1e4b77")


@dataclass
class ConnectionProvenance:
    """Where the evidence was found."""
    source_type: Optional[str] = None
    search_pattern: Optional[str] = None
    strategy: Optional[str] = None
    mailbox_id: Optional[str] = None
    mailbox_email: Optional[str] = None
    message_id: Optional[str] = None
    sender: Optional[str] = None
    sender_name: Optional[str] = None


@dataclass
class ConnectResult:
    connection_id: str
    already_connected: bool

    def to_dict(self):
        return {"connectionId": self.connection_id, "alreadyConnected": self.already_connected}


@dataclass
class DisconnectResult:
    removed: bool
    rejected: bool
    is_complete: bool


async def _load_owned(
    repository: Repository, document_id: str, transaction_id: str, owner_id: str
) -> Tuple[Document, Transaction]:
    document = await repository.get(Collection.DOCUMENTS, document_id)
    if document is None:
        raise NotFoundError(f"Document {document_id} not found")
    transaction = await repository.get(Collection.TRANSACTIONS, transaction_id)
    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    if document.owner_id != owner_id or transaction.owner_id != owner_id:
        raise AccessDeniedError(f"Document {document_id} or transaction {transaction_id} not owned by {owner_id}")
    return document, transaction


def connection_id_for(document_id: str, transaction_id: str, owner_id: str) -> str:
    """Deterministic junction id; concurrent connects of one pair write the same record."""
    return str(uuid.uuid5(CONNECTION_NAMESPACE, f"{owner_id}/{document_id}/{transaction_id}"))


async def find_connection(
    repository: Repository, document_id: str, transaction_id: str, owner_id: str
) -> Optional[Connection]:
    return await repository.first(
        Collection.CONNECTIONS,
        [
            ("document_id", "==", document_id),
            ("transaction_id", "==", transaction_id),
            ("owner_id", "==", owner_id),
        ],
    )


async def connect(
    repository: Repository,
    document_id: str,
    transaction_id: str,
    owner_id: str,
    connection_type: ConnectionType = ConnectionType.MANUAL,
    confidence: Optional[float] = None,
    provenance: Optional[ConnectionProvenance] = None,
    queue_id: Optional[str] = None,
) -> ConnectResult:
    """
    Connect a document to a transaction.

    Args:
        repository: Record store
        document_id: Evidence document
        transaction_id: Target transaction
        owner_id: Owner of both records
        connection_type: manual or auto_matched
        confidence: Match score stored on the junction
        provenance: Source details (mailbox, message, sender, strategy)
        queue_id: Queue item for audit logging

    Returns:
        ConnectResult; already_connected=True when the junction existed
    """
    document, transaction = await _load_owned(repository, document_id, transaction_id, owner_id)

    existing = await find_connection(repository, document_id, transaction_id, owner_id)
    if existing is not None:
        return ConnectResult(connection_id=existing.id, already_connected=True)

    if connection_type == ConnectionType.AUTO_MATCHED and transaction.has_rejected(document_id):
        raise RejectedDocumentError(f"Document {document_id} was rejected for transaction {transaction_id}")

    provenance = provenance or ConnectionProvenance()
    connection = Connection(
        id=connection_id_for(document_id, transaction_id, owner_id),
        document_id=document_id,
        transaction_id=transaction_id,
        owner_id=owner_id,
        connection_type=connection_type.value,
        confidence=confidence,
        source_type=provenance.source_type or document.source_type,
        search_pattern=provenance.search_pattern,
        strategy=provenance.strategy,
        mailbox_id=provenance.mailbox_id,
        mailbox_email=provenance.mailbox_email,
        message_id=provenance.message_id,
        sender=provenance.sender,
        sender_name=provenance.sender_name,
    )

    try:
        await repository.atomic_write([
            Put(Collection.CONNECTIONS, connection),
            ArrayUnion(Collection.DOCUMENTS, document_id, "transaction_ids", [transaction_id]),
            ArrayUnion(Collection.TRANSACTIONS, transaction_id, "document_ids", [document_id]),
            Update(Collection.TRANSACTIONS, transaction_id, {"is_complete": True}),
        ])
    except RepositoryError:
        # Lost a race with a concurrent connect of the same pair
        existing = await find_connection(repository, document_id, transaction_id, owner_id)
        if existing is None:
            raise
        logger.info(f"Connection {existing.id} was created concurrently")
        return ConnectResult(connection_id=existing.id, already_connected=True)

    log_precision_search_event(
        AuditEventType.DOCUMENT_CONNECTED,
        queue_id=queue_id,
        user_id=owner_id,
        details={
            "connection_id": connection.id,
            "document_id": document_id,
            "transaction_id": transaction_id,
            "connection_type": connection.connection_type,
            "strategy": connection.strategy,
            "confidence": confidence,
        },
    )

    if provenance.sender:
        await learn_from_connection(
            repository,
            owner_id,
            transaction.partner_id,
            provenance.sender,
            mailbox_id=provenance.mailbox_id,
            source_type=connection.source_type,
        )

    return ConnectResult(connection_id=connection.id, already_connected=False)


async def disconnect(
    repository: Repository,
    document_id: str,
    transaction_id: str,
    owner_id: str,
    reject: bool = True,
) -> DisconnectResult:
    """
    Remove a connection and optionally reject the document for the transaction.
    """
    _, transaction = await _load_owned(repository, document_id, transaction_id, owner_id)

    existing = await find_connection(repository, document_id, transaction_id, owner_id)
    remaining = [d for d in transaction.document_ids or [] if d != document_id]
    is_complete = bool(remaining) or transaction.no_receipt_override

    ops = []
    if existing is not None:
        ops.append(Delete(Collection.CONNECTIONS, existing.id))
    ops.extend([
        ArrayRemove(Collection.DOCUMENTS, document_id, "transaction_ids", [transaction_id]),
        ArrayRemove(Collection.TRANSACTIONS, transaction_id, "document_ids", [document_id]),
        Update(Collection.TRANSACTIONS, transaction_id, {"is_complete": is_complete}),
    ])
    if reject:
        ops.append(ArrayUnion(Collection.TRANSACTIONS, transaction_id, "rejected_document_ids", [document_id]))

    await repository.atomic_write(ops)

    log_precision_search_event(
        AuditEventType.DOCUMENT_DISCONNECTED,
        user_id=owner_id,
        details={
            "document_id": document_id,
            "transaction_id": transaction_id,
            "rejected": reject,
            "had_connection": existing is not None,
        },
    )
    return DisconnectResult(removed=existing is not None, rejected=reject, is_complete=is_complete)
