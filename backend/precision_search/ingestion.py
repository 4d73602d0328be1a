"""
Precision Search - Evidence Ingestion

Turns raw bytes (uploads, mail attachments) or an HTML email body into a
stored Document record.

Features:
- SHA-256 content hash, dedup per owner (idempotent by content)
- Soft-deleted duplicates are restored instead of re-created
- Blob upload under files/{owner}/{timestamp}_{name}
- Mail provenance (message, attachment, mailbox, sender, subject, date)
- HTML email bodies rendered to PDF when the email itself is the invoice
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .audit import AuditEventType, log_precision_search_event
from .email_parsing import MailAttachment
from .html_renderer import html_invoice_filename, render_html_to_pdf
from .models import Collection, Document, DocumentSourceType, generate_uuid
from .repository import Repository, Update
from .storage import BlobStorage, build_storage_path

logger = logging.getLogger(__name__)


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


@dataclass
class MailSource:
    """Provenance of a mail-sourced document."""
    message_id: str
    mailbox_id: Optional[str] = None
    mailbox_email: Optional[str] = None
    attachment_id: Optional[str] = None
    subject: Optional[str] = None
    sender_email: Optional[str] = None
    sender_domain: Optional[str] = None
    sender_name: Optional[str] = None
    email_date: Optional[datetime] = None


@dataclass
class IngestionResult:
    document_id: str
    created: bool
    restored: bool = False


class EvidenceIngestionService:
    """
    Service class for storing evidence documents.
    """

    def __init__(self, repository: Repository, storage: BlobStorage):
        self.repository = repository
        self.storage = storage

    async def ingest(
        self,
        owner_id: str,
        content: bytes,
        filename: str,
        mime_type: str,
        source_type: DocumentSourceType = DocumentSourceType.UPLOAD,
        mail: Optional[MailSource] = None,
    ) -> IngestionResult:
        """
        Store content as a Document unless the owner already has it.

        Returns:
            IngestionResult with the new or existing document id
        """
        digest = content_hash(content)

        existing = await self.repository.first(
            Collection.DOCUMENTS,
            [("owner_id", "==", owner_id), ("content_hash", "==", digest)],
        )
        if existing is not None:
            restored = False
            if existing.deleted_at is not None:
                await self.repository.atomic_write([
                    Update(Collection.DOCUMENTS, existing.id, {"deleted_at": None}),
                ])
                restored = True
            logger.info(f"Duplicate content for owner {owner_id}: reusing document {existing.id} (restored={restored})")
            return IngestionResult(document_id=existing.id, created=False, restored=restored)

        path = build_storage_path(owner_id, filename, int(time.time() * 1000))
        download_url = await self.storage.upload(path, content, mime_type)

        document = Document(
            id=generate_uuid(),
            owner_id=owner_id,
            content_hash=digest,
            file_name=filename,
            mime_type=mime_type,
            size_bytes=len(content),
            storage_path=path,
            download_url=download_url,
            source_type=source_type.value,
            extraction_complete=False,
            transaction_ids=[],
        )
        if mail is not None:
            document.source_message_id = mail.message_id
            document.source_attachment_id = mail.attachment_id
            document.source_mailbox_id = mail.mailbox_id
            document.source_mailbox_email = mail.mailbox_email
            document.source_subject = mail.subject
            document.sender_email = mail.sender_email
            document.sender_domain = mail.sender_domain
            document.sender_name = mail.sender_name
            document.source_email_date = mail.email_date

        await self.repository.add(Collection.DOCUMENTS, document)

        log_precision_search_event(
            AuditEventType.DOCUMENT_INGESTED,
            user_id=owner_id,
            details={
                "document_id": document.id,
                "source_type": document.source_type,
                "size_bytes": document.size_bytes,
                "message_id": document.source_message_id,
            },
        )
        return IngestionResult(document_id=document.id, created=True)

    async def ingest_attachment(
        self,
        owner_id: str,
        content: bytes,
        attachment: MailAttachment,
        mail: MailSource,
    ) -> IngestionResult:
        mail.attachment_id = attachment.attachment_id
        return await self.ingest(
            owner_id,
            content,
            attachment.filename,
            attachment.mime_type,
            source_type=DocumentSourceType.GMAIL,
            mail=mail,
        )

    async def ingest_html_invoice(self, owner_id: str, html: str, mail: MailSource) -> IngestionResult:
        """Render the email body to PDF and ingest it as a synthetic document."""
        sender = mail.sender_email
        if mail.sender_name and mail.sender_email:
            sender = f"{mail.sender_name} <{mail.sender_email}>"

        pdf_bytes = await asyncio.to_thread(
            render_html_to_pdf, html, mail.subject, sender, mail.email_date
        )
        return await self.ingest(
            owner_id,
            pdf_bytes,
            html_invoice_filename(mail.subject, mail.email_date),
            "application/pdf",
            source_type=DocumentSourceType.GMAIL_HTML_INVOICE,
            mail=mail,
        )

    async def find_by_source(self, owner_id: str, message_id: str, attachment_id: str) -> Optional[Document]:
        return await self.repository.first(
            Collection.DOCUMENTS,
            [
                ("owner_id", "==", owner_id),
                ("source_message_id", "==", message_id),
                ("source_attachment_id", "==", attachment_id),
            ],
        )

    async def find_html_invoice(self, owner_id: str, message_id: str) -> Optional[Document]:
        return await self.repository.first(
            Collection.DOCUMENTS,
            [
                ("owner_id", "==", owner_id),
                ("source_message_id", "==", message_id),
                ("source_type", "==", DocumentSourceType.GMAIL_HTML_INVOICE.value),
            ],
        )
