"""
Precision Search - Strategy Executors

Four matching strategies run in priority order for one transaction:
1. partner_files    - extraction-complete documents already tagged with the partner
2. amount_files     - any unlinked document inside the date window and amount tolerance
3. email_attachment - mailbox search for messages with receipt attachments
4. email_invoice    - mailbox search for emails whose body is the invoice
                      (also records invoice-download links on the partner)

Every executor returns a SearchAttempt. A strategy stops at its first
connection. Errors on one message or query are recorded and skipped; errors
escaping a strategy are caught at the strategy boundary. Storage failures
(RepositoryError) are never swallowed: they are fatal to the invocation.
"""

import logging
from datetime import timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .audit import AuditEventType, log_precision_search_event
from .connect import ConnectionProvenance, connect
from .email_parsing import (
    MailAttachment,
    extract_attachments,
    extract_body,
    extract_header,
    message_date,
    parse_sender,
)
from .errors import MailboxAuthError, RejectedDocumentError, RepositoryError
from .html_renderer import html_invoice_filename, html_to_text_blocks
from .ingestion import EvidenceIngestionService, MailSource
from .mail_client import MailboxClientFactory, MailClient
from .models import (
    Collection,
    ConnectionType,
    Document,
    DocumentSourceType,
    Partner,
    SearchAttempt,
    SearchStrategy,
    Transaction,
    utc_now,
)
from .queries import attachment_query, body_query, build_queries
from .repository import ArrayUnion, Repository, Update
from .scorer import (
    MatchScore,
    PartnerContext,
    ScoringCandidate,
    amount_deviation,
    amount_within_tolerance,
    classify_email,
    date_within_window,
    score_candidate,
)

logger = logging.getLogger(__name__)

# Errors recorded per message before the rest are only counted
MAX_RECORDED_ERRORS = 10


# ==================== CONTEXT ====================

@dataclass
class StrategyConfig:
    """Thresholds and limits; built from Settings."""
    amount_tolerance: float = 0.05
    date_window_days: int = 30
    mail_invoice_confidence: float = 0.7
    mail_invoice_min_score: int = 60
    strong_match_score: int = 75
    max_queries: int = 3
    max_results: int = 20

    @classmethod
    def from_settings(cls, settings) -> "StrategyConfig":
        return cls(
            amount_tolerance=settings.AMOUNT_TOLERANCE,
            date_window_days=settings.DATE_WINDOW_DAYS,
            mail_invoice_confidence=settings.MAIL_INVOICE_CONFIDENCE,
            mail_invoice_min_score=settings.ATTACHMENT_MATCH_THRESHOLD,
            strong_match_score=settings.AUTO_CONNECT_THRESHOLD,
            max_queries=settings.PRECISION_SEARCH_MAX_QUERIES,
            max_results=settings.MAIL_SEARCH_MAX_RESULTS,
        )


@dataclass
class StrategyContext:
    """
    Collaborators shared by all strategies within one invocation.

    Mailbox clients are opened on first use and reused; the query list is
    built once per transaction and shared by both email strategies.
    """
    repository: Repository
    ingestion: EvidenceIngestionService
    mailboxes: MailboxClientFactory
    query_suggester: Any
    email_classifier: Any
    owner_id: str
    queue_id: Optional[str] = None
    config: StrategyConfig = field(default_factory=StrategyConfig)
    _clients: Optional[List[MailClient]] = None
    _partners: Dict[str, Optional[Partner]] = field(default_factory=dict)
    _queries: Dict[str, List[str]] = field(default_factory=dict)

    async def mail_clients(self) -> List[MailClient]:
        if self._clients is None:
            self._clients = await self.mailboxes.open_mailboxes(self.owner_id)
        return [c for c in self._clients if not self.mailboxes.is_disabled(c.mailbox.id)]

    async def partner_for(self, transaction: Transaction) -> Optional[Partner]:
        if not transaction.partner_id:
            return None
        if transaction.partner_id not in self._partners:
            partner = await self.repository.get(Collection.PARTNERS, transaction.partner_id)
            if partner is not None and partner.owner_id != self.owner_id:
                partner = None
            self._partners[transaction.partner_id] = partner
        return self._partners[transaction.partner_id]

    def forget_partner(self, partner_id: Optional[str]):
        """Drop a cached partner after pattern learning rewrote it."""
        self._partners.pop(partner_id, None)

    def score(
        self, transaction: Transaction, candidate: ScoringCandidate, partner: Optional[PartnerContext]
    ) -> MatchScore:
        return score_candidate(
            transaction,
            candidate,
            partner,
            tolerance=self.config.amount_tolerance,
            date_window_days=self.config.date_window_days,
            strong_score=self.config.strong_match_score,
        )

    async def queries_for(self, transaction: Transaction, attempt: SearchAttempt) -> List[str]:
        """Suggested queries plus filename tokens; usage is charged to the attempt that called the service."""
        if transaction.id in self._queries:
            return self._queries[transaction.id]

        suggested: List[str] = []
        partner = await self.partner_for(transaction)
        try:
            suggestions = await self.query_suggester.suggest(transaction, partner)
            suggested = suggestions.queries
            attempt.ai_calls += suggestions.usage.calls
            attempt.ai_tokens += suggestions.usage.total_tokens
        except RepositoryError:
            raise
        except Exception as e:
            logger.warning(f"Query suggestion failed for transaction {transaction.id}: {e}")
            _record_error(attempt, f"query suggestion: {e}")

        queries = build_queries(suggested, transaction, max_suggested=self.config.max_queries)
        self._queries[transaction.id] = queries
        return queries


def _record_error(attempt: SearchAttempt, message: str):
    errors = attempt.search_params.setdefault("errors", [])
    if len(errors) < MAX_RECORDED_ERRORS:
        errors.append(message)
    attempt.search_params["error_count"] = attempt.search_params.get("error_count", 0) + 1


# ==================== BASE ====================

class StrategyExecutor:
    """Base class: runs execute() inside the strategy error boundary."""

    strategy: SearchStrategy

    async def run(self, transaction: Transaction, ctx: StrategyContext) -> SearchAttempt:
        attempt = SearchAttempt(strategy=self.strategy.value)
        try:
            await self.execute(transaction, ctx, attempt)
        except RepositoryError:
            raise
        except Exception as e:
            logger.error(f"Strategy {self.strategy.value} failed for transaction {transaction.id}: {e}")
            attempt.error = str(e)

        attempt.finish()
        log_precision_search_event(
            AuditEventType.STRATEGY_ATTEMPTED,
            queue_id=ctx.queue_id,
            user_id=ctx.owner_id,
            details={
                "transaction_id": transaction.id,
                "strategy": attempt.strategy,
                "candidates_found": attempt.candidates_found,
                "candidates_evaluated": attempt.candidates_evaluated,
                "matches_found": attempt.matches_found,
                "error": attempt.error,
            },
            success=attempt.error is None,
        )
        return attempt

    async def execute(self, transaction: Transaction, ctx: StrategyContext, attempt: SearchAttempt):
        raise NotImplementedError

    async def _connect(
        self,
        ctx: StrategyContext,
        transaction: Transaction,
        document_id: str,
        attempt: SearchAttempt,
        score: Optional[int],
        provenance: ConnectionProvenance,
    ) -> bool:
        provenance.strategy = self.strategy.value
        try:
            await connect(
                ctx.repository,
                document_id,
                transaction.id,
                ctx.owner_id,
                connection_type=ConnectionType.AUTO_MATCHED,
                confidence=score,
                provenance=provenance,
                queue_id=ctx.queue_id,
            )
        except RejectedDocumentError:
            return False
        if provenance.sender:
            ctx.forget_partner(transaction.partner_id)
        attempt.record_match(document_id, score)
        return True


def _usable_local_document(document: Document, transaction: Transaction) -> bool:
    return (
        not document.transaction_ids
        and document.deleted_at is None
        and not document.is_not_invoice
        and not transaction.has_rejected(document.id)
    )


# ==================== 1. PARTNER FILES ====================

class PartnerFilesStrategy(StrategyExecutor):
    """Reuse extraction-complete documents already tagged with the transaction's partner."""

    strategy = SearchStrategy.PARTNER_FILES

    async def execute(self, transaction: Transaction, ctx: StrategyContext, attempt: SearchAttempt):
        attempt.search_params = {
            "partner_id": transaction.partner_id,
            "amount_tolerance": ctx.config.amount_tolerance,
            "date_window_days": ctx.config.date_window_days,
        }
        if not transaction.partner_id:
            attempt.search_params["skipped"] = "no_partner"
            return

        documents = await ctx.repository.query(
            Collection.DOCUMENTS,
            [
                ("owner_id", "==", ctx.owner_id),
                ("partner_id", "==", transaction.partner_id),
                ("extraction_complete", "==", True),
            ],
            order_by="created_at",
        )
        candidates = [d for d in documents if _usable_local_document(d, transaction)]
        attempt.candidates_found = len(candidates)

        partner = PartnerContext.from_partner(await ctx.partner_for(transaction))
        for document in candidates:
            attempt.candidates_evaluated += 1
            if not amount_within_tolerance(document.extracted_amount, transaction.amount, ctx.config.amount_tolerance):
                continue
            if not date_within_window(document.extracted_date, transaction.date, ctx.config.date_window_days):
                continue

            score = ctx.score(transaction, ScoringCandidate.from_document(document), partner)
            provenance = ConnectionProvenance(source_type=document.source_type)
            if await self._connect(ctx, transaction, document.id, attempt, score.score, provenance):
                return


# ==================== 2. AMOUNT FILES ====================

class AmountFilesStrategy(StrategyExecutor):
    """Date window and amount tolerance as hard filters; smallest amount delta wins."""

    strategy = SearchStrategy.AMOUNT_FILES

    async def execute(self, transaction: Transaction, ctx: StrategyContext, attempt: SearchAttempt):
        window = timedelta(days=ctx.config.date_window_days)
        start, end = transaction.date - window, transaction.date + window
        attempt.search_params = {
            "date_from": start.isoformat(),
            "date_to": end.isoformat(),
            "amount_tolerance": ctx.config.amount_tolerance,
        }

        documents = await ctx.repository.query(
            Collection.DOCUMENTS,
            [
                ("owner_id", "==", ctx.owner_id),
                ("extraction_complete", "==", True),
                ("extracted_date", ">=", start),
                ("extracted_date", "<=", end),
            ],
            order_by="extracted_date",
        )
        candidates = [d for d in documents if _usable_local_document(d, transaction)]
        attempt.candidates_found = len(candidates)

        survivors: List[Tuple[float, Document]] = []
        for document in candidates:
            attempt.candidates_evaluated += 1
            if not date_within_window(document.extracted_date, transaction.date, ctx.config.date_window_days):
                continue
            if not amount_within_tolerance(document.extracted_amount, transaction.amount, ctx.config.amount_tolerance):
                continue
            survivors.append((abs(abs(document.extracted_amount) - abs(transaction.amount)), document))

        # Stable sort keeps query order among equal deltas
        survivors.sort(key=lambda pair: pair[0])

        partner = PartnerContext.from_partner(await ctx.partner_for(transaction))
        for _, document in survivors:
            score = ctx.score(transaction, ScoringCandidate.from_document(document), partner)
            attempt.search_params["amount_deviation"] = round(
                amount_deviation(document.extracted_amount, transaction.amount), 4
            )
            provenance = ConnectionProvenance(source_type=document.source_type)
            if await self._connect(ctx, transaction, document.id, attempt, score.score, provenance):
                return


# ==================== MAIL HELPERS ====================

@dataclass
class _MessageView:
    message_id: str
    subject: str
    snippet: str
    from_header: Optional[str]
    sender_email: Optional[str]
    sender_domain: Optional[str]
    sender_name: Optional[str]
    date: Optional[Any]

    @classmethod
    def parse(cls, message: Dict[str, Any]) -> "_MessageView":
        from_header = extract_header(message, "From")
        sender_email, sender_domain, sender_name = parse_sender(from_header)
        return cls(
            message_id=message.get("id") or "",
            subject=extract_header(message, "Subject") or "",
            snippet=message.get("snippet") or "",
            from_header=from_header,
            sender_email=sender_email,
            sender_domain=sender_domain,
            sender_name=sender_name,
            date=message_date(message),
        )

    def mail_source(self, client: MailClient) -> MailSource:
        return MailSource(
            message_id=self.message_id,
            mailbox_id=client.mailbox.id,
            mailbox_email=client.mailbox.email,
            subject=self.subject,
            sender_email=self.sender_email,
            sender_domain=self.sender_domain,
            sender_name=self.sender_name,
            email_date=self.date,
        )

    def provenance(self, client: MailClient, query: str, source_type: DocumentSourceType) -> ConnectionProvenance:
        return ConnectionProvenance(
            source_type=source_type.value,
            search_pattern=query,
            mailbox_id=client.mailbox.id,
            mailbox_email=client.mailbox.email,
            message_id=self.message_id,
            sender=self.sender_email,
            sender_name=self.sender_name,
        )


class MailStrategy(StrategyExecutor):
    """
    Shared mailbox x query loop.

    handle_message() returns True once it connected a document, which stops
    the whole strategy. A rejected-credentials error disables the mailbox
    for the rest of the run.
    """

    def build_query(self, query: str) -> str:
        raise NotImplementedError

    async def handle_message(
        self,
        transaction: Transaction,
        ctx: StrategyContext,
        attempt: SearchAttempt,
        client: MailClient,
        message: Dict[str, Any],
        query: str,
    ) -> bool:
        raise NotImplementedError

    async def execute(self, transaction: Transaction, ctx: StrategyContext, attempt: SearchAttempt):
        clients = await ctx.mail_clients()
        attempt.search_params = {"mailboxes": len(clients)}
        if not clients:
            attempt.search_params["skipped"] = "no_mailbox"
            return

        queries = [self.build_query(q) for q in await ctx.queries_for(transaction, attempt)]
        attempt.search_params["queries"] = queries
        seen: Set[Tuple[str, str]] = set()

        for client in clients:
            for query in queries:
                if ctx.mailboxes.is_disabled(client.mailbox.id):
                    break
                try:
                    result = await client.search(query, max_results=ctx.config.max_results)
                except MailboxAuthError as e:
                    await ctx.mailboxes.mark_needs_reauth(client.mailbox, str(e))
                    _record_error(attempt, f"mailbox {client.mailbox.id}: credentials rejected")
                    break
                except RepositoryError:
                    raise
                except Exception as e:
                    logger.warning(f"Mailbox search failed ({client.mailbox.id}): {e}")
                    _record_error(attempt, f"search: {e}")
                    continue

                attempt.candidates_found += len(result.message_ids)
                for message_id in result.message_ids:
                    key = (client.mailbox.id, message_id)
                    if key in seen:
                        continue
                    seen.add(key)

                    try:
                        message = await client.get_message(message_id)
                        attempt.candidates_evaluated += 1
                        if await self.handle_message(transaction, ctx, attempt, client, message, query):
                            return
                    except MailboxAuthError as e:
                        await ctx.mailboxes.mark_needs_reauth(client.mailbox, str(e))
                        _record_error(attempt, f"mailbox {client.mailbox.id}: credentials rejected")
                        break
                    except RepositoryError:
                        raise
                    except Exception as e:
                        logger.warning(f"Skipping message {message_id} in {self.strategy.value}: {e}")
                        _record_error(attempt, f"message {message_id}: {e}")


# ==================== 3. EMAIL ATTACHMENT ====================

class EmailAttachmentStrategy(MailStrategy):
    """Ingest and connect the first new receipt attachment found in the mailboxes."""

    strategy = SearchStrategy.EMAIL_ATTACHMENT

    def build_query(self, query: str) -> str:
        return attachment_query(query)

    async def handle_message(self, transaction, ctx, attempt, client, message, query) -> bool:
        attachments = [a for a in extract_attachments(message) if a.is_likely_receipt]
        if not attachments:
            return False

        view = _MessageView.parse(message)
        classification = classify_email(view.subject, view.snippet, attachments)
        if classification.possible_mail_invoice and not classification.has_pdf_attachment:
            # Body is the invoice; the email_invoice strategy owns this message
            return False

        partner = PartnerContext.from_partner(await ctx.partner_for(transaction))
        # PDFs before images
        attachments.sort(key=lambda a: 0 if a.is_pdf else 1)

        for attachment in attachments:
            if await ctx.ingestion.find_by_source(ctx.owner_id, view.message_id, attachment.attachment_id):
                continue
            return await self._ingest_and_connect(transaction, ctx, attempt, client, view, attachment, query, partner)
        return False

    async def _ingest_and_connect(
        self,
        transaction: Transaction,
        ctx: StrategyContext,
        attempt: SearchAttempt,
        client: MailClient,
        view: _MessageView,
        attachment: MailAttachment,
        query: str,
        partner: PartnerContext,
    ) -> bool:
        content = await client.get_attachment(view.message_id, attachment.attachment_id)
        result = await ctx.ingestion.ingest_attachment(ctx.owner_id, content, attachment, view.mail_source(client))
        if transaction.has_rejected(result.document_id):
            return False

        score = ctx.score(
            transaction,
            ScoringCandidate.from_attachment(
                attachment,
                subject=view.subject,
                sender=view.sender_email,
                email_date=view.date,
                mailbox_id=client.mailbox.id,
                snippet=view.snippet,
            ),
            partner,
        )
        provenance = view.provenance(client, query, DocumentSourceType.GMAIL)
        return await self._connect(ctx, transaction, result.document_id, attempt, score.score, provenance)


# ==================== 4. EMAIL INVOICE ====================

class EmailInvoiceStrategy(MailStrategy):
    """
    Treat the email body as the invoice when the classifier is confident and
    the rendered email scores at least mail_invoice_min_score.

    Invoice-download links are stored on the partner for follow-up whether or
    not a document gets connected.
    """

    strategy = SearchStrategy.EMAIL_INVOICE

    def build_query(self, query: str) -> str:
        return body_query(query)

    async def handle_message(self, transaction, ctx, attempt, client, message, query) -> bool:
        attachments = extract_attachments(message)
        if any(a.is_pdf for a in attachments):
            # PDF present; the email_attachment strategy owns this message
            return False

        view = _MessageView.parse(message)
        html, text = extract_body(message)

        analysis = await ctx.email_classifier.analyze(
            view.subject, view.from_header or "", html, text, transaction
        )
        attempt.ai_calls += analysis.usage.calls
        attempt.ai_tokens += analysis.usage.total_tokens

        if analysis.invoice_links:
            await self._record_invoice_links(transaction, ctx, attempt, view, analysis.invoice_links)

        if not analysis.is_mail_invoice or not html:
            return False
        if analysis.mail_invoice_confidence < ctx.config.mail_invoice_confidence:
            return False

        score = ctx.score(
            transaction,
            ScoringCandidate(
                filename=html_invoice_filename(view.subject, view.date),
                email_subject=view.subject,
                email_from=view.sender_email,
                email_snippet=view.snippet,
                email_body_text=text or " ".join(html_to_text_blocks(html)),
                email_date=view.date,
                mailbox_id=client.mailbox.id,
            ),
            PartnerContext.from_partner(await ctx.partner_for(transaction)),
        )
        if score.score < ctx.config.mail_invoice_min_score:
            logger.info(
                f"Email invoice {view.message_id} scored {score.score} "
                f"(below {ctx.config.mail_invoice_min_score}), skipping"
            )
            return False

        if await ctx.ingestion.find_html_invoice(ctx.owner_id, view.message_id):
            return False

        result = await ctx.ingestion.ingest_html_invoice(ctx.owner_id, html, view.mail_source(client))
        if transaction.has_rejected(result.document_id):
            return False

        confidence = int(round(analysis.mail_invoice_confidence * 100))
        provenance = view.provenance(client, query, DocumentSourceType.GMAIL_HTML_INVOICE)
        return await self._connect(ctx, transaction, result.document_id, attempt, confidence, provenance)

    async def _record_invoice_links(self, transaction, ctx, attempt, view, links):
        attempt.invoice_links_found.extend(link.url for link in links if link.url not in attempt.invoice_links_found)

        partner = await ctx.partner_for(transaction)
        if partner is None:
            return

        known = {entry.get("url") for entry in partner.invoice_links or []}
        discovered_at = utc_now().isoformat()
        entries = []
        for link in links:
            if link.url in known:
                continue
            known.add(link.url)
            entries.append({
                "url": link.url,
                "anchor_text": link.anchor_text,
                "message_id": view.message_id,
                "subject": view.subject,
                "discovered_at": discovered_at,
            })
        if not entries:
            return

        await ctx.repository.atomic_write([
            ArrayUnion(Collection.PARTNERS, partner.id, "invoice_links", entries),
            Update(Collection.PARTNERS, partner.id, {"updated_at": utc_now()}),
        ])
        partner.invoice_links = list(partner.invoice_links or []) + entries
        logger.info(f"Recorded {len(entries)} invoice link(s) on partner {partner.id}")


# ==================== REGISTRY ====================

STRATEGY_EXECUTORS: Dict[SearchStrategy, StrategyExecutor] = {
    SearchStrategy.PARTNER_FILES: PartnerFilesStrategy(),
    SearchStrategy.AMOUNT_FILES: AmountFilesStrategy(),
    SearchStrategy.EMAIL_ATTACHMENT: EmailAttachmentStrategy(),
    SearchStrategy.EMAIL_INVOICE: EmailInvoiceStrategy(),
}


def get_executor(strategy) -> StrategyExecutor:
    return STRATEGY_EXECUTORS[SearchStrategy(strategy)]
