"""
Precision Search - External Service Clients

Black-box services called by the email strategies:
- Query suggestion: ranked mailbox search strings for a transaction
- Email classification: invoice-download links and "body is the invoice" confidence

Each call returns a usage counter the caller propagates into the attempt log.
When no service URL is configured the deterministic mock clients are used.
"""

import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import httpx
from bs4 import BeautifulSoup

from .errors import ExternalServiceError
from .models import Partner, Transaction
from .scorer import (
    INVOICE_LINK_KEYWORDS,
    MAIL_INVOICE_KEYWORDS,
    RECEIPT_KEYWORDS,
    build_amount_variants,
    contains_any,
    normalize_partner_name,
)

logger = logging.getLogger(__name__)


# ==================== DATA CLASSES ====================

@dataclass
class ServiceUsage:
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class QuerySuggestions:
    queries: List[str]
    usage: ServiceUsage = field(default_factory=ServiceUsage)


@dataclass
class InvoiceLink:
    url: str
    anchor_text: str = ""


@dataclass
class EmailAnalysis:
    has_invoice_link: bool = False
    invoice_links: List[InvoiceLink] = field(default_factory=list)
    is_mail_invoice: bool = False
    mail_invoice_confidence: float = 0.0
    usage: ServiceUsage = field(default_factory=ServiceUsage)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _transaction_context(transaction: Transaction) -> Dict[str, Any]:
    return {
        "name": transaction.name,
        "partner": transaction.partner_name,
        "description": transaction.description,
        "reference": transaction.reference,
        "amount": transaction.amount,
        "currency": transaction.currency,
        "date": transaction.date.date().isoformat(),
    }


def _partner_context(partner: Optional[Partner]) -> Optional[Dict[str, Any]]:
    if partner is None:
        return None
    return {
        "name": partner.name,
        "aliases": partner.aliases,
        "emailDomains": partner.email_domains,
        "website": partner.website,
    }


async def _post_json(
    url: str,
    token: str,
    timeout: int,
    payload: Dict[str, Any],
    http_client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }
    try:
        if http_client is not None:
            response = await http_client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
    except httpx.TimeoutException as e:
        raise ExternalServiceError(f"Request to {url} timed out") from e
    except httpx.ConnectError as e:
        raise ExternalServiceError(f"Cannot reach {url}: {e}") from e
    except httpx.RequestError as e:
        raise ExternalServiceError(f"Request to {url} failed: {e}") from e

    if response.status_code != 200:
        raise ExternalServiceError(f"HTTP {response.status_code} from {url}: {response.text[:100]}")
    try:
        return response.json()
    except ValueError as e:
        raise ExternalServiceError(f"Invalid JSON from {url}") from e


def _usage_from(data: Dict[str, Any]) -> ServiceUsage:
    usage = data.get("usage") or {}
    return ServiceUsage(
        calls=1,
        input_tokens=int(usage.get("inputTokens") or 0),
        output_tokens=int(usage.get("outputTokens") or 0),
    )


# ==================== QUERY SUGGESTION ====================

class QuerySuggestionClient:
    """Calls the query suggestion service."""

    def __init__(
        self, base_url: str, token: str = "", timeout: int = 60, http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.http_client = http_client

    async def suggest(self, transaction: Transaction, partner: Optional[Partner] = None) -> QuerySuggestions:
        data = await _post_json(
            f"{self.base_url}/suggest",
            self.token,
            self.timeout,
            {"transaction": _transaction_context(transaction), "partner": _partner_context(partner)},
            http_client=self.http_client,
        )
        return QuerySuggestions(
            queries=[q for q in data.get("queries") or [] if isinstance(q, str)],
            usage=_usage_from(data),
        )


class MockQuerySuggestionClient:
    """
    Deterministic suggestions for development and tests:
    cleaned partner name, its first word, known sender domains, cleaned
    transaction name.
    """

    _BANK_PREFIX = re.compile(r"^(pp\*|sq\*|paypal\s*\*|ec\s+|sepa\s+|lastschrift\s+)", re.IGNORECASE)
    _DIGIT_RUN = re.compile(r"\s+\d{4,}.*$")

    def _clean(self, text: Optional[str]) -> str:
        if not text:
            return ""
        text = self._BANK_PREFIX.sub("", text)
        text = self._DIGIT_RUN.sub("", text)
        return normalize_partner_name(text)

    async def suggest(self, transaction: Transaction, partner: Optional[Partner] = None) -> QuerySuggestions:
        candidates: List[str] = []
        for name in (partner.name if partner else None, transaction.partner_name):
            cleaned = self._clean(name)
            if cleaned:
                candidates.append(cleaned)
                first = cleaned.split()[0]
                if len(first) >= 3:
                    candidates.append(first)
        if partner:
            candidates.extend(f"from:{domain}" for domain in partner.email_domains)
        cleaned_name = self._clean(transaction.name)
        if cleaned_name:
            candidates.append(cleaned_name)

        queries: List[str] = []
        for query in candidates:
            if query not in queries:
                queries.append(query)
        return QuerySuggestions(queries=queries, usage=ServiceUsage(calls=0))


# ==================== EMAIL CLASSIFICATION ====================

class EmailClassifierClient:
    """Calls the email content classification service."""

    def __init__(
        self, base_url: str, token: str = "", timeout: int = 60, http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.http_client = http_client

    async def analyze(
        self,
        subject: str,
        sender: str,
        html: Optional[str],
        text: Optional[str],
        transaction: Transaction,
    ) -> EmailAnalysis:
        data = await _post_json(
            f"{self.base_url}/analyze-email",
            self.token,
            self.timeout,
            {
                "subject": subject,
                "from": sender,
                "htmlBody": html,
                "textBody": text,
                "transaction": _transaction_context(transaction),
            },
            http_client=self.http_client,
        )
        links = [
            InvoiceLink(url=link["url"], anchor_text=link.get("anchorText") or "")
            for link in data.get("invoiceLinks") or []
            if link.get("url")
        ]
        return EmailAnalysis(
            has_invoice_link=bool(data.get("hasInvoiceLink")) and bool(links),
            invoice_links=links,
            is_mail_invoice=bool(data.get("isMailInvoice")),
            mail_invoice_confidence=float(data.get("mailInvoiceConfidence") or 0.0),
            usage=_usage_from(data),
        )


class MockEmailClassifierClient:
    """
    Keyword heuristics standing in for the classification service:
    anchors whose text reads like an invoice download become invoice links;
    mail-invoice phrases, the amount and receipt words raise the confidence.
    """

    async def analyze(
        self,
        subject: str,
        sender: str,
        html: Optional[str],
        text: Optional[str],
        transaction: Transaction,
    ) -> EmailAnalysis:
        links: List[InvoiceLink] = []
        body_text = text or ""

        if html:
            soup = BeautifulSoup(html, "html.parser")
            for anchor in soup.find_all("a", href=True):
                href = anchor["href"].strip()
                anchor_text = anchor.get_text(" ", strip=True)
                lowered = anchor_text.lower()
                if href.startswith("http") and (
                    contains_any(lowered, INVOICE_LINK_KEYWORDS) or contains_any(lowered, RECEIPT_KEYWORDS)
                ):
                    links.append(InvoiceLink(url=href, anchor_text=anchor_text))
            if not body_text:
                body_text = soup.get_text(" ", strip=True)

        combined = f"{subject or ''} {body_text}".lower()
        confidence = 0.0
        if contains_any(combined, MAIL_INVOICE_KEYWORDS):
            confidence += 0.6
        if contains_any(combined, build_amount_variants(transaction.amount)):
            confidence += 0.25
        if contains_any(combined, RECEIPT_KEYWORDS):
            confidence += 0.1
        confidence = min(confidence, 0.95)

        return EmailAnalysis(
            has_invoice_link=bool(links),
            invoice_links=links,
            is_mail_invoice=confidence >= 0.5,
            mail_invoice_confidence=round(confidence, 2),
            usage=ServiceUsage(calls=0),
        )


# ==================== FACTORIES ====================

def create_query_suggester(settings):
    if settings.QUERY_SUGGESTION_URL:
        return QuerySuggestionClient(
            settings.QUERY_SUGGESTION_URL,
            token=settings.EXTERNAL_SERVICE_TOKEN,
            timeout=settings.EXTERNAL_SERVICE_TIMEOUT,
        )
    logger.info("QUERY_SUGGESTION_URL not set - using mock query suggestions")
    return MockQuerySuggestionClient()


def create_email_classifier(settings):
    if settings.EMAIL_CLASSIFIER_URL:
        return EmailClassifierClient(
            settings.EMAIL_CLASSIFIER_URL,
            token=settings.EXTERNAL_SERVICE_TOKEN,
            timeout=settings.EXTERNAL_SERVICE_TIMEOUT,
        )
    logger.info("EMAIL_CLASSIFIER_URL not set - using mock email classification")
    return MockEmailClassifierClient()
