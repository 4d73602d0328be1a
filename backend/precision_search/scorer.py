"""
Precision Search - Candidate Scorer

Scores how well a candidate document (local file, mail attachment, or an
email body rendered as a document) matches a transaction.

Signals (weighted additive, points out of 100):
- Amount proximity (extracted amount vs transaction amount)
- Extracted date proximity and extracted partner overlap
- Structural email signals: receipt file type, invoice keywords, amount literals
- Sender domain and learned source patterns from the partner

An email date multiplier and an amount-mismatch penalty are applied last;
the result is capped at 95.

Labels:
- Strong (>=75 unless the caller overrides it)
- Likely (>=40)
- None (<40)

Pure functions, no I/O.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Sequence

from .email_parsing import DOCUMENT_MIME_TYPES, MailAttachment
from .models import Document, Partner, Transaction


RECEIPT_KEYWORDS = [
    "invoice",
    "rechnung",
    "receipt",
    "beleg",
    "quittung",
    "faktura",
    "bon",
    "bill",
]

# The message body itself is the invoice
MAIL_INVOICE_KEYWORDS = [
    "order confirmation",
    "payment received",
    "payment confirmation",
    "your purchase",
    "order summary",
    "receipt for your",
    "thank you for your order",
    "your order has been",
    "purchase confirmation",
    "bestellbestätigung",
    "zahlungsbestätigung",
    "zahlungseingang",
    "ihre bestellung",
    "kaufbestätigung",
    "vielen dank für ihre bestellung",
    "ihre zahlung",
    "buchungsbestätigung",
]

# The message links to an invoice download
INVOICE_LINK_KEYWORDS = [
    "download your invoice",
    "view your invoice",
    "download invoice",
    "view invoice",
    "click here to download",
    "access your invoice",
    "get your receipt",
    "download pdf",
    "download receipt",
    "rechnung herunterladen",
    "rechnung anzeigen",
    "rechnung abrufen",
    "hier klicken",
    "pdf herunterladen",
    "beleg herunterladen",
    "rechnung ansehen",
    "zum download",
]

LEGAL_SUFFIXES = {
    "gmbh", "ag", "inc", "llc", "ltd", "co", "corp", "kg", "ug", "bv", "nv",
    "sa", "sarl", "srl", "plc", "limited", "ek", "ohg", "se", "oy", "ab",
}

STRONG_LABEL_SCORE = 75
LIKELY_LABEL_SCORE = 40
MAX_SCORE = 95
PDF_FLOOR_SCORE = 50
AMOUNT_MISMATCH_RATIO = 0.5
AMOUNT_MISMATCH_PENALTY = 0.4

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_NAME_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)


# ==================== DATA CLASSES ====================

@dataclass
class ScoringCandidate:
    """Everything the scorer may know about a candidate document."""
    filename: str = ""
    mime_type: str = "application/pdf"
    amount: Optional[int] = None
    date: Optional[datetime] = None
    partner_name: Optional[str] = None
    email_subject: Optional[str] = None
    email_from: Optional[str] = None
    email_snippet: Optional[str] = None
    email_body_text: Optional[str] = None
    email_date: Optional[datetime] = None
    mailbox_id: Optional[str] = None

    @property
    def is_email(self) -> bool:
        return bool(self.email_subject or self.email_from)

    @classmethod
    def from_document(cls, document: Document) -> "ScoringCandidate":
        return cls(
            filename=document.file_name,
            mime_type=document.mime_type,
            amount=document.extracted_amount,
            date=document.extracted_date,
            partner_name=document.extracted_partner,
            email_body_text=document.extracted_text,
        )

    @classmethod
    def from_attachment(
        cls,
        attachment: MailAttachment,
        subject: Optional[str],
        sender: Optional[str],
        email_date: Optional[datetime],
        mailbox_id: Optional[str],
        snippet: Optional[str] = None,
        body_text: Optional[str] = None,
    ) -> "ScoringCandidate":
        return cls(
            filename=attachment.filename,
            mime_type=attachment.mime_type,
            email_subject=subject,
            email_from=sender,
            email_snippet=snippet,
            email_body_text=body_text,
            email_date=email_date,
            mailbox_id=mailbox_id,
        )


@dataclass
class PartnerContext:
    name: Optional[str] = None
    email_domains: List[str] = field(default_factory=list)
    source_patterns: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_partner(cls, partner: Optional[Partner]) -> "PartnerContext":
        if partner is None:
            return cls()
        return cls(
            name=partner.name,
            email_domains=list(partner.email_domains or []),
            source_patterns=list(partner.source_patterns or []),
        )


@dataclass
class MatchScore:
    score: int
    label: Optional[str]
    reasons: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "label": self.label, "reasons": list(self.reasons)}


@dataclass
class EmailClassification:
    has_pdf_attachment: bool
    possible_mail_invoice: bool
    possible_invoice_link: bool
    confidence: int
    matched_keywords: List[str]


# ==================== TOLERANCE HELPERS ====================

def amount_deviation(candidate_amount: int, target_amount: int) -> float:
    """Relative deviation of absolute amounts; signs are ignored."""
    target = abs(target_amount)
    candidate = abs(candidate_amount)
    if target == 0:
        return 0.0 if candidate == 0 else float("inf")
    return abs(candidate - target) / target


def amount_within_tolerance(candidate_amount: Optional[int], target_amount: int, tolerance: float) -> bool:
    """Inclusive: a deviation of exactly `tolerance` passes."""
    if candidate_amount is None:
        return False
    return amount_deviation(candidate_amount, target_amount) <= tolerance


def days_between(a: datetime, b: datetime) -> float:
    return abs((a - b).total_seconds()) / 86400


def date_within_window(candidate_date: Optional[datetime], target_date: datetime, window_days: int) -> bool:
    """Inclusive on both sides of the target date."""
    if candidate_date is None:
        return False
    return days_between(candidate_date, target_date) <= window_days


# ==================== TEXT HELPERS ====================

def normalize_partner_name(name: Optional[str]) -> str:
    """Lowercase, drop punctuation and legal-entity suffixes."""
    if not name:
        return ""
    cleaned = _NAME_PUNCTUATION.sub(" ", name.lower())
    words = [w for w in cleaned.split() if w not in LEGAL_SUFFIXES]
    return " ".join(words)


def significant_words(name: Optional[str]) -> List[str]:
    return [w for w in normalize_partner_name(name).split() if len(w) >= 3]


def partner_names_match(a: Optional[str], b: Optional[str]) -> bool:
    """Containment of normalized names or at least one significant shared word."""
    left = normalize_partner_name(a)
    right = normalize_partner_name(b)
    if not left or not right:
        return False
    if left in right or right in left:
        return True
    return bool(set(significant_words(a)) & set(significant_words(b)))


def extract_tokens(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [t for t in _TOKEN_SPLIT.split(text.lower()) if len(t) >= 3]


def build_amount_variants(amount_minor: Optional[int]) -> List[str]:
    """Textual renderings of an amount: 4480.00, 4480,00, 4,480.00, 4.480,00, 4480."""
    if amount_minor is None:
        return []
    amount = abs(amount_minor) / 100
    fixed = f"{amount:.2f}"
    english = f"{amount:,.2f}"
    german = english.replace(",", "_").replace(".", ",").replace("_", ".")
    variants = [fixed, fixed.replace(".", ","), english, german, str(round(amount))]

    unique: List[str] = []
    for variant in variants:
        if variant not in unique:
            unique.append(variant)
    return unique


def contains_any(haystack: str, needles: Sequence[str]) -> bool:
    return any(needle in haystack for needle in needles)


def email_domain(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    match = re.search(r"@([a-z0-9.-]+\.[a-z]{2,})", address.lower())
    return match.group(1) if match else None


def email_date_multiplier(email_date: datetime, transaction_date: datetime) -> float:
    """
    Invoices usually arrive before the payment, so earlier mail decays slower.
    """
    days = days_between(email_date, transaction_date)
    if email_date < transaction_date:
        steps = [(14, 1.0), (30, 0.95), (60, 0.9), (90, 0.85), (180, 0.75)]
        fallback = 0.6
    else:
        steps = [(7, 1.0), (14, 0.9), (30, 0.75), (60, 0.55), (90, 0.4)]
        fallback = 0.3
    for limit, multiplier in steps:
        if days <= limit:
            return multiplier
    return fallback


# ==================== SCORING ====================

def _amount_points(deviation: float, tolerance: float) -> float:
    if deviation == 0:
        return 40
    if deviation <= 0.01:
        return 38
    if deviation <= tolerance:
        return 30
    if deviation < AMOUNT_MISMATCH_RATIO:
        # Linear decay from 20 at the tolerance edge to 0 at the mismatch ratio
        return 20 * (AMOUNT_MISMATCH_RATIO - deviation) / (AMOUNT_MISMATCH_RATIO - tolerance)
    return 0


def _date_points(days: float, window_days: int) -> float:
    if days < 1:
        return 15
    if days <= 3:
        return 12
    if days <= 7:
        return 8
    if days <= 14:
        return 4
    if days <= window_days:
        return 2
    return 0


def score_candidate(
    transaction: Transaction,
    candidate: ScoringCandidate,
    partner: Optional[PartnerContext] = None,
    tolerance: float = 0.05,
    date_window_days: int = 30,
    strong_score: int = STRONG_LABEL_SCORE,
) -> MatchScore:
    """
    Score a candidate document against a transaction.

    Args:
        transaction: The transaction being matched
        candidate: Local document or mail attachment/body
        partner: Known partner context (name, domains, learned patterns)
        tolerance: Relative amount tolerance treated as a strong match
        date_window_days: Window in which extracted dates earn a bonus
        strong_score: Score from which the match is labelled Strong

    Returns:
        MatchScore with score 0..95, label and reasons
    """
    partner = partner or PartnerContext()
    points = 0.0
    reasons: List[str] = []
    amount_mismatch = False

    # Extracted amount
    if candidate.amount is not None:
        deviation = amount_deviation(candidate.amount, transaction.amount)
        gained = _amount_points(deviation, tolerance)
        if deviation == 0:
            reasons.append("Exact amount match")
        elif gained >= 30:
            reasons.append(f"Amount within {deviation * 100:.1f}%")
        elif gained > 0:
            reasons.append(f"Amount close ({deviation * 100:.0f}% diff)")
        elif deviation >= AMOUNT_MISMATCH_RATIO:
            amount_mismatch = True
            reasons.append(f"Amount mismatch: {min(deviation, 9.99) * 100:.0f}% diff")
        points += gained

    # Extracted partner
    targets = [n for n in (partner.name, transaction.partner_name) if n]
    if candidate.partner_name and any(partner_names_match(candidate.partner_name, t) for t in targets):
        points += 20
        reasons.append("File partner matches transaction")

    # Extracted date
    if candidate.date is not None:
        days = days_between(candidate.date, transaction.date)
        gained = _date_points(days, date_window_days)
        if gained:
            points += gained
            reasons.append("Same day" if days < 1 else f"Within {int(round(days))} days")

    # Structural signals
    filename = (candidate.filename or "").lower()
    subject = (candidate.email_subject or "").lower()
    combined = " ".join(
        t for t in (candidate.email_subject, candidate.email_snippet, candidate.email_from, candidate.email_body_text) if t
    ).lower()

    if candidate.mime_type.lower() in DOCUMENT_MIME_TYPES:
        points += 15
        reasons.append("Likely receipt file type")

    if contains_any(filename, RECEIPT_KEYWORDS):
        points += 25
        reasons.append("Filename has invoice keyword")

    if contains_any(subject, RECEIPT_KEYWORDS):
        points += 15
        reasons.append("Subject has invoice keyword")

    if contains_any(combined, RECEIPT_KEYWORDS):
        points += 10
        reasons.append("Email text has invoice keyword")

    amount_variants = build_amount_variants(transaction.amount)
    if amount_variants and contains_any(f"{combined} {filename}", amount_variants):
        points += 20
        reasons.append("Amount appears in email or filename")

    partner_tokens = extract_tokens(partner.name) + extract_tokens(transaction.partner_name)
    if partner_tokens and contains_any(combined, partner_tokens):
        points += 10
        reasons.append("Partner name appears in email")

    reference_tokens = extract_tokens(transaction.name) + extract_tokens(transaction.reference)
    if reference_tokens and contains_any(f"{combined} {filename}", reference_tokens):
        points += 10
        reasons.append("Invoice reference appears in email or filename")

    sender_domain = email_domain(candidate.email_from)
    known_domains = [d.lower() for d in partner.email_domains]
    if sender_domain and sender_domain in known_domains:
        points += 20
        reasons.append(f"Sender domain matches {sender_domain}")

    if candidate.mailbox_id and any(
        p.get("mailbox_id") == candidate.mailbox_id for p in partner.source_patterns
    ):
        points += 10
        reasons.append("Learned mailbox pattern")

    # Multipliers
    if candidate.email_date is not None:
        multiplier = email_date_multiplier(candidate.email_date, transaction.date)
        points *= multiplier
        direction = "before" if candidate.email_date < transaction.date else "after"
        days = days_between(candidate.email_date, transaction.date)
        reasons.append(f"Date distance: {round(days)} days {direction} (x{multiplier:.2f})")

    if amount_mismatch:
        points *= AMOUNT_MISMATCH_PENALTY

    if candidate.is_email and candidate.mime_type == "application/pdf" and not amount_mismatch:
        if points < PDF_FLOOR_SCORE:
            points = PDF_FLOOR_SCORE
            reasons.append("PDF attachment")

    score = int(round(min(points, MAX_SCORE)))
    if score >= strong_score:
        label = "Strong"
    elif score >= LIKELY_LABEL_SCORE:
        label = "Likely"
    else:
        label = None

    return MatchScore(score=score, label=label, reasons=reasons)


# ==================== EMAIL CLASSIFICATION ====================

def classify_email(subject: str, snippet: str, attachments: Sequence[MailAttachment]) -> EmailClassification:
    """
    Cheap keyword classification of a message before any download.

    A message with a PDF is never a mail invoice; that case belongs to the
    attachment strategy.
    """
    combined = f"{subject or ''} {snippet or ''}".lower()
    matched: List[str] = []

    has_pdf = any(a.is_pdf or a.filename.lower().endswith(".pdf") for a in attachments)

    mail_invoice = next((k for k in MAIL_INVOICE_KEYWORDS if k in combined), None)
    if mail_invoice:
        matched.append(mail_invoice)

    invoice_link = next((k for k in INVOICE_LINK_KEYWORDS if k in combined), None)
    if invoice_link:
        matched.append(invoice_link)

    confidence = 0
    if has_pdf:
        confidence += 40
    if mail_invoice:
        confidence += 30
    if invoice_link:
        confidence += 25
    confidence = min(confidence, 100)
    if has_pdf and confidence < PDF_FLOOR_SCORE:
        confidence = PDF_FLOOR_SCORE

    return EmailClassification(
        has_pdf_attachment=has_pdf,
        possible_mail_invoice=bool(mail_invoice) and not has_pdf,
        possible_invoice_link=bool(invoice_link),
        confidence=confidence,
        matched_keywords=matched,
    )
