"""
Precision Search - Mail Query Construction

Combines externally suggested queries with filename-like tokens taken from
the transaction text (invoice-style codes and long numeric ids).
"""

import re
from typing import Iterable, List, Optional

from .models import Transaction

# INV-2024.001, RE12345, 4711/2, AB-123
INVOICE_CODE_PATTERN = re.compile(r"[A-Za-z]{0,5}-?\d{3,}(?:[./]\d+)?")
# Bare numeric ids of 8+ digits (order numbers, customer numbers)
NUMERIC_ID_PATTERN = re.compile(r"\b\d{8,}\b")

_HAS_ATTACHMENT = re.compile(r"\s*has:attachment\s*", re.IGNORECASE)


def extract_filename_tokens(text: Optional[str]) -> List[str]:
    """Invoice-style codes first, then long numeric ids, in order of appearance."""
    if not text:
        return []
    tokens = [m.group(0) for m in INVOICE_CODE_PATTERN.finditer(text)]
    tokens.extend(m.group(0) for m in NUMERIC_ID_PATTERN.finditer(text))
    return dedupe_queries(tokens)


def dedupe_queries(queries: Iterable[str]) -> List[str]:
    """Trim, drop empties, and keep the first of case-sensitive exact duplicates."""
    seen = set()
    result = []
    for query in queries:
        cleaned = (query or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def build_queries(suggested: Iterable[str], transaction: Transaction, max_suggested: int = 3) -> List[str]:
    """Up to `max_suggested` suggested queries followed by filename-like tokens."""
    head = dedupe_queries(suggested)[:max_suggested]
    return dedupe_queries(head + extract_filename_tokens(transaction.name))


def attachment_query(query: str) -> str:
    """Restrict a query to messages with attachments."""
    base = body_query(query)
    return f"{base} has:attachment" if base else "has:attachment"


def body_query(query: str) -> str:
    """Remove any attachment restriction from a query."""
    return _HAS_ATTACHMENT.sub(" ", query).strip()
