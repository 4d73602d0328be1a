"""
Precision Search - Audit Logging

Structured log events for the queue engine. Events carry ids and counters
only; message bodies, tokens and document contents are never included.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Audit event types for precision search."""
    QUEUE_ITEM_CREATED = "precision_search.queue_item_created"
    QUEUE_ITEM_CLAIMED = "precision_search.queue_item_claimed"
    TRANSACTION_PROCESSED = "precision_search.transaction_processed"
    STRATEGY_ATTEMPTED = "precision_search.strategy_attempted"
    DOCUMENT_INGESTED = "precision_search.document_ingested"
    DOCUMENT_CONNECTED = "precision_search.document_connected"
    DOCUMENT_DISCONNECTED = "precision_search.document_disconnected"
    PATTERN_LEARNED = "precision_search.pattern_learned"
    CONTINUATION_PERSISTED = "precision_search.continuation_persisted"
    JOB_RESUMED = "precision_search.job_resumed"
    RETRY_SCHEDULED = "precision_search.retry_scheduled"
    JOB_FAILED = "precision_search.job_failed"
    JOB_COMPLETED = "precision_search.job_completed"
    MAILBOX_NEEDS_REAUTH = "precision_search.mailbox_needs_reauth"


def log_precision_search_event(
    event_type: AuditEventType,
    queue_id: Optional[str] = None,
    user_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
):
    """
    Log a precision search audit event.

    Args:
        event_type: Type of event
        queue_id: Queue item the event belongs to
        user_id: Owner of the records involved
        details: Ids and counters (no content)
        success: False logs at warning level
    """
    log_entry = {
        "event": event_type.value,
        "queue_id": queue_id,
        "user_id": user_id,
        "success": success,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details or {},
    }

    if success:
        logger.info(f"Precision search: {event_type.value}", extra=log_entry)
    else:
        logger.warning(f"Precision search FAILED: {event_type.value}", extra=log_entry)
