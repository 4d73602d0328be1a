"""
Precision Search - Pattern Learning

Best-effort side channel run after a mail-sourced connection:
- Sender domain is added to the partner's known email domains
- A source pattern (domain + originating mailbox) is recorded or its
  usage counter bumped

Failures are logged and never propagate to the connection.
"""

import logging
from typing import Optional

from .audit import AuditEventType, log_precision_search_event
from .models import Collection, utc_now
from .repository import ArrayUnion, Repository, Update
from .scorer import email_domain

logger = logging.getLogger(__name__)

INITIAL_PATTERN_CONFIDENCE = 60


async def learn_from_connection(
    repository: Repository,
    owner_id: str,
    partner_id: Optional[str],
    sender: Optional[str],
    mailbox_id: Optional[str] = None,
    source_type: Optional[str] = None,
) -> bool:
    """
    Record where a partner's evidence arrived from.

    Returns:
        True when the partner record was updated
    """
    domain = email_domain(sender)
    if not partner_id or not domain:
        return False

    try:
        partner = await repository.get(Collection.PARTNERS, partner_id)
        if partner is None or partner.owner_id != owner_id:
            return False

        now = utc_now()
        patterns = [dict(p) for p in partner.source_patterns or []]
        existing = next(
            (p for p in patterns if p.get("domain") == domain and p.get("mailbox_id") == mailbox_id),
            None,
        )
        if existing is not None:
            existing["usage_count"] = int(existing.get("usage_count") or 0) + 1
            existing["last_used_at"] = now.isoformat()
        else:
            patterns.append({
                "domain": domain,
                "mailbox_id": mailbox_id,
                "source_type": source_type,
                "confidence": INITIAL_PATTERN_CONFIDENCE,
                "usage_count": 1,
                "created_at": now.isoformat(),
                "last_used_at": now.isoformat(),
            })

        await repository.atomic_write([
            ArrayUnion(Collection.PARTNERS, partner_id, "email_domains", [domain]),
            Update(Collection.PARTNERS, partner_id, {"source_patterns": patterns, "updated_at": now}),
        ])
    except Exception as e:
        logger.warning(f"Pattern learning failed for partner {partner_id}: {e}")
        return False

    log_precision_search_event(
        AuditEventType.PATTERN_LEARNED,
        user_id=owner_id,
        details={"partner_id": partner_id, "domain": domain, "mailbox_id": mailbox_id},
    )
    return True
