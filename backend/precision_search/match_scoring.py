"""
Precision Search - On-Demand Match Scoring

Scores stored documents against one transaction with the same scorer and
thresholds the queue strategies use, so a reviewer sees the numbers the
automation would see. Nothing is connected or written.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from .errors import AccessDeniedError, NotFoundError
from .models import Collection
from .repository import Repository
from .scorer import MatchScore, PartnerContext, ScoringCandidate, score_candidate
from .strategies import StrategyConfig

logger = logging.getLogger(__name__)


@dataclass
class DocumentScore:
    document_id: str
    match: MatchScore
    already_connected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"document_id": self.document_id, "already_connected": self.already_connected, **self.match.to_dict()}


async def score_documents(
    repository: Repository,
    owner_id: str,
    transaction_id: str,
    document_ids: Sequence[str],
    config: StrategyConfig,
) -> List[DocumentScore]:
    """
    Score each document against the transaction, in request order.

    Raises:
        NotFoundError: transaction or a document does not exist
        AccessDeniedError: a record belongs to another owner
    """
    transaction = await repository.get(Collection.TRANSACTIONS, transaction_id)
    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    if transaction.owner_id != owner_id:
        raise AccessDeniedError(f"Transaction {transaction_id} not owned by {owner_id}")

    partner = None
    if transaction.partner_id:
        partner = await repository.get(Collection.PARTNERS, transaction.partner_id)
        if partner is not None and partner.owner_id != owner_id:
            partner = None
    partner_context = PartnerContext.from_partner(partner)

    scores: List[DocumentScore] = []
    for document_id in dict.fromkeys(document_ids):
        document = await repository.get(Collection.DOCUMENTS, document_id)
        if document is None or document.deleted_at is not None:
            raise NotFoundError(f"Document {document_id} not found")
        if document.owner_id != owner_id:
            raise AccessDeniedError(f"Document {document_id} not owned by {owner_id}")

        match = score_candidate(
            transaction,
            ScoringCandidate.from_document(document),
            partner_context,
            tolerance=config.amount_tolerance,
            date_window_days=config.date_window_days,
            strong_score=config.strong_match_score,
        )
        scores.append(DocumentScore(
            document_id=document_id,
            match=match,
            already_connected=transaction_id in (document.transaction_ids or []),
        ))

    logger.info(f"Scored {len(scores)} document(s) against transaction {transaction_id}")
    return scores
