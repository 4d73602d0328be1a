"""
Precision Search Module

Resumable, rate-limited matching queue that finds evidence documents
(uploads, mail attachments, invoice emails) for incomplete transactions.
"""

from .connect import ConnectResult, connect, disconnect
from .ingestion import EvidenceIngestionService, IngestionResult
from .processor import PrecisionSearchProcessor, ProcessingResult
from .queue_service import QueueEvent, QueueNotifier, QueueService
from .repository import InMemoryRepository, Repository
from .scorer import MatchScore, score_candidate

__all__ = [
    "ConnectResult",
    "connect",
    "disconnect",
    "EvidenceIngestionService",
    "IngestionResult",
    "PrecisionSearchProcessor",
    "ProcessingResult",
    "QueueEvent",
    "QueueNotifier",
    "QueueService",
    "InMemoryRepository",
    "Repository",
    "MatchScore",
    "score_candidate",
]
