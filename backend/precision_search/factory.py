"""
Precision Search - Service Wiring

Builds the repository, blob storage, queue service and processor from
Settings. The API process and the standalone worker share one wiring.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .external import create_email_classifier, create_query_suggester
from .ingestion import EvidenceIngestionService
from .mail_client import MailboxClientFactory, RequestSpacer
from .processor import PrecisionSearchProcessor
from .queue_service import QueueNotifier, QueueService
from .repository import Repository
from .storage import BlobStorage, LocalBlobStorage
from .strategies import StrategyConfig

logger = logging.getLogger(__name__)


@dataclass
class PrecisionSearchServices:
    repository: Repository
    storage: BlobStorage
    notifier: QueueNotifier
    queue_service: QueueService
    ingestion: EvidenceIngestionService
    processor: PrecisionSearchProcessor


def build_services(
    settings,
    repository: Optional[Repository] = None,
    storage: Optional[BlobStorage] = None,
    notifier: Optional[QueueNotifier] = None,
    http_client=None,
) -> PrecisionSearchServices:
    """
    Wire the precision search services.

    Args:
        settings: Settings instance
        repository: Record store (default: SQLAlchemy on the configured database)
        storage: Blob store (default: local directory)
        notifier: Queue notification channel shared with the worker listener
        http_client: Optional shared httpx.AsyncClient for the mailbox API
    """
    if repository is None:
        from database.connection import get_session_factory
        from .sql_repository import SqlAlchemyRepository
        repository = SqlAlchemyRepository(get_session_factory())

    storage = storage or LocalBlobStorage(settings.STORAGE_LOCAL_DIR, settings.STORAGE_REF_BASE)
    notifier = notifier or QueueNotifier()
    queue_service = QueueService(repository, notifier, max_retries=settings.PRECISION_SEARCH_MAX_RETRIES)
    ingestion = EvidenceIngestionService(repository, storage)

    def mailbox_factory() -> MailboxClientFactory:
        # One spacer per invocation, shared by every mailbox client it opens
        spacer = RequestSpacer(settings.MAIL_REQUEST_DELAY, settings.MAIL_REQUEST_JITTER)
        return MailboxClientFactory(
            repository,
            spacer,
            base_url=settings.MAIL_API_BASE_URL,
            timeout=settings.MAIL_API_TIMEOUT,
            max_mailboxes=settings.PRECISION_SEARCH_MAX_MAILBOXES,
            http_client=http_client,
        )

    processor = PrecisionSearchProcessor(
        repository=repository,
        queue_service=queue_service,
        ingestion=ingestion,
        mailbox_factory=mailbox_factory,
        query_suggester=create_query_suggester(settings),
        email_classifier=create_email_classifier(settings),
        config=StrategyConfig.from_settings(settings),
        time_budget_seconds=settings.PRECISION_SEARCH_TIME_BUDGET_SECONDS,
        batch_size=settings.PRECISION_SEARCH_BATCH_SIZE,
        inter_transaction_delay=settings.PRECISION_SEARCH_INTER_TRANSACTION_DELAY,
        retry_delays=settings.retry_delays,
    )

    return PrecisionSearchServices(
        repository=repository,
        storage=storage,
        notifier=notifier,
        queue_service=queue_service,
        ingestion=ingestion,
        processor=processor,
    )
