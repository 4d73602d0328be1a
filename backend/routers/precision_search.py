"""
Precision Search API Endpoints

Internal REST API for the precision matching queue:
- POST /api/precision-search/queue - Enqueue a search (optionally run it now)
- GET /api/precision-search/queue - List queue items for a user
- GET /api/precision-search/queue/{id} - Queue item status
- GET /api/precision-search/stats - Counts per status
- POST /api/precision-search/process - Run one sweep tick
- GET /api/precision-search/transactions/{id}/searches - Attempt log
- POST /api/precision-search/connect - Manually connect a document
- POST /api/precision-search/disconnect - Disconnect (and reject) a document
- POST /api/precision-search/score - Score documents against a transaction

All endpoints require the internal service key (X-Internal-Api-Key).
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from middleware.internal_auth import InternalService, require_internal_service
from precision_search.connect import connect, disconnect
from precision_search.errors import AccessDeniedError, NotFoundError, RejectedDocumentError
from precision_search.factory import PrecisionSearchServices
from precision_search.match_scoring import score_documents
from precision_search.models import ConnectionType, QueueScope, TriggerOrigin
from precision_search.search_log import SearchLog
from precision_search.workers.precision_search_worker import PrecisionSearchWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/precision-search", tags=["Precision Search"])


# ==================== Request/Response Models ====================

class EnqueueRequest(BaseModel):
    """Request to enqueue a precision search."""
    user_id: str = Field(..., description="Owner of the transactions")
    scope: QueueScope = Field(QueueScope.ALL_INCOMPLETE, description="all_incomplete or single_transaction")
    transaction_id: Optional[str] = Field(None, description="Target for single_transaction scope")
    triggered_by: TriggerOrigin = Field(TriggerOrigin.MANUAL, description="scheduled, manual or upstream_event")
    strategies: Optional[List[str]] = Field(None, description="Subset of strategies (default: all, priority order)")
    run_now: bool = Field(False, description="Run the item in this request instead of via the listener")


class ConnectRequest(BaseModel):
    """Request to manually connect a document to a transaction."""
    user_id: str
    document_id: str
    transaction_id: str


class DisconnectRequest(ConnectRequest):
    """Request to disconnect a document from a transaction."""
    reject: bool = Field(True, description="Never suggest this document for the transaction again")


class ScoreRequest(BaseModel):
    """Request to score documents against a transaction without connecting them."""
    user_id: str
    transaction_id: str
    document_ids: List[str] = Field(..., min_length=1, max_length=50)


# ==================== Dependencies ====================

def get_services(request: Request) -> PrecisionSearchServices:
    services = getattr(request.app.state, "precision_search", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Precision search is not initialised")
    return services


def _error_status(error: Exception) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, AccessDeniedError):
        return 403
    if isinstance(error, RejectedDocumentError):
        return 409
    return 400


# ==================== Queue ====================

@router.post("/queue")
async def enqueue_search(
    data: EnqueueRequest,
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    """Create a queue item; duplicate pending work returns the existing item."""
    try:
        item = await services.queue_service.enqueue(
            data.user_id,
            scope=data.scope,
            triggered_by=data.triggered_by,
            transaction_id=data.transaction_id,
            strategies=data.strategies,
        )
    except (ValueError, NotFoundError, AccessDeniedError) as e:
        raise HTTPException(status_code=_error_status(e), detail=str(e))

    logger.info(f"Queue item {item.id} enqueued by {service.name}")

    response = {"queue_item": item.to_dict()}
    if data.run_now:
        result = await services.processor.run_one(item.id)
        response["result"] = result.to_dict()
        refreshed = await services.queue_service.get(item.id)
        response["queue_item"] = refreshed.to_dict()
    return response


@router.get("/queue")
async def list_queue_items(
    user_id: str = Query(..., description="Owner id"),
    limit: int = Query(20, ge=1, le=100),
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    items = await services.queue_service.list_for_owner(user_id, limit=limit)
    return {"items": [item.to_dict() for item in items], "count": len(items)}


@router.get("/queue/{queue_id}")
async def get_queue_item(
    queue_id: str,
    user_id: Optional[str] = Query(None, description="Restrict to this owner"),
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    item = await services.queue_service.get(queue_id)
    if item is None or (user_id and item.owner_id != user_id):
        raise HTTPException(status_code=404, detail="Queue item not found")
    return item.to_dict()


@router.get("/stats")
async def get_stats(
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    return await services.queue_service.get_queue_stats()


@router.post("/process")
async def process_queue(
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    """Run one sweep tick: claim the oldest pending item and process it."""
    worker = PrecisionSearchWorker(services.processor, services.queue_service)
    return await worker.process_once()


# ==================== Search Log ====================

@router.get("/transactions/{transaction_id}/searches")
async def get_transaction_searches(
    transaction_id: str,
    user_id: str = Query(..., description="Owner id"),
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    searches = await SearchLog(services.repository).for_transaction(transaction_id, user_id)
    return {"searches": [s.to_dict() for s in searches], "count": len(searches)}


# ==================== Connections ====================

@router.post("/connect")
async def connect_document(
    data: ConnectRequest,
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    try:
        result = await connect(
            services.repository,
            data.document_id,
            data.transaction_id,
            data.user_id,
            connection_type=ConnectionType.MANUAL,
        )
    except (NotFoundError, AccessDeniedError) as e:
        raise HTTPException(status_code=_error_status(e), detail=str(e))
    return result.to_dict()


@router.post("/disconnect")
async def disconnect_document(
    data: DisconnectRequest,
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    try:
        result = await disconnect(
            services.repository,
            data.document_id,
            data.transaction_id,
            data.user_id,
            reject=data.reject,
        )
    except (NotFoundError, AccessDeniedError) as e:
        raise HTTPException(status_code=_error_status(e), detail=str(e))
    return {"removed": result.removed, "rejected": result.rejected, "isComplete": result.is_complete}


# ==================== Scoring ====================

@router.post("/score")
async def score_match(
    data: ScoreRequest,
    services: PrecisionSearchServices = Depends(get_services),
    service: InternalService = Depends(require_internal_service),
):
    """Score documents with the strategy scorer; nothing is connected."""
    try:
        scores = await score_documents(
            services.repository,
            data.user_id,
            data.transaction_id,
            data.document_ids,
            services.processor.config,
        )
    except (NotFoundError, AccessDeniedError) as e:
        raise HTTPException(status_code=_error_status(e), detail=str(e))
    return {
        "transaction_id": data.transaction_id,
        "scores": [s.to_dict() for s in scores],
        "count": len(scores),
    }
