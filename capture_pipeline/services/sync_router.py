"""
Sync Router for the capture pipeline API.

Endpoints used by the web app and the browser extension:
- Uploading voice recordings and submitting batches of locally queued captures
- Reading, editing, retrying and deleting records
- Pipeline health
- A WebSocket for live job and record updates
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from capture_pipeline.database import health_check
from capture_pipeline.errors import ConflictError, StorageError, TerminalExternalError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

# Injected from app.py to avoid circular imports.
_services = None


def init_sync_router(services) -> None:
    global _services
    _services = services


def get_services():
    if _services is None:
        raise HTTPException(status_code=503, detail="Pipeline is not initialised")
    return _services


# Pydantic models for API requests/responses

class SyncBatchRequest(BaseModel):
    """A batch of captures drained from a client's local queue."""
    client_id: str = Field(..., min_length=1, description="Submitting client")
    records: List[Dict[str, Any]] = Field(..., max_length=100, description="Capture records in queue order")


class SyncAckResponse(BaseModel):
    record_id: str
    status: str
    version: int
    canonical_id: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class SyncBatchResponse(BaseModel):
    acks: List[SyncAckResponse]


class EditRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Replacement text")
    base_version: Optional[int] = Field(None, description="Version the edit was made against")


def _conflict(e: ConflictError) -> HTTPException:
    return HTTPException(status_code=409, detail={"message": e.message, "current": e.current})


@router.post("/batch", response_model=SyncBatchResponse)
async def submit_batch(request: SyncBatchRequest, services=Depends(get_services)):
    """Reconcile a client batch and return one acknowledgement per record."""
    try:
        acks = await services.reconciler.submit_batch(request.client_id, request.records)
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid capture record: {e}")
    except StorageError as e:
        logger.error(f"Storage failure while syncing batch from {request.client_id}: {e}")
        raise HTTPException(status_code=503, detail=e.user_message)
    return SyncBatchResponse(acks=[SyncAckResponse(**ack.to_dict()) for ack in acks])


@router.post("/audio/{audio_ref:path}")
async def upload_audio(audio_ref: str, request: Request, services=Depends(get_services)):
    """Store a voice recording before the capture that references it is synced."""
    audio_bytes = await request.body()
    if not audio_bytes:
        raise HTTPException(status_code=400, detail="Empty audio upload")
    try:
        await asyncio.to_thread(services.audio_store.save, audio_ref, audio_bytes)
    except TerminalExternalError as e:
        raise HTTPException(status_code=400, detail=e.user_message)
    except OSError as e:
        logger.error(f"Failed to store audio {audio_ref}: {e}")
        raise HTTPException(status_code=503, detail="Could not store the recording")
    return {"success": True, "audio_ref": audio_ref, "size": len(audio_bytes)}


@router.get("/records/{record_id}")
async def get_record(
    record_id: str,
    include_jobs: bool = Query(False, description="Include the record's pipeline jobs"),
    services=Depends(get_services),
):
    record = services.store.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    payload = record.to_api()
    if include_jobs:
        payload["jobs"] = [job.to_api() for job in services.job_queue.list_jobs(record_id=record_id)]
    return payload


@router.post("/records/{record_id}/edit")
async def edit_record(record_id: str, request: EditRequest, services=Depends(get_services)):
    try:
        record = await services.orchestrator.edit_record(record_id, request.text, request.base_version)
    except ConflictError as e:
        raise _conflict(e)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return record.to_api()


@router.post("/records/{record_id}/retry")
async def retry_record(record_id: str, services=Depends(get_services)):
    try:
        record = await services.orchestrator.retry_record(record_id)
    except ConflictError as e:
        raise _conflict(e)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return record.to_api()


@router.delete("/records/{record_id}")
async def delete_record(record_id: str, services=Depends(get_services)):
    record = await services.orchestrator.delete_record(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return {"success": True, "record": record.to_api()}


@router.get("/health")
async def pipeline_health(services=Depends(get_services)):
    database = health_check(services.config.db_path)
    callers = services.callers.snapshot()
    degraded = [name for name, snap in callers.items() if snap["circuit"]["state"] != "closed"]
    return {
        "status": "ok" if database["connection_test"] and not degraded else "degraded",
        "database": database,
        "pipeline": services.orchestrator.snapshot(),
        "external_services": callers,
        "cache": services.cache.snapshot(),
        "notifier": services.notifier.stats(),
        "sync": services.reconciler.stats,
    }


@router.websocket("/ws/{user_id}")
async def status_socket(websocket: WebSocket, user_id: str, client_id: Optional[str] = None):
    """Live job_update and record_update events for one user."""
    services = get_services()
    connection_id = await services.notifier.connect(websocket, user_id, client_id)
    try:
        while True:
            data = await websocket.receive_text()
            await services.notifier.handle_message(connection_id, data)
    except WebSocketDisconnect:
        pass
    finally:
        services.notifier.disconnect(connection_id)
