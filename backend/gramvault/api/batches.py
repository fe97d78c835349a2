"""
Batch API Routes.

Batch definition plus start / pause / resume / reset of its upload run,
and unarchiving of finished items.
"""

import base64
import binascii
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from gramvault.api.deps import Services, ServicesDep
from gramvault.core.activity_log import LogCategory
from gramvault.core.client.errors import InvalidTransition
from gramvault.core.models import ItemStatus, UploadBatch
from gramvault.core.schemas import (
    BatchCreate,
    BatchDetailResponse,
    BatchResponse,
    ItemResponse,
    MessageResponse,
    PhaseResponse,
    ProgressResponse,
)
from gramvault.core.upload.phases import UploadPhase

router = APIRouter(prefix="/batches", tags=["batches"])


# ==========================================================================
# Helpers
# ==========================================================================

def _phase_response(phase: UploadPhase) -> PhaseResponse:
    return PhaseResponse(**phase.to_dict())


async def _batch_response(
    services: Services,
    batch: UploadBatch,
    detail: bool = False,
) -> BatchResponse:
    counts = await services.store.progress_counts(batch.id)
    data = {
        "id": batch.id,
        "name": batch.name,
        "caption": batch.caption,
        "allow_repeats": batch.allow_repeats,
        "status": batch.status,
        "created_at": batch.created_at,
        "completed_at": batch.completed_at,
        "phase": _phase_response(services.orchestrator.current_phase(batch.id)),
        "progress": ProgressResponse(
            total=counts.total,
            pending=counts.pending,
            completed=counts.completed,
            error=counts.error,
            in_flight=counts.in_flight,
        ),
    }
    if detail:
        return BatchDetailResponse(
            **data,
            items=[ItemResponse.model_validate(item) for item in batch.items],
        )
    return BatchResponse(**data)


async def _get_batch_or_404(services: Services, batch_id: UUID) -> UploadBatch:
    batch = await services.store.get_batch(batch_id)
    if batch is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Batch {batch_id} not found",
        )
    return batch


def _decode_image(encoded: str, index: int) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Item {index} is not valid base64",
        )


# ==========================================================================
# Endpoints
# ==========================================================================

@router.post("", response_model=BatchDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_batch(request: BatchCreate, services: ServicesDep):
    """
    Define a new batch.

    Images are stored as sent; orientation, cropping and compression
    happen right before each upload.
    """
    images: list[tuple[bytes, Optional[str]]] = [
        (_decode_image(item.image_base64, index), item.bucket_id)
        for index, item in enumerate(request.items)
    ]
    batch = await services.store.create_batch(
        name=request.name,
        images=images,
        caption=request.caption,
        allow_repeats=request.allow_repeats,
    )
    services.activity.info(LogCategory.UPLOAD, f"Batch '{batch.name}' created with {len(images)} photos")
    return await _batch_response(services, batch, detail=True)


@router.get("", response_model=list[BatchResponse])
async def list_batches(services: ServicesDep):
    batches = await services.store.list_batches()
    return [await _batch_response(services, batch) for batch in batches]


@router.get("/{batch_id}", response_model=BatchDetailResponse)
async def get_batch(batch_id: UUID, services: ServicesDep):
    batch = await _get_batch_or_404(services, batch_id)
    return await _batch_response(services, batch, detail=True)


@router.delete("/{batch_id}", response_model=MessageResponse)
async def delete_batch(batch_id: UUID, services: ServicesDep):
    """Delete a batch. A running upload is stopped first."""
    await _get_batch_or_404(services, batch_id)
    await services.orchestrator.forget(batch_id)
    await services.store.delete_batch(batch_id)
    return MessageResponse(message=f"Batch {batch_id} deleted")


@router.get("/{batch_id}/phase", response_model=PhaseResponse)
async def get_phase(batch_id: UUID, services: ServicesDep):
    await _get_batch_or_404(services, batch_id)
    return _phase_response(services.orchestrator.current_phase(batch_id))


@router.post("/{batch_id}/start", response_model=PhaseResponse)
async def start_batch(batch_id: UUID, services: ServicesDep):
    await _get_batch_or_404(services, batch_id)
    services.client.require_session()
    return _phase_response(await services.orchestrator.start(batch_id))


@router.post("/{batch_id}/pause", response_model=PhaseResponse)
async def pause_batch(batch_id: UUID, services: ServicesDep):
    """Stops after any in-flight request returns."""
    await _get_batch_or_404(services, batch_id)
    return _phase_response(await services.orchestrator.pause(batch_id))


@router.post("/{batch_id}/resume", response_model=PhaseResponse)
async def resume_batch(batch_id: UUID, services: ServicesDep):
    await _get_batch_or_404(services, batch_id)
    services.client.require_session()
    return _phase_response(await services.orchestrator.resume(batch_id))


@router.post("/{batch_id}/reset", response_model=PhaseResponse)
async def reset_batch(batch_id: UUID, services: ServicesDep):
    await _get_batch_or_404(services, batch_id)
    return _phase_response(await services.orchestrator.reset(batch_id))


@router.post("/{batch_id}/items/{item_id}/unarchive", response_model=MessageResponse)
async def unarchive_item(batch_id: UUID, item_id: UUID, services: ServicesDep):
    """Make an archived item's post public again."""
    batch = await _get_batch_or_404(services, batch_id)
    item = next((item for item in batch.items if item.id == item_id), None)
    if item is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Item {item_id} not found in batch {batch_id}",
        )
    if item.status != ItemStatus.COMPLETED or not item.remote_id:
        raise InvalidTransition(f"Item {item_id} has not been archived")

    services.client.require_session()
    if not await services.media.unarchive(item.remote_id):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Unarchive of media {item.remote_id} was not accepted",
        )
    services.activity.info(LogCategory.UPLOAD, f"Photo {item.position + 1} of '{batch.name}' unarchived")
    return MessageResponse(message=f"Media {item.remote_id} unarchived")
