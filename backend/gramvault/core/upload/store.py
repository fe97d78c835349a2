"""
Item Store
==========

SQLAlchemy-backed persistence of batches and items. The orchestrator only
uses next_pending / set_status / progress_counts; the rest serves the
control API.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import undefer

from gramvault.core.codec.content import content_hash
from gramvault.core.database import get_db_session
from gramvault.core.models import (
    OPEN_ITEM_STATUSES,
    BatchStatus,
    ItemStatus,
    UploadBatch,
    UploadItem,
)


@dataclass(frozen=True)
class ProgressCounts:
    total: int = 0
    pending: int = 0
    completed: int = 0
    error: int = 0
    in_flight: int = 0

    @property
    def open(self) -> int:
        return self.pending + self.in_flight

    @property
    def has_progress(self) -> bool:
        return self.completed + self.error + self.in_flight > 0


class ItemStore:
    """Batch and item persistence."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._factory = session_factory

    # ==========================================================================
    # Batches
    # ==========================================================================

    async def create_batch(
        self,
        name: str,
        images: list[tuple[bytes, Optional[str]]],
        caption: str = "",
        allow_repeats: bool = False,
    ) -> UploadBatch:
        async with get_db_session(self._factory) as db:
            batch = UploadBatch(name=name, caption=caption, allow_repeats=allow_repeats)
            db.add(batch)
            await db.flush()
            for position, (data, bucket_id) in enumerate(images):
                db.add(UploadItem(
                    batch_id=batch.id,
                    position=position,
                    content=data,
                    content_hash=content_hash(data),
                    bucket_id=bucket_id,
                ))
            await db.flush()
            batch_id = batch.id
        return await self.get_batch(batch_id)

    async def get_batch(self, batch_id: UUID) -> Optional[UploadBatch]:
        async with get_db_session(self._factory) as db:
            return await db.get(UploadBatch, batch_id)

    async def list_batches(self) -> list[UploadBatch]:
        async with get_db_session(self._factory) as db:
            result = await db.execute(select(UploadBatch).order_by(UploadBatch.created_at))
            return list(result.scalars().all())

    async def delete_batch(self, batch_id: UUID) -> bool:
        async with get_db_session(self._factory) as db:
            batch = await db.get(UploadBatch, batch_id)
            if batch is None:
                return False
            await db.delete(batch)
            return True

    async def set_batch_status(self, batch_id: UUID, status: BatchStatus) -> None:
        async with get_db_session(self._factory) as db:
            batch = await db.get(UploadBatch, batch_id)
            if batch is None:
                return
            batch.status = status
            batch.completed_at = datetime.now(timezone.utc) if status == BatchStatus.COMPLETED else None

    # ==========================================================================
    # Items
    # ==========================================================================

    async def next_pending(self, batch_id: UUID) -> Optional[UploadItem]:
        """First item (by position) that still has work left."""
        async with get_db_session(self._factory) as db:
            result = await db.execute(
                select(UploadItem)
                .where(
                    UploadItem.batch_id == batch_id,
                    UploadItem.status.in_(OPEN_ITEM_STATUSES),
                )
                .order_by(UploadItem.position)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def load_content(self, item_id: UUID) -> bytes:
        async with get_db_session(self._factory) as db:
            result = await db.execute(
                select(UploadItem).options(undefer(UploadItem.content)).where(UploadItem.id == item_id)
            )
            return result.scalar_one().content

    async def set_status(
        self,
        item_id: UUID,
        status: ItemStatus,
        *,
        remote_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        async with get_db_session(self._factory) as db:
            item = await db.get(UploadItem, item_id)
            if item is None:
                # Batch deleted while an item was in flight
                return
            item.status = status
            if remote_id is not None:
                item.remote_id = remote_id
                item.uploaded_at = datetime.now(timezone.utc)
            item.last_error = error

    async def progress_counts(self, batch_id: UUID) -> ProgressCounts:
        async with get_db_session(self._factory) as db:
            result = await db.execute(
                select(UploadItem.status, func.count())
                .where(UploadItem.batch_id == batch_id)
                .group_by(UploadItem.status)
            )
            counts = {status: count for status, count in result.all()}

        in_flight = sum(
            counts.get(s, 0)
            for s in (ItemStatus.UPLOADING, ItemStatus.UPLOADED, ItemStatus.ARCHIVING)
        )
        return ProgressCounts(
            total=sum(counts.values()),
            pending=counts.get(ItemStatus.PENDING, 0),
            completed=counts.get(ItemStatus.COMPLETED, 0),
            error=counts.get(ItemStatus.ERROR, 0),
            in_flight=in_flight,
        )
