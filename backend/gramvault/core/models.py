"""
GramVault - Database Models
===========================

SQLAlchemy models for upload batches, their items and the key/value vault.
Item status is mutated only by the upload orchestrator.
"""

import enum
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gramvault.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class ItemStatus(str, enum.Enum):
    """Lifecycle of one upload item."""
    PENDING = "pending"
    UPLOADING = "uploading"      # Bytes being sent / configured
    UPLOADED = "uploaded"        # Visible remotely, not yet archived
    ARCHIVING = "archiving"
    COMPLETED = "completed"      # Uploaded and archived
    ERROR = "error"              # Item-local failure, batch moved on


class BatchStatus(str, enum.Enum):
    """Coarse persisted status of a batch."""
    READY = "ready"
    UPLOADING = "uploading"
    PAUSED = "paused"
    ERROR = "error"
    COMPLETED = "completed"


# Items the orchestrator still has work to do on
OPEN_ITEM_STATUSES = (
    ItemStatus.PENDING,
    ItemStatus.UPLOADING,
    ItemStatus.UPLOADED,
    ItemStatus.ARCHIVING,
)


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Upload Models
# ==========================================================================

class UploadBatch(Base, TimestampMixin):
    """A user-defined set of images published and archived in order."""

    __tablename__ = "upload_batches"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    caption: Mapped[str] = mapped_column(
        Text,
        default="",
        nullable=False,
    )
    allow_repeats: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus),
        default=BatchStatus.READY,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    items: Mapped[list["UploadItem"]] = relationship(
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="UploadItem.position",
        lazy="selectin",
    )


class UploadItem(Base, TimestampMixin):
    """One image inside a batch."""

    __tablename__ = "upload_items"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    batch_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("upload_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    content: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
        deferred=True,
    )
    content_hash: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
    )
    bucket_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    status: Mapped[ItemStatus] = mapped_column(
        Enum(ItemStatus),
        default=ItemStatus.PENDING,
        nullable=False,
        index=True,
    )
    remote_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    last_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    uploaded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    batch: Mapped["UploadBatch"] = relationship(back_populates="items")


# ==========================================================================
# Vault
# ==========================================================================

class VaultEntry(Base, TimestampMixin):
    """Key/value record backing the credential vault and persisted guard state."""

    __tablename__ = "vault_entries"

    key: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    value: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
    )
