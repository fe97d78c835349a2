"""
GramVault - Pydantic Schemas
============================

Session/device value types shared by the client layer, plus the request
and response schemas of the control API.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gramvault.core.models import BatchStatus, ItemStatus


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# Identity
# ==========================================================================

class Session(BaseSchema):
    """Authenticated platform identity captured from app cookies."""

    session_id: str = Field(min_length=1)
    csrf_token: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    username: Optional[str] = None
    logged_in: bool = True

    @property
    def cookie_header(self) -> str:
        return (
            f"sessionid={self.session_id}; "
            f"csrftoken={self.csrf_token}; "
            f"ds_user_id={self.user_id}"
        )


class DeviceIdentity(BaseSchema):
    """Stable install fingerprint. Generated once, never rotated."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    client_install_id: str
    user_agent: str


# ==========================================================================
# Session API
# ==========================================================================

class SessionCookiesRequest(BaseSchema):
    """Cookies captured from a logged-in app/web session."""

    sessionid: str = Field(min_length=1)
    csrftoken: str = Field(min_length=1)
    ds_user_id: str = Field(min_length=1)

    @field_validator("ds_user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("ds_user_id must be numeric")
        return v


class SessionResponse(BaseSchema):
    """Current session (tokens never echoed)."""

    logged_in: bool
    user_id: Optional[str] = None
    username: Optional[str] = None


# ==========================================================================
# Guard API
# ==========================================================================

class GuardStatusResponse(BaseSchema):
    """Lockdown, rate window and backoff snapshot."""

    locked: bool
    reason: Optional[str] = None
    remaining_seconds: float = 0.0
    actions_last_hour: int
    max_actions_per_hour: int
    consecutive_failures: int
    backoff_seconds: float
    cooldown_remaining_seconds: float = 0.0


# ==========================================================================
# Batch API
# ==========================================================================

class BatchItemCreate(BaseSchema):
    """One image, base64 encoded."""

    image_base64: str = Field(min_length=1)
    bucket_id: Optional[str] = Field(default=None, max_length=64)


class BatchCreate(BaseSchema):
    """Schema for defining a new batch."""

    name: str = Field(min_length=1, max_length=255)
    caption: str = Field(default="", max_length=2200)
    allow_repeats: bool = False
    items: list[BatchItemCreate] = Field(min_length=1)


class ItemResponse(BaseSchema):
    """Schema for item response."""

    id: UUID
    position: int
    content_hash: str
    bucket_id: Optional[str] = None
    status: ItemStatus
    remote_id: Optional[str] = None
    last_error: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class PhaseResponse(BaseSchema):
    """Current orchestration phase of a batch."""

    kind: str
    label: str
    countdown: bool = False
    item_number: Optional[int] = None
    attempt: Optional[int] = None
    until: Optional[float] = None
    remaining_seconds: Optional[float] = None


class ProgressResponse(BaseSchema):
    """Item counts per status."""

    total: int
    pending: int
    completed: int
    error: int
    in_flight: int


class BatchResponse(BaseSchema):
    """Schema for batch response."""

    id: UUID
    name: str
    caption: str
    allow_repeats: bool
    status: BatchStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    phase: Optional[PhaseResponse] = None
    progress: Optional[ProgressResponse] = None


class BatchDetailResponse(BatchResponse):
    """Batch with its items."""

    items: list[ItemResponse] = []


# ==========================================================================
# Activity Log API
# ==========================================================================

class LogEntryResponse(BaseSchema):
    """Activity log line."""

    timestamp: datetime
    level: str
    category: str
    message: str


# ==========================================================================
# Common Schemas
# ==========================================================================

class MessageResponse(BaseSchema):
    """Simple message response."""

    message: str


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    network: str
