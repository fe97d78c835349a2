"""
Activity Log API Routes.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from gramvault.api.deps import ServicesDep
from gramvault.core.activity_log import LogCategory
from gramvault.core.schemas import LogEntryResponse, MessageResponse

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("", response_model=list[LogEntryResponse])
async def list_logs(
    services: ServicesDep,
    category: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
):
    """Most recent activity first, optionally filtered by category."""
    category_enum = None
    if category:
        try:
            category_enum = LogCategory(category)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid category: {category}",
            )

    return [
        LogEntryResponse(
            timestamp=entry.timestamp,
            level=entry.level.value,
            category=entry.category.value,
            message=entry.message,
        )
        for entry in services.activity.entries(category_enum, limit)
    ]


@router.delete("", response_model=MessageResponse)
async def clear_logs(services: ServicesDep):
    services.activity.clear()
    return MessageResponse(message="Activity log cleared")
