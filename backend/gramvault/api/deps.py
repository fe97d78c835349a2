"""
GramVault - API Dependencies
============================

Service wiring shared by the FastAPI routes. Every long-lived service is
constructed once at startup and reached through ``get_services``.
"""

from dataclasses import dataclass
from typing import Annotated, Optional

import httpx
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gramvault.core.activity_log import ActivityLog
from gramvault.core.client.api_client import ApiClient
from gramvault.core.client.guard import AbuseGuard
from gramvault.core.client.media import MediaService
from gramvault.core.codec.content import ContentCodec
from gramvault.core.config import settings
from gramvault.core.network.monitor import NetworkMonitor
from gramvault.core.upload.orchestrator import Pacing, UploadOrchestrator
from gramvault.core.upload.store import ItemStore
from gramvault.core.vault import KeyValueVault


@dataclass
class Services:
    """Process-wide service graph."""

    activity: ActivityLog
    monitor: NetworkMonitor
    guard: AbuseGuard
    vault: KeyValueVault
    client: ApiClient
    media: MediaService
    codec: ContentCodec
    store: ItemStore
    orchestrator: UploadOrchestrator


def build_services(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    pacing: Optional[Pacing] = None,
) -> Services:
    """Construct the service graph. One AbuseGuard is shared by everything."""
    activity = ActivityLog(max_entries=settings.ACTIVITY_LOG_SIZE)
    monitor = NetworkMonitor()
    guard = AbuseGuard()
    vault = KeyValueVault(session_factory)
    client = ApiClient(guard, monitor, vault, activity=activity, transport=transport)
    media = MediaService(client)
    codec = ContentCodec()
    store = ItemStore(session_factory)
    orchestrator = UploadOrchestrator(
        store=store,
        media=media,
        codec=codec,
        guard=guard,
        monitor=monitor,
        vault=vault,
        activity=activity,
        pacing=pacing,
    )
    return Services(
        activity=activity,
        monitor=monitor,
        guard=guard,
        vault=vault,
        client=client,
        media=media,
        codec=codec,
        store=store,
        orchestrator=orchestrator,
    )


def get_services(request: Request) -> Services:
    """Dependency that provides the service graph."""
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


ServicesDep = Annotated[Services, Depends(get_services)]
