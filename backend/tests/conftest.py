"""
GramVault - Test Fixtures
=========================

Shared pytest fixtures for all tests.
"""

import io
import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from typing import Any, Optional
from unittest.mock import AsyncMock

os.environ.setdefault("ENVIRONMENT", "test")

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gramvault.api.deps import Services, build_services
from gramvault.api.main import app
from gramvault.core.client.api_client import ApiClient
from gramvault.core.client.guard import AbuseGuard
from gramvault.core.database import Base, init_db
from gramvault.core.network.monitor import NetworkMonitor
from gramvault.core.upload.orchestrator import Pacing
from gramvault.core.upload.store import ItemStore
from gramvault.core.vault import KeyValueVault


# ==========================================================================
# Test Database Setup
# ==========================================================================

# File-backed SQLite in a temp dir so concurrent sessions (e.g. two batches
# running at once) get their own connections instead of sharing one.
TEST_DATABASE_URL = "sqlite+aiosqlite:///" + os.path.join(tempfile.mkdtemp(), "test.db")

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

ZERO_PACING = Pacing(
    pre_archive=(0.0, 0.0),
    item_cooldown=(0.0, 0.0),
    cooldown_buffer=(0.0, 0.0),
    retry_base=0.0,
    retry_jitter=(0.0, 0.0),
    max_retries=3,
    network_wait=0.5,
    escalated_pause=0.05,
    bot_lockdown=0.05,
)

SESSION_COOKIES = {"sessionid": "X", "csrftoken": "Y", "ds_user_id": "12345"}


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Provide a clean schema for each test.

    Creates all tables before test, drops after.
    """
    await init_db(test_engine)

    yield TestingSessionLocal

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def vault(session_factory) -> KeyValueVault:
    return KeyValueVault(session_factory)


@pytest.fixture
def store(session_factory) -> ItemStore:
    return ItemStore(session_factory)


# ==========================================================================
# Client Fixtures
# ==========================================================================

class PlatformStub:
    """
    httpx MockTransport handler that records requests and replays queued
    responses. When the queue is empty it answers ``{"status": "ok"}``.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._responses: list[Any] = []

    def queue(self, status_code: int = 200, json: Optional[dict] = None, **kwargs: Any) -> None:
        self._responses.append(httpx.Response(status_code, json=json or {"status": "ok"}, **kwargs))

    def queue_error(self, exc: Exception) -> None:
        self._responses.append(exc)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            return httpx.Response(200, json={"status": "ok"})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def zero_pacing() -> Pacing:
    return ZERO_PACING


@pytest.fixture
def platform() -> PlatformStub:
    return PlatformStub()


@pytest.fixture
def guard() -> AbuseGuard:
    return AbuseGuard()


@pytest.fixture
def monitor() -> NetworkMonitor:
    return NetworkMonitor(stabilization_seconds=0.1, poll_interval=0.01)


@pytest_asyncio.fixture
async def api_client(
    platform: PlatformStub,
    guard: AbuseGuard,
    monitor: NetworkMonitor,
    vault: KeyValueVault,
) -> AsyncGenerator[ApiClient, None]:
    """Started, logged-in ApiClient talking to the platform stub."""
    client = ApiClient(
        guard,
        monitor,
        vault,
        transport=httpx.MockTransport(platform),
        sleep=AsyncMock(),
    )
    await client.start()
    await client.login_from_cookies(SESSION_COOKIES)
    yield client
    await client.close()


# ==========================================================================
# API Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def services(
    session_factory,
    platform: PlatformStub,
) -> AsyncGenerator[Services, None]:
    services = build_services(
        session_factory=session_factory,
        transport=httpx.MockTransport(platform),
        pacing=ZERO_PACING,
    )
    services.client._sleep = AsyncMock()
    services.media._sleep = AsyncMock()
    await services.client.start()
    await services.orchestrator.initialize()
    yield services
    await services.orchestrator.shutdown()
    await services.client.close()


@pytest_asyncio.fixture(scope="function")
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client bound to the test service graph.
    """
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.state.services = None


# ==========================================================================
# Helper Functions
# ==========================================================================

def make_jpeg(
    width: int = 400,
    height: int = 400,
    quality: int = 90,
    orientation: Optional[int] = None,
    noise: bool = False,
) -> bytes:
    """Encode a gradient (or noise) test image."""
    if noise:
        image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    else:
        image = Image.new("RGB", (width, height))
        pixels = image.load()
        for x in range(width):
            for y in range(height):
                pixels[x, y] = (x * 255 // width, y * 255 // height, 128)

    buffer = io.BytesIO()
    options: dict[str, Any] = {"format": "JPEG", "quality": quality}
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        options["exif"] = exif.tobytes()
    image.save(buffer, **options)
    return buffer.getvalue()


@pytest.fixture
def jpeg_factory() -> Callable[..., bytes]:
    return make_jpeg
