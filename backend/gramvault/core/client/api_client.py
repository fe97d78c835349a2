"""
API Client
==========

Executes one platform call end to end:

1. Fail fast when the account is locked or the hourly ceiling is reached
2. Sleep out any armed backoff
3. Wait for connectivity
4. Sign and dispatch over the read lane or the write lane
5. Classify the response, update the guard

The read lane waits for connectivity and retries idempotent calls; the
write lane never retries a call that may already have reached the server.
"""

import asyncio
import enum
import json
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx
import structlog

from gramvault.core.activity_log import ActivityLog, LogCategory
from gramvault.core.client.errors import (
    AbuseDetected,
    ChallengeRequired,
    HttpError,
    LockedOut,
    NetworkFailure,
    NotLoggedIn,
    SessionExpired,
)
from gramvault.core.client.guard import AbuseGuard
from gramvault.core.client.signer import NonceSource, RequestSigner
from gramvault.core.config import settings
from gramvault.core.network.monitor import NetworkMonitor
from gramvault.core.schemas import DeviceIdentity, Session
from gramvault.core.vault import (
    LOCKDOWN_KEY,
    MACHINE_ID_KEY,
    CredentialVault,
    KeyValueVault,
    load_device_identity,
)

logger = structlog.get_logger()


class Lane(str, enum.Enum):
    READ = "read"
    WRITE = "write"


def decode_json(data: bytes) -> dict[str, Any]:
    """Decode a JSON object body; anything else decodes to {}."""
    try:
        decoded = json.loads(data)
    except (ValueError, UnicodeDecodeError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


class ApiClient:
    """Signed, guarded transport to the platform's private API."""

    def __init__(
        self,
        guard: AbuseGuard,
        monitor: NetworkMonitor,
        store: KeyValueVault,
        activity: Optional[ActivityLog] = None,
        signer: Optional[RequestSigner] = None,
        nonces: Optional[NonceSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = settings.PLATFORM_API_URL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.guard = guard
        self.monitor = monitor
        self.store = store
        self.credentials = CredentialVault(store)
        self.activity = activity or ActivityLog()
        self.signer = signer or RequestSigner()
        self.nonces = nonces or NonceSource()
        self._sleep = sleep

        self._read = httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._write = httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.UPLOAD_TIMEOUT_SECONDS,
            transport=transport,
        )

        self.session: Optional[Session] = None
        self.device: Optional[DeviceIdentity] = None
        self.machine_id: Optional[str] = None

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self) -> None:
        """Load device identity, machine id and any saved session."""
        self.device = await load_device_identity(self.store)
        mid = await self.store.get(MACHINE_ID_KEY)
        self.machine_id = mid.get("value") if mid else None
        await self.restore_session()
        logger.info(
            "api_client_started",
            device_id=self.device.device_id,
            logged_in=self.session is not None,
        )

    async def close(self) -> None:
        await self._read.aclose()
        await self._write.aclose()

    # ==========================================================================
    # Session
    # ==========================================================================

    @property
    def is_logged_in(self) -> bool:
        return self.session is not None and self.session.logged_in

    def require_session(self) -> Session:
        if self.session is None or not self.session.logged_in:
            raise NotLoggedIn("No active session")
        return self.session

    async def restore_session(self) -> Optional[Session]:
        """Reload the persisted session, if any."""
        self.session = await self.credentials.load()
        return self.session

    async def login_from_cookies(self, cookies: dict[str, str]) -> Session:
        """Adopt a session captured from app cookies and persist it."""
        session = Session(
            session_id=cookies["sessionid"],
            csrf_token=cookies["csrftoken"],
            user_id=cookies["ds_user_id"],
        )
        self.session = session
        await self.credentials.save(session)
        self.nonces.rotate_pigeon_session()
        self.activity.info(LogCategory.SESSION, f"Session loaded for user {session.user_id}")
        return session

    async def set_username(self, username: str) -> None:
        session = self.require_session()
        self.session = session.model_copy(update={"username": username})
        await self.credentials.save(self.session)

    async def logout(self) -> None:
        self.session = None
        await self.credentials.delete()
        self.activity.info(LogCategory.SESSION, "Logged out")

    async def emergency_reset(self) -> None:
        """Unlock, drop the session and purge all local credentials and cookies."""
        self.guard.emergency_reset()
        self.session = None
        self.machine_id = None
        await self.credentials.delete()
        await self.store.remove(MACHINE_ID_KEY)
        await self.store.remove(LOCKDOWN_KEY)
        self._read.cookies.clear()
        self._write.cookies.clear()
        self.activity.warning(LogCategory.SESSION, "Emergency reset: session and cookies purged")

    def on_foreground(self) -> str:
        """App came to the foreground: start a new pigeon session."""
        return self.nonces.rotate_pigeon_session()

    # ==========================================================================
    # Execute
    # ==========================================================================

    async def execute(
        self,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        *,
        lane: Optional[Lane] = None,
        signed: bool = False,
        content: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> bytes:
        """
        Execute one call.

        Args:
            method: HTTP method
            path: Path relative to the API base, or an absolute URL
            body: Form payload; signed-body envelope when ``signed``
            lane: Defaults to READ for GET, WRITE otherwise
            content: Raw bytes (binary upload); overrides ``body``
            headers: Extra headers merged over the signed set

        Returns:
            Raw response body

        Raises:
            LockedOut, RateLimited, NetworkFailure, SessionExpired,
            ChallengeRequired, AbuseDetected, HttpError, NotLoggedIn
        """
        session = self.require_session()
        lane = lane or (Lane.READ if method.upper() == "GET" else Lane.WRITE)

        lockdown = self.guard.state()
        if lockdown.locked:
            raise LockedOut(lockdown.reason or "Lockdown active", self.guard.lock_remaining())

        # The slot is taken now and kept once the request is sent,
        # whatever the outcome.
        stamp = self.guard.try_acquire()
        sent = False
        try:
            delay = self.guard.backoff_delay()
            if delay > 0:
                logger.info(
                    "backoff_sleep",
                    seconds=round(delay, 1),
                    consecutive_failures=self.guard.consecutive_failures,
                )
                await self._sleep(delay)

            if not self.monitor.is_connected():
                await self.monitor.await_connectivity()

            request_headers = self.signer.build_headers(
                session,
                self._device(),
                self.monitor.current_state(),
                self.nonces.next(),
                self.machine_id,
            )
            if headers:
                request_headers.update(headers)

            if content is not None:
                payload = content
            elif body is not None:
                payload = (self.signer.sign(body) if signed else urlencode(body)).encode("utf-8")
            else:
                payload = None

            sent = True
            response = await self._dispatch(lane, method, path, payload, request_headers)
        finally:
            if not sent:
                self.guard.release(stamp)
        return await self._handle_response(response, path)

    async def execute_json(self, method: str, path: str, body: Optional[dict[str, Any]] = None, **kwargs: Any) -> dict[str, Any]:
        return decode_json(await self.execute(method, path, body, **kwargs))

    async def _dispatch(
        self,
        lane: Lane,
        method: str,
        path: str,
        payload: Optional[bytes],
        headers: dict[str, str],
    ) -> httpx.Response:
        client = self._read if lane is Lane.READ else self._write
        attempts = 1 + (settings.READ_LANE_RETRIES if lane is Lane.READ else 0)

        for attempt in range(1, attempts + 1):
            try:
                return await client.request(method, path, content=payload, headers=headers)
            except httpx.TransportError as exc:
                self.guard.record_failure()
                logger.warning(
                    "transport_error",
                    lane=lane.value,
                    path=path,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt >= attempts:
                    self.activity.warning(LogCategory.NETWORK, f"Request failed: {exc}")
                    raise NetworkFailure(f"{method} {path} failed: {exc}") from exc
                await self._sleep(settings.READ_LANE_RETRY_DELAY_SECONDS * attempt)
                await self.monitor.await_connectivity()

        raise NetworkFailure(f"{method} {path} failed")

    async def _handle_response(self, response: httpx.Response, path: str) -> bytes:
        status = response.status_code
        data = response.content

        if status == 429:
            self.guard.record_failure()
            self.guard.lock("Too many requests (HTTP 429)", settings.LOCKDOWN_HTTP_429_SECONDS)
            await self._persist_lockdown()
            self.activity.error(LogCategory.ABUSE, "HTTP 429 - lockdown armed")
            raise AbuseDetected("Too many requests (HTTP 429)")

        if status in (401, 403):
            self.guard.record_failure()
            self.activity.error(LogCategory.SESSION, f"Session rejected (HTTP {status})")
            raise SessionExpired(f"Session rejected (HTTP {status})")

        if status >= 400:
            self.guard.record_failure()
            body = decode_json(data)
            message = str(body.get("message") or data[:200].decode("utf-8", "replace"))
            if "challenge" in body or "challenge_required" in message.lower():
                self.guard.lock("Verification required by the platform", settings.LOCKDOWN_CHALLENGE_SECONDS)
                await self._persist_lockdown()
                self.activity.error(LogCategory.ABUSE, "Challenge required - lockdown armed")
                raise ChallengeRequired(message)
            logger.warning("http_error", path=path, status=status, message=message)
            raise HttpError(status, message)

        body = decode_json(data)
        signal = self.guard.classify(body)
        if signal is not None:
            self.guard.apply(signal)
            await self._persist_lockdown()
            self.activity.error(LogCategory.ABUSE, f"{signal.reason} - lockdown armed")
            if signal.is_challenge:
                raise ChallengeRequired(signal.reason)
            raise AbuseDetected(signal.reason)

        await self._capture_machine_id(response)
        self.guard.record_success()
        return data

    async def _persist_lockdown(self) -> None:
        """Write the armed lockdown to the vault so a restart keeps it."""
        state = self.guard.snapshot()
        if state.locked:
            await self.store.put(LOCKDOWN_KEY, state.to_dict())

    async def _capture_machine_id(self, response: httpx.Response) -> None:
        mid = response.headers.get("x-mid") or response.cookies.get("mid")
        if mid and mid != self.machine_id:
            self.machine_id = mid
            await self.store.put(MACHINE_ID_KEY, {"value": mid})
            logger.info("machine_id_captured")

    def _device(self) -> DeviceIdentity:
        if self.device is None:
            raise RuntimeError("ApiClient.start() has not been awaited")
        return self.device
