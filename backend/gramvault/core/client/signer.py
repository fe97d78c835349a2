"""
Request Signer
==============

Builds the mobile-client header set and the signed-body envelope.

``build_headers`` and ``sign`` are pure: every varying value (pigeon
session, client time, telemetry) arrives in a ``RequestNonces`` produced
by ``NonceSource``.
"""

import hashlib
import hmac
import json
import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from gramvault.core.config import settings
from gramvault.core.network.monitor import NetworkState
from gramvault.core.schemas import DeviceIdentity, Session


@dataclass(frozen=True)
class RequestNonces:
    """Per-request varying header values."""

    pigeon_session_id: str
    raw_client_time: float
    connection_speed_kbps: int
    bandwidth_speed_kbps: int
    bandwidth_total_bytes: int
    bandwidth_total_time_ms: int


class NonceSource:
    """
    Produces RequestNonces with realistic drift.

    Bandwidth counters only ever grow, like the real app's; the reported
    speed is re-rolled occasionally. The pigeon session id lasts until
    ``rotate_pigeon_session()`` (app foreground / resume).
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._rng = rng or random.Random()
        self._clock = clock
        self.pigeon_session_id = str(uuid.uuid4())
        self._bandwidth_speed = self._rng.randint(2500, 8000)
        self._total_bytes = 0
        self._total_time_ms = 0

    def rotate_pigeon_session(self) -> str:
        self.pigeon_session_id = str(uuid.uuid4())
        return self.pigeon_session_id

    def next(self) -> RequestNonces:
        self._total_bytes += self._rng.randint(5000, 50000)
        self._total_time_ms += self._rng.randint(50, 500)
        if self._rng.randint(0, 10) == 0:
            self._bandwidth_speed = self._rng.randint(2500, 8000)

        return RequestNonces(
            pigeon_session_id=self.pigeon_session_id,
            raw_client_time=self._clock(),
            connection_speed_kbps=self._rng.randint(1000, 3700),
            bandwidth_speed_kbps=self._bandwidth_speed,
            bandwidth_total_bytes=self._total_bytes,
            bandwidth_total_time_ms=self._total_time_ms,
        )


class RequestSigner:
    """Header builder and HMAC signer for one device profile."""

    def __init__(
        self,
        sig_key: str = settings.SIG_KEY,
        sig_key_version: str = settings.SIG_KEY_VERSION,
        app_id: str = settings.APP_ID,
        locale: str = settings.APP_LOCALE,
    ):
        self.sig_key = sig_key.encode("utf-8")
        self.sig_key_version = sig_key_version
        self.app_id = app_id
        self.locale = locale

    # ==========================================================================
    # Signing
    # ==========================================================================

    @staticmethod
    def canonical_json(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def signature(self, body: str) -> str:
        """HMAC-SHA256 hex digest of ``body``."""
        return hmac.new(self.sig_key, body.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, payload: dict[str, Any]) -> str:
        """
        Build the signed-body envelope for a write payload.

        Returns:
            ``signed_body=<hex>.<json>&ig_sig_key_version=<n>`` form-encoded
        """
        body = self.canonical_json(payload)
        return urlencode(
            {
                "signed_body": f"{self.signature(body)}.{body}",
                "ig_sig_key_version": self.sig_key_version,
            }
        )

    # ==========================================================================
    # Headers
    # ==========================================================================

    def accept_language(self) -> str:
        language, _, region = self.locale.partition("_")
        return f"{language}-{region or 'US'},{language};q=0.9"

    def build_headers(
        self,
        session: Session,
        device: DeviceIdentity,
        network: NetworkState,
        nonces: RequestNonces,
        machine_id: Optional[str] = None,
    ) -> dict[str, str]:
        headers = {
            "User-Agent": device.user_agent,
            "X-CSRFToken": session.csrf_token,
            "X-IG-App-ID": self.app_id,
            "X-IG-Device-ID": device.device_id,
            "X-IG-Android-ID": device.client_install_id,
            "X-IG-Connection-Type": network.header_value,
            "X-IG-Connection-Speed": f"{nonces.connection_speed_kbps}kbps",
            "X-IG-Capabilities": settings.CAPABILITIES,
            "X-IG-App-Locale": self.locale,
            "X-IG-Device-Locale": self.locale,
            "X-Pigeon-Session-Id": nonces.pigeon_session_id,
            "X-Pigeon-Rawclienttime": f"{nonces.raw_client_time:.3f}",
            "X-IG-Bandwidth-Speed-KBPS": str(nonces.bandwidth_speed_kbps),
            "X-IG-Bandwidth-TotalBytes-B": str(nonces.bandwidth_total_bytes),
            "X-IG-Bandwidth-TotalTime-MS": str(nonces.bandwidth_total_time_ms),
            "X-Bloks-Version-Id": settings.BLOKS_VERSION_ID,
            "X-Bloks-Is-Layout-RTL": "false",
            "X-IG-WWW-Claim": "0",
            "X-Requested-With": "XMLHttpRequest",
            "Accept-Language": self.accept_language(),
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
            "Cookie": session.cookie_header,
        }
        if machine_id:
            headers["X-MID"] = machine_id
        return headers
