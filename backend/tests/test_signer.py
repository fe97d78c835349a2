"""
Tests for request signing and header construction.
"""

import hashlib
import hmac
import json
import random
from urllib.parse import parse_qs

import pytest

from gramvault.core.client.signer import NonceSource, RequestNonces, RequestSigner
from gramvault.core.network.monitor import ConnectionKind, NetworkState
from gramvault.core.schemas import DeviceIdentity, Session


@pytest.fixture
def signer() -> RequestSigner:
    return RequestSigner(sig_key="secret", sig_key_version="4", app_id="567067343352427", locale="en_US")


@pytest.fixture
def session() -> Session:
    return Session(session_id="X", csrf_token="Y", user_id="12345")


@pytest.fixture
def device() -> DeviceIdentity:
    return DeviceIdentity(
        device_id="0b6d7a3e-0000-4000-8000-000000000001",
        client_install_id="android-1234567890abcdef",
        user_agent="Instagram 275.0.0.27.98 Android",
    )


@pytest.fixture
def nonces() -> RequestNonces:
    return RequestNonces(
        pigeon_session_id="pigeon-1",
        raw_client_time=1700000000.123,
        connection_speed_kbps=2000,
        bandwidth_speed_kbps=5000,
        bandwidth_total_bytes=12345,
        bandwidth_total_time_ms=250,
    )


class TestBuildHeaders:
    """Tests for the mobile-client header set."""

    def test_session_headers(self, signer, session, device, nonces):
        headers = signer.build_headers(
            session, device, NetworkState(True, ConnectionKind.WIFI), nonces
        )

        assert headers["Cookie"] == "sessionid=X; csrftoken=Y; ds_user_id=12345"
        assert headers["X-CSRFToken"] == "Y"
        assert headers["X-IG-Device-ID"] == device.device_id
        assert headers["X-Pigeon-Session-Id"] == "pigeon-1"
        assert headers["X-Pigeon-Rawclienttime"] == "1700000000.123"
        assert "X-MID" not in headers

    def test_connection_type_follows_network(self, signer, session, device, nonces):
        wifi = signer.build_headers(session, device, NetworkState(True, ConnectionKind.WIFI), nonces)
        cell = signer.build_headers(session, device, NetworkState(True, ConnectionKind.CELLULAR), nonces)

        assert wifi["X-IG-Connection-Type"] == "WIFI"
        assert cell["X-IG-Connection-Type"] == "4G"

    def test_machine_id_header(self, signer, session, device, nonces):
        headers = signer.build_headers(
            session, device, NetworkState(True, ConnectionKind.WIFI), nonces, machine_id="mid-abc"
        )

        assert headers["X-MID"] == "mid-abc"

    def test_accept_language(self, signer):
        assert signer.accept_language() == "en-US,en;q=0.9"


class TestSign:
    """Tests for the signed-body envelope."""

    def test_signature_is_deterministic(self, signer):
        payload = {"b": 2, "a": "x"}

        assert signer.sign(payload) == signer.sign({"a": "x", "b": 2})

    def test_envelope_format(self, signer):
        payload = {"upload_id": "123", "caption": "hi"}

        fields = parse_qs(signer.sign(payload))

        assert fields["ig_sig_key_version"] == ["4"]
        signature, _, body = fields["signed_body"][0].partition(".")
        assert json.loads(body) == payload
        expected = hmac.new(b"secret", body.encode("utf-8"), hashlib.sha256).hexdigest()
        assert signature == expected


class TestNonceSource:
    """Tests for per-request drift."""

    def test_bandwidth_counters_grow(self):
        source = NonceSource(rng=random.Random(1), clock=lambda: 100.0)

        first = source.next()
        second = source.next()

        assert second.bandwidth_total_bytes > first.bandwidth_total_bytes
        assert second.bandwidth_total_time_ms > first.bandwidth_total_time_ms
        assert 1000 <= second.connection_speed_kbps <= 3700

    def test_pigeon_session_rotates(self):
        source = NonceSource(rng=random.Random(1))
        before = source.next().pigeon_session_id

        rotated = source.rotate_pigeon_session()

        assert rotated != before
        assert source.next().pigeon_session_id == rotated
