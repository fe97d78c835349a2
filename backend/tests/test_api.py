"""
Tests for the control API.
"""

import base64
from uuid import UUID

import httpx
import pytest
from httpx import AsyncClient

from gramvault.api.deps import build_services
from gramvault.core.config import settings
from gramvault.core.models import ItemStatus
from gramvault.core.vault import SESSION_KEY

pytestmark = pytest.mark.asyncio

API = settings.API_V1_PREFIX


def encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def batch_payload(jpeg_factory) -> dict:
    return {
        "name": "Weekend",
        "caption": "",
        "items": [
            {"image_base64": encode(jpeg_factory(200, 200)), "bucket_id": "a"},
            {"image_base64": encode(jpeg_factory(210, 200))},
        ],
    }


# ==========================================================================
# Health
# ==========================================================================

class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["network"] == "connected"

    async def test_root(self, client: AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["api"] == API


# ==========================================================================
# Session
# ==========================================================================

class TestSession:
    """Tests for cookie login, logout and the guard endpoints."""

    async def test_login_with_cookies(self, client: AsyncClient, platform, services):
        platform.queue(200, json={"status": "ok", "user": {"username": "alice"}})

        response = await client.post(
            f"{API}/session/cookies",
            json={"sessionid": "X", "csrftoken": "Y", "ds_user_id": "12345"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["logged_in"] is True
        assert data["username"] == "alice"
        assert platform.last.headers["Cookie"] == "sessionid=X; csrftoken=Y; ds_user_id=12345"
        assert (await services.vault.get(SESSION_KEY))["username"] == "alice"

    async def test_rejected_cookies_discarded(self, client: AsyncClient, platform, services):
        platform.queue(401, json={"message": "login_required"})

        response = await client.post(
            f"{API}/session/cookies",
            json={"sessionid": "X", "csrftoken": "Y", "ds_user_id": "12345"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "SESSION_EXPIRED"
        assert services.client.is_logged_in is False

    async def test_non_numeric_user_id_rejected(self, client: AsyncClient):
        response = await client.post(
            f"{API}/session/cookies",
            json={"sessionid": "X", "csrftoken": "Y", "ds_user_id": "alice"},
        )

        assert response.status_code == 422

    async def test_logout(self, client: AsyncClient, services):
        await services.client.login_from_cookies({"sessionid": "X", "csrftoken": "Y", "ds_user_id": "1"})

        response = await client.post(f"{API}/session/logout")

        assert response.status_code == 200
        assert (await client.get(f"{API}/session")).json()["logged_in"] is False

    async def test_guard_status_and_unlock(self, client: AsyncClient, services):
        services.guard.lock("Action flagged as spam", 600)

        status = (await client.get(f"{API}/guard")).json()
        assert status["locked"] is True
        assert status["reason"] == "Action flagged as spam"
        assert status["max_actions_per_hour"] == settings.MAX_ACTIONS_PER_HOUR
        assert status["cooldown_remaining_seconds"] == 0.0

        response = await client.post(f"{API}/guard/unlock")

        assert response.status_code == 200
        assert response.json()["locked"] is False

    async def test_emergency_reset(self, client: AsyncClient, services):
        await services.client.login_from_cookies({"sessionid": "X", "csrftoken": "Y", "ds_user_id": "1"})
        services.guard.lock("test", 600)

        response = await client.post(f"{API}/guard/emergency-reset")

        assert response.status_code == 200
        assert services.guard.is_locked() is False
        assert services.client.is_logged_in is False

    async def test_challenge_at_login_survives_restart(self, client: AsyncClient, platform, session_factory):
        platform.queue(400, json={"message": "challenge_required", "status": "fail"})

        response = await client.post(
            f"{API}/session/cookies",
            json={"sessionid": "X", "csrftoken": "Y", "ds_user_id": "12345"},
        )
        assert response.status_code == 423

        restarted = build_services(session_factory=session_factory, transport=httpx.MockTransport(platform))
        await restarted.client.start()
        try:
            await restarted.orchestrator.initialize()

            assert restarted.orchestrator.is_locked() is True
            assert restarted.orchestrator.lock_reason() == "Verification required by the platform"
        finally:
            await restarted.orchestrator.shutdown()
            await restarted.client.close()


# ==========================================================================
# Batches
# ==========================================================================

class TestBatches:
    """Tests for batch definition and control."""

    async def test_create_and_get(self, client: AsyncClient, batch_payload):
        response = await client.post(f"{API}/batches", json=batch_payload)

        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "ready"
        assert created["phase"]["kind"] == "idle"
        assert created["progress"]["total"] == 2
        assert [item["position"] for item in created["items"]] == [0, 1]
        assert created["items"][0]["bucket_id"] == "a"
        assert len(created["items"][0]["content_hash"]) == 16

        fetched = await client.get(f"{API}/batches/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "Weekend"

    async def test_list(self, client: AsyncClient, batch_payload):
        await client.post(f"{API}/batches", json=batch_payload)
        await client.post(f"{API}/batches", json={**batch_payload, "name": "Second"})

        response = await client.get(f"{API}/batches")

        assert response.status_code == 200
        assert sorted(batch["name"] for batch in response.json()) == ["Second", "Weekend"]

    async def test_invalid_base64(self, client: AsyncClient):
        response = await client.post(
            f"{API}/batches",
            json={"name": "Bad", "items": [{"image_base64": "***"}]},
        )

        assert response.status_code == 422

    async def test_empty_batch_rejected(self, client: AsyncClient):
        response = await client.post(f"{API}/batches", json={"name": "Empty", "items": []})

        assert response.status_code == 422

    async def test_missing_batch(self, client: AsyncClient):
        response = await client.get(f"{API}/batches/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404

    async def test_start_without_session(self, client: AsyncClient, batch_payload):
        created = (await client.post(f"{API}/batches", json=batch_payload)).json()

        response = await client.post(f"{API}/batches/{created['id']}/start")

        assert response.status_code == 401
        assert response.json()["code"] == "NOT_LOGGED_IN"

    async def test_resume_idle_is_conflict(self, client: AsyncClient, services, batch_payload):
        await services.client.login_from_cookies({"sessionid": "X", "csrftoken": "Y", "ds_user_id": "1"})
        created = (await client.post(f"{API}/batches", json=batch_payload)).json()

        response = await client.post(f"{API}/batches/{created['id']}/resume")

        assert response.status_code == 409

    async def test_start_while_locked(self, client: AsyncClient, services, batch_payload):
        await services.client.login_from_cookies({"sessionid": "X", "csrftoken": "Y", "ds_user_id": "1"})
        services.guard.lock("Action flagged as spam", 600)
        created = (await client.post(f"{API}/batches", json=batch_payload)).json()

        response = await client.post(f"{API}/batches/{created['id']}/start")

        assert response.status_code == 423
        assert response.json()["code"] == "LOCKED_OUT"

    async def test_phase_and_reset(self, client: AsyncClient, batch_payload):
        created = (await client.post(f"{API}/batches", json=batch_payload)).json()

        phase = await client.get(f"{API}/batches/{created['id']}/phase")
        reset = await client.post(f"{API}/batches/{created['id']}/reset")

        assert phase.json()["label"] == "Ready"
        assert phase.json()["countdown"] is False
        assert reset.json()["kind"] == "idle"

    async def test_delete(self, client: AsyncClient, batch_payload):
        created = (await client.post(f"{API}/batches", json=batch_payload)).json()

        response = await client.delete(f"{API}/batches/{created['id']}")

        assert response.status_code == 200
        assert (await client.get(f"{API}/batches/{created['id']}")).status_code == 404

    async def test_unarchive_finished_item(self, client: AsyncClient, services, platform, batch_payload):
        created = (await client.post(f"{API}/batches", json=batch_payload)).json()
        item_id = created["items"][0]["id"]
        await services.store.set_status(UUID(item_id), ItemStatus.COMPLETED, remote_id="42")
        await services.client.login_from_cookies({"sessionid": "X", "csrftoken": "Y", "ds_user_id": "1"})

        response = await client.post(f"{API}/batches/{created['id']}/items/{item_id}/unarchive")

        assert response.status_code == 200
        assert platform.last.url.path.endswith("/media/42/undo_only_me/")

    async def test_unarchive_requires_archived_item(self, client: AsyncClient, services, batch_payload):
        created = (await client.post(f"{API}/batches", json=batch_payload)).json()
        item_id = created["items"][0]["id"]

        response = await client.post(f"{API}/batches/{created['id']}/items/{item_id}/unarchive")

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"


# ==========================================================================
# Activity Log
# ==========================================================================

class TestActivityLog:
    async def test_entries_newest_first(self, client: AsyncClient, batch_payload):
        await client.post(f"{API}/batches", json=batch_payload)
        await client.post(f"{API}/session/logout")

        response = await client.get(f"{API}/logs")

        assert response.status_code == 200
        messages = [entry["message"] for entry in response.json()]
        assert messages[0] == "Logged out"
        assert "created with 2 photos" in messages[1]

    async def test_filter_by_category(self, client: AsyncClient, batch_payload):
        await client.post(f"{API}/batches", json=batch_payload)
        await client.post(f"{API}/session/logout")

        response = await client.get(f"{API}/logs", params={"category": "session"})

        assert [entry["category"] for entry in response.json()] == ["session"]

    async def test_invalid_category(self, client: AsyncClient):
        response = await client.get(f"{API}/logs", params={"category": "nope"})

        assert response.status_code == 400

    async def test_clear(self, client: AsyncClient):
        await client.post(f"{API}/session/logout")

        await client.delete(f"{API}/logs")

        assert (await client.get(f"{API}/logs")).json() == []
