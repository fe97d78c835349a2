"""
Tests for persistence: item store, key-value vault and activity log.
"""

from gramvault.core.activity_log import ActivityLog, LogCategory, LogLevel
from gramvault.core.codec.content import content_hash
from gramvault.core.models import BatchStatus, ItemStatus
from gramvault.core.schemas import Session
from gramvault.core.vault import DEVICE_KEY, SESSION_KEY, CredentialVault, load_device_identity


# ==========================================================================
# Item Store
# ==========================================================================

class TestItemStore:
    """Tests for batch and item persistence."""

    async def test_create_batch_orders_items(self, store):
        batch = await store.create_batch("Trip", [(b"one", "a"), (b"two", None)], caption="hi")

        assert batch.status == BatchStatus.READY
        assert [item.position for item in batch.items] == [0, 1]
        assert batch.items[0].content_hash == content_hash(b"one")
        assert batch.items[0].bucket_id == "a"

    async def test_next_pending_skips_finished(self, store):
        batch = await store.create_batch("Trip", [(b"1", None), (b"2", None), (b"3", None)])
        await store.set_status(batch.items[0].id, ItemStatus.COMPLETED, remote_id="m1")
        await store.set_status(batch.items[1].id, ItemStatus.ERROR, error="duplicate")

        item = await store.next_pending(batch.id)

        assert item.position == 2

    async def test_uploaded_item_is_still_open(self, store):
        batch = await store.create_batch("Trip", [(b"1", None)])
        await store.set_status(batch.items[0].id, ItemStatus.UPLOADED, remote_id="m1")

        item = await store.next_pending(batch.id)

        assert item.remote_id == "m1"
        assert item.uploaded_at is not None

    async def test_load_content(self, store):
        batch = await store.create_batch("Trip", [(b"\xff\xd8bytes", None)])

        assert await store.load_content(batch.items[0].id) == b"\xff\xd8bytes"

    async def test_progress_counts(self, store):
        batch = await store.create_batch("Trip", [(bytes([n]), None) for n in range(5)])
        items = batch.items
        await store.set_status(items[0].id, ItemStatus.COMPLETED)
        await store.set_status(items[1].id, ItemStatus.ERROR)
        await store.set_status(items[2].id, ItemStatus.ARCHIVING)

        counts = await store.progress_counts(batch.id)

        assert (counts.total, counts.pending, counts.completed, counts.error, counts.in_flight) == (5, 2, 1, 1, 1)
        assert counts.open == 3
        assert counts.has_progress is True

    async def test_completed_status_stamps_time(self, store):
        batch = await store.create_batch("Trip", [(b"1", None)])

        await store.set_batch_status(batch.id, BatchStatus.COMPLETED)

        assert (await store.get_batch(batch.id)).completed_at is not None

    async def test_delete_batch(self, store):
        batch = await store.create_batch("Trip", [(b"1", None)])

        assert await store.delete_batch(batch.id) is True
        assert await store.get_batch(batch.id) is None
        assert await store.delete_batch(batch.id) is False


# ==========================================================================
# Vault
# ==========================================================================

class TestVault:
    """Tests for the key-value vault and credentials."""

    async def test_put_get_remove(self, vault):
        await vault.put("k", {"a": 1})
        await vault.put("k", {"a": 2})

        assert await vault.get("k") == {"a": 2}
        assert await vault.keys() == ["k"]

        await vault.remove("k")
        assert await vault.get("k") is None

    async def test_credentials_roundtrip(self, vault):
        credentials = CredentialVault(vault)
        session = Session(session_id="X", csrf_token="Y", user_id="12345", username="alice")

        await credentials.save(session)

        assert await credentials.load() == session

    async def test_invalid_session_discarded(self, vault):
        await vault.put(SESSION_KEY, {"session_id": ""})

        assert await CredentialVault(vault).load() is None
        assert await vault.get(SESSION_KEY) is None

    async def test_device_identity_stable(self, vault):
        first = await load_device_identity(vault)
        second = await load_device_identity(vault)

        assert first == second
        assert first.client_install_id.startswith("android-")
        assert await vault.get(DEVICE_KEY) is not None


# ==========================================================================
# Activity Log
# ==========================================================================

class TestActivityLog:
    def test_ring_buffer_bounded(self):
        log = ActivityLog(max_entries=3)
        for n in range(5):
            log.info(LogCategory.UPLOAD, f"entry {n}")

        assert [e.message for e in log.entries()] == ["entry 4", "entry 3", "entry 2"]

    def test_filter_and_limit(self):
        log = ActivityLog()
        log.info(LogCategory.UPLOAD, "uploaded")
        log.warning(LogCategory.NETWORK, "lost")
        log.error(LogCategory.ABUSE, "blocked")

        abuse = log.entries(LogCategory.ABUSE)

        assert [e.level for e in abuse] == [LogLevel.ERROR]
        assert len(log.entries(limit=2)) == 2
