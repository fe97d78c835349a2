"""
Vault - Persistent key/value storage for credentials and guard state.

Backed by the ``vault_entries`` table. The credential vault stores the
active Session; the same store also keeps the install's device identity,
the captured machine id, the persisted lockdown and upload pacing state.
"""

import uuid
from typing import Any, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gramvault.core.config import settings
from gramvault.core.database import get_db_session
from gramvault.core.models import VaultEntry
from gramvault.core.schemas import DeviceIdentity, Session

logger = structlog.get_logger()


SESSION_KEY = "session"
DEVICE_KEY = "device_identity"
MACHINE_ID_KEY = "machine_id"
LOCKDOWN_KEY = "lockdown"
COOLDOWN_KEY = "upload_cooldown"
LAST_HASH_KEY = "last_upload_hash"


class KeyValueVault:
    """JSON values keyed by short strings."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._factory = session_factory

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        async with get_db_session(self._factory) as db:
            entry = await db.get(VaultEntry, key)
            return dict(entry.value) if entry else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        async with get_db_session(self._factory) as db:
            entry = await db.get(VaultEntry, key)
            if entry is None:
                db.add(VaultEntry(key=key, value=value))
            else:
                entry.value = value

    async def remove(self, key: str) -> None:
        async with get_db_session(self._factory) as db:
            await db.execute(delete(VaultEntry).where(VaultEntry.key == key))

    async def keys(self) -> list[str]:
        async with get_db_session(self._factory) as db:
            result = await db.execute(select(VaultEntry.key))
            return list(result.scalars().all())


class CredentialVault:
    """save/load/delete of the active Session."""

    def __init__(self, store: KeyValueVault):
        self.store = store

    async def save(self, session: Session) -> None:
        await self.store.put(SESSION_KEY, session.model_dump())

    async def load(self) -> Optional[Session]:
        raw = await self.store.get(SESSION_KEY)
        if raw is None:
            return None
        try:
            return Session.model_validate(raw)
        except ValidationError:
            logger.warning("vault_session_invalid")
            await self.store.remove(SESSION_KEY)
            return None

    async def delete(self) -> None:
        await self.store.remove(SESSION_KEY)


def build_user_agent(locale: str) -> str:
    """Android client user agent for the configured app version."""
    return (
        f"Instagram {settings.APP_VERSION_STRING} Android "
        f"(30/11; 420dpi; 1080x2340; samsung; SM-G991B; o1s; exynos2100; {locale}; 458229237)"
    )


async def load_device_identity(store: KeyValueVault) -> DeviceIdentity:
    """Load the install's identity, generating it on first run."""
    raw = await store.get(DEVICE_KEY)
    if raw is not None:
        return DeviceIdentity.model_validate(raw)

    identity = DeviceIdentity(
        device_id=str(uuid.uuid4()),
        client_install_id=f"android-{uuid.uuid4().hex[:16]}",
        user_agent=build_user_agent(settings.APP_LOCALE),
    )
    await store.put(DEVICE_KEY, identity.model_dump())
    logger.info("device_identity_generated", device_id=identity.device_id)
    return identity
