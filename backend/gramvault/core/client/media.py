"""
Media Service
=============

Platform operations built on ApiClient: the binary upload sub-protocol,
configure (finalize), archive/unarchive, current user lookup and session
warm-up. Every write is preceded by a human-like delay and waits out any
network stabilization window.
"""

import asyncio
import json
import random
import time
import uuid
from typing import Awaitable, Callable, Optional

import structlog

from gramvault.core.activity_log import LogCategory
from gramvault.core.client.api_client import ApiClient, Lane
from gramvault.core.client.errors import UploadRejected
from gramvault.core.config import settings

logger = structlog.get_logger()


class MediaService:
    """Upload, configure and archive photos for the logged-in account."""

    IMAGE_COMPRESSION = {"lib_name": "moz", "lib_version": "3.1.m", "quality": "80"}
    RETRY_CONTEXT = {"num_step_auto_retry": 0, "num_reupload": 0, "num_step_manual_retry": 0}

    def __init__(
        self,
        client: ApiClient,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        upload_url: str = settings.PLATFORM_UPLOAD_URL,
    ):
        self.client = client
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self.upload_url = upload_url.rstrip("/")

    async def _human_delay(self, base: tuple[float, float], jitter: tuple[float, float] = (0.0, 0.0)) -> None:
        delay = self._rng.uniform(*base) + self._rng.uniform(*jitter)
        if delay > 0:
            await self._sleep(delay)

    # ==========================================================================
    # Upload
    # ==========================================================================

    def new_upload_id(self) -> str:
        """Millisecond timestamp with a small random offset."""
        return str(int(self._clock() * 1000) + self._rng.randint(-500, 500))

    async def upload_photo(self, data: bytes) -> str:
        """
        Send raw JPEG bytes to the rupload endpoint.

        Args:
            data: Prepared JPEG bytes

        Returns:
            Upload id echoed by the platform

        Raises:
            UploadRejected: If the response does not carry an upload id
        """
        await self.client.monitor.await_stability()

        upload_id = self.new_upload_id()
        upload_name = f"{upload_id}_0_{self._rng.randint(1_000_000_000, 9_999_999_999)}"
        rupload_params = {
            "retry_context": json.dumps(self.RETRY_CONTEXT, separators=(",", ":")),
            "media_type": "1",
            "xsharing_user_ids": "[]",
            "upload_id": upload_id,
            "image_compression": json.dumps(self.IMAGE_COMPRESSION, separators=(",", ":")),
        }
        headers = {
            "Content-Type": "application/octet-stream",
            "X-Instagram-Rupload-Params": json.dumps(rupload_params, separators=(",", ":")),
            "X_FB_PHOTO_WATERFALL_ID": str(uuid.uuid4()),
            "X-Entity-Type": "image/jpeg",
            "X-Entity-Name": upload_name,
            "X-Entity-Length": str(len(data)),
            "Offset": "0",
        }

        logger.info("photo_upload_started", upload_id=upload_id, size_kb=len(data) // 1024)
        body = await self.client.execute_json(
            "POST",
            f"{self.upload_url}/{upload_name}",
            lane=Lane.WRITE,
            content=data,
            headers=headers,
        )
        returned = body.get("upload_id")
        if not returned:
            raise UploadRejected(f"Upload response missing upload_id (status={body.get('status')})")
        return str(returned)

    async def configure(self, upload_id: str, caption: str = "") -> str:
        """
        Finalize an uploaded photo into a visible post.

        Returns:
            Media id (``pk``) of the new post
        """
        await self._human_delay(settings.PRE_CONFIGURE_DELAY, settings.PRE_CONFIGURE_JITTER)
        await self.client.monitor.await_stability()

        session = self.client.require_session()
        device = self.client.device
        payload = {
            "upload_id": upload_id,
            "caption": caption,
            "source_type": "4",
            "media_folder": "Camera",
            "device_id": device.client_install_id if device else "",
            "_uuid": device.device_id if device else "",
            "_uid": session.user_id,
            "_csrftoken": session.csrf_token,
            "radio_type": self.client.monitor.current_state().radio_type,
        }
        body = await self.client.execute_json("POST", "/media/configure/", payload, signed=True)
        media = body.get("media") or {}
        pk = media.get("pk") or media.get("id")
        if not pk:
            raise UploadRejected(f"Configure response missing media id (status={body.get('status')})")
        media_id = str(pk).split("_")[0]
        logger.info("upload_configured", media_id=media_id)
        self.client.activity.info(LogCategory.UPLOAD, f"Photo published (media {media_id})")
        return media_id

    # ==========================================================================
    # Archive
    # ==========================================================================

    async def archive(self, media_id: str) -> bool:
        """Hide a post from the public profile (only me)."""
        await self._human_delay(settings.ARCHIVE_DELAY, settings.ARCHIVE_JITTER)
        await self.client.monitor.await_stability()

        session = self.client.require_session()
        body = await self.client.execute_json(
            "POST",
            f"/media/{media_id}_{session.user_id}/only_me/",
            {"media_id": media_id, "_uid": session.user_id, "_csrftoken": session.csrf_token},
            signed=True,
        )
        archived = body.get("status") == "ok"
        logger.info("media_archived" if archived else "media_archive_failed", media_id=media_id)
        return archived

    async def unarchive(self, media_id: str) -> bool:
        """Make an archived post public again."""
        await self._human_delay(settings.UNARCHIVE_DELAY)
        await self.client.monitor.await_stability()

        session = self.client.require_session()
        body = await self.client.execute_json(
            "POST",
            f"/media/{media_id}/undo_only_me/",
            {"media_id": media_id, "_uid": session.user_id, "_csrftoken": session.csrf_token},
            signed=True,
        )
        return body.get("status") == "ok"

    # ==========================================================================
    # Account
    # ==========================================================================

    async def fetch_username(self) -> Optional[str]:
        """Look up the logged-in username and store it on the session."""
        body = await self.client.execute_json("GET", "/accounts/current_user/?edit=true")
        username = (body.get("user") or {}).get("username")
        if username:
            await self.client.set_username(username)
        return username

    async def warm_up(self) -> None:
        """Browse the timeline briefly before the first write of a run."""
        await self._human_delay(settings.WARM_UP_DELAY)
        await self.client.execute("GET", "/feed/timeline/")
        await self._human_delay(settings.WARM_UP_DELAY)
        logger.info("session_warmed_up")
