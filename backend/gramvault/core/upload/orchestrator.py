"""
Upload Orchestrator - Per-batch phase state machine.

Drives each batch through upload → configure → archive, one item at a time,
with randomized human-like pacing between items.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import UUID

from gramvault.core.activity_log import ActivityLog, LogCategory
from gramvault.core.client.errors import (
    AbuseDetected,
    BatchNotFound,
    ChallengeRequired,
    CompressionFailure,
    ConnectivityTimeout,
    DuplicateContent,
    HttpError,
    InvalidTransition,
    LockedOut,
    NetworkFailure,
    RateLimited,
    SessionExpired,
    UploadRejected,
)
from gramvault.core.client.guard import AbuseGuard, LockdownState
from gramvault.core.client.media import MediaService
from gramvault.core.codec.content import ContentCodec
from gramvault.core.config import settings
from gramvault.core.models import BatchStatus, ItemStatus, UploadBatch, UploadItem
from gramvault.core.network.monitor import NetworkMonitor, NetworkState
from gramvault.core.upload.events import PhaseEvent, PhasePublisher, Subscriber
from gramvault.core.upload.phases import PhaseKind, UploadPhase
from gramvault.core.upload.store import ItemStore
from gramvault.core.vault import COOLDOWN_KEY, LAST_HASH_KEY, LOCKDOWN_KEY, KeyValueVault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pacing:
    """Delays and retry bounds (seconds, low/high uniform draws)."""

    pre_archive: tuple[float, float] = settings.PRE_ARCHIVE_DELAY
    item_cooldown: tuple[float, float] = settings.ITEM_COOLDOWN
    cooldown_buffer: tuple[float, float] = settings.COOLDOWN_BUFFER
    retry_base: float = settings.AUTO_RETRY_BASE_SECONDS
    retry_jitter: tuple[float, float] = settings.AUTO_RETRY_JITTER
    max_retries: int = settings.MAX_AUTO_RETRIES
    network_wait: float = settings.NETWORK_WAIT_SECONDS
    escalated_pause: float = settings.ESCALATED_PAUSE_SECONDS
    bot_lockdown: float = settings.BOT_LOCKDOWN_SECONDS


@dataclass
class BatchRun:
    """In-memory orchestration state of one batch."""

    batch_id: UUID
    phase: UploadPhase = field(default_factory=UploadPhase.idle)
    task: Optional[asyncio.Task] = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    stop_requested: Optional[str] = None  # "pause" | "reset"
    retries: int = 0
    warmed_up: bool = False
    status: Optional[BatchStatus] = None
    interrupted: Optional[UploadPhase] = None

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


class UploadOrchestrator:
    """
    Upload state machine over all batches.

    Phases per batch:
    idle → uploading(n) → archiving → waitingNextItem(n+1) → ... → completed

    Interruptions:
    - Disconnection: waitingNetwork, then back to the interrupted item
    - Abuse signal (any batch): botLockdown(until) → paused, never auto-resumed
    - Session rejected: sessionExpired (terminal until reset after re-login)
    - Transient failures: autoRetrying, then escalatedPause → paused
    - Local rate ceiling: cooldown(until next free slot)

    Network calls already on the wire are never cancelled; pause/reset wake
    the current countdown and suppress the next scheduled action.
    """

    # Phases with a platform call in flight
    NETWORK_KINDS = frozenset({PhaseKind.UPLOADING, PhaseKind.ARCHIVING})

    PHASE_STATUS = {
        PhaseKind.IDLE: BatchStatus.READY,
        PhaseKind.PAUSED: BatchStatus.PAUSED,
        PhaseKind.COMPLETED: BatchStatus.COMPLETED,
        PhaseKind.SESSION_EXPIRED: BatchStatus.ERROR,
    }

    def __init__(
        self,
        store: ItemStore,
        media: MediaService,
        codec: ContentCodec,
        guard: AbuseGuard,
        monitor: NetworkMonitor,
        vault: KeyValueVault,
        activity: Optional[ActivityLog] = None,
        publisher: Optional[PhasePublisher] = None,
        pacing: Optional[Pacing] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        tick_seconds: float = settings.COUNTDOWN_TICK_SECONDS,
        warm_up: bool = True,
    ):
        self.store = store
        self.media = media
        self.codec = codec
        self.guard = guard
        self.monitor = monitor
        self.vault = vault
        self.activity = activity or ActivityLog()
        self.publisher = publisher or PhasePublisher()
        self.pacing = pacing or Pacing()
        self.tick_seconds = tick_seconds
        self.warm_up = warm_up
        self._rng = rng or random.Random()
        self._clock = clock

        self._runs: dict[UUID, BatchRun] = {}
        self._cooldown_until = 0.0
        self._last_hash: Optional[str] = None
        self._announcements: set[asyncio.Task] = set()

        self.guard.subscribe(self._on_lockdown_change)
        self.monitor.subscribe(self._on_network_change)

    # ==========================================================================
    # Startup
    # ==========================================================================

    async def initialize(self) -> dict[UUID, UploadPhase]:
        """Restore persisted pacing/lockdown state and reconcile batches."""
        cooldown = await self.vault.get(COOLDOWN_KEY)
        if cooldown:
            self._cooldown_until = float(cooldown.get("until", 0.0))
        last_hash = await self.vault.get(LAST_HASH_KEY)
        if last_hash:
            self._last_hash = last_hash.get("value")
        lockdown = await self.vault.get(LOCKDOWN_KEY)
        if lockdown:
            self.guard.restore(LockdownState.from_dict(lockdown))
        return await self.reconcile()

    async def reconcile(self) -> dict[UUID, UploadPhase]:
        """
        Derive a safe phase for every batch without a running task.

        Partial progress becomes ``paused`` (never resumed automatically);
        a batch with no open items is ``completed``.
        """
        phases: dict[UUID, UploadPhase] = {}
        for batch in await self.store.list_batches():
            run = self._run(batch.id)
            if run.is_running:
                phases[batch.id] = run.phase
                continue

            counts = await self.store.progress_counts(batch.id)
            if counts.total > 0 and counts.open == 0:
                phase = UploadPhase.completed()
            elif counts.has_progress or batch.status in (
                BatchStatus.PAUSED,
                BatchStatus.UPLOADING,
                BatchStatus.ERROR,
            ):
                phase = UploadPhase.paused()
            else:
                phase = UploadPhase.idle()

            run.status = batch.status
            await self._set_phase(run, phase)
            phases[batch.id] = phase
            logger.info(f"Reconciled batch {batch.id} to {phase.kind.value} ({counts})")
        return phases

    # ==========================================================================
    # Queries
    # ==========================================================================

    def current_phase(self, batch_id: UUID) -> UploadPhase:
        run = self._runs.get(batch_id)
        return run.phase if run else UploadPhase.idle()

    def is_locked(self) -> bool:
        return self.guard.is_locked()

    def lock_reason(self) -> Optional[str]:
        return self.guard.lock_reason()

    def lock_remaining(self) -> float:
        return self.guard.lock_remaining()

    def cooldown_remaining(self) -> float:
        return max(0.0, self._cooldown_until - self._clock())

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        return self.publisher.subscribe(subscriber)

    # ==========================================================================
    # Control
    # ==========================================================================

    async def start(self, batch_id: UUID) -> UploadPhase:
        """Start an idle batch."""
        run = self._run(batch_id)
        if run.is_running or run.phase.kind != PhaseKind.IDLE:
            raise InvalidTransition(f"Cannot start from {run.phase.kind.value}")
        return await self._launch(run)

    async def resume(self, batch_id: UUID) -> UploadPhase:
        """Resume a paused batch. Refused while a lockdown is active."""
        run = self._run(batch_id)
        if run.is_running or run.phase.kind != PhaseKind.PAUSED:
            raise InvalidTransition(f"Cannot resume from {run.phase.kind.value}")
        return await self._launch(run)

    async def pause(self, batch_id: UUID) -> UploadPhase:
        """Stop after the in-flight call (if any) returns."""
        run = self._run(batch_id)
        if run.phase.kind == PhaseKind.PAUSED and not run.is_running:
            return run.phase
        if not run.is_running:
            raise InvalidTransition(f"Cannot pause from {run.phase.kind.value}")
        run.stop_requested = "pause"
        run.wake.set()
        self.activity.info(LogCategory.UPLOAD, f"Pause requested for batch {batch_id}")
        return run.phase

    async def reset(self, batch_id: UUID) -> UploadPhase:
        """Return a batch to idle, clearing retry state. Allowed from any phase."""
        run = self._run(batch_id)
        run.retries = 0
        if run.is_running:
            run.stop_requested = "reset"
            run.wake.set()
            return run.phase
        await self._set_phase(run, UploadPhase.idle())
        return run.phase

    async def wait(self, batch_id: UUID) -> UploadPhase:
        """Wait for the batch task (if any) to finish."""
        run = self._run(batch_id)
        if run.task is not None:
            await asyncio.shield(run.task)
        return run.phase

    async def forget(self, batch_id: UUID) -> None:
        """Drop a deleted batch, stopping its task first."""
        run = self._runs.get(batch_id)
        if run is None:
            return
        if run.is_running:
            run.stop_requested = "reset"
            run.wake.set()
            await self.wait(batch_id)
        self._runs.pop(batch_id, None)

    async def unlock(self, emergency: bool = False) -> None:
        """Explicit unlock; also forgets the persisted lockdown."""
        if emergency:
            self.guard.emergency_reset()
        else:
            self.guard.unlock()
        await self.vault.remove(LOCKDOWN_KEY)

    async def shutdown(self) -> None:
        tasks = [run.task for run in self._runs.values() if run.is_running]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _launch(self, run: BatchRun) -> UploadPhase:
        batch = await self.store.get_batch(run.batch_id)
        if batch is None:
            raise BatchNotFound(f"Batch {run.batch_id} not found")

        lockdown = self.guard.state()
        if lockdown.locked:
            raise LockedOut(lockdown.reason or "Lockdown active", self.guard.lock_remaining())

        counts = await self.store.progress_counts(run.batch_id)
        if counts.open == 0:
            await self._set_phase(run, UploadPhase.completed())
            return run.phase

        run.retries = 0
        run.stop_requested = None
        run.wake.clear()
        run.task = asyncio.create_task(self._run_batch(run, batch))
        self.activity.info(LogCategory.UPLOAD, f"Batch '{batch.name}' started ({counts.open} items left)")
        return run.phase

    # ==========================================================================
    # Batch Loop
    # ==========================================================================

    async def _run_batch(self, run: BatchRun, batch: UploadBatch) -> None:
        try:
            await self._drive(run, batch)
        except Exception as e:
            logger.error(f"Batch {run.batch_id} failed unexpectedly: {e}", exc_info=True)
            self.activity.error(LogCategory.UPLOAD, f"Batch stopped after unexpected error: {e}")
            await self._set_phase(run, UploadPhase.paused())

        if run.stop_requested == "reset":
            await self._set_phase(run, UploadPhase.idle())
        elif run.stop_requested == "pause":
            await self._set_phase(run, UploadPhase.paused())
        run.stop_requested = None

    async def _drive(self, run: BatchRun, batch: UploadBatch) -> None:
        while True:
            if run.stop_requested:
                return

            if self.guard.is_locked():
                await self._enter_bot_lockdown(run)
                return

            if self._cooldown_until > self._clock():
                await self._countdown(run, UploadPhase.cooldown(self._cooldown_until))
                continue

            item = await self.store.next_pending(batch.id)
            if item is None:
                await self._set_phase(run, UploadPhase.completed())
                self.activity.info(LogCategory.UPLOAD, f"Batch '{batch.name}' completed")
                return

            if not self.monitor.is_connected():
                if await self._wait_for_network(run):
                    continue
                if run.stop_requested or self.guard.is_locked():
                    continue
                if not await self._auto_retry(run, ConnectivityTimeout("Network unavailable")):
                    return
                continue

            try:
                finished = await self._process_item(run, batch, item)
            except (AbuseDetected, ChallengeRequired, LockedOut) as e:
                self.activity.error(LogCategory.ABUSE, f"Upload halted: {e}")
                await self._enter_bot_lockdown(run)
                return
            except SessionExpired as e:
                self.activity.error(LogCategory.SESSION, f"Session expired: {e}")
                await self._set_phase(run, UploadPhase.session_expired())
                return
            except RateLimited as e:
                self.activity.warning(LogCategory.ABUSE, "Hourly ceiling reached, cooling down")
                await self._countdown(run, UploadPhase.cooldown(e.retry_at))
                continue
            except (DuplicateContent, CompressionFailure) as e:
                await self.store.set_status(item.id, ItemStatus.ERROR, error=str(e))
                self.activity.warning(LogCategory.UPLOAD, f"Photo {item.position + 1} skipped: {e}")
                continue
            except NetworkFailure as e:
                if not self.monitor.is_connected() and await self._wait_for_network(run):
                    continue
                if not await self._auto_retry(run, e):
                    return
                continue
            except (HttpError, UploadRejected) as e:
                if not await self._auto_retry(run, e):
                    return
                continue

            if not finished:
                continue

            run.retries = 0
            upcoming = await self.store.next_pending(batch.id)
            if upcoming is None:
                await self._set_phase(run, UploadPhase.completed())
                self.activity.info(LogCategory.UPLOAD, f"Batch '{batch.name}' completed")
                return
            await self._countdown(
                run,
                UploadPhase.waiting_next_item(upcoming.position + 1, self._next_item_deadline()),
            )

    async def _process_item(self, run: BatchRun, batch: UploadBatch, item: UploadItem) -> bool:
        """
        Upload, configure and archive one item.

        Returns:
            False if interrupted between upload and archive, True when done
        """
        n = item.position + 1
        media_id = item.remote_id if item.status in (ItemStatus.UPLOADED, ItemStatus.ARCHIVING) else None

        if media_id is None:
            await self._set_phase(run, UploadPhase.uploading(n))
            if self.warm_up and not run.warmed_up:
                await self.media.warm_up()
                run.warmed_up = True

            prepared = await self._prepare(batch, item)
            digest = self.codec.content_hash(prepared)
            if not batch.allow_repeats and digest == self._last_hash:
                raise DuplicateContent(f"Photo {n} matches the previous upload")

            await self.store.set_status(item.id, ItemStatus.UPLOADING)
            try:
                upload_id = await self.media.upload_photo(prepared)
                media_id = await self.media.configure(upload_id, batch.caption)
            except Exception as e:
                await self.store.set_status(item.id, ItemStatus.PENDING, error=str(e))
                raise
            await self.store.set_status(item.id, ItemStatus.UPLOADED, remote_id=media_id)
            await self._remember_hash(digest)
            self.activity.info(LogCategory.UPLOAD, f"Photo {n} uploaded (media {media_id})")

            if not await self._sleep(run, self._rng.uniform(*self.pacing.pre_archive)):
                return False

        await self._set_phase(run, UploadPhase.archiving())
        await self.store.set_status(item.id, ItemStatus.ARCHIVING)
        try:
            archived = await self.media.archive(media_id)
        except Exception as e:
            await self.store.set_status(item.id, ItemStatus.UPLOADED, error=str(e))
            raise
        if not archived:
            await self.store.set_status(item.id, ItemStatus.UPLOADED, error="Archive not accepted")
            raise UploadRejected(f"Archive of media {media_id} was not accepted")

        await self.store.set_status(item.id, ItemStatus.COMPLETED)
        await self._arm_cooldown()
        self.activity.info(LogCategory.UPLOAD, f"Photo {n} archived")
        return True

    async def _prepare(self, batch: UploadBatch, item: UploadItem) -> bytes:
        data = await self.store.load_content(item.id)
        prepared = self.codec.prepare_for_upload(data)
        if batch.allow_repeats:
            prepared = self.codec.uniqueify(prepared)
        return prepared

    # ==========================================================================
    # Interruptions
    # ==========================================================================

    async def _enter_bot_lockdown(self, run: BatchRun) -> None:
        lockdown = self.guard.snapshot()
        if lockdown.locked and lockdown.until is not None:
            until = lockdown.until
            await self.vault.put(LOCKDOWN_KEY, lockdown.to_dict())
        else:
            until = self._clock() + self.pacing.bot_lockdown

        await self._countdown(run, UploadPhase.bot_lockdown(until))
        if not run.stop_requested:
            await self._set_phase(run, UploadPhase.paused())

    async def _auto_retry(self, run: BatchRun, error: Exception) -> bool:
        """Schedule a retry; returns False once retries are exhausted."""
        run.retries += 1
        if run.retries > self.pacing.max_retries:
            run.retries = 0
            self.activity.error(LogCategory.UPLOAD, f"Retries exhausted: {error}")
            until = self._clock() + self.pacing.escalated_pause
            await self._countdown(run, UploadPhase.escalated_pause(until))
            if not run.stop_requested:
                await self._set_phase(run, UploadPhase.paused())
            return False

        delay = self.pacing.retry_base + self._rng.uniform(*self.pacing.retry_jitter)
        self.activity.warning(
            LogCategory.UPLOAD,
            f"Retry {run.retries}/{self.pacing.max_retries} in {int(delay)}s: {error}",
        )
        await self._countdown(run, UploadPhase.auto_retrying(self._clock() + delay, run.retries))
        return True

    async def _wait_for_network(self, run: BatchRun) -> bool:
        """waitingNetwork until reconnected; False on timeout or stop request."""
        if run.phase.kind != PhaseKind.WAITING_NETWORK:
            await self._set_phase(run, UploadPhase.waiting_network())
        run.interrupted = None
        self.activity.warning(LogCategory.NETWORK, "Connection lost, waiting")
        deadline = self._clock() + self.pacing.network_wait
        while not self.monitor.is_connected():
            if self._clock() >= deadline:
                return False
            if not await self._sleep(run, self.monitor.poll_interval):
                return False
        return True

    def _on_lockdown_change(self, state: LockdownState) -> None:
        if not state.locked:
            return
        for run in self._runs.values():
            if run.is_running and run.phase.kind != PhaseKind.BOT_LOCKDOWN:
                run.wake.set()

    def _on_network_change(self, previous: NetworkState, current: NetworkState) -> None:
        """
        Reflect connectivity in running batches as soon as it changes.

        A call in flight keeps waiting inside the client; its batch shows
        waitingNetwork meanwhile and returns to the interrupted phase on
        reconnection.
        """
        if previous.connected == current.connected:
            return
        for run in self._runs.values():
            if not run.is_running:
                continue
            if not current.connected and run.phase.kind in self.NETWORK_KINDS:
                run.interrupted = run.phase
                self._announce(run, UploadPhase.waiting_network())
            elif (
                current.connected
                and run.interrupted is not None
                and run.phase.kind == PhaseKind.WAITING_NETWORK
            ):
                phase, run.interrupted = run.interrupted, None
                self._announce(run, phase)

    def _announce(self, run: BatchRun, phase: UploadPhase) -> None:
        """Switch phase from a sync callback. Batch status stays uploading."""
        run.phase = phase
        logger.info(f"Batch {run.batch_id} phase -> {phase.kind.value}")
        task = asyncio.get_running_loop().create_task(
            self.publisher.publish(PhaseEvent(run.batch_id, phase))
        )
        self._announcements.add(task)
        task.add_done_callback(self._announcements.discard)

    # ==========================================================================
    # Timing
    # ==========================================================================

    async def _countdown(self, run: BatchRun, phase: UploadPhase) -> bool:
        """
        Hold ``phase`` until its deadline, ticking once per tick interval.

        Returns:
            False if woken early by pause/reset or by a new lockdown
        """
        await self._set_phase(run, phase)
        run.wake.clear()
        while True:
            if run.stop_requested:
                return False
            if phase.kind != PhaseKind.BOT_LOCKDOWN and self.guard.is_locked():
                return False
            remaining = phase.remaining(self._clock())
            if remaining <= 0:
                return True
            try:
                await asyncio.wait_for(run.wake.wait(), timeout=min(self.tick_seconds, remaining))
                run.wake.clear()
            except asyncio.TimeoutError:
                await self.publisher.publish(PhaseEvent(run.batch_id, phase, tick=True))

    async def _sleep(self, run: BatchRun, seconds: float) -> bool:
        """Interruptible sleep without a phase change."""
        if run.stop_requested:
            return False
        if seconds > 0:
            try:
                await asyncio.wait_for(run.wake.wait(), timeout=seconds)
                run.wake.clear()
            except asyncio.TimeoutError:
                pass
        return not run.stop_requested and not self.guard.is_locked()

    def _next_item_deadline(self) -> float:
        now = self._clock()
        if self._cooldown_until > now:
            return self._cooldown_until + self._rng.uniform(*self.pacing.cooldown_buffer)
        return now + self._rng.uniform(*self.pacing.item_cooldown)

    async def _arm_cooldown(self) -> None:
        self._cooldown_until = self._clock() + self._rng.uniform(*self.pacing.item_cooldown)
        await self.vault.put(COOLDOWN_KEY, {"until": self._cooldown_until})

    async def _remember_hash(self, digest: str) -> None:
        self._last_hash = digest
        await self.vault.put(LAST_HASH_KEY, {"value": digest})

    # ==========================================================================
    # Phase
    # ==========================================================================

    def _run(self, batch_id: UUID) -> BatchRun:
        run = self._runs.get(batch_id)
        if run is None:
            run = BatchRun(batch_id=batch_id)
            self._runs[batch_id] = run
        return run

    async def _set_phase(self, run: BatchRun, phase: UploadPhase) -> None:
        run.phase = phase
        run.interrupted = None
        logger.info(f"Batch {run.batch_id} phase -> {phase.kind.value}")
        status = self.PHASE_STATUS.get(phase.kind, BatchStatus.UPLOADING)
        if status != run.status:
            await self.store.set_batch_status(run.batch_id, status)
            run.status = status
        await self.publisher.publish(PhaseEvent(run.batch_id, phase))
