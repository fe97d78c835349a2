"""
Abuse Guard
===========

Process-wide protection shared by every batch:

- RateWindow: trailing-hour action ledger with a conservative ceiling
- Backoff: exponential delay on consecutive failures, capped, with jitter
- Lockdown: account-wide suspension armed by abuse signals in responses

Mutations are serialized by a lock (single writer); reads take a snapshot.
"""

import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from gramvault.core.client.errors import RateLimited
from gramvault.core.config import settings

logger = structlog.get_logger()


# ==========================================================================
# Signals
# ==========================================================================

@dataclass(frozen=True)
class AbuseSignal:
    """A classified abuse marker and the lockdown it arms."""

    kind: str
    reason: str
    duration: float
    is_challenge: bool = False


@dataclass(frozen=True)
class LockdownState:
    locked: bool
    reason: Optional[str] = None
    until: Optional[float] = None

    def remaining(self, now: float) -> float:
        if not self.locked or self.until is None:
            return 0.0
        return max(0.0, self.until - now)

    def to_dict(self) -> dict[str, Any]:
        return {"locked": self.locked, "reason": self.reason, "until": self.until}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockdownState":
        return cls(
            locked=bool(data.get("locked")),
            reason=data.get("reason"),
            until=data.get("until"),
        )


UNLOCKED = LockdownState(locked=False)


def _lower(value: Any) -> str:
    return value.lower() if isinstance(value, str) else ""


# ==========================================================================
# Rate Window
# ==========================================================================

class RateWindow:
    """Ordered timestamps of actions within the trailing window."""

    def __init__(self, ceiling: int, window_seconds: float):
        self.ceiling = ceiling
        self.window_seconds = window_seconds
        self._stamps: deque[float] = deque()

    def prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    def used(self, now: float) -> int:
        self.prune(now)
        return len(self._stamps)

    def is_full(self, now: float) -> bool:
        return self.used(now) >= self.ceiling

    def record(self, now: float) -> bool:
        """Record one action. Returns False (and records nothing) at the ceiling."""
        if self.is_full(now):
            return False
        self._stamps.append(now)
        return True

    def next_slot_at(self, now: float) -> float:
        """When the next action will be allowed."""
        self.prune(now)
        if len(self._stamps) < self.ceiling:
            return now
        return self._stamps[0] + self.window_seconds

    def discard(self, stamp: float) -> None:
        if stamp in self._stamps:
            self._stamps.remove(stamp)

    def clear(self) -> None:
        self._stamps.clear()


# ==========================================================================
# Guard
# ==========================================================================

class AbuseGuard:
    """
    Rate limiting, backoff and lockdown for the whole account.

    One instance is constructed at process start and handed to the
    ApiClient and the UploadOrchestrator.
    """

    def __init__(
        self,
        max_actions_per_hour: int = settings.MAX_ACTIONS_PER_HOUR,
        window_seconds: float = settings.RATE_WINDOW_SECONDS,
        backoff_cap: float = settings.BACKOFF_CAP_SECONDS,
        jitter_ratio: float = settings.BACKOFF_JITTER_RATIO,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.backoff_cap = backoff_cap
        self.jitter_ratio = jitter_ratio
        self._clock = clock
        self._rng = rng or random.Random()
        self._write_lock = threading.Lock()
        self._window = RateWindow(max_actions_per_hour, window_seconds)
        self._lockdown = UNLOCKED
        self._consecutive_failures = 0
        self._consecutive_fail_statuses = 0
        self._listeners: list[Callable[[LockdownState], None]] = []

    # ==========================================================================
    # Lockdown
    # ==========================================================================

    def now(self) -> float:
        return self._clock()

    def state(self) -> LockdownState:
        """Current lockdown, expiring it first when its deadline has passed."""
        current = self._lockdown
        if current.locked and current.until is not None and self._clock() >= current.until:
            with self._write_lock:
                if self._lockdown is current:
                    self._lockdown = UNLOCKED
            logger.info("lockdown_expired", reason=current.reason)
            self._notify(UNLOCKED)
            return UNLOCKED
        return current

    def is_locked(self) -> bool:
        return self.state().locked

    def lock_reason(self) -> Optional[str]:
        return self.state().reason

    def lock_remaining(self) -> float:
        return self.state().remaining(self._clock())

    def lock(self, reason: str, duration: float) -> LockdownState:
        """Arm a lockdown. A longer existing lockdown is kept."""
        until = self._clock() + duration
        with self._write_lock:
            current = self._lockdown
            if current.locked and current.until is not None and current.until >= until:
                return current
            self._lockdown = LockdownState(locked=True, reason=reason, until=until)
            state = self._lockdown
        logger.warning("lockdown_armed", reason=reason, seconds=int(duration))
        self._notify(state)
        return state

    def unlock(self) -> None:
        """Explicit unlock. Also resets the failure counters."""
        with self._write_lock:
            self._lockdown = UNLOCKED
            self._consecutive_failures = 0
            self._consecutive_fail_statuses = 0
        logger.info("lockdown_cleared")
        self._notify(UNLOCKED)

    def emergency_reset(self) -> None:
        """Unlock and forget all local pacing state."""
        with self._write_lock:
            self._window.clear()
        self.unlock()
        logger.warning("guard_emergency_reset")

    def snapshot(self) -> LockdownState:
        """Current lockdown for persistence."""
        return self.state()

    def restore(self, state: LockdownState) -> None:
        """Re-arm a persisted lockdown after restart. Expired ones are dropped."""
        if not state.locked or state.until is None or state.until <= self._clock():
            return
        with self._write_lock:
            self._lockdown = state
        logger.warning("lockdown_restored", reason=state.reason, until=state.until)

    def subscribe(self, listener: Callable[[LockdownState], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, state: LockdownState) -> None:
        for listener in list(self._listeners):
            listener(state)

    # ==========================================================================
    # Signals
    # ==========================================================================

    def classify(self, body: Any) -> Optional[AbuseSignal]:
        """
        Map a decoded 2xx response body to an abuse signal.

        Precedence (first match wins): challenge, login required, spam,
        temporary block, repeated generic failures.
        """
        if not isinstance(body, dict):
            return None

        message = _lower(body.get("message"))
        feedback = _lower(body.get("feedback_title")) + " " + _lower(body.get("feedback_message"))
        text = f"{message} {feedback}"

        if "challenge" in body or "challenge_required" in text:
            return AbuseSignal(
                kind="challenge",
                reason="Verification required by the platform",
                duration=settings.LOCKDOWN_CHALLENGE_SECONDS,
                is_challenge=True,
            )
        if "login_required" in text:
            return AbuseSignal(
                kind="login_required",
                reason="Session invalidated by the platform",
                duration=settings.LOCKDOWN_LOGIN_REQUIRED_SECONDS,
            )
        if body.get("spam") is True:
            return AbuseSignal(
                kind="spam",
                reason="Action flagged as spam",
                duration=settings.LOCKDOWN_SPAM_SECONDS,
            )
        if "action blocked" in text or "temporarily blocked" in text:
            return AbuseSignal(
                kind="temporary_block",
                reason="Action temporarily blocked",
                duration=settings.LOCKDOWN_TEMP_BLOCK_SECONDS,
            )

        if body.get("status") == "fail":
            with self._write_lock:
                self._consecutive_fail_statuses += 1
                count = self._consecutive_fail_statuses
            if count >= settings.CONSECUTIVE_FAIL_THRESHOLD:
                return AbuseSignal(
                    kind="repeated_failures",
                    reason=f"{count} consecutive failed responses",
                    duration=settings.LOCKDOWN_PRECAUTIONARY_SECONDS,
                )
        else:
            with self._write_lock:
                self._consecutive_fail_statuses = 0
        return None

    def apply(self, signal: AbuseSignal) -> LockdownState:
        state = self.lock(signal.reason, signal.duration)
        with self._write_lock:
            self._consecutive_fail_statuses = 0
        return state

    # ==========================================================================
    # Rate Window
    # ==========================================================================

    def actions_used(self) -> int:
        return self._window.used(self._clock())

    @property
    def max_actions(self) -> int:
        return self._window.ceiling

    def try_acquire(self) -> float:
        """
        Reserve a slot in the rate window before dispatch.

        Check and record happen under the write lock, so concurrent callers
        can never overshoot the ceiling.

        Returns:
            The reservation stamp, for ``release()``

        Raises:
            RateLimited: If the window is full
        """
        with self._write_lock:
            now = self._clock()
            if self._window.record(now):
                return now
            retry_at = self._window.next_slot_at(now)
            used = self._window.used(now)
        logger.warning("rate_window_full", used=used, retry_at=retry_at)
        raise RateLimited(retry_at)

    def release(self, stamp: float) -> None:
        """Give back a reservation for a call that never reached the wire."""
        with self._write_lock:
            self._window.discard(stamp)

    # ==========================================================================
    # Backoff
    # ==========================================================================

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def base_backoff(self, failures: Optional[int] = None) -> float:
        """Deterministic part of the backoff: min(2^n, cap), 0 for n <= 0."""
        n = self._consecutive_failures if failures is None else failures
        if n <= 0:
            return 0.0
        # exponent clamped to keep the int small
        return float(min(2 ** min(n, 30), self.backoff_cap))

    def backoff_delay(self, failures: Optional[int] = None) -> float:
        """Base backoff plus up to ``jitter_ratio`` of it."""
        base = self.base_backoff(failures)
        if base == 0:
            return 0.0
        return base + self._rng.uniform(0, base * self.jitter_ratio)

    def record_failure(self) -> int:
        with self._write_lock:
            self._consecutive_failures += 1
            count = self._consecutive_failures
        logger.info("guard_failure_recorded", consecutive_failures=count)
        return count

    def record_success(self) -> None:
        with self._write_lock:
            self._consecutive_failures = 0
