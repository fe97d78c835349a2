"""
Tests for the AbuseGuard: signal classification, lockdown, rate window
and backoff.
"""

import random

import pytest

from gramvault.core.client.errors import RateLimited
from gramvault.core.client.guard import AbuseGuard, LockdownState, RateWindow


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def guard(clock: FakeClock) -> AbuseGuard:
    return AbuseGuard(
        max_actions_per_hour=55,
        window_seconds=3600,
        backoff_cap=300,
        jitter_ratio=0.3,
        clock=clock,
        rng=random.Random(7),
    )


# ==========================================================================
# Signal Classification
# ==========================================================================

class TestClassify:
    """Tests for mapping response bodies to abuse signals."""

    @pytest.mark.parametrize(
        "body, kind, duration",
        [
            ({"status": "fail", "challenge": {"url": "/challenge/"}}, "challenge", 600),
            ({"status": "fail", "message": "challenge_required"}, "challenge", 600),
            ({"status": "fail", "message": "login_required"}, "login_required", 1800),
            ({"status": "fail", "spam": True}, "spam", 600),
            ({"status": "fail", "feedback_title": "Action Blocked"}, "temporary_block", 900),
            ({"status": "fail", "feedback_message": "You're Temporarily Blocked"}, "temporary_block", 900),
        ],
    )
    def test_classifies_signals(self, guard, body, kind, duration):
        signal = guard.classify(body)

        assert signal is not None
        assert signal.kind == kind
        assert signal.duration == duration

    def test_challenge_wins_over_spam(self, guard):
        """The first matching signal in precedence order is used."""
        signal = guard.classify({"challenge": {}, "spam": True, "message": "login_required"})

        assert signal.kind == "challenge"
        assert signal.is_challenge is True

    def test_login_required_wins_over_spam(self, guard):
        signal = guard.classify({"message": "login_required", "spam": True})

        assert signal.kind == "login_required"

    def test_ok_body_has_no_signal(self, guard):
        assert guard.classify({"status": "ok"}) is None
        assert guard.classify([]) is None

    def test_third_consecutive_fail_is_precautionary(self, guard):
        assert guard.classify({"status": "fail"}) is None
        assert guard.classify({"status": "fail"}) is None

        signal = guard.classify({"status": "fail"})

        assert signal.kind == "repeated_failures"
        assert signal.duration == 300

    def test_ok_resets_fail_streak(self, guard):
        guard.classify({"status": "fail"})
        guard.classify({"status": "fail"})
        guard.classify({"status": "ok"})

        assert guard.classify({"status": "fail"}) is None


# ==========================================================================
# Lockdown
# ==========================================================================

class TestLockdown:
    """Tests for arming, expiring and clearing lockdowns."""

    def test_apply_locks_immediately(self, guard, clock):
        signal = guard.classify({"spam": True})

        guard.apply(signal)

        assert guard.is_locked() is True
        assert guard.lock_reason() == "Action flagged as spam"
        assert guard.lock_remaining() == pytest.approx(600)

    def test_lockdown_expires(self, guard, clock):
        guard.lock("test", 60)

        clock.advance(59)
        assert guard.is_locked() is True

        clock.advance(1)
        assert guard.is_locked() is False
        assert guard.lock_remaining() == 0.0

    def test_longer_lockdown_is_kept(self, guard):
        guard.lock("long", 900)
        guard.lock("short", 300)

        assert guard.lock_reason() == "long"
        assert guard.lock_remaining() == pytest.approx(900)

    def test_unlock_resets_counters(self, guard):
        guard.lock("test", 600)
        guard.record_failure()
        guard.record_failure()

        guard.unlock()

        assert guard.is_locked() is False
        assert guard.consecutive_failures == 0

    def test_emergency_reset_clears_rate_window(self, guard):
        for _ in range(10):
            guard.try_acquire()

        guard.emergency_reset()

        assert guard.actions_used() == 0

    def test_listeners_notified(self, guard):
        seen = []
        guard.subscribe(seen.append)

        guard.lock("test", 60)
        guard.unlock()

        assert [state.locked for state in seen] == [True, False]

    def test_restore_skips_expired(self, guard, clock):
        guard.restore(LockdownState(locked=True, reason="old", until=clock.now - 1))
        assert guard.is_locked() is False

        guard.restore(LockdownState(locked=True, reason="persisted", until=clock.now + 120))
        assert guard.lock_reason() == "persisted"

    def test_state_roundtrips_through_dict(self):
        state = LockdownState(locked=True, reason="spam", until=123.0)

        assert LockdownState.from_dict(state.to_dict()) == state


# ==========================================================================
# Rate Window
# ==========================================================================

class TestRateWindow:
    """Tests for the trailing-hour action ledger."""

    def test_never_exceeds_ceiling(self):
        rng = random.Random(42)
        window = RateWindow(ceiling=55, window_seconds=3600)
        stamps = sorted(rng.uniform(0, 10_000) for _ in range(500))

        for now in stamps:
            window.record(now)
            assert window.used(now) <= 55

    def test_record_refused_at_ceiling(self):
        window = RateWindow(ceiling=3, window_seconds=3600)

        assert all(window.record(t) for t in (0.0, 1.0, 2.0))
        assert window.record(3.0) is False
        assert window.next_slot_at(3.0) == 3600.0

    def test_old_actions_fall_out(self):
        window = RateWindow(ceiling=2, window_seconds=100)
        window.record(0.0)
        window.record(50.0)

        assert window.is_full(99.0) is True
        assert window.is_full(100.0) is False

    def test_acquire_refused_at_ceiling(self, guard, clock):
        start = clock.now
        for _ in range(55):
            guard.try_acquire()
            clock.advance(1)

        with pytest.raises(RateLimited) as exc_info:
            guard.try_acquire()

        assert exc_info.value.retry_at == start + 3600
        assert guard.actions_used() == 55

    def test_release_frees_slot(self, guard):
        stamps = [guard.try_acquire() for _ in range(55)]

        guard.release(stamps[-1])

        assert guard.actions_used() == 54
        guard.try_acquire()
        assert guard.actions_used() == 55


# ==========================================================================
# Backoff
# ==========================================================================

class TestBackoff:
    """Tests for exponential backoff on consecutive failures."""

    def test_base_backoff_is_capped_power_of_two(self, guard):
        assert guard.base_backoff(0) == 0.0
        assert guard.base_backoff(1) == 2.0
        assert guard.base_backoff(3) == 8.0
        assert guard.base_backoff(8) == 256.0
        assert guard.base_backoff(9) == 300.0
        assert guard.base_backoff(1000) == 300.0

    def test_backoff_non_decreasing(self, guard):
        bases = []
        for _ in range(12):
            guard.record_failure()
            bases.append(guard.base_backoff())

        assert bases == sorted(bases)

    def test_jitter_within_ratio(self, guard):
        for failures in range(1, 12):
            base = guard.base_backoff(failures)
            delay = guard.backoff_delay(failures)
            assert base <= delay <= base * 1.3 + 1e-9

    def test_success_resets_backoff(self, guard):
        guard.record_failure()
        guard.record_failure()

        guard.record_success()

        assert guard.consecutive_failures == 0
        assert guard.backoff_delay() == 0.0
