"""
Upload Phases
=============

The single authoritative state of a batch. Countdown phases carry an
absolute deadline (epoch seconds); remaining time is always recomputed
from it.
"""

import enum
import time
from dataclasses import dataclass
from typing import Any, Optional


class PhaseKind(str, enum.Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    ARCHIVING = "archiving"
    WAITING_NEXT_ITEM = "waiting_next_item"
    COOLDOWN = "cooldown"
    AUTO_RETRYING = "auto_retrying"
    WAITING_NETWORK = "waiting_network"
    PAUSED = "paused"
    ESCALATED_PAUSE = "escalated_pause"
    BOT_LOCKDOWN = "bot_lockdown"
    SESSION_EXPIRED = "session_expired"
    COMPLETED = "completed"


COUNTDOWN_KINDS = frozenset({
    PhaseKind.WAITING_NEXT_ITEM,
    PhaseKind.COOLDOWN,
    PhaseKind.AUTO_RETRYING,
    PhaseKind.ESCALATED_PAUSE,
    PhaseKind.BOT_LOCKDOWN,
})


@dataclass(frozen=True)
class UploadPhase:
    kind: PhaseKind
    item_number: Optional[int] = None
    until: Optional[float] = None
    attempt: Optional[int] = None

    LABELS = {
        PhaseKind.IDLE: "Ready",
        PhaseKind.UPLOADING: "Uploading photo {n}",
        PhaseKind.ARCHIVING: "Archiving",
        PhaseKind.WAITING_NEXT_ITEM: "Waiting before photo {n}",
        PhaseKind.COOLDOWN: "Cooling down",
        PhaseKind.AUTO_RETRYING: "Retrying (attempt {attempt})",
        PhaseKind.WAITING_NETWORK: "Waiting for network",
        PhaseKind.PAUSED: "Paused",
        PhaseKind.ESCALATED_PAUSE: "Paused after repeated failures",
        PhaseKind.BOT_LOCKDOWN: "Account protection lockdown",
        PhaseKind.SESSION_EXPIRED: "Session expired - log in again",
        PhaseKind.COMPLETED: "Completed",
    }

    # ==========================================================================
    # Constructors
    # ==========================================================================

    @classmethod
    def idle(cls) -> "UploadPhase":
        return cls(PhaseKind.IDLE)

    @classmethod
    def uploading(cls, n: int) -> "UploadPhase":
        return cls(PhaseKind.UPLOADING, item_number=n)

    @classmethod
    def archiving(cls) -> "UploadPhase":
        return cls(PhaseKind.ARCHIVING)

    @classmethod
    def waiting_next_item(cls, n: int, until: float) -> "UploadPhase":
        return cls(PhaseKind.WAITING_NEXT_ITEM, item_number=n, until=until)

    @classmethod
    def cooldown(cls, until: float) -> "UploadPhase":
        return cls(PhaseKind.COOLDOWN, until=until)

    @classmethod
    def auto_retrying(cls, until: float, attempt: int) -> "UploadPhase":
        return cls(PhaseKind.AUTO_RETRYING, until=until, attempt=attempt)

    @classmethod
    def waiting_network(cls) -> "UploadPhase":
        return cls(PhaseKind.WAITING_NETWORK)

    @classmethod
    def paused(cls) -> "UploadPhase":
        return cls(PhaseKind.PAUSED)

    @classmethod
    def escalated_pause(cls, until: float) -> "UploadPhase":
        return cls(PhaseKind.ESCALATED_PAUSE, until=until)

    @classmethod
    def bot_lockdown(cls, until: float) -> "UploadPhase":
        return cls(PhaseKind.BOT_LOCKDOWN, until=until)

    @classmethod
    def session_expired(cls) -> "UploadPhase":
        return cls(PhaseKind.SESSION_EXPIRED)

    @classmethod
    def completed(cls) -> "UploadPhase":
        return cls(PhaseKind.COMPLETED)

    # ==========================================================================
    # Derived
    # ==========================================================================

    @property
    def is_countdown(self) -> bool:
        return self.kind in COUNTDOWN_KINDS

    def remaining(self, now: Optional[float] = None) -> Optional[float]:
        if self.until is None:
            return None
        return max(0.0, self.until - (time.time() if now is None else now))

    @property
    def label(self) -> str:
        return self.LABELS[self.kind].format(n=self.item_number, attempt=self.attempt)

    def to_dict(self, now: Optional[float] = None) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "label": self.label,
            "countdown": self.is_countdown,
            "item_number": self.item_number,
            "attempt": self.attempt,
            "until": self.until,
            "remaining_seconds": self.remaining(now),
        }
