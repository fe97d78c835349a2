"""
Phase Events
============

Subscribe/notify channel for phase changes and countdown ticks.
Subscribers may be plain callables or coroutine functions.
"""

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union
from uuid import UUID

from gramvault.core.upload.phases import UploadPhase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseEvent:
    batch_id: UUID
    phase: UploadPhase
    tick: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": str(self.batch_id),
            "tick": self.tick,
            "timestamp": self.timestamp,
            "phase": self.phase.to_dict(self.timestamp),
        }


Subscriber = Callable[[PhaseEvent], Union[None, Awaitable[None]]]


class PhasePublisher:
    """Fan-out of phase events to subscribers."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns an unsubscribe callable."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def publish(self, event: PhaseEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # One failing subscriber must not stall the batch
                logger.error(f"Phase subscriber failed for batch {event.batch_id}: {e}")
