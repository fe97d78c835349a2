"""
Upload Engine
=============

Components:
- UploadPhase: single authoritative per-batch state
- PhasePublisher: phase change / countdown tick notifications
- ItemStore: batch and item persistence
- UploadOrchestrator: the per-batch state machine
"""

from gramvault.core.upload.events import PhaseEvent, PhasePublisher
from gramvault.core.upload.orchestrator import Pacing, UploadOrchestrator
from gramvault.core.upload.phases import PhaseKind, UploadPhase
from gramvault.core.upload.store import ItemStore, ProgressCounts

__all__ = [
    "Pacing",
    "PhaseEvent",
    "PhaseKind",
    "PhasePublisher",
    "ItemStore",
    "ProgressCounts",
    "UploadOrchestrator",
    "UploadPhase",
]
