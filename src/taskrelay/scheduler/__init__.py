"""Scheduling: queue processing and completion detection."""

from .detector import (
    CompletionDetector,
    Outcome,
    SignalSnapshot,
    Verdict,
    classify,
)
from .queue_processor import QueueProcessor, schedule_order

__all__ = [
    "CompletionDetector",
    "Outcome",
    "SignalSnapshot",
    "Verdict",
    "classify",
    "QueueProcessor",
    "schedule_order",
]
