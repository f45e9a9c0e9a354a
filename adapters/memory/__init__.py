"""In-memory adapters for the engine protocols."""

from .stores import (
    InMemoryAlertStore,
    InMemoryBillingLedger,
    InMemoryObservationStore,
    InMemoryRuleRepository,
    RecordingNotificationSink,
)

__all__ = [
    "InMemoryAlertStore",
    "InMemoryBillingLedger",
    "InMemoryObservationStore",
    "InMemoryRuleRepository",
    "RecordingNotificationSink",
]
