from sankofa.models.delivery import (
    BulkChunkPayload,
    DeliveryJob,
    NotificationRecord,
    QueueStats,
    Recipient,
    RecipientResult,
    ScheduledPayload,
    SinglePayload,
)
from sankofa.models.domain import CollectionSummary, CollectorProfile, HubInfo
from sankofa.models.enums import (
    JobKind,
    JobStatus,
    MenuState,
    NotificationStatus,
    NotificationType,
    RecipientOutcome,
)
from sankofa.models.session import UssdResponse, UssdSession

__all__ = [
    "BulkChunkPayload",
    "CollectionSummary",
    "CollectorProfile",
    "DeliveryJob",
    "HubInfo",
    "JobKind",
    "JobStatus",
    "MenuState",
    "NotificationRecord",
    "NotificationStatus",
    "NotificationType",
    "QueueStats",
    "Recipient",
    "RecipientOutcome",
    "RecipientResult",
    "ScheduledPayload",
    "SinglePayload",
    "UssdResponse",
    "UssdSession",
]
