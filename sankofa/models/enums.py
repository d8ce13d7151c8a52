from __future__ import annotations

from enum import StrEnum


class MenuState(StrEnum):
    __slots__ = ()

    MAIN = "main"
    CHECK_BALANCE = "checkBalance"
    RECENT_COLLECTIONS = "recentCollections"
    NEAREST_HUB = "nearestHub"
    HEALTH_TOKENS = "healthTokens"
    REPORT_COLLECTION = "reportCollection"
    SUBMIT_COLLECTION = "submitCollection"
    CHECK_COLLECTION_STATUS = "checkCollectionStatus"
    EXIT = "exit"


class JobKind(StrEnum):
    __slots__ = ()

    SINGLE = "single"
    BULK_CHUNK = "bulk_chunk"
    SCHEDULED = "scheduled"


class JobStatus(StrEnum):
    __slots__ = ()

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    CANCELLED = "cancelled"


class NotificationType(StrEnum):
    __slots__ = ()

    SMS = "sms"
    USSD = "ussd"
    # Shared notifications table; push rows come from the mobile app, not this service.
    PUSH = "push"


class NotificationStatus(StrEnum):
    __slots__ = ()

    SENT = "sent"
    FAILED = "failed"
    MOCK = "mock"
    SCHEDULED = "scheduled"


class RecipientOutcome(StrEnum):
    """Per-recipient result inside a bulk chunk."""

    __slots__ = ()

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
