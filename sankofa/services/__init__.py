"""Sankofa service layer -- USSD session engine and SMS delivery pipeline.

Leaves first: phone normalisation and template rendering, then session
storage, the menu state machine, the carrier gateway, the notification
audit trail and the delivery queue that ties them together.
"""

from __future__ import annotations

from sankofa.services.carrier import (
    CarrierError,
    CarrierGateway,
    CarrierReceipt,
    PermanentCarrierError,
    TransientCarrierError,
)
from sankofa.services.delivery_queue import (
    DeliveryQueue,
    DuplicateJobError,
    EmptyMessageError,
    InMemoryQueueBackend,
    QueueClient,
    RedisQueueBackend,
    ScheduleInPastError,
)
from sankofa.services.domain import DomainDirectory, InMemoryDomainDirectory
from sankofa.services.menu import MENU_TABLE, MenuDefinition, MenuStateMachine
from sankofa.services.notification_log import (
    InMemoryNotificationSink,
    NotificationLogger,
    NotificationSink,
)
from sankofa.services.phone import InvalidPhoneNumberError, normalize_phone, require_valid_phone
from sankofa.services.session_store import (
    InMemorySessionBackend,
    RedisSessionBackend,
    SessionStore,
    SessionStoreError,
)
from sankofa.services.supabase import (
    SupabaseClient,
    SupabaseDomainDirectory,
    SupabaseNotificationSink,
)
from sankofa.services.templates import SMS_TEMPLATES, TemplateRenderer, calculate_sms_segments

__all__ = [
    "MENU_TABLE",
    "SMS_TEMPLATES",
    "CarrierError",
    "CarrierGateway",
    "CarrierReceipt",
    "DeliveryQueue",
    "DomainDirectory",
    "DuplicateJobError",
    "EmptyMessageError",
    "InMemoryDomainDirectory",
    "InMemoryNotificationSink",
    "InMemoryQueueBackend",
    "InMemorySessionBackend",
    "InvalidPhoneNumberError",
    "MenuDefinition",
    "MenuStateMachine",
    "NotificationLogger",
    "NotificationSink",
    "PermanentCarrierError",
    "QueueClient",
    "RedisQueueBackend",
    "RedisSessionBackend",
    "ScheduleInPastError",
    "SessionStore",
    "SessionStoreError",
    "SupabaseClient",
    "SupabaseDomainDirectory",
    "SupabaseNotificationSink",
    "TemplateRenderer",
    "TransientCarrierError",
    "calculate_sms_segments",
    "normalize_phone",
    "require_valid_phone",
]
