from .hub import (
    BROADCAST_TOPIC,
    ERRORS_TOPIC,
    MessageType,
    NotificationHub,
    Subscription,
    batch_topic,
    document_topic,
)
from .teams import TeamsErrorNotifier

__all__ = [
    "BROADCAST_TOPIC",
    "ERRORS_TOPIC",
    "MessageType",
    "NotificationHub",
    "Subscription",
    "TeamsErrorNotifier",
    "batch_topic",
    "document_topic",
]
