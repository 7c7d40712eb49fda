from .event_publisher import (
    ANALYSIS_COMPLETED,
    ANALYSIS_REQUESTED,
    BATCH_CREATED,
    BATCH_OCR_COMPLETED,
    DOCUMENT_OCR_REQUESTED,
    EventPublisher,
    PipelineEvent,
    create_event_publisher,
)
from .bus import DeadLetter, EventBus

__all__ = [
    "ANALYSIS_COMPLETED",
    "ANALYSIS_REQUESTED",
    "BATCH_CREATED",
    "BATCH_OCR_COMPLETED",
    "DOCUMENT_OCR_REQUESTED",
    "DeadLetter",
    "EventBus",
    "EventPublisher",
    "PipelineEvent",
    "create_event_publisher",
]
