"""
Pipeline events and their Azure Service Bus mirror.

Every stage hand-off in the pipeline is a PipelineEvent. The in-process
EventBus delivers them to handlers; EventPublisher optionally mirrors each
one to a Service Bus queue or topic so downstream systems (accounting,
audit, analytics) can follow batch progress.
"""

import hashlib
import json
import uuid
from datetime import datetime, UTC
from typing import Optional
from dataclasses import dataclass, asdict, field
from loguru import logger

BATCH_CREATED = "batch-created"
DOCUMENT_OCR_REQUESTED = "document-ocr-requested"
BATCH_OCR_COMPLETED = "batch-ocr-completed"
ANALYSIS_REQUESTED = "analysis-requested"
ANALYSIS_COMPLETED = "analysis-completed"

EVENT_TYPES = (
    BATCH_CREATED,
    DOCUMENT_OCR_REQUESTED,
    BATCH_OCR_COMPLETED,
    ANALYSIS_REQUESTED,
    ANALYSIS_COMPLETED,
)


@dataclass
class PipelineEvent:
    """
    A message passed between pipeline stages.

    ``generation`` separates a legitimate re-publication (a manual reprocess)
    from a redelivery of the same message: redeliveries share an idempotency
    key, a new generation does not.
    """

    event_type: str
    batch_id: str
    document_id: Optional[str] = None
    payload: dict = field(default_factory=dict)
    generation: int = 0
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.event_type}")
        if self.timestamp is None:
            self.timestamp = datetime.now(UTC).isoformat()

    @property
    def idempotency_key(self) -> str:
        raw = f"{self.event_type}|{self.batch_id}|{self.document_id or ''}|{self.generation}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["idempotency_key"] = self.idempotency_key
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EventPublisher:
    """
    Mirrors pipeline events to Azure Service Bus (Queue or Topic).

    Usage:
        from azure.servicebus import ServiceBusClient
        client = ServiceBusClient.from_connection_string(conn_str)
        sender = client.get_queue_sender(queue_name="pipeline-events")
        publisher = EventPublisher(service_bus_sender=sender)

        # Disabled mode (no Service Bus configured)
        publisher = EventPublisher(service_bus_sender=None)
    """

    def __init__(
        self,
        service_bus_sender: Optional[object] = None,
        entity_name: str = "pipeline-events"
    ):
        self.service_bus_sender = service_bus_sender
        self.entity_name = entity_name

    @property
    def enabled(self) -> bool:
        return self.service_bus_sender is not None

    def publish_event(self, event: PipelineEvent) -> bool:
        """
        Send one event to Service Bus.

        Returns:
            True when the message was handed to the sender, False in
            disabled mode or when the send failed (failures are logged,
            the pipeline keeps running)
        """
        if self.service_bus_sender is None:
            return False

        from azure.servicebus import ServiceBusMessage

        message = ServiceBusMessage(
            event.to_json(),
            content_type="application/json",
            message_id=event.idempotency_key,
            subject=event.event_type,
            application_properties={"batch_id": event.batch_id},
        )
        try:
            self.service_bus_sender.send_messages(message)
        except Exception as e:
            logger.warning(
                f"Service Bus mirror failed: {e}",
                entity=self.entity_name,
                event_type=event.event_type,
                batch_id=event.batch_id,
            )
            return False
        return True

    def close(self) -> None:
        if self.service_bus_sender is not None and hasattr(self.service_bus_sender, "close"):
            self.service_bus_sender.close()


def create_event_publisher(
    connection_string: str | None,
    entity_name: str = "pipeline-events"
) -> EventPublisher:
    """Build a publisher for a Service Bus queue, disabled when no connection string is set"""
    if not connection_string:
        return EventPublisher(service_bus_sender=None, entity_name=entity_name)

    from azure.servicebus import ServiceBusClient

    client = ServiceBusClient.from_connection_string(connection_string)
    sender = client.get_queue_sender(queue_name=entity_name)
    logger.info("Mirroring pipeline events to Service Bus", entity=entity_name)
    return EventPublisher(service_bus_sender=sender, entity_name=entity_name)

