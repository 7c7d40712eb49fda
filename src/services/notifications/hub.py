"""
Best-effort notification fanout.

Topics are derived from the entity type and id:
- batch/{id}/status     batch status changes and OCR progress
- document/{id}/status  document status changes
- errors                dead-lettered events and other pipeline errors
- broadcast             batch-level summaries for dashboards

Delivery to one topic follows publish order. A subscriber that raises is
logged and skipped; publishing never fails the pipeline.
"""

import asyncio
import inspect
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable, Optional
from loguru import logger

from ...models.batch import Analysis, Batch, BatchStatus, Document

BROADCAST_TOPIC = "broadcast"
ERRORS_TOPIC = "errors"


def batch_topic(batch_id: str) -> str:
    return f"batch/{batch_id}/status"


def document_topic(document_id: str) -> str:
    return f"document/{document_id}/status"


class MessageType(str, Enum):
    BATCH_CREATED = "BATCH_CREATED"
    BATCH_STATUS_UPDATE = "BATCH_STATUS_UPDATE"
    OCR_PROGRESS = "OCR_PROGRESS"
    DOCUMENT_STATUS_UPDATE = "DOCUMENT_STATUS_UPDATE"
    ANALYSIS_COMPLETED = "ANALYSIS_COMPLETED"
    ERROR = "ERROR"


Callback = Callable[[str, dict], Any]


@dataclass
class Subscription:
    callback: Callback
    topic: Optional[str] = None  # None = every topic
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


class NotificationHub:
    """
    In-process publish/subscribe for status notifications.

    Usage:
        hub = NotificationHub()
        sub = hub.subscribe(batch_topic(batch.id), lambda topic, msg: print(msg))
        hub.publish(batch_topic(batch.id), {"type": "OCR_PROGRESS", "progress": 50})
        hub.unsubscribe(sub)

    Callbacks may be coroutine functions; they are scheduled on the running
    event loop in publish order.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._global: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, topic: str, callback: Callback) -> Subscription:
        subscription = Subscription(callback=callback, topic=topic)
        with self._lock:
            self._subscribers[topic].append(subscription)
        return subscription

    def subscribe_all(self, callback: Callback) -> Subscription:
        subscription = Subscription(callback=callback)
        with self._lock:
            self._global.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription.topic is None:
                pool = self._global
            else:
                pool = self._subscribers.get(subscription.topic, [])
            if subscription in pool:
                pool.remove(subscription)

    def publish(self, topic: str, payload: dict) -> int:
        """
        Deliver a message to the topic's subscribers and to global subscribers.

        Args:
            topic: Target topic
            payload: Message body (a timestamp is added when missing)

        Returns:
            Number of subscribers the message was handed to
        """
        message = dict(payload)
        message.setdefault("timestamp", datetime.now(UTC).isoformat())
        delivered = 0
        with self._lock:
            targets = list(self._subscribers.get(topic, ())) + list(self._global)
            for subscription in targets:
                if self._deliver(subscription, topic, message):
                    delivered += 1
        return delivered

    def _deliver(self, subscription: Subscription, topic: str, message: dict) -> bool:
        try:
            result = subscription.callback(topic, message)
            if inspect.isawaitable(result):
                self._schedule(result, topic)
            return True
        except Exception as e:
            logger.warning(f"Notification delivery failed: {e}", topic=topic, subscription=subscription.id)
            return False

    def _schedule(self, awaitable, topic: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("Async subscriber skipped: no running event loop", topic=topic)
            return

        task = loop.create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Async notification subscriber failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for scheduled async deliveries (used on shutdown and in tests)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Pipeline notifications

    def notify_batch_created(self, batch: Batch) -> None:
        message = {
            "type": MessageType.BATCH_CREATED.value,
            "batch_id": batch.id,
            "batch_name": batch.name,
            "document_count": batch.document_count,
        }
        self.publish(batch_topic(batch.id), message)
        self.publish(BROADCAST_TOPIC, message)

    def notify_batch_status(self, batch: Batch, previous: BatchStatus | None = None) -> None:
        message = {
            "type": MessageType.BATCH_STATUS_UPDATE.value,
            "batch_id": batch.id,
            "status": batch.status.value,
            "previous_status": previous.value if previous else None,
            "processed_count": batch.processed_count,
            "failed_count": batch.failed_count,
            "error_message": batch.error_message,
        }
        self.publish(batch_topic(batch.id), message)
        self.publish(BROADCAST_TOPIC, message)

    def notify_ocr_progress(self, batch: Batch) -> None:
        self.publish(batch_topic(batch.id), {
            "type": MessageType.OCR_PROGRESS.value,
            "batch_id": batch.id,
            "processed_count": batch.processed_count,
            "failed_count": batch.failed_count,
            "document_count": batch.document_count,
            "progress": batch.progress,
        })

    def notify_document_status(self, document: Document) -> None:
        self.publish(document_topic(document.id), {
            "type": MessageType.DOCUMENT_STATUS_UPDATE.value,
            "document_id": document.id,
            "batch_id": document.batch_id,
            "status": document.status.value,
            "retry_count": document.retry_count,
            "ocr_confidence": document.ocr_confidence,
            "error_message": document.error_message,
        })

    def notify_analysis_completed(self, analysis: Analysis) -> None:
        summary = analysis.summary
        if len(summary) > 200:
            summary = summary[:197] + "..."
        message = {
            "type": MessageType.ANALYSIS_COMPLETED.value,
            "batch_id": analysis.batch_id,
            "analysis_id": analysis.id,
            "summary": summary,
            "has_recommendations": bool(analysis.recommendations),
        }
        self.publish(batch_topic(analysis.batch_id), message)
        self.publish(BROADCAST_TOPIC, message)

    def notify_error(self, error: str, **context) -> None:
        self.publish(ERRORS_TOPIC, {"type": MessageType.ERROR.value, "error": error, **context})
