"""
In-process asynchronous event bus with at-least-once delivery.

Handlers are coroutines registered per event type. A message is acknowledged
only after its handler returns; a handler that raises gets the message
again after an exponential backoff, and once retries are exhausted the
message is dead-lettered, reported on the ``errors`` notification topic and
handed to the dead-letter hooks.

Usage:
    bus = EventBus(workers=4)
    bus.subscribe(BATCH_CREATED, on_batch_created)
    await bus.start()
    await bus.publish(PipelineEvent(BATCH_CREATED, batch_id=batch.id))
    await bus.join()
    await bus.stop()
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Optional
from loguru import logger

from ...core.errors import EventBusUnavailable
from ..notifications import NotificationHub
from .event_publisher import EventPublisher, PipelineEvent

Handler = Callable[[PipelineEvent], Awaitable[None]]


@dataclass
class DeadLetter:
    event: PipelineEvent
    attempts: int
    error: str
    failed_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


DeadLetterHook = Callable[[DeadLetter], Any]


class EventBus:
    def __init__(
        self,
        workers: int = 4,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        publisher: Optional[EventPublisher] = None,
        notifications: Optional[NotificationHub] = None,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.worker_count = workers
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.publisher = publisher
        self.notifications = notifications
        self.dead_letters: list[DeadLetter] = []

        self._handlers: dict[str, Handler] = {}
        self._dead_letter_hooks: list[DeadLetterHook] = []
        self._queue: Optional[asyncio.Queue] = None
        self._workers: list[asyncio.Task] = []
        self._redeliveries: set[asyncio.Task] = set()
        self._idle: Optional[asyncio.Event] = None
        self._pending = 0
        # idempotency key -> batch id
        self._acked: dict[str, str] = {}
        self._inflight: dict[str, str] = {}
        # forgotten batches that still have events in flight
        self._retired: set[str] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, event_type: str, handler: Handler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for {event_type}")
        self._handlers[event_type] = handler

    def on_dead_letter(self, hook: DeadLetterHook) -> None:
        self._dead_letter_hooks.append(hook)

    def acknowledged(self, batch_id: str) -> int:
        """Number of acknowledged event keys remembered for a batch"""
        return sum(1 for b in self._acked.values() if b == batch_id)

    def forget(self, batch_id: str) -> None:
        """
        Drop the acknowledged keys of a batch. Events of the batch still in
        flight are not remembered when they are acknowledged.
        """
        self._acked = {k: b for k, b in self._acked.items() if b != batch_id}
        if batch_id in self._inflight.values():
            self._retired.add(batch_id)

    def backoff(self, attempt: int) -> float:
        """Delay before redelivery number ``attempt + 1``"""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.Queue()
        self._idle = asyncio.Event()
        self._idle.set()
        self._pending = 0
        self._inflight.clear()
        self._retired.clear()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"event-bus-worker-{i}")
            for i in range(self.worker_count)
        ]
        self._running = True
        logger.info("Event bus started", workers=self.worker_count, max_retries=self.max_retries)

    async def stop(self, drain: bool = True) -> None:
        """
        Stop the workers.

        Args:
            drain: wait for queued and scheduled messages first; otherwise
                pending messages are dropped
        """
        if not self._running:
            return
        if drain:
            await self.join()
        self._running = False
        tasks = self._workers + list(self._redeliveries)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._redeliveries.clear()
        if self._pending:
            logger.warning("Event bus stopped with undelivered messages", pending=self._pending)
        logger.info("Event bus stopped", dead_letters=len(self.dead_letters))

    async def join(self) -> None:
        """Wait until nothing is queued, in flight or waiting for redelivery"""
        if self._idle is not None:
            await self._idle.wait()

    async def publish(self, event: PipelineEvent) -> bool:
        """
        Enqueue an event.

        Returns:
            False when an event with the same idempotency key is already
            queued or was already acknowledged

        Raises:
            EventBusUnavailable: the bus is not running
        """
        if not self._running:
            raise EventBusUnavailable(f"Event bus is not running; cannot publish {event.event_type}")

        key = event.idempotency_key
        if key in self._acked or key in self._inflight:
            logger.debug(
                "Duplicate event skipped",
                event_type=event.event_type,
                batch_id=event.batch_id,
                document_id=event.document_id,
            )
            return False

        self._inflight[key] = event.batch_id
        self._pending += 1
        self._idle.clear()
        self._queue.put_nowait((event, 0))

        if self.publisher is not None and self.publisher.enabled:
            await asyncio.to_thread(self.publisher.publish_event, event)
        return True

    async def _worker(self, index: int) -> None:
        while True:
            event, attempt = await self._queue.get()
            try:
                await self._dispatch(event, attempt)
            except Exception:
                # Bookkeeping failures must not kill the worker
                logger.exception("Event bus worker error", worker=index, event_type=event.event_type)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: PipelineEvent, attempt: int) -> None:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.warning("No handler registered; event dropped", event_type=event.event_type)
            self._settle(event)
            return

        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt < self.max_retries:
                delay = self.backoff(attempt)
                logger.warning(
                    f"Handler failed, redelivering in {delay:.2f}s: {e}",
                    event_type=event.event_type,
                    batch_id=event.batch_id,
                    document_id=event.document_id,
                    attempt=attempt + 1,
                )
                self._schedule_redelivery(event, attempt + 1, delay)
            else:
                await self._dead_letter(event, attempt + 1, e)
            return

        if event.batch_id not in self._retired:
            self._acked[event.idempotency_key] = event.batch_id
        self._settle(event)

    def _schedule_redelivery(self, event: PipelineEvent, attempt: int, delay: float) -> None:
        task = asyncio.create_task(self._redeliver(event, attempt, delay))
        self._redeliveries.add(task)
        task.add_done_callback(self._redeliveries.discard)

    async def _redeliver(self, event: PipelineEvent, attempt: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait((event, attempt))

    async def _dead_letter(self, event: PipelineEvent, attempts: int, error: Exception) -> None:
        dead = DeadLetter(event=event, attempts=attempts, error=str(error) or type(error).__name__)
        self.dead_letters.append(dead)
        logger.error(
            f"Event dead-lettered after {attempts} attempts: {dead.error}",
            event_type=event.event_type,
            batch_id=event.batch_id,
            document_id=event.document_id,
        )
        if self.notifications is not None:
            self.notifications.notify_error(
                dead.error,
                event_type=event.event_type,
                batch_id=event.batch_id,
                document_id=event.document_id,
                attempts=attempts,
            )
        try:
            for hook in self._dead_letter_hooks:
                try:
                    result = hook(dead)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Dead-letter hook failed", event_type=event.event_type)
        finally:
            self._settle(event)

    def _settle(self, event: PipelineEvent) -> None:
        self._inflight.pop(event.idempotency_key, None)
        if event.batch_id in self._retired and event.batch_id not in self._inflight.values():
            self._retired.discard(event.batch_id)
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()
