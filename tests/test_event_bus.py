"""
Tests for the in-process event bus: delivery, redelivery with backoff,
dead-lettering and duplicate suppression.
"""

import asyncio
from unittest.mock import Mock
import pytest

from src.core.errors import EventBusUnavailable
from src.services.events import (
    BATCH_CREATED,
    DOCUMENT_OCR_REQUESTED,
    EventBus,
    EventPublisher,
    PipelineEvent,
)
from src.services.notifications import ERRORS_TOPIC, NotificationHub


def run(coro):
    return asyncio.run(coro)


def test_backoff_doubles_until_capped():
    bus = EventBus(base_delay=1.0, max_delay=5.0)
    assert [bus.backoff(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_rejects_zero_workers():
    with pytest.raises(ValueError):
        EventBus(workers=0)


def test_duplicate_subscription_is_rejected():
    bus = EventBus()

    async def handler(event):
        pass

    bus.subscribe(BATCH_CREATED, handler)
    with pytest.raises(ValueError):
        bus.subscribe(BATCH_CREATED, handler)


def test_publish_requires_running_bus():
    bus = EventBus()
    with pytest.raises(EventBusUnavailable):
        run(bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1")))


def test_event_rejects_unknown_type():
    with pytest.raises(ValueError):
        PipelineEvent("something-else", batch_id="b1")


def test_idempotency_key_depends_on_generation():
    first = PipelineEvent(DOCUMENT_OCR_REQUESTED, batch_id="b1", document_id="d1")
    redelivered = PipelineEvent(DOCUMENT_OCR_REQUESTED, batch_id="b1", document_id="d1")
    reprocessed = PipelineEvent(DOCUMENT_OCR_REQUESTED, batch_id="b1", document_id="d1", generation=1)

    assert first.event_id != redelivered.event_id
    assert first.idempotency_key == redelivered.idempotency_key
    assert first.idempotency_key != reprocessed.idempotency_key


def test_delivers_to_handler():
    received = []

    async def scenario():
        bus = EventBus(workers=2)

        async def handler(event):
            received.append(event.batch_id)

        bus.subscribe(BATCH_CREATED, handler)
        await bus.start()
        for i in range(5):
            assert await bus.publish(PipelineEvent(BATCH_CREATED, batch_id=f"b{i}"))
        await bus.join()
        await bus.stop()

    run(scenario())
    assert sorted(received) == [f"b{i}" for i in range(5)]


def test_failed_handler_is_redelivered_until_success():
    attempts = []

    async def scenario():
        bus = EventBus(max_retries=3, base_delay=0, max_delay=0)

        async def handler(event):
            attempts.append(event.event_id)
            if len(attempts) < 3:
                raise RuntimeError("transient")

        bus.subscribe(BATCH_CREATED, handler)
        await bus.start()
        await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await bus.join()
        await bus.stop()
        return bus

    bus = run(scenario())
    assert len(attempts) == 3
    assert len(set(attempts)) == 1
    assert bus.dead_letters == []


def test_exhausted_retries_dead_letter_and_report():
    hub = NotificationHub()
    errors = []
    hooked = []
    hub.subscribe(ERRORS_TOPIC, lambda topic, msg: errors.append(msg))
    calls = []

    async def scenario():
        bus = EventBus(max_retries=3, base_delay=0, max_delay=0, notifications=hub)

        async def handler(event):
            calls.append(1)
            raise RuntimeError("poison message")

        async def hook(dead):
            hooked.append(dead)

        bus.subscribe(DOCUMENT_OCR_REQUESTED, handler)
        bus.on_dead_letter(hook)
        await bus.start()
        await bus.publish(PipelineEvent(DOCUMENT_OCR_REQUESTED, batch_id="b1", document_id="d1"))
        await bus.join()
        await bus.stop()
        return bus

    bus = run(scenario())
    # one delivery plus three redeliveries
    assert len(calls) == 4
    assert len(bus.dead_letters) == 1
    dead = bus.dead_letters[0]
    assert dead.attempts == 4
    assert dead.error == "poison message"
    assert hooked == [dead]
    assert len(errors) == 1
    assert errors[0]["type"] == "ERROR"
    assert errors[0]["batch_id"] == "b1"
    assert errors[0]["document_id"] == "d1"
    assert errors[0]["attempts"] == 4


def test_failing_dead_letter_hook_does_not_stall_the_bus():
    def hook(dead):
        raise RuntimeError("hook broke")

    async def scenario():
        bus = EventBus(max_retries=0, base_delay=0, max_delay=0)

        async def handler(event):
            raise RuntimeError("boom")

        bus.subscribe(BATCH_CREATED, handler)
        bus.on_dead_letter(hook)
        await bus.start()
        await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await asyncio.wait_for(bus.join(), timeout=5)
        await bus.stop()
        return bus

    bus = run(scenario())
    assert len(bus.dead_letters) == 1


def test_duplicate_events_are_skipped():
    received = []

    async def scenario():
        bus = EventBus()

        async def handler(event):
            received.append(event.event_id)

        bus.subscribe(BATCH_CREATED, handler)
        await bus.start()
        first = await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        inflight_dup = await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await bus.join()
        acked_dup = await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await bus.join()
        await bus.stop()
        return first, inflight_dup, acked_dup

    assert run(scenario()) == (True, False, False)
    assert len(received) == 1


def test_forget_drops_acknowledged_keys_of_one_batch():
    async def scenario():
        bus = EventBus()

        async def handler(event):
            pass

        bus.subscribe(BATCH_CREATED, handler)
        await bus.start()
        await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b2"))
        await bus.join()
        before = (bus.acknowledged("b1"), bus.acknowledged("b2"))
        bus.forget("b1")
        after = (bus.acknowledged("b1"), bus.acknowledged("b2"))
        republished = await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await bus.stop()
        return before, after, republished

    before, after, republished = run(scenario())
    assert before == (1, 1)
    assert after == (0, 1)
    assert republished


def test_forget_during_handler_is_not_undone_by_the_ack():
    async def scenario():
        bus = EventBus()

        async def handler(event):
            bus.forget(event.batch_id)

        bus.subscribe(BATCH_CREATED, handler)
        await bus.start()
        await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await bus.join()
        await bus.stop()
        return bus

    bus = run(scenario())
    assert bus.acknowledged("b1") == 0
    assert bus._retired == set()


def test_unhandled_event_is_dropped():
    async def scenario():
        bus = EventBus()
        await bus.start()
        accepted = await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await asyncio.wait_for(bus.join(), timeout=5)
        await bus.stop()
        return accepted, bus

    accepted, bus = run(scenario())
    assert accepted
    assert bus.dead_letters == []


def test_stop_rejects_further_publishes():
    async def scenario():
        bus = EventBus()
        await bus.start()
        await bus.stop()
        assert not bus.running
        with pytest.raises(EventBusUnavailable):
            await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))

    run(scenario())


def test_events_are_mirrored_to_service_bus():
    sender = Mock()
    publisher = EventPublisher(service_bus_sender=sender)

    async def scenario():
        bus = EventBus(publisher=publisher)

        async def handler(event):
            pass

        bus.subscribe(BATCH_CREATED, handler)
        await bus.start()
        await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await bus.join()
        await bus.stop()

    run(scenario())
    sender.send_messages.assert_called_once()


def test_mirror_failure_does_not_block_delivery():
    sender = Mock()
    sender.send_messages.side_effect = RuntimeError("namespace unreachable")
    received = []

    async def scenario():
        bus = EventBus(publisher=EventPublisher(service_bus_sender=sender))

        async def handler(event):
            received.append(event.batch_id)

        bus.subscribe(BATCH_CREATED, handler)
        await bus.start()
        await bus.publish(PipelineEvent(BATCH_CREATED, batch_id="b1"))
        await bus.join()
        await bus.stop()

    run(scenario())
    assert received == ["b1"]
