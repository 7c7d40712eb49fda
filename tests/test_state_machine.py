"""
Tests for the batch and document lifecycle rules.
"""

import pytest

from src.core.errors import InvalidTransition, RetryExhausted
from src.models.batch import Batch, BatchStatus, Document, DocumentStatus
from src.services.notifications import NotificationHub, batch_topic
from src.services.state_machine import BATCH_TRANSITIONS, BatchStateMachine, DocumentStateMachine


def make_batch(n_docs: int = 3, status: BatchStatus = BatchStatus.CREATED) -> tuple[Batch, list[Document]]:
    batch = Batch(name="test", status=status)
    docs = [
        Document(batch_id=batch.id, file_name=f"doc{i}.png", content_type="image/png", storage_key=f"k{i}")
        for i in range(n_docs)
    ]
    batch.document_ids = [d.id for d in docs]
    return batch, docs


ALLOWED = [(src, dst) for src, targets in BATCH_TRANSITIONS.items() for dst in targets]
FORBIDDEN = [
    (src, dst)
    for src in BatchStatus
    for dst in BatchStatus
    if dst not in BATCH_TRANSITIONS[src]
]


@pytest.mark.parametrize("current,target", ALLOWED)
def test_batch_allowed_transitions(current, target):
    batch, _ = make_batch(status=current)
    BatchStateMachine().transition(batch, target)
    assert batch.status == target


@pytest.mark.parametrize("current,target", FORBIDDEN)
def test_batch_forbidden_transitions_raise(current, target):
    batch, _ = make_batch(status=current)
    with pytest.raises(InvalidTransition):
        BatchStateMachine().transition(batch, target)
    assert batch.status == current


def test_cancel_reachable_from_every_non_terminal_state():
    for status in BatchStatus:
        if not status.is_terminal:
            assert BatchStatus.CANCELLED in BATCH_TRANSITIONS[status]
        else:
            assert BATCH_TRANSITIONS[status] == set()


def test_transition_stamps_timestamps():
    sm = BatchStateMachine()
    batch, _ = make_batch()
    assert batch.started_at is None

    sm.transition(batch, BatchStatus.PROCESSING)
    assert batch.started_at is not None
    assert batch.completed_at is None

    sm.transition(batch, BatchStatus.CANCELLED, "stopped")
    assert batch.completed_at is not None
    assert batch.error_message == "stopped"


def test_transition_emits_status_notification():
    hub = NotificationHub()
    received = []
    batch, _ = make_batch()
    hub.subscribe(batch_topic(batch.id), lambda topic, msg: received.append(msg))

    BatchStateMachine(hub).transition(batch, BatchStatus.PROCESSING)

    assert len(received) == 1
    assert received[0]["type"] == "BATCH_STATUS_UPDATE"
    assert received[0]["status"] == "PROCESSING"
    assert received[0]["previous_status"] == "CREATED"


def test_recompute_waits_for_all_documents():
    documents_sm = DocumentStateMachine()
    sm = BatchStateMachine(documents=documents_sm)
    batch, docs = make_batch(3, BatchStatus.PROCESSING)

    for d in docs[:2]:
        documents_sm.start_processing(d)
        documents_sm.complete_processing(d, "text", 0.9)

    assert sm.recompute_progress(batch, docs) is None
    assert batch.processed_count == 2
    assert batch.failed_count == 0
    assert batch.status == BatchStatus.PROCESSING


def test_recompute_completes_with_partial_failure():
    documents_sm = DocumentStateMachine(max_retries=0)
    sm = BatchStateMachine(documents=documents_sm)
    batch, docs = make_batch(3, BatchStatus.PROCESSING)

    for d in docs[:2]:
        documents_sm.start_processing(d)
        documents_sm.complete_processing(d, "text", 0.9)
    documents_sm.start_processing(docs[2])
    documents_sm.fail_processing(docs[2], "unreadable")

    assert sm.recompute_progress(batch, docs) == BatchStatus.OCR_COMPLETED
    assert batch.processed_count == 2
    assert batch.failed_count == 1


def test_recompute_fails_batch_when_every_document_failed():
    documents_sm = DocumentStateMachine(max_retries=0)
    sm = BatchStateMachine(documents=documents_sm)
    batch, docs = make_batch(2, BatchStatus.PROCESSING)
    for d in docs:
        documents_sm.start_processing(d)
        documents_sm.fail_processing(d, "unreadable")

    assert sm.recompute_progress(batch, docs) == BatchStatus.FAILED
    assert batch.failed_count == 2
    assert "2 documents failed" in batch.error_message


def test_recompute_ignores_failures_that_will_be_retried():
    documents_sm = DocumentStateMachine(max_retries=3)
    sm = BatchStateMachine(documents=documents_sm)
    batch, docs = make_batch(1, BatchStatus.PROCESSING)
    documents_sm.start_processing(docs[0])
    documents_sm.fail_processing(docs[0], "timeout")

    assert sm.recompute_progress(batch, docs) is None
    assert batch.failed_count == 0


def test_recompute_is_idempotent():
    hub = NotificationHub()
    updates = []
    documents_sm = DocumentStateMachine()
    sm = BatchStateMachine(hub, documents_sm)
    batch, docs = make_batch(1, BatchStatus.PROCESSING)
    hub.subscribe(batch_topic(batch.id), lambda topic, msg: updates.append(msg["type"]))

    documents_sm.start_processing(docs[0])
    documents_sm.complete_processing(docs[0], "text", 0.9)

    assert sm.recompute_progress(batch, docs) == BatchStatus.OCR_COMPLETED
    assert sm.recompute_progress(batch, docs) is None
    assert sm.recompute_progress(batch, docs) is None
    assert batch.status == BatchStatus.OCR_COMPLETED
    assert updates.count("BATCH_STATUS_UPDATE") == 1


def test_document_happy_path():
    sm = DocumentStateMachine()
    _, docs = make_batch(1)
    doc = docs[0]

    sm.start_processing(doc)
    assert doc.status == DocumentStatus.PROCESSING
    sm.complete_processing(doc, "hello", 1.7, page_count=2, method="external")

    assert doc.status == DocumentStatus.PROCESSED
    assert doc.extracted_text == "hello"
    assert doc.ocr_confidence == 1.0
    assert doc.page_count == 2
    assert sm.is_terminal(doc)


def test_document_complete_requires_processing():
    sm = DocumentStateMachine()
    _, docs = make_batch(1)
    with pytest.raises(InvalidTransition):
        sm.complete_processing(docs[0], "text", 0.5)
    with pytest.raises(InvalidTransition):
        sm.fail_processing(docs[0], "nope")


def test_document_retry_increments_count_until_exhausted():
    sm = DocumentStateMachine(max_retries=3)
    _, docs = make_batch(1)
    doc = docs[0]

    sm.start_processing(doc)
    sm.fail_processing(doc, "attempt 1")
    for expected in (1, 2, 3):
        assert not sm.is_terminal(doc)
        sm.start_processing(doc)
        assert doc.retry_count == expected
        assert doc.status == DocumentStatus.PROCESSING
        sm.fail_processing(doc, f"attempt {expected + 1}")

    assert doc.status == DocumentStatus.FAILED
    assert sm.is_terminal(doc)
    assert sm.retries_remaining(doc) == 0


def test_reprocess_after_max_retries_is_rejected():
    sm = DocumentStateMachine(max_retries=3)
    _, docs = make_batch(1)
    doc = docs[0]
    doc.status = DocumentStatus.FAILED
    doc.retry_count = 3

    with pytest.raises(RetryExhausted):
        sm.reprocess(doc)
    assert doc.status == DocumentStatus.FAILED
    assert doc.retry_count == 3


def test_reprocess_requires_failed_document():
    sm = DocumentStateMachine()
    _, docs = make_batch(1)
    with pytest.raises(InvalidTransition):
        sm.reprocess(docs[0])


def test_settle_failed_makes_document_terminal():
    sm = DocumentStateMachine(max_retries=3)
    _, docs = make_batch(2)

    sm.settle_failed(docs[0], "dead-lettered")
    assert docs[0].status == DocumentStatus.FAILED
    assert docs[0].permanent_failure
    assert sm.is_terminal(docs[0])

    sm.start_processing(docs[1])
    sm.fail_processing(docs[1], "timeout")
    sm.settle_failed(docs[1], "dead-lettered")
    assert docs[1].error_message == "timeout"
    assert sm.is_terminal(docs[1])
