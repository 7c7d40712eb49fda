"""
Lifecycle rules for batches and documents.

Every status change in the pipeline goes through these two classes; no other
module assigns ``status`` directly.

Batch:
    CREATED -> PROCESSING -> OCR_COMPLETED -> ANALYSIS_IN_PROGRESS -> ANALYSIS_COMPLETED
    FAILED and CANCELLED are reachable from any non-terminal state.

Document:
    CREATED -> PROCESSING -> PROCESSED | FAILED
    FAILED -> PROCESSING only while retry_count < max_retries.
"""

from loguru import logger

from ..core.errors import InvalidTransition, RetryExhausted
from ..models.batch import Batch, BatchStatus, Document, DocumentStatus, utcnow
from .notifications import NotificationHub

_ABORT = {BatchStatus.FAILED, BatchStatus.CANCELLED}

BATCH_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.CREATED: {BatchStatus.PROCESSING} | _ABORT,
    BatchStatus.PROCESSING: {BatchStatus.OCR_COMPLETED} | _ABORT,
    BatchStatus.OCR_COMPLETED: {BatchStatus.ANALYSIS_IN_PROGRESS} | _ABORT,
    BatchStatus.ANALYSIS_IN_PROGRESS: {BatchStatus.ANALYSIS_COMPLETED} | _ABORT,
    BatchStatus.ANALYSIS_COMPLETED: set(),
    BatchStatus.FAILED: set(),
    BatchStatus.CANCELLED: set(),
}


class BatchStateMachine:
    def __init__(
        self,
        notifications: NotificationHub | None = None,
        documents: "DocumentStateMachine | None" = None,
    ):
        self.notifications = notifications
        self.documents = documents or DocumentStateMachine()

    @staticmethod
    def can_transition(batch: Batch, target: BatchStatus) -> bool:
        return target in BATCH_TRANSITIONS[batch.status]

    def transition(self, batch: Batch, target: BatchStatus, error_message: str | None = None) -> Batch:
        """
        Move a batch to ``target``, stamping timestamps and emitting a
        BATCH_STATUS_UPDATE notification.

        Raises:
            InvalidTransition: target is not a successor of the current status
        """
        if not self.can_transition(batch, target):
            raise InvalidTransition("batch", batch.status, target)

        previous = batch.status
        now = utcnow()
        batch.status = target
        batch.updated_at = now
        if target == BatchStatus.PROCESSING and batch.started_at is None:
            batch.started_at = now
        if target.is_terminal:
            batch.completed_at = now
        if error_message:
            batch.error_message = error_message

        logger.info(
            "Batch status changed",
            batch_id=batch.id,
            previous=previous.value,
            status=target.value,
        )
        if self.notifications is not None:
            self.notifications.notify_batch_status(batch, previous)
        return batch

    def recompute_progress(self, batch: Batch, documents: list[Document]) -> BatchStatus | None:
        """
        Recount processed/failed documents and close the OCR stage when every
        document is terminal.

        Only a PROCESSING batch can advance, so repeated calls after the
        transition only refresh the counters.

        Returns:
            The new status if a transition happened, else None
        """
        processed = sum(1 for d in documents if d.status == DocumentStatus.PROCESSED)
        failed = sum(
            1 for d in documents
            if d.status == DocumentStatus.FAILED and self.documents.is_terminal(d)
        )
        batch.processed_count = processed
        batch.failed_count = failed
        batch.updated_at = utcnow()

        if batch.status != BatchStatus.PROCESSING or not documents:
            return None
        if processed + failed < len(documents):
            return None

        if failed == len(documents):
            self.transition(batch, BatchStatus.FAILED, f"All {failed} documents failed OCR")
        else:
            self.transition(batch, BatchStatus.OCR_COMPLETED)
        return batch.status


class DocumentStateMachine:
    def __init__(self, max_retries: int = 3, notifications: NotificationHub | None = None):
        self.max_retries = max_retries
        self.notifications = notifications

    def is_terminal(self, document: Document) -> bool:
        if document.status == DocumentStatus.PROCESSED:
            return True
        if document.status == DocumentStatus.FAILED:
            return document.permanent_failure or document.retry_count >= self.max_retries
        return False

    def retries_remaining(self, document: Document) -> int:
        if document.permanent_failure:
            return 0
        return max(0, self.max_retries - document.retry_count)

    def _set(self, document: Document, status: DocumentStatus) -> None:
        previous = document.status
        document.status = status
        document.updated_at = utcnow()
        logger.debug(
            "Document status changed",
            document_id=document.id,
            previous=previous.value,
            status=status.value,
            retry_count=document.retry_count,
        )
        if self.notifications is not None:
            self.notifications.notify_document_status(document)

    def start_processing(self, document: Document) -> Document:
        """CREATED -> PROCESSING, or FAILED -> PROCESSING as a retry"""
        if document.status == DocumentStatus.FAILED:
            return self.reprocess(document)
        if document.status != DocumentStatus.CREATED:
            raise InvalidTransition("document", document.status, DocumentStatus.PROCESSING)
        self._set(document, DocumentStatus.PROCESSING)
        return document

    def reprocess(self, document: Document) -> Document:
        """
        Retry a failed document.

        Raises:
            InvalidTransition: the document is not FAILED
            RetryExhausted: no retries left; the document stays FAILED
        """
        if document.status != DocumentStatus.FAILED:
            raise InvalidTransition("document", document.status, DocumentStatus.PROCESSING, "only FAILED documents can be reprocessed")
        if self.retries_remaining(document) == 0:
            raise RetryExhausted(document.id, document.retry_count, self.max_retries)
        document.retry_count += 1
        document.error_message = None
        self._set(document, DocumentStatus.PROCESSING)
        return document

    def complete_processing(
        self,
        document: Document,
        text: str,
        confidence: float,
        page_count: int = 0,
        method: str | None = None,
    ) -> Document:
        if document.status != DocumentStatus.PROCESSING:
            raise InvalidTransition("document", document.status, DocumentStatus.PROCESSED)
        document.extracted_text = text
        document.ocr_confidence = min(1.0, max(0.0, confidence))
        document.page_count = page_count
        document.ocr_method = method
        document.error_message = None
        self._set(document, DocumentStatus.PROCESSED)
        return document

    def fail_processing(self, document: Document, reason: str, permanent: bool = False) -> Document:
        if document.status != DocumentStatus.PROCESSING:
            raise InvalidTransition("document", document.status, DocumentStatus.FAILED)
        document.error_message = reason
        if permanent:
            document.permanent_failure = True
        self._set(document, DocumentStatus.FAILED)
        return document

    def settle_failed(self, document: Document, reason: str) -> Document:
        """
        Force a terminal FAILED state (dead-lettered work). Walks the regular
        graph so a CREATED document passes through PROCESSING first.
        """
        if document.status == DocumentStatus.PROCESSED:
            return document
        if document.status == DocumentStatus.FAILED:
            document.permanent_failure = True
            document.error_message = document.error_message or reason
            document.updated_at = utcnow()
            return document
        if document.status == DocumentStatus.CREATED:
            self._set(document, DocumentStatus.PROCESSING)
        return self.fail_processing(document, reason, permanent=True)
