"""
Pipeline orchestration.

Stages are chained through the event bus:

    batch-created -> document-ocr-requested (one per document)
        -> batch-ocr-completed -> analysis-requested -> analysis-completed

Every handler is safe to run again on a redelivered message: it reloads the
entities and does nothing when the work is already done. All batch and
document mutations for one batch happen under that batch's lock, so
concurrent document completions never lose a counter update or skip the
OCR_COMPLETED transition. OCR and file retrieval run in worker threads.

An OCR attempt is identified by the document's retry_count when it starts.
Its outcome is applied only if the document is still on that attempt, and a
request whose generation predates the last manual reprocess is ignored.
"""

import asyncio
from typing import Optional
from loguru import logger

from ..core.errors import ExternalServiceError, InvalidTransition, NotFoundError, RetryExhausted
from ..models.batch import Analysis, Batch, BatchStatus, Document, DocumentStatus
from ..models.invoice import Invoice
from .ai import AIAnalysisClient
from .events import (
    ANALYSIS_COMPLETED,
    ANALYSIS_REQUESTED,
    BATCH_CREATED,
    BATCH_OCR_COMPLETED,
    DOCUMENT_OCR_REQUESTED,
    DeadLetter,
    EventBus,
    PipelineEvent,
)
from .extraction import InvoiceExtractionEngine
from .notifications import NotificationHub
from .ocr import OCRService
from .state_machine import BatchStateMachine, DocumentStateMachine
from .storage import FileStore, PipelineRepository
from .vendors import VendorService


class PipelineOrchestrator:
    def __init__(
        self,
        repository: PipelineRepository,
        file_store: FileStore,
        ocr: OCRService,
        extraction: InvoiceExtractionEngine,
        ai: AIAnalysisClient,
        bus: EventBus,
        notifications: NotificationHub,
        batches: BatchStateMachine,
        documents: DocumentStateMachine,
        vendors: Optional[VendorService] = None,
    ):
        self.repository = repository
        self.file_store = file_store
        self.ocr = ocr
        self.extraction = extraction
        self.ai = ai
        self.bus = bus
        self.notifications = notifications
        self.batches = batches
        self.documents = documents
        self.vendors = vendors
        self._locks: dict[str, asyncio.Lock] = {}

        bus.subscribe(BATCH_CREATED, self._releasing(self.handle_batch_created))
        bus.subscribe(DOCUMENT_OCR_REQUESTED, self._releasing(self.handle_document_ocr))
        bus.subscribe(BATCH_OCR_COMPLETED, self._releasing(self.handle_batch_ocr_completed))
        bus.subscribe(ANALYSIS_REQUESTED, self._releasing(self.handle_analysis_requested))
        bus.subscribe(ANALYSIS_COMPLETED, self._releasing(self.handle_analysis_completed))
        bus.on_dead_letter(self._releasing(self.handle_dead_letter))

    def batch_lock(self, batch_id: str) -> asyncio.Lock:
        lock = self._locks.get(batch_id)
        if lock is None:
            lock = self._locks[batch_id] = asyncio.Lock()
        return lock

    def forget(self, batch_id: str) -> None:
        """
        Drop the lock and acknowledged event keys of a batch. Called once the
        batch is terminal or deleted; later handlers for it are no-ops.
        """
        self._locks.pop(batch_id, None)
        self.bus.forget(batch_id)

    def _releasing(self, handler):
        """Wrap a bus callback so that a batch left terminal or deleted is forgotten"""

        async def wrapper(message):
            batch_id = message.event.batch_id if isinstance(message, DeadLetter) else message.batch_id
            try:
                await handler(message)
            finally:
                batch = self.repository.get_batch(batch_id)
                if batch is None or batch.status.is_terminal:
                    self.forget(batch_id)

        return wrapper

    # Commands

    async def submit_batch(self, batch_id: str) -> bool:
        return await self.bus.publish(PipelineEvent(BATCH_CREATED, batch_id=batch_id))

    async def cancel_batch(self, batch_id: str) -> Batch:
        """
        Move a batch to CANCELLED. In-flight OCR is not interrupted; its
        results are discarded when they arrive.

        Raises:
            NotFoundError: unknown batch
            InvalidTransition: the batch is already terminal
        """
        async with self.batch_lock(batch_id):
            batch = self._require_batch(batch_id)
            self.batches.transition(batch, BatchStatus.CANCELLED, "Cancelled by user")
            self.repository.save_batch(batch)
        self.forget(batch_id)
        return batch

    async def reprocess_document(self, document_id: str) -> Document:
        """
        Manually retry a failed document.

        Raises:
            NotFoundError: unknown document
            RetryExhausted: no retries left; the document stays FAILED
            InvalidTransition: the document is not FAILED or its batch has
                moved past OCR
        """
        document = self.repository.get_document(document_id)
        if document is None:
            raise NotFoundError("document", document_id)

        async with self.batch_lock(document.batch_id):
            document = self.repository.get_document(document_id)
            batch = self._require_batch(document.batch_id)
            if document.status != DocumentStatus.FAILED:
                raise InvalidTransition(
                    "document", document.status, DocumentStatus.PROCESSING, "only FAILED documents can be reprocessed"
                )
            if self.documents.retries_remaining(document) == 0:
                raise RetryExhausted(document.id, document.retry_count, self.documents.max_retries)
            if batch.status != BatchStatus.PROCESSING:
                raise InvalidTransition(
                    "batch", batch.status, BatchStatus.PROCESSING, "documents can only be reprocessed while the batch is processing"
                )
            self.documents.reprocess(document)
            document.generation = document.retry_count
            self.repository.save_document(document)

        await self.bus.publish(PipelineEvent(
            DOCUMENT_OCR_REQUESTED,
            batch_id=document.batch_id,
            document_id=document.id,
            generation=document.generation,
            payload={"reason": "manual-reprocess"},
        ))
        logger.info("Document queued for reprocessing", document_id=document.id, retry_count=document.retry_count)
        return document

    # Handlers

    async def handle_batch_created(self, event: PipelineEvent) -> None:
        async with self.batch_lock(event.batch_id):
            batch = self.repository.get_batch(event.batch_id)
            if batch is None:
                logger.warning("Batch vanished before processing", batch_id=event.batch_id)
                return
            if batch.status.is_terminal:
                logger.info("Batch already terminal, nothing to start", batch_id=batch.id, status=batch.status.value)
                return
            if batch.status == BatchStatus.CREATED:
                self.batches.transition(batch, BatchStatus.PROCESSING)
                self.repository.save_batch(batch)
            documents = self.repository.list_documents_by_batch(batch.id)

        pending = [d for d in documents if not self.documents.is_terminal(d)]
        logger.info("Fanning out OCR", batch_id=batch.id, documents=len(pending))
        for document in pending:
            await self.bus.publish(PipelineEvent(
                DOCUMENT_OCR_REQUESTED,
                batch_id=batch.id,
                document_id=document.id,
                generation=document.generation,
            ))
        if not pending:
            await self.check_completion(batch.id)

    async def handle_document_ocr(self, event: PipelineEvent) -> None:
        async with self.batch_lock(event.batch_id):
            document = self._start_document(event)
        if document is None:
            return
        attempt = document.retry_count

        try:
            data = await asyncio.to_thread(self.file_store.retrieve, document.storage_key)
            result = await asyncio.to_thread(self.ocr.perform_ocr, data, document.content_type)
        except ExternalServiceError as e:
            if await self._record_failure(document.id, event.batch_id, str(e), attempt):
                raise
            return

        async with self.batch_lock(event.batch_id):
            batch = self.repository.get_batch(event.batch_id)
            current = self.repository.get_document(document.id)
            if batch is None or current is None:
                return
            if batch.status.is_terminal:
                logger.info("Discarding OCR result for terminal batch", batch_id=batch.id, document_id=current.id, status=batch.status.value)
                return
            if current.status != DocumentStatus.PROCESSING or current.retry_count != attempt:
                logger.info(
                    "Discarding stale OCR result",
                    document_id=current.id,
                    status=current.status.value,
                    attempt=attempt,
                    retry_count=current.retry_count,
                )
                return

            self.documents.complete_processing(
                current, result.text, result.confidence, result.page_count, result.method
            )
            invoice = self._extract(current, result.text)
            current.invoice_ids = [invoice.id]
            self.repository.save_document(current)
            logger.info(
                "Document processed",
                batch_id=batch.id,
                document_id=current.id,
                method=result.method,
                confidence=round(result.confidence, 3),
                invoice_status=invoice.status.value,
            )
            await self._recompute(batch)

    async def handle_batch_ocr_completed(self, event: PipelineEvent) -> None:
        batch = self.repository.get_batch(event.batch_id)
        if batch is None or batch.status != BatchStatus.OCR_COMPLETED:
            return
        await self.bus.publish(PipelineEvent(ANALYSIS_REQUESTED, batch_id=batch.id))

    async def handle_analysis_requested(self, event: PipelineEvent) -> None:
        async with self.batch_lock(event.batch_id):
            batch = self.repository.get_batch(event.batch_id)
            if batch is None or batch.status not in (BatchStatus.OCR_COMPLETED, BatchStatus.ANALYSIS_IN_PROGRESS):
                return
            if batch.status == BatchStatus.OCR_COMPLETED:
                self.batches.transition(batch, BatchStatus.ANALYSIS_IN_PROGRESS)
                self.repository.save_batch(batch)
            documents = self.repository.list_documents_by_batch(batch.id)

        invoices = [
            invoice
            for d in documents
            for invoice in self.repository.list_invoices_by_document(d.id)
        ]
        result = await self.ai.analyze_batch(documents, invoices)
        await self.bus.publish(PipelineEvent(
            ANALYSIS_COMPLETED,
            batch_id=batch.id,
            payload=result.model_dump(),
        ))

    async def handle_analysis_completed(self, event: PipelineEvent) -> None:
        async with self.batch_lock(event.batch_id):
            batch = self.repository.get_batch(event.batch_id)
            if batch is None or batch.status != BatchStatus.ANALYSIS_IN_PROGRESS:
                return

            analysis = self.repository.get_analysis_by_batch(batch.id)
            if analysis is None:
                analysis = self.repository.save_analysis(Analysis.create(
                    batch.id,
                    event.payload.get("summary", ""),
                    event.payload.get("recommendations", []),
                    event.payload.get("metadata", {}),
                ))
            self.batches.transition(batch, BatchStatus.ANALYSIS_COMPLETED)
            self.repository.save_batch(batch)
        self.notifications.notify_analysis_completed(analysis)
        logger.info("Batch analysis completed", batch_id=batch.id, analysis_id=analysis.id)

    async def handle_dead_letter(self, dead: DeadLetter) -> None:
        event = dead.event
        async with self.batch_lock(event.batch_id):
            batch = self.repository.get_batch(event.batch_id)
            if batch is None:
                return

            if event.event_type == DOCUMENT_OCR_REQUESTED and event.document_id:
                document = self.repository.get_document(event.document_id)
                if document is not None and document.generation != event.generation:
                    logger.info(
                        "Ignoring dead letter of a superseded OCR request",
                        document_id=document.id,
                        generation=event.generation,
                        current=document.generation,
                    )
                    return
                if document is not None:
                    self.documents.settle_failed(
                        document, f"Processing abandoned after {dead.attempts} attempts: {dead.error}"
                    )
                    self.repository.save_document(document)
                if not batch.status.is_terminal:
                    await self._recompute(batch)
                return

            if not batch.status.is_terminal:
                self.batches.transition(batch, BatchStatus.FAILED, f"{event.event_type} failed: {dead.error}")
                self.repository.save_batch(batch)

    async def check_completion(self, batch_id: str) -> Optional[BatchStatus]:
        async with self.batch_lock(batch_id):
            batch = self.repository.get_batch(batch_id)
            if batch is None or batch.status.is_terminal:
                return None
            return await self._recompute(batch)

    # Internals (callers hold the batch lock)

    def _require_batch(self, batch_id: str) -> Batch:
        batch = self.repository.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("batch", batch_id)
        return batch

    def _start_document(self, event: PipelineEvent) -> Optional[Document]:
        """Move the document to PROCESSING, or None when there is nothing to do"""
        document = self.repository.get_document(event.document_id)
        batch = self.repository.get_batch(event.batch_id)
        if document is None or batch is None:
            return None
        if batch.status.is_terminal:
            logger.info("Skipping document of terminal batch", batch_id=batch.id, document_id=document.id)
            return None
        if event.generation != document.generation:
            logger.info(
                "Skipping superseded OCR request",
                document_id=document.id,
                generation=event.generation,
                current=document.generation,
            )
            return None
        if self.documents.is_terminal(document):
            logger.debug("Document already terminal", document_id=document.id, status=document.status.value)
            return None
        if document.status != DocumentStatus.PROCESSING:
            # CREATED, or FAILED on a redelivered retry
            self.documents.start_processing(document)
            self.repository.save_document(document)
        return document

    async def _record_failure(self, document_id: str, batch_id: str, reason: str, attempt: int) -> bool:
        """
        Mark the document FAILED.

        Returns:
            True when the document can still be retried (the caller re-raises
            so the bus redelivers), False when it is settled or the attempt
            was superseded
        """
        async with self.batch_lock(batch_id):
            document = self.repository.get_document(document_id)
            batch = self.repository.get_batch(batch_id)
            if document is None or batch is None or document.status != DocumentStatus.PROCESSING:
                return False
            if document.retry_count != attempt:
                logger.info(
                    f"Ignoring failure of a superseded OCR attempt: {reason}",
                    document_id=document_id,
                    attempt=attempt,
                    retry_count=document.retry_count,
                )
                return False

            self.documents.fail_processing(document, reason)
            self.repository.save_document(document)
            if batch.status.is_terminal:
                return False

            if self.documents.is_terminal(document):
                logger.error(
                    f"Document failed permanently: {reason}",
                    batch_id=batch_id,
                    document_id=document_id,
                    retry_count=document.retry_count,
                )
                self.notifications.notify_error(
                    reason,
                    event_type=DOCUMENT_OCR_REQUESTED,
                    batch_id=batch_id,
                    document_id=document_id,
                    attempts=document.retry_count + 1,
                )
                await self._recompute(batch)
                return False

            logger.warning(
                f"Document OCR failed, will retry: {reason}",
                batch_id=batch_id,
                document_id=document_id,
                retry_count=document.retry_count,
            )
            self.notifications.notify_ocr_progress(batch)
            return True

    def _extract(self, document: Document, text: str) -> Invoice:
        invoice = self.extraction.extract_invoice(document, text)
        existing = self.repository.list_invoices_by_document(document.id)
        if existing:
            # Replace rather than duplicate
            invoice.id = existing[0].id
        self.repository.save_invoice(invoice)
        if invoice.vendor_id and self.vendors is not None and not existing:
            self.vendors.record_invoice(invoice.vendor_id)
        return invoice

    async def _recompute(self, batch: Batch) -> Optional[BatchStatus]:
        documents = self.repository.list_documents_by_batch(batch.id)
        new_status = self.batches.recompute_progress(batch, documents)
        self.repository.save_batch(batch)
        self.notifications.notify_ocr_progress(batch)
        if new_status == BatchStatus.OCR_COMPLETED:
            await self.bus.publish(PipelineEvent(BATCH_OCR_COMPLETED, batch_id=batch.id))
        return new_status
