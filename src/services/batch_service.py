"""
Batch use cases exposed to the API: upload, query, cancel, reprocess,
delete and chat over a batch's extracted content.
"""

from dataclasses import dataclass
from typing import Optional
from loguru import logger

from ..core.errors import EventBusUnavailable, NotFoundError, StorageError, ValidationError
from ..models.batch import Analysis, Batch, BatchStatistics, BatchStatus, Document
from ..models.invoice import Invoice
from .ai import AIAnalysisClient
from .notifications import NotificationHub
from .pipeline import PipelineOrchestrator
from .storage import FileStore, PipelineRepository

CHAT_PREVIEW_CHARS = 200


@dataclass
class UploadedFile:
    file_name: str
    content_type: str
    data: bytes


class BatchService:
    def __init__(
        self,
        repository: PipelineRepository,
        file_store: FileStore,
        orchestrator: PipelineOrchestrator,
        notifications: NotificationHub,
        ai: AIAnalysisClient,
        allowed_content_types: list[str],
        max_file_size: int,
    ):
        self.repository = repository
        self.file_store = file_store
        self.orchestrator = orchestrator
        self.notifications = notifications
        self.ai = ai
        self.allowed_content_types = allowed_content_types
        self.max_file_size = max_file_size

    def validate_upload(self, name: str, files: list[UploadedFile]) -> list[str]:
        issues = []
        if not name or not name.strip():
            issues.append("Batch name is required")
        if not files:
            issues.append("At least one file is required")
        for f in files:
            label = f.file_name or "<unnamed>"
            if not f.file_name or not f.file_name.strip():
                issues.append("File name is required")
            if f.content_type not in self.allowed_content_types:
                issues.append(f"{label}: content type {f.content_type} is not allowed")
            if not f.data:
                issues.append(f"{label}: file is empty")
            elif len(f.data) > self.max_file_size:
                issues.append(f"{label}: file exceeds {self.max_file_size} bytes")
        return issues

    async def create_batch(
        self,
        name: str,
        files: list[UploadedFile],
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Batch:
        """
        Validate, store and persist a batch, then start processing.

        Raises:
            ValidationError: bad name or files; nothing is stored
            EventBusUnavailable: the pipeline is not running; nothing is stored
            StorageError: a file could not be stored; already stored files are removed
        """
        issues = self.validate_upload(name, files)
        if issues:
            raise ValidationError("Invalid batch upload", issues)
        if not self.orchestrator.bus.running:
            raise EventBusUnavailable("Pipeline is not running")

        batch = Batch(name=name.strip(), description=description, created_by=created_by)
        documents: list[Document] = []
        try:
            for f in files:
                path = self.file_store.store(f.data, f"{batch.id}/{f.file_name}")
                documents.append(Document(
                    batch_id=batch.id,
                    file_name=f.file_name,
                    content_type=f.content_type,
                    storage_key=path,
                    file_size=len(f.data),
                ))
        except StorageError:
            self._delete_files(documents)
            raise

        batch.document_ids = [d.id for d in documents]
        for document in documents:
            self.repository.save_document(document)
        self.repository.save_batch(batch)

        logger.info("Batch created", batch_id=batch.id, name=batch.name, documents=len(documents))
        self.notifications.notify_batch_created(batch)
        await self.orchestrator.submit_batch(batch.id)
        return batch

    def get_batch(self, batch_id: str) -> Batch:
        batch = self.repository.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("batch", batch_id)
        return batch

    def list_batches(self, status: Optional[BatchStatus] = None) -> list[Batch]:
        return self.repository.list_batches(status)

    def statistics(self) -> BatchStatistics:
        """Batch totals by status and document outcomes across all batches"""
        batches = self.repository.list_batches()
        by_status = {s: 0 for s in BatchStatus}
        for batch in batches:
            by_status[batch.status] += 1
        processed = sum(b.processed_count for b in batches)
        failed = sum(b.failed_count for b in batches)
        finished = processed + failed
        return BatchStatistics(
            total_batches=len(batches),
            by_status=by_status,
            total_documents=sum(b.document_count for b in batches),
            processed_documents=processed,
            failed_documents=failed,
            success_rate=round(processed * 100 / finished, 1) if finished else 0.0,
        )

    def list_documents(self, batch_id: str) -> list[Document]:
        self.get_batch(batch_id)
        return self.repository.list_documents_by_batch(batch_id)

    def get_document(self, document_id: str) -> Document:
        document = self.repository.get_document(document_id)
        if document is None:
            raise NotFoundError("document", document_id)
        return document

    def list_invoices(self, batch_id: str) -> list[Invoice]:
        return [
            invoice
            for d in self.list_documents(batch_id)
            for invoice in self.repository.list_invoices_by_document(d.id)
        ]

    def get_analysis(self, batch_id: str) -> Analysis:
        self.get_batch(batch_id)
        analysis = self.repository.get_analysis_by_batch(batch_id)
        if analysis is None:
            raise NotFoundError("analysis", batch_id)
        return analysis

    async def cancel_batch(self, batch_id: str) -> Batch:
        return await self.orchestrator.cancel_batch(batch_id)

    async def reprocess_document(self, document_id: str) -> Document:
        return await self.orchestrator.reprocess_document(document_id)

    async def delete_batch(self, batch_id: str) -> None:
        """Delete a batch with its documents, invoices, analysis and stored files"""
        async with self.orchestrator.batch_lock(batch_id):
            self.get_batch(batch_id)
            documents = self.repository.list_documents_by_batch(batch_id)
            self.repository.delete_batch(batch_id)
        self._delete_files(documents)
        self.orchestrator.forget(batch_id)
        logger.info("Batch deleted", batch_id=batch_id, documents=len(documents))

    async def chat(self, batch_id: str, message: str, invoice_id: Optional[str] = None) -> str:
        if not message or not message.strip():
            raise ValidationError("Message is required")
        batch = self.get_batch(batch_id)
        context = self.build_context(batch, invoice_id)
        return await self.ai.chat(message, context)

    def build_context(self, batch: Batch, invoice_id: Optional[str] = None) -> str:
        """Text digest of a batch for chat questions"""
        documents = self.repository.list_documents_by_batch(batch.id)
        lines = [
            f"Batch ID: {batch.id}",
            f"Batch Name: {batch.name}",
            f"Status: {batch.status.value}",
            f"Document Count: {len(documents)}",
            "",
            "Documents:",
        ]
        for d in documents:
            lines.append(f"- {d.file_name} ({d.status.value})")
            if d.extracted_text:
                preview = d.extracted_text[:CHAT_PREVIEW_CHARS]
                if len(d.extracted_text) > CHAT_PREVIEW_CHARS:
                    preview += "..."
                lines.append(f"  Content preview: {preview}")

        if invoice_id:
            invoice = self.repository.get_invoice(invoice_id)
            if invoice is None:
                raise NotFoundError("invoice", invoice_id)
            lines += [
                "",
                "Focus invoice:",
                f"  Number: {invoice.invoice_number or 'unknown'}",
                f"  Vendor: {invoice.vendor_name or 'unknown'}",
                f"  Amount: {invoice.amount if invoice.amount is not None else 'unknown'} {invoice.currency or ''}".rstrip(),
                f"  Invoice date: {invoice.invoice_date or 'unknown'}",
                f"  Due date: {invoice.due_date or 'unknown'}",
                f"  Status: {invoice.status.value}",
            ]
        return "\n".join(lines)

    def _delete_files(self, documents: list[Document]) -> None:
        for d in documents:
            try:
                self.file_store.delete(d.storage_key)
            except StorageError as e:
                logger.warning(f"Failed to delete stored file: {e}", path=d.storage_key)
