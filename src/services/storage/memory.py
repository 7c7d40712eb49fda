"""
In-memory pipeline repository (for tests and local demos).
In production, use a database (SQLite, SQL Server, ...)
"""
import threading
from typing import Dict, Optional

from ...models.batch import Analysis, Batch, BatchStatus, Document, DocumentStatus
from ...models.invoice import Invoice, InvoiceStatus, Vendor
from .repository_base import PipelineRepository


class InMemoryRepository(PipelineRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._batches: Dict[str, Batch] = {}
        self._documents: Dict[str, Document] = {}
        self._invoices: Dict[str, Invoice] = {}
        self._vendors: Dict[str, Vendor] = {}
        self._analyses: Dict[str, Analysis] = {}

    @staticmethod
    def _copy(entity):
        return entity.model_copy(deep=True) if entity is not None else None

    def save_batch(self, batch: Batch) -> Batch:
        with self._lock:
            self._batches[batch.id] = self._copy(batch)
        return batch

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with self._lock:
            return self._copy(self._batches.get(batch_id))

    def list_batches(self, status: BatchStatus | None = None) -> list[Batch]:
        with self._lock:
            batches = [b for b in self._batches.values() if status is None or b.status == status]
            batches.sort(key=lambda b: b.created_at, reverse=True)
            return [self._copy(b) for b in batches]

    def delete_batch(self, batch_id: str) -> bool:
        with self._lock:
            batch = self._batches.pop(batch_id, None)
            if batch is None:
                return False
            doc_ids = {d.id for d in self._documents.values() if d.batch_id == batch_id}
            for doc_id in doc_ids:
                self._documents.pop(doc_id, None)
            for invoice_id in [i.id for i in self._invoices.values() if i.document_id in doc_ids]:
                self._invoices.pop(invoice_id, None)
            for analysis_id in [a.id for a in self._analyses.values() if a.batch_id == batch_id]:
                self._analyses.pop(analysis_id, None)
            return True

    def save_document(self, document: Document) -> Document:
        with self._lock:
            self._documents[document.id] = self._copy(document)
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            return self._copy(self._documents.get(document_id))

    def list_documents_by_batch(self, batch_id: str) -> list[Document]:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return []
            return [self._copy(self._documents[d]) for d in batch.document_ids if d in self._documents]

    def list_documents_by_status(self, status: DocumentStatus) -> list[Document]:
        with self._lock:
            return [self._copy(d) for d in self._documents.values() if d.status == status]

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            self._invoices[invoice.id] = self._copy(invoice)
        return invoice

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            return self._copy(self._invoices.get(invoice_id))

    def list_invoices_by_document(self, document_id: str) -> list[Invoice]:
        with self._lock:
            return [self._copy(i) for i in self._invoices.values() if i.document_id == document_id]

    def list_invoices(self, status: InvoiceStatus | None = None) -> list[Invoice]:
        with self._lock:
            invoices = [i for i in self._invoices.values() if status is None or i.status == status]
            invoices.sort(key=lambda i: i.created_at, reverse=True)
            return [self._copy(i) for i in invoices]

    def save_vendor(self, vendor: Vendor) -> Vendor:
        with self._lock:
            self._vendors[vendor.id] = self._copy(vendor)
        return vendor

    def get_vendor(self, vendor_id: str) -> Optional[Vendor]:
        with self._lock:
            return self._copy(self._vendors.get(vendor_id))

    def find_vendor_by_name(self, name: str) -> Optional[Vendor]:
        wanted = name.strip().lower()
        with self._lock:
            for vendor in self._vendors.values():
                if vendor.name.lower() == wanted:
                    return self._copy(vendor)
        return None

    def search_vendors(self, fragment: str) -> list[Vendor]:
        wanted = fragment.strip().lower()
        with self._lock:
            matches = [v for v in self._vendors.values() if wanted in v.name.lower()]
            matches.sort(key=lambda v: v.created_at)
            return [self._copy(v) for v in matches]

    def list_vendors(self) -> list[Vendor]:
        with self._lock:
            return [self._copy(v) for v in sorted(self._vendors.values(), key=lambda v: v.name.lower())]

    def save_analysis(self, analysis: Analysis) -> Analysis:
        with self._lock:
            self._analyses[analysis.id] = self._copy(analysis)
        return analysis

    def get_analysis_by_batch(self, batch_id: str) -> Optional[Analysis]:
        with self._lock:
            for analysis in self._analyses.values():
                if analysis.batch_id == batch_id:
                    return self._copy(analysis)
        return None
