"""
Abstract base class for pipeline persistence.

Defines the interface every repository must implement, enabling dependency
injection and easy swapping of storage backends. No pipeline logic assumes
a particular engine.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ...models.batch import Analysis, Batch, BatchStatus, Document, DocumentStatus
from ...models.invoice import Invoice, InvoiceStatus, Vendor


class PipelineRepository(ABC):
    """
    Abstract base class for Batch/Document/Invoice/Vendor/Analysis storage.

    Implementations can use:
    - In-memory storage (for testing/demo)
    - SQLite (for single-instance deployments)
    - SQL Server / PostgreSQL (for production)

    Getters return detached copies: mutating a returned entity has no effect
    until it is saved again.
    """

    # Batches

    @abstractmethod
    def save_batch(self, batch: Batch) -> Batch:
        pass

    @abstractmethod
    def get_batch(self, batch_id: str) -> Optional[Batch]:
        pass

    @abstractmethod
    def list_batches(self, status: BatchStatus | None = None) -> list[Batch]:
        """
        List batches, newest first.

        Args:
            status: Optional status filter

        Returns:
            List of batches
        """
        pass

    @abstractmethod
    def delete_batch(self, batch_id: str) -> bool:
        """
        Delete a batch together with its documents, invoices and analysis.

        Returns:
            True if the batch existed
        """
        pass

    # Documents

    @abstractmethod
    def save_document(self, document: Document) -> Document:
        pass

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def list_documents_by_batch(self, batch_id: str) -> list[Document]:
        """Documents of a batch in upload order"""
        pass

    @abstractmethod
    def list_documents_by_status(self, status: DocumentStatus) -> list[Document]:
        pass

    # Invoices

    @abstractmethod
    def save_invoice(self, invoice: Invoice) -> Invoice:
        pass

    @abstractmethod
    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        pass

    @abstractmethod
    def list_invoices_by_document(self, document_id: str) -> list[Invoice]:
        pass

    @abstractmethod
    def list_invoices(self, status: InvoiceStatus | None = None) -> list[Invoice]:
        pass

    # Vendors

    @abstractmethod
    def save_vendor(self, vendor: Vendor) -> Vendor:
        pass

    @abstractmethod
    def get_vendor(self, vendor_id: str) -> Optional[Vendor]:
        pass

    @abstractmethod
    def find_vendor_by_name(self, name: str) -> Optional[Vendor]:
        """Exact, case-insensitive name lookup"""
        pass

    @abstractmethod
    def search_vendors(self, fragment: str) -> list[Vendor]:
        """Case-insensitive substring search, oldest vendor first"""
        pass

    @abstractmethod
    def list_vendors(self) -> list[Vendor]:
        pass

    # Analyses

    @abstractmethod
    def save_analysis(self, analysis: Analysis) -> Analysis:
        pass

    @abstractmethod
    def get_analysis_by_batch(self, batch_id: str) -> Optional[Analysis]:
        pass
