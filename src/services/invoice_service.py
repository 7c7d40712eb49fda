from typing import Optional
from loguru import logger

from ..core.errors import InvalidTransition, NotFoundError, ValidationError
from ..models.batch import utcnow
from ..models.invoice import Invoice, InvoiceStatus
from .storage import PipelineRepository

# Manual decisions; extraction sets the initial PENDING / EXTRACTION_FAILED
DECISIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.APPROVED: {InvoiceStatus.PENDING},
    InvoiceStatus.REJECTED: {InvoiceStatus.PENDING, InvoiceStatus.EXTRACTION_FAILED},
}


class InvoiceService:
    def __init__(self, repository: PipelineRepository):
        self.repository = repository

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.repository.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)
        return invoice

    def list_invoices(self, status: Optional[InvoiceStatus] = None) -> list[Invoice]:
        return self.repository.list_invoices(status)

    def count_invoices(self, status: Optional[InvoiceStatus] = None) -> int:
        return len(self.list_invoices(status))

    def approve(self, invoice_id: str, approver: str) -> Invoice:
        return self._decide(invoice_id, InvoiceStatus.APPROVED, approver)

    def reject(self, invoice_id: str, rejector: str, reason: Optional[str] = None) -> Invoice:
        return self._decide(invoice_id, InvoiceStatus.REJECTED, rejector, reason)

    def _decide(
        self,
        invoice_id: str,
        target: InvoiceStatus,
        actor: str,
        reason: Optional[str] = None,
    ) -> Invoice:
        if not actor or not actor.strip():
            raise ValidationError("Decision requires the name of the approver")

        invoice = self.get_invoice(invoice_id)
        if invoice.status not in DECISIONS[target]:
            raise InvalidTransition("invoice", invoice.status, target)

        now = utcnow()
        invoice.status = target
        invoice.decided_at = now
        invoice.decided_by = actor.strip()
        invoice.updated_at = now
        if reason:
            invoice.add_note(f"Rejected: {reason}")

        self.repository.save_invoice(invoice)
        logger.info(
            "Invoice decision recorded",
            invoice_id=invoice.id,
            status=target.value,
            decided_by=invoice.decided_by,
        )
        return invoice
