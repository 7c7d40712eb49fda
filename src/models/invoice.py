from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, Field

from .batch import new_id, utcnow


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class VendorStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Invoice(BaseModel):
    id: str = Field(default_factory=new_id)
    document_id: str
    invoice_number: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    invoice_date: date | None = None
    due_date: date | None = None
    vendor_id: str | None = None
    vendor_name: str | None = None
    po_number: str | None = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    notes: str | None = None
    extraction_confidence: float = 0.0
    decided_at: datetime | None = None
    decided_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def add_note(self, note: str) -> None:
        self.notes = note if not self.notes else f"{self.notes}\n{note}"


class Vendor(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    status: VendorStatus = VendorStatus.ACTIVE
    invoice_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
