
from datetime import datetime
from pydantic import BaseModel

from ..models.batch import Batch, Document
from ..models.invoice import VendorStatus
from ..services.runtime import Pipeline, get_pipeline


def pipeline() -> Pipeline:
    """FastAPI dependency returning the process-wide pipeline"""
    return get_pipeline()


class BatchResponse(BaseModel):
    id: str
    name: str
    description: str | None = None
    status: str
    document_count: int
    processed_count: int
    failed_count: int
    progress: int
    error_message: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_batch(cls, batch: Batch) -> "BatchResponse":
        return cls(
            **batch.model_dump(exclude={"document_ids", "status"}),
            status=batch.status.value,
            document_count=batch.document_count,
            progress=batch.progress,
        )


class DocumentResponse(BaseModel):
    id: str
    batch_id: str
    file_name: str
    content_type: str
    file_size: int
    status: str
    ocr_confidence: float | None = None
    ocr_method: str | None = None
    page_count: int = 0
    retry_count: int = 0
    error_message: str | None = None
    invoice_ids: list[str] = []
    text_preview: str | None = None  # First 500 characters of OCR text

    @classmethod
    def from_document(cls, document: Document) -> "DocumentResponse":
        text = document.extracted_text
        return cls(
            **document.model_dump(exclude={"status", "extracted_text", "storage_key", "permanent_failure", "generation", "created_at", "updated_at"}),
            status=document.status.value,
            text_preview=text[:500] if text else None,
        )


class RejectRequest(BaseModel):
    rejected_by: str
    reason: str | None = None


class ApproveRequest(BaseModel):
    approved_by: str


class ChatRequest(BaseModel):
    message: str
    invoice_id: str | None = None


class ChatResponse(BaseModel):
    batch_id: str
    answer: str


class VendorCreateRequest(BaseModel):
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None


class VendorUpdateRequest(BaseModel):
    email: str | None = None
    phone: str | None = None
    address: str | None = None


class VendorStatusRequest(BaseModel):
    status: VendorStatus


class CountResponse(BaseModel):
    count: int
