"""
Batch, Document and Analysis entities.

Batches hold the ordered ids of their documents and documents hold the id
of their batch; the repository resolves both directions.
"""

import uuid
from datetime import datetime, UTC
from enum import Enum
from pydantic import BaseModel, Field


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class BatchStatus(str, Enum):
    CREATED = "CREATED"
    PROCESSING = "PROCESSING"
    OCR_COMPLETED = "OCR_COMPLETED"
    ANALYSIS_IN_PROGRESS = "ANALYSIS_IN_PROGRESS"
    ANALYSIS_COMPLETED = "ANALYSIS_COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.ANALYSIS_COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED)


class DocumentStatus(str, Enum):
    CREATED = "CREATED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class Batch(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str | None = None
    status: BatchStatus = BatchStatus.CREATED
    document_ids: list[str] = Field(default_factory=list)
    processed_count: int = 0
    failed_count: int = 0
    error_message: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def document_count(self) -> int:
        return len(self.document_ids)

    @property
    def progress(self) -> int:
        """Percentage of documents that reached a terminal state"""
        if not self.document_ids:
            return 0
        return (self.processed_count + self.failed_count) * 100 // len(self.document_ids)


class Document(BaseModel):
    id: str = Field(default_factory=new_id)
    batch_id: str
    file_name: str
    content_type: str
    storage_key: str
    file_size: int = 0
    status: DocumentStatus = DocumentStatus.CREATED
    extracted_text: str | None = None
    ocr_confidence: float | None = None
    ocr_method: str | None = None
    page_count: int = 0
    retry_count: int = 0
    # retry_count at the last manual reprocess; OCR requests from older generations are ignored
    generation: int = 0
    error_message: str | None = None
    permanent_failure: bool = False
    invoice_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Analysis(BaseModel):
    id: str = Field(default_factory=new_id)
    batch_id: str
    summary: str
    recommendations: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def create(cls, batch_id: str, summary: str, recommendations: list[str], metadata: dict | None = None) -> "Analysis":
        # metadata values are stored as strings
        flat = {k: str(v) for k, v in (metadata or {}).items() if v is not None}
        return cls(batch_id=batch_id, summary=summary, recommendations=list(recommendations), metadata=flat)


class BatchStatistics(BaseModel):
    total_batches: int
    by_status: dict[BatchStatus, int]
    total_documents: int
    processed_documents: int
    failed_documents: int
    # processed share of documents that finished OCR, in percent
    success_rate: float
