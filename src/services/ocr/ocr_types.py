
from typing import Protocol
from pydantic import BaseModel, Field

LOCAL_PDF = "local_pdf"
EXTERNAL = "external"


class OCRResult(BaseModel):
    text: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    page_count: int = 0
    method: str = EXTERNAL  # local_pdf | external
    metadata: dict[str, str] = Field(default_factory=dict)


class OCRBackend(Protocol):
    """External OCR engine; raises on unreadable input or when unavailable"""

    def analyze(self, data: bytes, content_type: str) -> OCRResult: ...
