from .ocr_types import EXTERNAL, LOCAL_PDF, OCRBackend, OCRResult
from .ocr_service import OCRService, extract_pdf_text, heuristic_confidence
from .document_intelligence import DocumentIntelligenceOCRBackend

__all__ = [
    "EXTERNAL",
    "LOCAL_PDF",
    "DocumentIntelligenceOCRBackend",
    "OCRBackend",
    "OCRResult",
    "OCRService",
    "extract_pdf_text",
    "heuristic_confidence",
]
