"""
OCR adapter.

PDFs with an embedded text layer are read locally with pdfplumber; the
result is accepted when its heuristic confidence reaches the threshold.
Everything else (scanned PDFs, images, low-quality text layers) goes to the
external backend.
"""

import io
import re
from loguru import logger
import pdfplumber

from ...core.errors import OCRError
from .ocr_types import LOCAL_PDF, OCRBackend, OCRResult

PDF_CONTENT_TYPE = "application/pdf"
DEFAULT_SUPPORTED_TYPES = ("application/pdf", "image/jpeg", "image/png", "image/tiff")
CONFIDENCE_KEYWORDS = ("invoice", "date", "amount", "total", "vendor")

_WORD_RE = re.compile(r"\S+")


def heuristic_confidence(text: str) -> float:
    """
    Score how much a text layer looks like real document text.

    0.4 x alphanumeric ratio, +0.3 when the average word length is within
    [3, 10], +0.1 per domain keyword found (at most 0.3). Capped at 1.0.
    """
    if not text or not text.strip():
        return 0.0

    visible = [c for c in text if not c.isspace()]
    alnum_ratio = sum(1 for c in visible if c.isalnum()) / len(visible)
    score = 0.4 * alnum_ratio

    words = _WORD_RE.findall(text)
    if words:
        avg_len = sum(len(w) for w in words) / len(words)
        if 3 <= avg_len <= 10:
            score += 0.3

    lowered = text.lower()
    keywords = sum(1 for k in CONFIDENCE_KEYWORDS if k in lowered)
    score += min(0.3, 0.1 * keywords)

    return min(1.0, score)


def extract_pdf_text(data: bytes) -> tuple[str, int] | None:
    """Text layer and page count of a PDF, or None when pdfplumber cannot read it"""
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as e:
        logger.debug(f"Local PDF extraction failed: {e}")
        return None
    return "\n".join(pages).strip(), len(pages)


class OCRService:
    def __init__(
        self,
        backend: OCRBackend,
        confidence_threshold: float = 0.7,
        enable_local_pdf: bool = True,
        supported_types: tuple[str, ...] | list[str] = DEFAULT_SUPPORTED_TYPES,
    ):
        self.backend = backend
        self.confidence_threshold = confidence_threshold
        self.enable_local_pdf = enable_local_pdf
        self.supported_types = tuple(supported_types)

    def perform_ocr(self, data: bytes, content_type: str) -> OCRResult:
        """
        Extract text from a document.

        Raises:
            OCRError: empty or unsupported input, or the external backend failed
        """
        if not data:
            raise OCRError("Document is empty")
        if content_type not in self.supported_types:
            raise OCRError(f"Unsupported content type: {content_type}")

        local_pages = 0
        if content_type == PDF_CONTENT_TYPE and self.enable_local_pdf:
            local = extract_pdf_text(data)
            if local is not None:
                text, local_pages = local
                confidence = heuristic_confidence(text)
                if confidence >= self.confidence_threshold:
                    logger.info(
                        "Using local PDF text layer",
                        pages=local_pages,
                        confidence=round(confidence, 3),
                    )
                    return OCRResult(
                        text=text,
                        confidence=confidence,
                        page_count=local_pages,
                        method=LOCAL_PDF,
                    )
                logger.info(
                    "Local PDF text below threshold, falling back to external OCR",
                    confidence=round(confidence, 3),
                    threshold=self.confidence_threshold,
                )

        try:
            result = self.backend.analyze(data, content_type)
        except OCRError:
            raise
        except Exception as e:
            raise OCRError(f"OCR backend failed: {e}") from e

        if not result.page_count and local_pages:
            result.page_count = local_pages
        return result
