"""
Error taxonomy for the document pipeline.

Entity-level failures (OCR, storage, AI) are recorded on the entity and
retried; ValidationError and InvalidTransition are rejected before any
state mutation. An incomplete extraction is not an error: it surfaces as
an invoice in EXTRACTION_FAILED status.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors"""


class ValidationError(PipelineError):
    """Bad input (file type, size, empty batch, blank message...)"""

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.issues = issues or [message]


class NotFoundError(PipelineError):
    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class ConflictError(PipelineError):
    """The request clashes with an existing record (duplicate vendor name...)"""


class InvalidTransition(PipelineError):
    def __init__(self, kind: str, current, target, detail: str | None = None):
        current_name = getattr(current, "value", current)
        target_name = getattr(target, "value", target)
        message = f"Illegal {kind} transition {current_name} -> {target_name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.kind = kind
        self.current = current
        self.target = target


class RetryExhausted(InvalidTransition):
    def __init__(self, document_id: str, retry_count: int, max_retries: int):
        super().__init__(
            "document",
            "FAILED",
            "PROCESSING",
            f"retries exhausted for document {document_id} ({retry_count}/{max_retries})",
        )
        self.document_id = document_id
        self.retry_count = retry_count
        self.max_retries = max_retries


class ExternalServiceError(PipelineError):
    """Failure of an external collaborator; eligible for retry"""


class OCRError(ExternalServiceError):
    pass


class AIServiceError(ExternalServiceError):
    pass


class StorageError(ExternalServiceError):
    pass


class EventBusUnavailable(PipelineError):
    """The event bus is not running; fatal for the caller"""
