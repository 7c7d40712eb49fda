from .analysis_client import AIAnalysisClient, AnalysisResult
from .classification import classify_document_type, obligation_score

__all__ = ["AIAnalysisClient", "AnalysisResult", "classify_document_type", "obligation_score"]
