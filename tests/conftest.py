"""
Pytest configuration and shared fixtures.

Registers the ``integration`` marker (tests against real Azure resources,
skipped unless --run-integration is given) and builds pipelines wired to a
scripted OCR backend so scenarios run without network access.
"""

import pytest

from src.core.config import Settings
from src.core.errors import OCRError
from src.services.ai import AIAnalysisClient
from src.services.events import EventPublisher
from src.services.ocr import OCRResult
from src.services.runtime import build_pipeline
from src.services.storage import InMemoryRepository, LocalFileStore


def pytest_addoption(parser):
    """Add custom command-line options"""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against real Azure resources"
    )


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring real Azure resources"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is specified"""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


INVOICE_TEXT = (
    "INVOICE\n"
    "Vendor: Acme Supplies\n"
    "Invoice #: INV-2001\n"
    "Invoice Date: 01/15/2024\n"
    "Due Date: 02/14/2024\n"
    "Total Due: $1,250.00\n"
)


class ScriptedOCRBackend:
    """
    OCR backend driven by the uploaded bytes.

    - b"fail..."  raises OCRError on every call
    - b"flaky:N..." raises OCRError on the first N calls, then succeeds
    - anything else returns the bytes as text with confidence 0.9
    """

    def __init__(self, confidence: float = 0.9):
        self.confidence = confidence
        self.calls: dict[bytes, int] = {}

    def analyze(self, data: bytes, content_type: str) -> OCRResult:
        self.calls[data] = self.calls.get(data, 0) + 1
        if data.startswith(b"fail"):
            raise OCRError("scanner could not read document")
        if data.startswith(b"flaky:"):
            failures = int(data.split(b":")[1][:1])
            if self.calls[data] <= failures:
                raise OCRError("temporary OCR outage")
        return OCRResult(
            text=data.decode("utf-8", errors="replace"),
            confidence=self.confidence,
            page_count=1,
            method="external",
        )


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "DATABASE_PATH": "",
        "STORAGE_ROOT": str(tmp_path / "storage"),
        "PIPELINE_WORKERS": 4,
        "PIPELINE_MAX_RETRIES": 3,
        "PIPELINE_RETRY_BASE_DELAY": 0,
        "PIPELINE_RETRY_MAX_DELAY": 0,
        "DOCUMENT_MAX_RETRIES": 3,
        "TEAMS_WEBHOOK_URL": "",
        "SERVICE_BUS_CONNECTION_STRING": "",
        "LLM_BASE_URL": "",
        "LLM_API_KEY": "",
        "AZ_DI_ENDPOINT": "",
        "AZ_DI_API_KEY": "",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def ocr_backend():
    return ScriptedOCRBackend()


@pytest.fixture
def pipeline_factory(tmp_path, ocr_backend):
    """Build an in-memory pipeline; keyword arguments override settings"""

    def factory(ai=None, repository=None, **overrides):
        config = make_settings(tmp_path, **overrides)
        return build_pipeline(
            config,
            repository=repository or InMemoryRepository(),
            file_store=LocalFileStore(tmp_path / "storage"),
            ocr_backend=ocr_backend,
            ai=ai or AIAnalysisClient(),
            publisher=EventPublisher(service_bus_sender=None),
        )

    return factory
