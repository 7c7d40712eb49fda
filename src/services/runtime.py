"""
Wiring of the pipeline components from Settings.

Usage:
    pipeline = build_pipeline(settings)
    await pipeline.start()
    batch = await pipeline.batches.create_batch("Q3 invoices", files)
    await pipeline.bus.join()
    await pipeline.stop()
"""

from dataclasses import dataclass
from typing import Optional
from loguru import logger

from ..core.config import Settings, settings as default_settings
from .ai import AIAnalysisClient
from .batch_service import BatchService
from .events import EventBus, EventPublisher, create_event_publisher
from .extraction import InvoiceExtractionEngine
from .invoice_service import InvoiceService
from .notifications import NotificationHub, TeamsErrorNotifier
from .ocr import DocumentIntelligenceOCRBackend, OCRBackend, OCRService
from .pipeline import PipelineOrchestrator
from .state_machine import BatchStateMachine, DocumentStateMachine
from .storage import FileStore, LocalFileStore, PipelineRepository, create_repository
from .vendors import VendorService


@dataclass
class Pipeline:
    repository: PipelineRepository
    file_store: FileStore
    notifications: NotificationHub
    bus: EventBus
    orchestrator: PipelineOrchestrator
    batches: BatchService
    invoices: InvoiceService
    vendors: VendorService
    publisher: EventPublisher

    async def start(self) -> None:
        await self.bus.start()

    async def stop(self, drain: bool = False) -> None:
        await self.bus.stop(drain=drain)
        await self.notifications.drain()
        self.publisher.close()


def build_pipeline(
    config: Optional[Settings] = None,
    *,
    repository: Optional[PipelineRepository] = None,
    file_store: Optional[FileStore] = None,
    ocr_backend: Optional[OCRBackend] = None,
    ai: Optional[AIAnalysisClient] = None,
    publisher: Optional[EventPublisher] = None,
    notifications: Optional[NotificationHub] = None,
) -> Pipeline:
    """Build every component; explicit arguments replace the configured ones"""
    config = config or default_settings

    repository = repository or create_repository(config.database_path)
    file_store = file_store or LocalFileStore(config.storage_root)
    notifications = notifications or NotificationHub()
    publisher = publisher or create_event_publisher(
        config.service_bus_connection_string, config.service_bus_entity
    )
    ocr_backend = ocr_backend or DocumentIntelligenceOCRBackend(
        endpoint=config.az_di_endpoint,
        api_key=config.az_di_api_key,
        model_id=config.az_di_model,
    )
    ai = ai or AIAnalysisClient(
        base_url=config.llm_base_url,
        api_key=config.llm_api_key,
        deployment=config.llm_deployment,
        timeout=config.llm_timeout,
        max_content_chars=config.llm_max_content_chars,
    )

    TeamsErrorNotifier(config.teams_webhook_url, config.api_base_url).attach(notifications)

    vendors = VendorService(repository)
    documents = DocumentStateMachine(config.document_max_retries, notifications)
    batches = BatchStateMachine(notifications, documents)
    bus = EventBus(
        workers=config.pipeline_workers,
        max_retries=config.pipeline_max_retries,
        base_delay=config.pipeline_retry_base_delay,
        max_delay=config.pipeline_retry_max_delay,
        publisher=publisher,
        notifications=notifications,
    )
    orchestrator = PipelineOrchestrator(
        repository=repository,
        file_store=file_store,
        ocr=OCRService(
            ocr_backend,
            confidence_threshold=config.ocr_confidence_threshold,
            enable_local_pdf=config.ocr_enable_local_pdf,
            supported_types=config.allowed_content_type_list,
        ),
        extraction=InvoiceExtractionEngine(vendor_resolver=vendors.find_or_create),
        ai=ai,
        bus=bus,
        notifications=notifications,
        batches=batches,
        documents=documents,
        vendors=vendors,
    )

    logger.info(
        "Pipeline built",
        repository=type(repository).__name__,
        workers=config.pipeline_workers,
        ocr_backend=type(ocr_backend).__name__,
        service_bus=publisher.enabled,
    )
    return Pipeline(
        repository=repository,
        file_store=file_store,
        notifications=notifications,
        bus=bus,
        orchestrator=orchestrator,
        batches=BatchService(
            repository=repository,
            file_store=file_store,
            orchestrator=orchestrator,
            notifications=notifications,
            ai=ai,
            allowed_content_types=config.allowed_content_type_list,
            max_file_size=config.max_file_size_bytes,
        ),
        invoices=InvoiceService(repository),
        vendors=vendors,
        publisher=publisher,
    )


_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """Process-wide pipeline built from the environment settings"""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def set_pipeline(pipeline: Optional[Pipeline]) -> None:
    """Replace the process-wide pipeline (tests inject their own)"""
    global _pipeline
    _pipeline = pipeline
