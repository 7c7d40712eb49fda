from pydantic import Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    app_name: str = Field("batch-idp-pipeline", alias="APP_NAME")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Persistence (empty DATABASE_PATH = in-memory repository)
    database_path: str = Field("", alias="DATABASE_PATH")
    storage_root: str = Field("./storage", alias="STORAGE_ROOT")

    # Upload validation
    allowed_content_types: str = Field(
        "application/pdf,image/jpeg,image/png,image/tiff", alias="ALLOWED_CONTENT_TYPES"
    )
    max_file_size_mb: int = Field(50, alias="MAX_FILE_SIZE_MB")

    # OCR
    ocr_confidence_threshold: float = Field(0.7, alias="OCR_CONFIDENCE_THRESHOLD")
    ocr_enable_local_pdf: bool = Field(True, alias="OCR_ENABLE_LOCAL_PDF")

    # Azure Document Intelligence
    az_di_endpoint: str | None = Field(default=None, alias="AZ_DI_ENDPOINT")
    az_di_api_key: str | None = Field(default=None, alias="AZ_DI_API_KEY")
    az_di_model: str = Field("prebuilt-read", alias="AZ_DI_MODEL")

    # Document lifecycle
    document_max_retries: int = Field(3, alias="DOCUMENT_MAX_RETRIES")

    # Pipeline event bus
    pipeline_workers: int = Field(4, alias="PIPELINE_WORKERS")
    pipeline_max_retries: int = Field(3, alias="PIPELINE_MAX_RETRIES")
    pipeline_retry_base_delay: float = Field(1.0, alias="PIPELINE_RETRY_BASE_DELAY")
    pipeline_retry_max_delay: float = Field(30.0, alias="PIPELINE_RETRY_MAX_DELAY")

    # Azure Service Bus mirror (optional)
    service_bus_connection_string: str | None = Field(default=None, alias="SERVICE_BUS_CONNECTION_STRING")
    service_bus_entity: str = Field("pipeline-events", alias="SERVICE_BUS_ENTITY")

    # LLM (optional)
    llm_base_url: str | None = Field(default=None, alias="LLM_BASE_URL")
    llm_api_key: str | None = Field(default=None, alias="LLM_API_KEY")
    llm_deployment: str | None = Field(default=None, alias="LLM_DEPLOYMENT")
    llm_timeout: float = Field(60.0, alias="LLM_TIMEOUT")
    llm_max_content_chars: int = Field(4000, alias="LLM_MAX_CONTENT_CHARS")

    # Teams (error cards)
    teams_webhook_url: str | None = Field(default=None, alias="TEAMS_WEBHOOK_URL")

    # API Base URL (for links in Teams cards)
    api_base_url: str = Field("http://127.0.0.1:8000", alias="API_BASE_URL")

    # CORS allowed origins (comma-separated list for production deployment)
    cors_origins: str = Field("http://localhost:3000,http://127.0.0.1:3000", alias="CORS_ORIGINS")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def allowed_content_type_list(self) -> list[str]:
        return [t.strip() for t in self.allowed_content_types.split(",") if t.strip()]

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

settings = Settings()
