# retirement_queue/core/config.py
"""
Application configuration using Pydantic Settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
import json
from pydantic import field_validator


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables
    """

    # Application
    APP_NAME: str = "Retirement Queue"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./retirement_queue.db"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # Cache
    CACHE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_SWEEP_INTERVAL_SECONDS: float = 60.0

    # Case-management system (SOAP)
    CMS_URL: str = "https://cms.example.gov/sei/ws/SeiWS.php"
    CMS_SYSTEM_ACRONYM: str = ""
    CMS_SERVICE_ID: str = ""
    CMS_TIMEOUT_SECONDS: int = 45
    CMS_ANALYST_UNIT_PREFIX: str = "SEPLAG/AP"

    # OCR (Azure Document Intelligence REST)
    OCR_ENDPOINT: str = ""
    OCR_API_KEY: str = ""
    OCR_LOCALE: str = "pt-BR"
    OCR_API_VERSION: str = "2024-11-30"
    OCR_MODEL_ID: str = "prebuilt-layout"
    OCR_POLL_INTERVAL_SECONDS: float = 1.5
    OCR_POLL_TIMEOUT_SECONDS: float = 120.0

    # Document fetch fan-out
    DOCUMENT_FETCH_CONCURRENCY: int = 5

    # Classifier (Bedrock)
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "us-east-1"
    CLASSIFIER_MODEL_ID: str = "anthropic.claude-3-haiku-20240307-v1:0"
    CLASSIFIER_MAX_TOKENS: int = 2048
    CLASSIFIER_CACHE_TTL_HOURS: int = 12

    @field_validator("CLASSIFIER_MODEL_ID", mode="before")
    @classmethod
    def strip_model_id(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip()
        return v

    # Job queue / worker
    WORKER_ENABLED: bool = True
    WORKER_MAX_WORKERS: int = 10
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    JOB_MAX_ATTEMPTS: int = 25
    JOB_TIMEOUT_SECONDS: int = 600
    JOB_RESCUE_AFTER_MINUTES: int = 60
    JOB_RETENTION_HOURS: int = 24

    # Data lake (read-only reporting database)
    DATALAKE_URL: str = ""
    DATALAKE_OPEN_CASES_VIEW: str = "vw_open_case_movements"

    # CORS
    CORS_ORIGINS: str = '["http://localhost:3000"]'

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from string to list"""
        try:
            if isinstance(self.CORS_ORIGINS, str):
                return json.loads(self.CORS_ORIGINS)
            return self.CORS_ORIGINS
        except json.JSONDecodeError:
            return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


# Create settings instance
settings = Settings()
