# src/core/config.py
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional, Union
from dotenv import load_dotenv

# Load .env file
load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    APP_NAME: str = "AirtableCrudMiddleware"
    APP_VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"
    DEBUG_MODE: bool = False

    # Airtable Configuration
    AIRTABLE_TOKEN: str = Field(validation_alias=AliasChoices("AIRTABLE_TOKEN", "AIRTABLE_PAT", "AIRTABLE_API_KEY"))
    AIRTABLE_BASE_ID: str
    AIRTABLE_API_URL: str = "https://api.airtable.com"
    AIRTABLE_TIMEOUT_SECONDS: float = 30.0
    AIRTABLE_PRELOAD_TABLES: bool = True # Fetch table names from the metadata API at startup

    # Inbound authentication (Bearer token expected from API consumers)
    MIDDLEWARE_KEY: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("MIDDLEWARE_KEY", "API_KEY", "MIDDLEWARE_API_KEY")
    )

    # Bulk endpoints
    BULK_MAX_RECORDS: int = 100

    # Rate limiting (fixed windows, keyed by client address)
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_MAX_REQUESTS: int = 100
    AUTH_FAILURE_MAX_ATTEMPTS: int = 10
    BULK_RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60
    BULK_RATE_LIMIT_MAX_REQUESTS: int = 10
    SLOW_DOWN_AFTER: int = 50
    SLOW_DOWN_BASE_DELAY_MS: int = 100
    SLOW_DOWN_MAX_DELAY_MS: int = 5000

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_FILENAME: Optional[str] = None # None for console only
    LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10 MB
    LOG_BACKUP_COUNT: int = 5
    AUDIT_LOG_FILENAME: Optional[str] = None

    # CORS
    BACKEND_CORS_ORIGINS: Union[List[str], str] = []
    # Example: BACKEND_CORS_ORIGINS=["http://localhost", "http://localhost:4200"]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalise_log_level(cls, v: str) -> str:
        return v.upper()

settings = Settings()
