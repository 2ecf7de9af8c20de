"""
Configuration management for Apollo Enrichment Studio
"""
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()

SUPPORTED_BATCH_SIZES = (5, 10, 25)
SUPPORTED_RETRY_ATTEMPTS = (1, 3, 5)

# Route the enrichment function is served on, standalone or inside the studio
ENRICHMENT_ROUTE = "/api/apollo-enrichment"


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Apollo Configuration
    apollo_api_key: Optional[str] = Field(None)
    apollo_base_url: str = Field("https://api.apollo.io/api/v1")
    apollo_rate_limit: int = Field(50)  # requests per minute

    # Enrichment function the orchestrator posts batches to; unset means the studio's own route
    enrichment_endpoint_url: Optional[str] = Field(None)

    # Orchestration
    batch_size: int = Field(10)
    retry_attempts: int = Field(1)
    retry_wait_seconds: float = Field(1.0)
    inter_batch_delay_ms: int = Field(1000)
    request_timeout: int = Field(30)
    exclude_duplicates: bool = Field(True)

    # Enrichment function limits
    max_contacts_per_request: int = Field(25)
    function_rate_limit: int = Field(100)  # requests per window per client IP
    function_rate_window_seconds: int = Field(3600)

    # HTTP servers
    host: str = Field("0.0.0.0")
    port: int = Field(8000)
    function_port: int = Field(8888)
    service_name: str = Field("apollo-enrichment-studio")

    # Logging Configuration
    log_level: str = Field("INFO")
    log_file_enabled: bool = Field(False)
    log_file_path: str = Field("logs")
    log_rotation: str = Field("10 MB")
    log_retention: str = Field("30 days")

    # Development
    debug_mode: bool = Field(False)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @validator("log_level")
    def validate_log_level(cls, v):
        """Validate log level is one of the standard Python logging levels"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @validator("batch_size")
    def validate_batch_size(cls, v):
        """Batch size must be one the studio offers"""
        if v not in SUPPORTED_BATCH_SIZES:
            raise ValueError(f"batch_size must be one of {list(SUPPORTED_BATCH_SIZES)}")
        return v

    @validator("retry_attempts")
    def validate_retry_attempts(cls, v):
        if v not in SUPPORTED_RETRY_ATTEMPTS:
            raise ValueError(f"retry_attempts must be one of {list(SUPPORTED_RETRY_ATTEMPTS)}")
        return v

    @validator("inter_batch_delay_ms", "retry_wait_seconds")
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Delays cannot be negative")
        return v

    @validator("max_contacts_per_request", "request_timeout", "apollo_rate_limit", "function_rate_limit")
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @property
    def inter_batch_delay(self) -> float:
        """Inter-batch delay in seconds"""
        return self.inter_batch_delay_ms / 1000

    @property
    def enrichment_endpoint(self) -> str:
        """Configured function URL, or the route served by the studio itself"""
        if self.enrichment_endpoint_url:
            return self.enrichment_endpoint_url
        host = "localhost" if self.host in ("0.0.0.0", "::", "") else self.host
        return f"http://{host}:{self.port}{ENRICHMENT_ROUTE}"


# Global settings instance - lazy loaded
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment"""
    global _settings
    _settings = Settings()
    return _settings
