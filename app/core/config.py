"""Application configuration and settings."""

from typing import List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Service Configuration
    service_name: str = Field(default="letter-orchestrator")
    service_version: str = Field(default="1.0.0")
    api_prefix: str = Field(default="/api/v1")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    environment: str = Field(default="development")

    # Approval Store
    approval_store_path: str = Field(default="./data/approvals")

    # Intake Configuration
    task_status_filter: str = Field(default="Nicht gestartet")
    task_subject_filter: str = Field(default="Connect on LinkedIn")
    task_owner_id: Optional[str] = Field(default=None)
    max_tasks_per_cycle: int = Field(default=10)
    max_concurrent_workflows: int = Field(default=10)
    intake_poll_interval_seconds: int = Field(default=0)
    intake_timeout_seconds: int = Field(default=30)

    # Orchestrator Configuration
    max_revision_iterations: int = Field(default=5)
    letter_language: str = Field(default="de")
    sender_company_info: str = Field(default="")
    follow_up_task_enabled: bool = Field(default=True)
    follow_up_days: int = Field(default=14)
    follow_up_subject: str = Field(default="Follow-up: Brief nachfassen")

    # CRM status values written back to the task
    crm_status_completed: str = Field(default="Abgeschlossen")
    crm_status_in_progress: str = Field(default="In Bearbeitung")
    crm_status_error: str = Field(default="Warten auf Andere")

    # Zoho CRM
    zoho_base_url: str = Field(default="https://www.zohoapis.eu")
    zoho_access_token: str = Field(default="")
    zoho_timeout: int = Field(default=30)

    # Baserow profile store
    baserow_base_url: str = Field(default="https://api.baserow.io")
    baserow_token: str = Field(default="")
    baserow_table_id: int = Field(default=0)
    baserow_profile_field: str = Field(default="linkedin_id")
    baserow_timeout: int = Field(default=30)

    # Dossier service (cache misses take tens of seconds)
    dossier_service_url: str = Field(default="http://localhost:8101")
    dossier_timeout: int = Field(default=300)

    # Letter service
    letter_service_url: str = Field(default="http://localhost:8102")
    letter_timeout: int = Field(default=120)

    # PDF renderer
    pdf_service_url: str = Field(default="http://localhost:8103")
    pdf_template_path: str = Field(default="./templates/letter.odt")
    pdf_timeout: int = Field(default=60)

    # LetterExpress mail carrier
    letterexpress_base_url: str = Field(default="https://api.letterxpress.de/v1")
    letterexpress_username: str = Field(default="")
    letterexpress_api_key: str = Field(default="")
    letterexpress_mode: str = Field(default="test")
    letterexpress_color: bool = Field(default=False)
    letterexpress_print_mode: str = Field(default="simplex")
    letterexpress_ship: str = Field(default="national")
    letterexpress_timeout: int = Field(default=60)

    # Telegram approval channel
    telegram_api_url: str = Field(default="https://api.telegram.org")
    telegram_bot_token: str = Field(default="")
    telegram_chat_id: str = Field(default="")
    # Compared with the X-Telegram-Bot-Api-Secret-Token header when set
    telegram_webhook_secret: str = Field(default="")
    telegram_timeout: int = Field(default=30)

    # Notifications
    notifications_enabled: bool = Field(default=True)

    # Retry Configuration
    retry_max_attempts: int = Field(default=3)
    retry_base_delay_seconds: float = Field(default=1.0)
    retry_max_delay_seconds: float = Field(default=30.0)

    # Circuit Breaker Configuration
    circuit_breaker_failure_threshold: int = Field(default=5)
    circuit_breaker_timeout_seconds: int = Field(default=60)

    # CORS
    enable_cors: bool = Field(default=True)
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"]
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @field_validator("max_concurrent_workflows", "max_tasks_per_cycle", "retry_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("max_revision_iterations")
    @classmethod
    def validate_revision_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_revision_iterations must be at least 1")
        return v

    @field_validator("letterexpress_mode")
    @classmethod
    def validate_letterexpress_mode(cls, v: str) -> str:
        if v not in ("test", "live"):
            raise ValueError("letterexpress_mode must be 'test' or 'live'")
        return v

    @field_validator("letterexpress_print_mode")
    @classmethod
    def validate_print_mode(cls, v: str) -> str:
        if v not in ("simplex", "duplex"):
            raise ValueError("letterexpress_print_mode must be 'simplex' or 'duplex'")
        return v

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore",
    }


# Create global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
