"""
Configuration management for the governance runtime
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ABSOLUTE_MAX_REPAIR_ATTEMPTS = 10


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GOVERNANCE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"
    log_json: bool = False

    # Stamped into every artifact envelope
    tool_version: str = "0.1.0"

    repair_max_attempts: int = Field(default=2, ge=1, le=ABSOLUTE_MAX_REPAIR_ATTEMPTS)

    # Optional audit sinks for the reliability CLI
    feedback_tensor_path: Optional[str] = None
    trace_inspection_path: Optional[str] = None
    trace_inspection_report_path: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


settings = Settings()
