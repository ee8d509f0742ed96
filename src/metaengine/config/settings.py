"""Configuration management using Pydantic Settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Analysis defaults
    default_model_type: str = Field("RE", pattern="^(FE|RE)$")
    default_effect_measure: str = Field("SMD", pattern="^(OR|RR|SMD|MD|COR)$")
    default_method: str = Field("REML", pattern="^(DL|REML|PM|ML)$")

    # Critical value for 95% confidence intervals
    z_critical: float = Field(1.96, gt=0)

    # Iterative estimators
    tau2_max_iter: int = Field(100, ge=1, le=10000)
    tau2_tolerance: float = Field(1e-8, gt=0)
    trimfill_max_iter: int = Field(100, ge=1, le=10000)

    # Publication bias
    fail_safe_alpha: float = Field(0.05, gt=0, lt=1)
    egger_alpha: float = Field(0.10, gt=0, lt=1)

    # Influence diagnostics
    influence_threshold: float = Field(2.0, gt=0)

    # Web server
    host: str = Field("127.0.0.1")
    port: int = Field(8000, ge=1, le=65535)
    job_history_limit: Optional[int] = Field(200, ge=1)

    # Logging
    log_level: str = Field("INFO")
    log_format: str = Field("json", pattern="^(json|text)$")


# Instantiate global settings
settings = Settings()
