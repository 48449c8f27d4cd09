"""
Settings for the cooperative ledger

Every value can be overridden with an SCMS_-prefixed environment variable
(SCMS_STORAGE_BACKEND=memory, SCMS_MAX_FAILED_DEDUCTIONS=4, ...) or a
.env file in the working directory.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class CooperativeConfig(BaseSettings):
    """Cooperative society ledger configuration"""

    # Storage
    storage_backend: Literal["sqlite", "memory"] = "sqlite"
    sqlite_path: str = "scms.db"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_title: str = "Cooperative Society Ledger API"

    # Logging; log_file unset means stderr
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None

    # Ledger
    default_currency: str = "NGN"
    reference_max_attempts: int = Field(5, ge=1)
    statement_page_size: int = Field(50, ge=1)

    # Loans. The default rate is percent per month and applies to manual loans only
    default_loan_interest_rate: str = "2"
    loan_extension_months: int = Field(2, ge=0)
    loan_extension_days: int = Field(60, ge=0)
    max_failed_deductions: int = Field(3, ge=1)
    loan_required_guarantors: int = Field(0, ge=0)

    # Number of per-account lines a dry-run preview returns
    posting_preview_size: int = Field(5, ge=0)

    class Config:
        env_prefix = "SCMS_"
        env_file = ".env"
        case_sensitive = False


config = CooperativeConfig()


def get_config() -> CooperativeConfig:
    return config


def reload_config() -> CooperativeConfig:
    """Re-read the environment, e.g. after a test changed it"""
    global config
    config = CooperativeConfig()
    return config
