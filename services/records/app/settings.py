from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RecordsSettings(BaseSettings):
    model_config = SettingsConfigDict(extra="forbid")

    # Tenants: one central store plus one store per department.
    central_tenant_key: str = "GLOBAL"
    department_codes: list[str] = Field(default_factory=lambda: ["CS", "MATH"])

    db_driver: str = "postgresql+asyncpg"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout_s: float = 30.0
    pool_recycle_s: int = 1800
    verify_pools_on_startup: bool = True

    # Identifier allocation
    email_domain: str = "university.ac.uk"
    max_email_suffix: int = 100
    student_sequence_width: int = 4
    allocation_timeout_ms: int = 5000
    registration_max_attempts: int = 3

    log_level: str = "info"


SETTINGS = RecordsSettings()
