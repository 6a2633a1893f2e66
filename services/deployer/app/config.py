"""Application configuration using Pydantic settings."""
from __future__ import annotations

import string
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SecuritySettings(BaseModel):
    oidc_issuer_url: str | None = None
    oidc_audience: str | None = None
    role_claim: str = "roles"
    apps_role: str = "DEPLOYER"
    workflow_role: str = "EXECUTOR"


class PlanningSettings(BaseModel):
    step_id_prefix: str = "step_"
    module_separator: str = "/"
    short_id_alphabet: str = string.ascii_lowercase
    short_id_length: int = Field(default=3, ge=1)
    short_id_attempts: int = Field(default=100, ge=1)


class ExecutorSettings(BaseModel):
    workflow_url: str | None = Field(default=None, description="Endpoint starting a deployment workflow execution")
    service_account: str | None = None
    timeout_s: float = 30.0


class ObservabilitySettings(BaseModel):
    otel_service_name: str = "deployer"
    otel_exporter_otlp_endpoint: str | None = None
    log_level: str = "INFO"


class StorageSettings(BaseModel):
    database_url: str = Field(
        default="sqlite+aiosqlite:///./deployer.db",
        description="SQLAlchemy async database URL (Postgres 15 in production)",
    )
    s3_endpoint: str | None = None
    s3_region: str | None = None
    s3_bucket: str | None = None
    local_artifact_dir: str = "./.artifacts"


class DeployerSettings(BaseSettings):
    security: SecuritySettings = SecuritySettings()
    planning: PlanningSettings = PlanningSettings()
    executor: ExecutorSettings = ExecutorSettings()
    observability: ObservabilitySettings = ObservabilitySettings()
    storage: StorageSettings = StorageSettings()
    environment: Literal["dev", "qa", "prod"] | str = "dev"

    model_config = SettingsConfigDict(env_nested_delimiter="__", env_prefix="DEPLOYER_", case_sensitive=False)


@lru_cache(maxsize=1)
def get_settings(**kwargs: Any) -> DeployerSettings:
    """Return cached settings instance."""
    return DeployerSettings(**kwargs)


__all__ = ["DeployerSettings", "get_settings"]
