"""
Shared configuration management for the license registry.
"""

import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.logging import get_logger

DEFAULT_LICENSE_DB_URL = "https://vibebuildlab.com/api/licenses/qa-architect.json"
DEFAULT_LICENSE_DIR_NAME = ".create-qa-architect"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")


class LicensingServiceConfig(BaseConfig):
    """Issuing + distribution service configuration (LICENSE_* env vars)."""

    model_config = SettingsConfigDict(
        env_prefix="LICENSE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = "licensing"
    host: str = "0.0.0.0"
    port: int = 3000

    # Registry files
    database_path: str = Field(default="./legitimate-licenses.json")
    public_database_path: str = Field(default="./legitimate-licenses.public.json")

    # Key material (no default on purpose)
    registry_key_id: str = Field(default="default")
    registry_private_key: Optional[str] = Field(default=None)
    registry_private_key_path: Optional[str] = Field(default=None)

    # Inbound event authenticity + privileged endpoints
    webhook_secret: Optional[str] = Field(default=None)
    status_token: Optional[str] = Field(default=None)

    # Rate limiting (None -> in-process backend)
    redis_url: Optional[str] = Field(default=None)
    registry_rate_limit_window_seconds: float = Field(default=60.0)
    registry_rate_limit_max_requests: int = Field(default=60)
    health_rate_limit_window_seconds: float = Field(default=60.0)
    health_rate_limit_max_requests: int = Field(default=30)
    status_rate_limit_window_seconds: float = Field(default=60.0)
    status_rate_limit_max_requests: int = Field(default=10)
    rate_limit_prune_threshold: int = Field(default=10000)

    # Write path
    write_timeout_seconds: float = Field(default=10.0)

    def resolved_database_path(self) -> Path:
        return Path(self.database_path).expanduser().resolve()

    def resolved_public_database_path(self) -> Path:
        return Path(self.public_database_path).expanduser().resolve()


class LicenseClientConfig(BaseConfig):
    """Client-side configuration (QAA_* env vars)."""

    model_config = SettingsConfigDict(
        env_prefix="QAA_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    license_dir: Optional[str] = Field(default=None)
    license_db_url: str = Field(default=DEFAULT_LICENSE_DB_URL)
    license_public_key: Optional[str] = Field(default=None)
    license_public_key_path: Optional[str] = Field(default=None)
    license_key_id: str = Field(default="default")
    allow_insecure_license_db: bool = Field(default=False)
    fetch_timeout_seconds: float = Field(default=10.0)
    fetch_attempts: int = Field(default=2)

    def resolved_license_dir(self) -> Path:
        """Resolve the license directory, confined to home or temp."""
        default = Path.home() / DEFAULT_LICENSE_DIR_NAME
        if not self.license_dir:
            return default
        return confine_license_dir(self.license_dir, default)


def confine_license_dir(requested: str, default: Path) -> Path:
    """Return ``requested`` if it lives under home or the temp dir, else ``default``."""
    resolved = Path(requested).expanduser().resolve()
    roots = (Path.home().resolve(), Path(tempfile.gettempdir()).resolve())
    for root in roots:
        if resolved == root or root in resolved.parents:
            return resolved
    get_logger("config").warning(
        "License directory outside home/temp ignored",
        requested=requested,
        fallback=str(default),
    )
    return default


def get_service_config(**overrides) -> LicensingServiceConfig:
    """Get the issuing service configuration."""
    return LicensingServiceConfig(**overrides)


def get_client_config(**overrides) -> LicenseClientConfig:
    """Get the client configuration."""
    return LicenseClientConfig(**overrides)


def read_key_material(inline: Optional[str], path: Optional[str]) -> Optional[str]:
    """Inline PEM wins over the path; returns None when neither is usable."""
    if inline:
        return inline
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    return None
