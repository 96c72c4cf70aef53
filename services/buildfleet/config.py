"""
Configuration management for the buildfleet controller.

Non-secret configuration loaded from YAML file, overridable from environment
variables (BUILDFLEET_ prefix, ``__`` as the nesting delimiter).
"""

import re
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path("/etc/buildfleet/config.yaml")
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


# --- Duration Parsing ---

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string such as ``8760h``, ``1h30m`` or ``90s``.

    Raises:
        ValueError: If the string is empty or not a valid duration.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=total)


def parse_duration_with_default(value: str | None, default: timedelta) -> timedelta:
    """Parse a duration string, returning ``default`` when empty or invalid."""
    if not value:
        return default
    try:
        return parse_duration(value)
    except ValueError:
        return default


# --- Kubernetes Configuration ---


class KubernetesConfig(BaseModel):
    """Custom resource coordinates and the controller's own namespace."""

    group: str = Field(default="buildkit.smrt-devops.net")
    version: str = Field(default="v1alpha1")
    pool_plural: str = Field(default="buildkitpools")
    worker_plural: str = Field(default="buildkitworkers")
    pool_kind: str = Field(default="BuildKitPool")
    worker_kind: str = Field(default="BuildKitWorker")
    watch_namespace: str = Field(
        default="",
        description="Restrict reconciliation to one namespace. Empty means all namespaces.",
    )

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


# --- Certificate Configuration ---


class CertConfig(BaseModel):
    """Leaf certificate defaults."""

    server_cert_duration_hours: int = Field(default=8760, gt=0, description="1 year")
    client_cert_duration_hours: int = Field(default=8760, gt=0, description="1 year")
    rotate_before_expiry_hours: int = Field(default=720, gt=0, description="30 days")
    renewal_window_hours: int = Field(
        default=720,
        gt=0,
        description="Renewal time is set this long before expiry, or at 80% of the "
        "lifetime for certificates shorter than the window",
    )

    @property
    def server_cert_duration(self) -> timedelta:
        return timedelta(hours=self.server_cert_duration_hours)

    @property
    def client_cert_duration(self) -> timedelta:
        return timedelta(hours=self.client_cert_duration_hours)

    @property
    def rotate_before_expiry(self) -> timedelta:
        return timedelta(hours=self.rotate_before_expiry_hours)

    @property
    def renewal_window(self) -> timedelta:
        return timedelta(hours=self.renewal_window_hours)


class CAConfig(BaseModel):
    """Certificate authority storage and policy."""

    secret_name: str = Field(default="buildkit-ca")
    namespace: str = Field(default="buildkit-system")
    validity_days: int = Field(default=3650, gt=0)
    fail_on_invalid: bool = Field(
        default=False,
        description="Refuse to regenerate when stored CA material is unusable. "
        "Regeneration invalidates every certificate issued by the previous CA.",
    )


# --- Scaling Configuration ---


class ScalingConfig(BaseModel):
    """Worker fleet thresholds."""

    worker_stuck_threshold_seconds: int = Field(
        default=600,
        gt=0,
        description="A provisioning worker older than this is considered stuck",
    )
    schedule_window_seconds: int = Field(
        default=120,
        ge=0,
        description="Tolerance around scale-down schedule fire times",
    )

    @property
    def worker_stuck_threshold(self) -> timedelta:
        return timedelta(seconds=self.worker_stuck_threshold_seconds)

    @property
    def schedule_window(self) -> timedelta:
        return timedelta(seconds=self.schedule_window_seconds)


class ControllerConfig(BaseModel):
    """Reconciliation loop settings."""

    enabled: bool = Field(
        default=False,
        description="Run the reconciliation loop inside the API process",
    )
    resync_interval_seconds: int = Field(default=30, gt=0)
    max_concurrent_reconciles: int = Field(default=4, gt=0)
    backoff_base_seconds: float = Field(default=5.0, gt=0)
    backoff_max_seconds: float = Field(default=300.0, gt=0)


# --- Main Settings ---


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BUILDFLEET_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="buildfleet-controller")
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True, description="JSON logging in production")

    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    certs: CertConfig = Field(default_factory=CertConfig)
    ca: CAConfig = Field(default_factory=CAConfig)
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)

    # API
    api_prefix: str = Field(default="/api/v1")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: env vars override YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )


# Global settings instance
settings = Settings()
