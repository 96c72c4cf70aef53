"""Pool and worker models.

Pools and workers arrive as raw custom-resource dicts from the object store.
This module turns them into typed values the classifier and planner work on.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from buildfleet.config import CertConfig, KubernetesConfig, parse_duration_with_default
from buildfleet.k8s.kubernetes import POOL_LABEL
from buildfleet.k8s.protocol import OwnerReference


class WorkerPhase(StrEnum):
    """Lifecycle phase reported on a worker's status."""

    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    IDLE = "Idle"
    ALLOCATED = "Allocated"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class WorkerCategory(StrEnum):
    """Scheduling category derived from phase and age.

    STUCK is never reported by a worker; it is a provisioning worker that
    outlived the stuck threshold.
    """

    IDLE = "idle"
    ALLOCATED = "allocated"
    PROVISIONING = "provisioning"
    STUCK = "stuck"
    FAILED = "failed"
    RUNNING = "running"
    TERMINATING = "terminating"


class MalformedWorkerError(ValueError):
    """Raised when a worker object lacks the fields needed to schedule it."""


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class WorkerRecord:
    """One ephemeral build worker as observed in this tick."""

    name: str
    namespace: str
    phase: WorkerPhase
    created_at: datetime
    pool_name: str
    last_status_update: datetime | None = None
    message: str = ""

    @classmethod
    def from_k8s(cls, obj: dict[str, Any]) -> "WorkerRecord":
        """Build a record from a worker custom resource.

        A worker without a status yet was just created and counts as Pending.

        Raises:
            MalformedWorkerError: If name, pool or creation time is missing,
                or the phase is not a known worker phase.
        """
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}

        name = metadata.get("name")
        if not name:
            raise MalformedWorkerError("worker has no name")

        pool_name = (metadata.get("labels") or {}).get(POOL_LABEL) or (
            spec.get("poolRef") or {}
        ).get("name")
        if not pool_name:
            raise MalformedWorkerError(f"worker {name} has no owning pool")

        try:
            created_at = parse_timestamp(status.get("createdAt")) or parse_timestamp(
                metadata.get("creationTimestamp")
            )
            last_update = parse_timestamp(status.get("lastActivityAt")) or parse_timestamp(
                status.get("readyAt")
            )
        except ValueError as e:
            raise MalformedWorkerError(f"worker {name} has an invalid timestamp: {e}") from e
        if created_at is None:
            raise MalformedWorkerError(f"worker {name} has no creation time")

        raw_phase = status.get("phase") or WorkerPhase.PENDING
        try:
            phase = WorkerPhase(raw_phase)
        except ValueError as e:
            raise MalformedWorkerError(f"worker {name} has unknown phase {raw_phase!r}") from e

        return cls(
            name=name,
            namespace=metadata.get("namespace", ""),
            phase=phase,
            created_at=created_at,
            pool_name=pool_name,
            last_status_update=last_update,
            message=status.get("message", ""),
        )


@dataclass
class WorkerCategories:
    """Disjoint partition of a pool's workers."""

    idle: list[WorkerRecord] = field(default_factory=list)
    allocated: list[WorkerRecord] = field(default_factory=list)
    provisioning: list[WorkerRecord] = field(default_factory=list)
    stuck: list[WorkerRecord] = field(default_factory=list)
    failed: list[WorkerRecord] = field(default_factory=list)
    running: list[WorkerRecord] = field(default_factory=list)
    terminating: list[WorkerRecord] = field(default_factory=list)

    def bucket(self, category: WorkerCategory) -> list[WorkerRecord]:
        return getattr(self, category.value)

    @property
    def total(self) -> int:
        return sum(len(self.bucket(category)) for category in WorkerCategory)

    @property
    def ready(self) -> int:
        return len(self.idle) + len(self.allocated) + len(self.running)


# --- Pool specification ---


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ScalingSpec(_CamelModel):
    """Pool scaling settings."""

    min: int = Field(default=0, ge=0, description="Idle workers to keep available")
    scale_down_schedule: str = Field(
        default="",
        description="5-field cron expression; while it fires the pool scales to zero",
    )


class TLSAutoSpec(_CamelModel):
    server_cert_duration: str = Field(default="")
    client_cert_duration: str = Field(default="")
    rotate_before_expiry: str = Field(default="")
    organization: str = Field(default="")


class TLSSpec(_CamelModel):
    enabled: bool = Field(default=True)
    auto: TLSAutoSpec = Field(default_factory=TLSAutoSpec)


class RBACRule(_CamelModel):
    users: list[str] = Field(default_factory=list)
    pools: list[str] = Field(default_factory=list)


class RBACSpec(_CamelModel):
    enabled: bool = Field(default=False)
    rules: list[RBACRule] = Field(default_factory=list)


class AuthSpec(_CamelModel):
    rbac: RBACSpec | None = Field(default=None)


class GatewayAPISpec(_CamelModel):
    enabled: bool = Field(default=False)
    hostname: str = Field(default="")


class GatewaySpec(_CamelModel):
    gateway_api: GatewayAPISpec | None = Field(default=None, alias="gatewayAPI")


class ExternalSpec(_CamelModel):
    enabled: bool = Field(default=False)
    hostname: str = Field(default="")


class NetworkingSpec(_CamelModel):
    external: ExternalSpec | None = Field(default=None)


class PoolSpec(_CamelModel):
    """Desired state of a pool, as declared on the pool custom resource."""

    scaling: ScalingSpec = Field(default_factory=ScalingSpec)
    tls: TLSSpec = Field(default_factory=TLSSpec)
    auth: AuthSpec = Field(default_factory=AuthSpec)
    gateway: GatewaySpec = Field(default_factory=GatewaySpec)
    networking: NetworkingSpec = Field(default_factory=NetworkingSpec)

    def server_cert_duration(self, certs: CertConfig) -> timedelta:
        return parse_duration_with_default(
            self.tls.auto.server_cert_duration, certs.server_cert_duration
        )

    def client_cert_duration(self, certs: CertConfig) -> timedelta:
        # Pools without a client override share the server duration, as before
        default = parse_duration_with_default(
            self.tls.auto.server_cert_duration, certs.client_cert_duration
        )
        return parse_duration_with_default(self.tls.auto.client_cert_duration, default)

    def rotate_before_expiry(self, certs: CertConfig) -> timedelta:
        return parse_duration_with_default(
            self.tls.auto.rotate_before_expiry, certs.rotate_before_expiry
        )

    @property
    def external_hostname(self) -> str:
        """Gateway API hostname when enabled, else the networking external hostname."""
        gateway_api = self.gateway.gateway_api
        if gateway_api is not None and gateway_api.enabled and gateway_api.hostname:
            return gateway_api.hostname
        if self.networking.external is not None:
            return self.networking.external.hostname
        return ""


@dataclass
class Pool:
    """A pool custom resource: identity, spec and last written status."""

    name: str
    namespace: str
    uid: str
    spec: PoolSpec
    status: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_k8s(cls, obj: dict[str, Any]) -> "Pool":
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            uid=metadata.get("uid", ""),
            spec=PoolSpec.model_validate(obj.get("spec") or {}),
            status=dict(obj.get("status") or {}),
        )

    def owner_reference(self, k8s_config: KubernetesConfig) -> OwnerReference:
        return OwnerReference(
            api_version=k8s_config.api_version,
            kind=k8s_config.pool_kind,
            name=self.name,
            uid=self.uid,
        )
