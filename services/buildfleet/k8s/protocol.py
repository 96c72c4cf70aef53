"""
Store protocols and types for the buildfleet controller.

Defines the object store (pool and worker custom resources) and secret store
interfaces the core depends on, along with shared data types and exceptions.
Kubernetes-backed implementations live in ``buildfleet.k8s.kubernetes``.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

# --- Data Types ---


@dataclass(frozen=True)
class OwnerReference:
    """Controller owner reference, used for cascading deletion."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


@dataclass
class Secret:
    """A stored secret blob: raw bytes per data key plus labels."""

    name: str
    namespace: str
    data: dict[str, bytes] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    resource_version: str | None = None


# --- Exceptions ---


class StoreError(Exception):
    """Base exception for object and secret store operations."""


class ObjectNotFoundError(StoreError):
    """Raised when a requested object does not exist."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} not found: {namespace}/{name}")


class ObjectAlreadyExistsError(StoreError):
    """Raised when creating an object whose name is already taken."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} already exists: {namespace}/{name}")


# --- Protocols ---


@runtime_checkable
class WorkerStore(Protocol):
    """Worker records belonging to pools.

    Create and delete are idempotent: deleting a missing worker is not an
    error, and a create that collides with an existing name is logged and
    ignored.
    """

    async def list_workers(self, namespace: str, pool_name: str) -> list[dict[str, Any]]:
        """List raw worker objects labelled with ``pool_name``."""
        ...

    async def create_worker(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        """Create a worker object and return it as stored."""
        ...

    async def delete_worker(self, namespace: str, name: str) -> None:
        """Delete a worker object by name."""
        ...


@runtime_checkable
class PoolStore(Protocol):
    """Pool objects and their status subresource."""

    async def list_pools(self, namespace: str = "") -> list[dict[str, Any]]:
        """List raw pool objects. Empty namespace lists across all namespaces."""
        ...

    async def get_pool(self, namespace: str, name: str) -> dict[str, Any]:
        """Fetch a pool.

        Raises:
            ObjectNotFoundError: If the pool does not exist.
        """
        ...

    async def update_pool_status(
        self, namespace: str, name: str, status: dict[str, Any]
    ) -> None:
        """Merge-patch the pool's status subresource. None values remove keys."""
        ...


@runtime_checkable
class SecretStore(Protocol):
    """Secret blobs holding CA and leaf certificate material."""

    async def get(self, name: str, namespace: str) -> Secret:
        """Fetch a secret.

        Raises:
            ObjectNotFoundError: If the secret does not exist.
        """
        ...

    async def create(
        self,
        name: str,
        namespace: str,
        data: dict[str, bytes],
        labels: dict[str, str],
        owner_references: list[OwnerReference] | None = None,
    ) -> Secret:
        """Create a secret.

        Raises:
            ObjectAlreadyExistsError: If a secret with this name exists.
        """
        ...

    async def update(
        self,
        name: str,
        namespace: str,
        data: dict[str, bytes],
        labels: dict[str, str],
        owner_references: list[OwnerReference] | None = None,
        resource_version: str | None = None,
    ) -> Secret:
        """Replace a secret's data and labels.

        Raises:
            ObjectNotFoundError: If the secret does not exist.
        """
        ...
