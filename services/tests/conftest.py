"""
Top-level test configuration for buildfleet.

In-memory stores stand in for the Kubernetes API. They count writes so tests
can assert that idempotent paths issue none.
"""

import copy
import itertools
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

# Ensure test-friendly defaults
os.environ.setdefault("BUILDFLEET_JSON_LOGS", "false")
os.environ.setdefault("BUILDFLEET_LOG_LEVEL", "DEBUG")

from buildfleet.fleet.models import format_timestamp  # noqa: E402
from buildfleet.k8s.kubernetes import POOL_LABEL, WORKER_LABEL  # noqa: E402
from buildfleet.k8s.protocol import (  # noqa: E402
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    OwnerReference,
    Secret,
    StoreError,
)

# Monday 2026-03-02 12:00 UTC
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeSecretStore:
    """Secrets in a dict, with per-operation call counters."""

    def __init__(self) -> None:
        self.secrets: dict[tuple[str, str], Secret] = {}
        self.gets = 0
        self.creates = 0
        self.updates = 0
        self._versions = itertools.count(1)

    @property
    def writes(self) -> int:
        return self.creates + self.updates

    def put(self, secret: Secret) -> None:
        """Seed a secret without counting a write."""
        secret.resource_version = str(next(self._versions))
        self.secrets[(secret.namespace, secret.name)] = _copy_secret(secret)

    async def get(self, name: str, namespace: str) -> Secret:
        self.gets += 1
        secret = self.secrets.get((namespace, name))
        if secret is None:
            raise ObjectNotFoundError("Secret", namespace, name)
        return _copy_secret(secret)

    async def create(
        self,
        name: str,
        namespace: str,
        data: dict[str, bytes],
        labels: dict[str, str],
        owner_references: list[OwnerReference] | None = None,
    ) -> Secret:
        if (namespace, name) in self.secrets:
            raise ObjectAlreadyExistsError("Secret", namespace, name)
        self.creates += 1
        secret = Secret(
            name=name,
            namespace=namespace,
            data=dict(data),
            labels=dict(labels),
            owner_references=list(owner_references or []),
            resource_version=str(next(self._versions)),
        )
        self.secrets[(namespace, name)] = secret
        return _copy_secret(secret)

    async def update(
        self,
        name: str,
        namespace: str,
        data: dict[str, bytes],
        labels: dict[str, str],
        owner_references: list[OwnerReference] | None = None,
        resource_version: str | None = None,
    ) -> Secret:
        if (namespace, name) not in self.secrets:
            raise ObjectNotFoundError("Secret", namespace, name)
        self.updates += 1
        secret = Secret(
            name=name,
            namespace=namespace,
            data=dict(data),
            labels=dict(labels),
            owner_references=list(owner_references or []),
            resource_version=str(next(self._versions)),
        )
        self.secrets[(namespace, name)] = secret
        return _copy_secret(secret)


def _copy_secret(secret: Secret) -> Secret:
    return Secret(
        name=secret.name,
        namespace=secret.namespace,
        data=dict(secret.data),
        labels=dict(secret.labels),
        owner_references=list(secret.owner_references),
        resource_version=secret.resource_version,
    )


class FakeWorkerStore:
    """Worker custom resources in a dict, named like generateName would."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now
        self.workers: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.deleted: list[str] = []
        self.fail_delete: set[str] = set()
        self.fail_create = 0
        self._suffixes = itertools.count(1)

    def add(self, worker: dict[str, Any]) -> None:
        self.workers[worker["metadata"]["name"]] = copy.deepcopy(worker)

    async def list_workers(self, namespace: str, pool_name: str) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(w)
            for w in self.workers.values()
            if w["metadata"].get("namespace") == namespace
            and w["metadata"].get("labels", {}).get(POOL_LABEL) == pool_name
        ]

    async def create_worker(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        if self.fail_create > 0:
            self.fail_create -= 1
            raise StoreError("injected create failure")
        obj = copy.deepcopy(body)
        metadata = obj["metadata"]
        metadata["name"] = f"{metadata['generateName']}{next(self._suffixes):05d}"
        metadata["namespace"] = namespace
        metadata["creationTimestamp"] = format_timestamp(self.now)
        self.workers[metadata["name"]] = obj
        self.created.append(copy.deepcopy(obj))
        return copy.deepcopy(obj)

    async def delete_worker(self, namespace: str, name: str) -> None:
        if name in self.fail_delete:
            raise StoreError(f"injected delete failure for {name}")
        self.workers.pop(name, None)
        self.deleted.append(name)


class FakePoolStore:
    """Pool custom resources with a recorded status history."""

    def __init__(self) -> None:
        self.pools: dict[tuple[str, str], dict[str, Any]] = {}
        self.status_updates: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_list = False

    def add(self, pool: dict[str, Any]) -> None:
        metadata = pool["metadata"]
        self.pools[(metadata["namespace"], metadata["name"])] = copy.deepcopy(pool)

    async def list_pools(self, namespace: str = "") -> list[dict[str, Any]]:
        if self.fail_list:
            raise StoreError("injected list failure")
        return [
            copy.deepcopy(p)
            for (ns, _), p in self.pools.items()
            if not namespace or ns == namespace
        ]

    async def get_pool(self, namespace: str, name: str) -> dict[str, Any]:
        pool = self.pools.get((namespace, name))
        if pool is None:
            raise ObjectNotFoundError("BuildKitPool", namespace, name)
        return copy.deepcopy(pool)

    async def update_pool_status(
        self, namespace: str, name: str, status: dict[str, Any]
    ) -> None:
        pool = self.pools.get((namespace, name))
        if pool is None:
            raise ObjectNotFoundError("BuildKitPool", namespace, name)
        merged = dict(pool.get("status") or {})
        for key, value in status.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = copy.deepcopy(value)
        pool["status"] = merged
        self.status_updates.append((namespace, name, copy.deepcopy(status)))


def make_worker(
    name: str,
    phase: str | None,
    created_at: datetime,
    pool: str = "ci",
    namespace: str = "builds",
) -> dict[str, Any]:
    """A raw worker custom resource."""
    obj: dict[str, Any] = {
        "apiVersion": "buildkit.smrt-devops.net/v1alpha1",
        "kind": "BuildKitWorker",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {POOL_LABEL: pool, WORKER_LABEL: "true"},
            "creationTimestamp": format_timestamp(created_at),
        },
        "spec": {"poolRef": {"name": pool, "namespace": namespace}},
    }
    if phase is not None:
        obj["status"] = {"phase": phase, "createdAt": format_timestamp(created_at)}
    return obj


def make_pool(
    name: str = "ci",
    namespace: str = "builds",
    min_idle: int = 0,
    schedule: str = "",
    tls_enabled: bool = True,
    **spec_extra: Any,
) -> dict[str, Any]:
    """A raw pool custom resource."""
    spec: dict[str, Any] = {
        "scaling": {"min": min_idle},
        "tls": {"enabled": tls_enabled},
    }
    if schedule:
        spec["scaling"]["scaleDownSchedule"] = schedule
    spec.update(spec_extra)
    return {
        "apiVersion": "buildkit.smrt-devops.net/v1alpha1",
        "kind": "BuildKitPool",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
        "spec": spec,
    }


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def secret_store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture
def worker_store() -> FakeWorkerStore:
    return FakeWorkerStore()


@pytest.fixture
def pool_store() -> FakePoolStore:
    return FakePoolStore()


@pytest.fixture
def worker_factory():
    return make_worker


@pytest.fixture
def pool_factory():
    return make_pool


@pytest.fixture
def ago():
    """``ago(minutes=5)`` is five minutes before NOW."""

    def _ago(**kwargs: float) -> datetime:
        return NOW - timedelta(**kwargs)

    return _ago
