"""Kubernetes-backed pool, worker and secret stores.

Uses the kubernetes Python client. The client is synchronous, so every call
runs in the default executor to keep the reconcile loop responsive.
"""

import asyncio
import base64
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from buildfleet.config import KubernetesConfig, settings
from buildfleet.k8s.protocol import (
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    OwnerReference,
    Secret,
    StoreError,
)
from buildfleet.logging_config import get_logger

logger = get_logger(__name__)

POOL_LABEL = "buildkit.smrt-devops.net/pool"
WORKER_LABEL = "buildkit.smrt-devops.net/worker"

_custom_objects: client.CustomObjectsApi | None = None
_core_v1: client.CoreV1Api | None = None


def init_k8s() -> None:
    """Initialize the Kubernetes client.

    Uses in-cluster config when running in K8s, falls back to kubeconfig for local dev.
    """
    global _custom_objects, _core_v1  # noqa: PLW0603

    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster K8s config")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.info("Loaded kubeconfig")
        except config.ConfigException:
            logger.error("Failed to load K8s config")
            raise

    _custom_objects = client.CustomObjectsApi()
    _core_v1 = client.CoreV1Api()


def is_initialized() -> bool:
    return _custom_objects is not None and _core_v1 is not None


def _get_custom_api() -> client.CustomObjectsApi:
    if _custom_objects is None:
        init_k8s()
    assert _custom_objects is not None
    return _custom_objects


def _get_core_api() -> client.CoreV1Api:
    if _core_v1 is None:
        init_k8s()
    assert _core_v1 is not None
    return _core_v1


async def _run(func: Any) -> Any:
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, func)


async def get_k8s_health() -> bool:
    """Whether the API server answers a version request."""
    if not is_initialized():
        return False
    try:
        await _run(lambda: client.VersionApi().get_code())
    except Exception as e:
        logger.warning("Kubernetes health check failed", error=str(e))
        return False
    return True


def _store_error(action: str, e: ApiException) -> StoreError:
    return StoreError(f"Failed to {action}: {e.status} {e.reason}")


# ── Custom resources ─────────────────────────────────────────────────────


class KubernetesWorkerStore:
    """Worker custom resources, selected by the pool label."""

    def __init__(
        self,
        api: client.CustomObjectsApi | None = None,
        k8s_config: KubernetesConfig | None = None,
    ):
        self._api = api
        self._config = k8s_config or settings.kubernetes

    @property
    def api(self) -> client.CustomObjectsApi:
        return self._api or _get_custom_api()

    async def list_workers(self, namespace: str, pool_name: str) -> list[dict[str, Any]]:
        cfg = self._config
        try:
            result = await _run(
                lambda: self.api.list_namespaced_custom_object(
                    group=cfg.group,
                    version=cfg.version,
                    namespace=namespace,
                    plural=cfg.worker_plural,
                    label_selector=f"{POOL_LABEL}={pool_name}",
                )
            )
        except ApiException as e:
            logger.error(
                "Failed to list workers", pool=pool_name, namespace=namespace, error=str(e)
            )
            raise _store_error(f"list workers for pool {pool_name}", e) from e
        return list(result.get("items", []))

    async def create_worker(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        cfg = self._config
        metadata = body.get("metadata", {})
        name = metadata.get("name") or metadata.get("generateName", "unknown")
        try:
            created = await _run(
                lambda: self.api.create_namespaced_custom_object(
                    group=cfg.group,
                    version=cfg.version,
                    namespace=namespace,
                    plural=cfg.worker_plural,
                    body=body,
                )
            )
        except ApiException as e:
            if e.status == 409:
                logger.warning("Worker already exists", worker=name, namespace=namespace)
                return body
            logger.error("Failed to create worker", worker=name, error=str(e))
            raise _store_error(f"create worker {name}", e) from e
        return created

    async def delete_worker(self, namespace: str, name: str) -> None:
        cfg = self._config
        try:
            await _run(
                lambda: self.api.delete_namespaced_custom_object(
                    group=cfg.group,
                    version=cfg.version,
                    namespace=namespace,
                    plural=cfg.worker_plural,
                    name=name,
                )
            )
        except ApiException as e:
            if e.status == 404:
                logger.warning("Worker already deleted", worker=name, namespace=namespace)
                return
            logger.error("Failed to delete worker", worker=name, error=str(e))
            raise _store_error(f"delete worker {name}", e) from e


class KubernetesPoolStore:
    """Pool custom resources and their status subresource."""

    def __init__(
        self,
        api: client.CustomObjectsApi | None = None,
        k8s_config: KubernetesConfig | None = None,
    ):
        self._api = api
        self._config = k8s_config or settings.kubernetes

    @property
    def api(self) -> client.CustomObjectsApi:
        return self._api or _get_custom_api()

    async def list_pools(self, namespace: str = "") -> list[dict[str, Any]]:
        cfg = self._config
        try:
            if namespace:
                result = await _run(
                    lambda: self.api.list_namespaced_custom_object(
                        group=cfg.group,
                        version=cfg.version,
                        namespace=namespace,
                        plural=cfg.pool_plural,
                    )
                )
            else:
                result = await _run(
                    lambda: self.api.list_cluster_custom_object(
                        group=cfg.group,
                        version=cfg.version,
                        plural=cfg.pool_plural,
                    )
                )
        except ApiException as e:
            raise _store_error("list pools", e) from e
        return list(result.get("items", []))

    async def get_pool(self, namespace: str, name: str) -> dict[str, Any]:
        cfg = self._config
        try:
            return await _run(
                lambda: self.api.get_namespaced_custom_object(
                    group=cfg.group,
                    version=cfg.version,
                    namespace=namespace,
                    plural=cfg.pool_plural,
                    name=name,
                )
            )
        except ApiException as e:
            if e.status == 404:
                raise ObjectNotFoundError(cfg.pool_kind, namespace, name) from e
            raise _store_error(f"get pool {namespace}/{name}", e) from e

    async def update_pool_status(
        self, namespace: str, name: str, status: dict[str, Any]
    ) -> None:
        cfg = self._config
        try:
            await _run(
                lambda: self.api.patch_namespaced_custom_object_status(
                    group=cfg.group,
                    version=cfg.version,
                    namespace=namespace,
                    plural=cfg.pool_plural,
                    name=name,
                    body={"status": status},
                )
            )
        except ApiException as e:
            if e.status == 404:
                raise ObjectNotFoundError(cfg.pool_kind, namespace, name) from e
            raise _store_error(f"update status of pool {namespace}/{name}", e) from e


# ── Secrets ──────────────────────────────────────────────────────────────


def _decode_data(data: dict[str, str] | None) -> dict[str, bytes]:
    return {key: base64.b64decode(value) for key, value in (data or {}).items()}


def _encode_data(data: dict[str, bytes]) -> dict[str, str]:
    return {key: base64.b64encode(value).decode() for key, value in data.items()}


def _owner_refs_to_k8s(refs: list[OwnerReference] | None) -> list[client.V1OwnerReference] | None:
    if not refs:
        return None
    return [
        client.V1OwnerReference(
            api_version=ref.api_version,
            kind=ref.kind,
            name=ref.name,
            uid=ref.uid,
            controller=ref.controller,
            block_owner_deletion=ref.block_owner_deletion,
        )
        for ref in refs
    ]


def _owner_refs_from_k8s(refs: list[Any] | None) -> list[OwnerReference]:
    return [
        OwnerReference(
            api_version=ref.api_version,
            kind=ref.kind,
            name=ref.name,
            uid=ref.uid,
            controller=bool(ref.controller),
            block_owner_deletion=bool(ref.block_owner_deletion),
        )
        for ref in refs or []
    ]


def _secret_from_k8s(obj: client.V1Secret) -> Secret:
    return Secret(
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        data=_decode_data(obj.data),
        labels=dict(obj.metadata.labels or {}),
        owner_references=_owner_refs_from_k8s(obj.metadata.owner_references),
        resource_version=obj.metadata.resource_version,
    )


class KubernetesSecretStore:
    """Opaque Kubernetes secrets."""

    def __init__(self, api: client.CoreV1Api | None = None):
        self._api = api

    @property
    def api(self) -> client.CoreV1Api:
        return self._api or _get_core_api()

    async def get(self, name: str, namespace: str) -> Secret:
        try:
            obj = await _run(
                lambda: self.api.read_namespaced_secret(name=name, namespace=namespace)
            )
        except ApiException as e:
            if e.status == 404:
                raise ObjectNotFoundError("Secret", namespace, name) from e
            raise _store_error(f"get secret {namespace}/{name}", e) from e
        return _secret_from_k8s(obj)

    async def create(
        self,
        name: str,
        namespace: str,
        data: dict[str, bytes],
        labels: dict[str, str],
        owner_references: list[OwnerReference] | None = None,
    ) -> Secret:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels,
                owner_references=_owner_refs_to_k8s(owner_references),
            ),
            type="Opaque",
            data=_encode_data(data),
        )
        try:
            obj = await _run(
                lambda: self.api.create_namespaced_secret(namespace=namespace, body=body)
            )
        except ApiException as e:
            if e.status == 409:
                raise ObjectAlreadyExistsError("Secret", namespace, name) from e
            raise _store_error(f"create secret {namespace}/{name}", e) from e
        return _secret_from_k8s(obj)

    async def update(
        self,
        name: str,
        namespace: str,
        data: dict[str, bytes],
        labels: dict[str, str],
        owner_references: list[OwnerReference] | None = None,
        resource_version: str | None = None,
    ) -> Secret:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels,
                owner_references=_owner_refs_to_k8s(owner_references),
                resource_version=resource_version,
            ),
            type="Opaque",
            data=_encode_data(data),
        )
        try:
            obj = await _run(
                lambda: self.api.replace_namespaced_secret(
                    name=name, namespace=namespace, body=body
                )
            )
        except ApiException as e:
            if e.status == 404:
                raise ObjectNotFoundError("Secret", namespace, name) from e
            raise _store_error(f"update secret {namespace}/{name}", e) from e
        return _secret_from_k8s(obj)
