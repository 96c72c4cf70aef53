"""Pool read endpoints.

Exposes the worker counts and certificate secret names the controller
maintains on each pool, for resource builders and clients.

Endpoints:
    GET /api/v1/pools
    GET /api/v1/pools/{namespace}/{name}
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from buildfleet.api.dependencies import get_identity, get_pool_store
from buildfleet.auth.pool_access import AuthenticatedIdentity, is_permitted
from buildfleet.config import settings
from buildfleet.fleet.models import Pool
from buildfleet.k8s.protocol import ObjectNotFoundError, PoolStore
from buildfleet.logging_config import get_logger
from buildfleet.tls.manager import client_secret_name, server_secret_name, worker_secret_name

router = APIRouter(prefix="/pools", tags=["pools"])
logger = get_logger(__name__)

_WORKER_COUNT_KEYS = (
    "total",
    "ready",
    "idle",
    "allocated",
    "provisioning",
    "failed",
    "desired",
    "needed",
)


class PoolSecrets(BaseModel):
    server: str
    client: str
    worker: str


class PoolSummary(BaseModel):
    name: str
    namespace: str
    endpoint: str = ""
    status: str = "Unknown"


class PoolList(BaseModel):
    pools: list[PoolSummary]


class PoolView(BaseModel):
    name: str
    namespace: str
    phase: str = ""
    min_idle: int
    scale_to_zero_active: bool = False
    workers: dict[str, int] = Field(default_factory=dict)
    tls_enabled: bool
    secrets: PoolSecrets | None = None
    server_cert: dict[str, str] | None = None


def _pool_view(pool: Pool) -> PoolView:
    counts: dict[str, Any] = pool.status.get("workers") or {}
    secrets = None
    if pool.spec.tls.enabled:
        secrets = PoolSecrets(
            server=server_secret_name(pool.name),
            client=client_secret_name(pool.name),
            worker=worker_secret_name(pool.name),
        )
    return PoolView(
        name=pool.name,
        namespace=pool.namespace,
        phase=pool.status.get("phase") or "",
        min_idle=pool.spec.scaling.min,
        scale_to_zero_active=bool(pool.status.get("scaleToZeroActive")),
        workers={key: int(counts.get(key, 0)) for key in _WORKER_COUNT_KEYS},
        tls_enabled=pool.spec.tls.enabled,
        secrets=secrets,
        server_cert=pool.status.get("serverCert"),
    )


@router.get("", response_model=PoolList)
async def list_pools(
    identity: AuthenticatedIdentity = Depends(get_identity),
    store: PoolStore = Depends(get_pool_store),
) -> PoolList:
    """List the pools the caller may use, with their endpoint and phase."""
    summaries: list[PoolSummary] = []
    for item in await store.list_pools(settings.kubernetes.watch_namespace):
        try:
            pool = Pool.from_k8s(item)
        except (KeyError, ValueError) as e:
            logger.warning("Skipping malformed pool", error=str(e))
            continue
        if not is_permitted(identity, pool):
            continue
        summaries.append(
            PoolSummary(
                name=pool.name,
                namespace=pool.namespace,
                endpoint=pool.status.get("endpoint") or "",
                status=pool.status.get("phase") or "Unknown",
            )
        )
    return PoolList(pools=summaries)


@router.get("/{namespace}/{name}", response_model=PoolView)
async def get_pool(
    namespace: str,
    name: str,
    identity: AuthenticatedIdentity = Depends(get_identity),
    store: PoolStore = Depends(get_pool_store),
) -> PoolView:
    """Return a pool's worker counts and certificate secret names."""
    try:
        pool = Pool.from_k8s(await store.get_pool(namespace, name))
    except ObjectNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pool not found")

    if not is_permitted(identity, pool):
        logger.info(
            "Pool access denied", subject=identity.subject, pool=name, namespace=namespace
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    return _pool_view(pool)
