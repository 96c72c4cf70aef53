"""Client certificate endpoint.

An authenticated identity asks for a client certificate covering one or more
pools. Every pool must exist and pass the pool access check; the certificate
is then issued for the identity's subject and returned together with the CA
certificate and the pools' endpoints.

Endpoints:
    POST /api/v1/certs
"""

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from buildfleet.api.dependencies import (
    get_ca_manager,
    get_certificate_issuer,
    get_identity,
    get_pool_store,
)
from buildfleet.auth.pool_access import AuthenticatedIdentity, PoolAccessDenied, check_pool_access
from buildfleet.certs.ca import CAManager, CertificateError
from buildfleet.certs.issuer import CertificateIssuer, CertificateRequest
from buildfleet.config import parse_duration_with_default, settings
from buildfleet.fleet.models import Pool
from buildfleet.k8s.protocol import PoolStore
from buildfleet.logging_config import get_logger

router = APIRouter(prefix="/certs", tags=["certs"])
logger = get_logger(__name__)

CLIENT_ORGANIZATION = "BuildKit Client"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CertRequestBody(_CamelModel):
    pools: list[str] = Field(default_factory=list)
    duration: str = Field(default="", description="Go-style duration, e.g. 24h")


class CertResponse(_CamelModel):
    ca_cert: str
    client_cert: str
    client_key: str
    not_after: str
    endpoints: dict[str, str] = Field(default_factory=dict)


def _index_pools(items: list[dict]) -> dict[str, Pool]:
    """Pools by ``name`` and by ``namespace/name``."""
    index: dict[str, Pool] = {}
    for item in items:
        try:
            pool = Pool.from_k8s(item)
        except (KeyError, ValueError) as e:
            logger.warning("Skipping malformed pool", error=str(e))
            continue
        index[pool.name] = pool
        index[pool.key] = pool
    return index


@router.post("", response_model=CertResponse)
async def request_certificate(
    body: CertRequestBody,
    identity: AuthenticatedIdentity = Depends(get_identity),
    store: PoolStore = Depends(get_pool_store),
    ca_manager: CAManager = Depends(get_ca_manager),
    issuer: CertificateIssuer = Depends(get_certificate_issuer),
) -> CertResponse:
    """Issue a client certificate for the caller's subject.

    400 without pools or with an unusable duration, 404 for an unknown pool,
    403 when any requested pool is denied.
    """
    if not body.pools:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one pool must be specified",
        )

    pools = _index_pools(await store.list_pools(settings.kubernetes.watch_namespace))

    requested: list[tuple[str, Pool]] = []
    for name in body.pools:
        pool = pools.get(name)
        if pool is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Pool {name} not found"
            )
        requested.append((name, pool))

    for _, pool in requested:
        try:
            check_pool_access(identity, pool)
        except PoolAccessDenied as e:
            logger.info(
                "Certificate request denied",
                subject=identity.subject,
                pool=pool.key,
                reason=e.reason,
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    duration = parse_duration_with_default(body.duration, settings.certs.client_cert_duration)
    if duration <= timedelta(0):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Certificate duration must be positive, got {body.duration}",
        )

    try:
        ca = await ca_manager.ensure_ca()
        issued = issuer.issue(
            CertificateRequest(
                common_name=identity.subject,
                organization=CLIENT_ORGANIZATION,
                duration=duration,
                is_client=True,
            ),
            ca,
        )
    except CertificateError as e:
        logger.error("Failed to issue client certificate", subject=identity.subject, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to issue certificate",
        )

    not_after = issued.info.to_status()["notAfter"]
    logger.info(
        "Issued client certificate",
        subject=identity.subject,
        pools=[pool.key for _, pool in requested],
        not_after=not_after,
    )

    endpoints = {
        name: pool.status["endpoint"] for name, pool in requested if pool.status.get("endpoint")
    }
    return CertResponse(
        ca_cert=ca.ca_cert_pem.decode(),
        client_cert=issued.cert_pem.decode(),
        client_key=issued.key_pem.decode(),
        not_after=not_after,
        endpoints=endpoints,
    )
