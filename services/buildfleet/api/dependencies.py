"""FastAPI dependencies for identity and store access.

Tokens are verified by the gateway in front of this service. It forwards the
verified subject and the pools it may use as headers:

- ``X-Authenticated-Subject``: subject identifier
- ``X-Authenticated-Pools``: comma-separated pool names, ``*`` for all
"""

from fastapi import Header, HTTPException, status

from buildfleet.auth.pool_access import AuthenticatedIdentity
from buildfleet.certs.ca import CAManager
from buildfleet.certs.issuer import CertificateIssuer
from buildfleet.config import settings
from buildfleet.k8s.kubernetes import KubernetesPoolStore, KubernetesSecretStore
from buildfleet.k8s.protocol import PoolStore
from buildfleet.logging_config import get_logger

logger = get_logger(__name__)

# Module-level singletons, initialized in lifespan
_pool_store: PoolStore | None = None
_ca_manager: CAManager | None = None


def init_pool_store(store: PoolStore | None = None) -> PoolStore:
    global _pool_store  # noqa: PLW0603
    _pool_store = store or KubernetesPoolStore()
    return _pool_store


def get_pool_store() -> PoolStore:
    """Return the pool store. Raises if not initialized."""
    if _pool_store is None:
        raise RuntimeError("Pool store not initialized, call init_pool_store() first")
    return _pool_store


def get_pool_store_or_none() -> PoolStore | None:
    return _pool_store


def init_ca_manager(ca_manager: CAManager | None = None) -> CAManager:
    global _ca_manager  # noqa: PLW0603
    _ca_manager = ca_manager or CAManager(KubernetesSecretStore())
    return _ca_manager


def get_ca_manager() -> CAManager:
    """Return the CA manager. Raises if not initialized."""
    if _ca_manager is None:
        raise RuntimeError("CA manager not initialized, call init_ca_manager() first")
    return _ca_manager


def get_certificate_issuer() -> CertificateIssuer:
    return CertificateIssuer(settings.certs)


async def get_identity(
    x_authenticated_subject: str | None = Header(default=None),
    x_authenticated_pools: str | None = Header(default=None),
) -> AuthenticatedIdentity:
    """Identity forwarded by the upstream verifier. 401 when absent."""
    if not x_authenticated_subject or not x_authenticated_subject.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authenticated identity",
        )
    return AuthenticatedIdentity.from_header_values(x_authenticated_subject, x_authenticated_pools)
