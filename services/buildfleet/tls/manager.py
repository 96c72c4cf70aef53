"""Per-pool TLS material.

Each TLS-enabled pool owns three secrets, all signed by the shared CA:

- ``<pool>-tls``: gateway server certificate
- ``<pool>-client-certs``: client certificate handed to build clients
- ``<pool>-worker-tls``: server certificate presented by workers

Reissuing the gateway certificate always reissues the client certificate.
The worker certificate rotates on its own schedule.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from buildfleet.certs.ca import CA_CERT_KEY, CAManager, CertificateAuthority
from buildfleet.certs.issuer import (
    CertificateInfo,
    CertificateIssuer,
    CertificateRequest,
    IssuedCertificate,
    certificate_info_from_pem,
    should_rotate,
)
from buildfleet.certs.store import CertificateKind, CertificateStore, certificate_info_from_secret
from buildfleet.config import CertConfig, KubernetesConfig, settings
from buildfleet.fleet.models import Pool
from buildfleet.k8s.kubernetes import POOL_LABEL
from buildfleet.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_SERVER_ORGANIZATION = "BuildKit Pool"
CLIENT_ORGANIZATION = "BuildKit Client"
WORKER_ORGANIZATION = "BuildKit Worker"

# Cluster pod and service ranges workers are commonly reached on
WORKER_IP_SANS = ("10.244.0.0", "10.96.0.0", "172.16.0.0")


def server_secret_name(pool_name: str) -> str:
    return f"{pool_name}-tls"


def client_secret_name(pool_name: str) -> str:
    return f"{pool_name}-client-certs"


def worker_secret_name(pool_name: str) -> str:
    return f"{pool_name}-worker-tls"


def pool_labels(component: str, pool_name: str) -> dict[str, str]:
    return {
        "app.kubernetes.io/name": "buildkit-controller",
        "app.kubernetes.io/component": component,
        "app.kubernetes.io/managed-by": "buildkit-controller",
        POOL_LABEL: pool_name,
    }


def server_dns_names(pool: Pool) -> tuple[str, ...]:
    """Service DNS names of the pool gateway, plus localhost and any external hostname."""
    svc, ns = pool.name, pool.namespace
    names = [
        svc,
        f"{svc}.{ns}",
        f"{svc}.{ns}.svc",
        f"{svc}.{ns}.svc.cluster.local",
        "localhost",
    ]
    hostname = pool.spec.external_hostname
    if hostname and hostname not in names:
        names.append(hostname)
    return tuple(names)


@dataclass
class TLSStatus:
    """Secret names and gateway certificate validity for pool status."""

    server_secret: str
    client_secret: str
    worker_secret: str
    server_cert: CertificateInfo | None = None
    rotated: list[str] = field(default_factory=list)

    def to_status(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "serverSecret": self.server_secret,
            "clientSecret": self.client_secret,
            "workerSecret": self.worker_secret,
        }
        if self.server_cert is not None:
            status["serverCert"] = self.server_cert.to_status()
        return status


class TLSManager:
    """Issues and rotates a pool's TLS secrets."""

    def __init__(
        self,
        ca_manager: CAManager,
        issuer: CertificateIssuer,
        cert_store: CertificateStore,
        certs: CertConfig | None = None,
        k8s_config: KubernetesConfig | None = None,
    ):
        self._ca_manager = ca_manager
        self._issuer = issuer
        self._cert_store = cert_store
        self._certs = certs or settings.certs
        self._k8s_config = k8s_config or settings.kubernetes

    async def reconcile(
        self,
        pool: Pool,
        now: datetime | None = None,
        ca: CertificateAuthority | None = None,
    ) -> TLSStatus | None:
        """Rotate whichever of the pool's certificates are due.

        Uses ``ca`` when given, otherwise ensures the CA first. Returns None
        when TLS is disabled for the pool.
        """
        if not pool.spec.tls.enabled:
            return None

        now = now or datetime.now(UTC)
        if ca is None:
            ca = await self._ca_manager.ensure_ca()
        ca_pem = ca.ca_cert_pem
        rotate_before = pool.spec.rotate_before_expiry(self._certs)

        status = TLSStatus(
            server_secret=server_secret_name(pool.name),
            client_secret=client_secret_name(pool.name),
            worker_secret=worker_secret_name(pool.name),
        )

        server_info = await self._current_info(
            status.server_secret, pool.namespace, CertificateKind.SERVER, ca_pem, rotate_before
        )
        client_info = await self._current_info(
            status.client_secret, pool.namespace, CertificateKind.CLIENT, ca_pem, rotate_before
        )

        if should_rotate(server_info, rotate_before, now):
            issued = await self._issue_server(pool, ca, ca_pem)
            server_info = certificate_info_from_pem(issued.cert_pem, rotate_before)
            status.rotated.append(status.server_secret)
            await self._issue_client(pool, ca, ca_pem)
            status.rotated.append(status.client_secret)
        elif should_rotate(client_info, rotate_before, now):
            await self._issue_client(pool, ca, ca_pem)
            status.rotated.append(status.client_secret)
        status.server_cert = server_info

        worker_info = await self._current_info(
            status.worker_secret, pool.namespace, CertificateKind.SERVER, ca_pem, rotate_before
        )
        if should_rotate(worker_info, rotate_before, now):
            await self._issue_worker(pool, ca, ca_pem)
            status.rotated.append(status.worker_secret)

        if status.rotated:
            logger.info(
                "Rotated pool certificates",
                pool=pool.name,
                namespace=pool.namespace,
                secrets=status.rotated,
            )
        return status

    async def _current_info(
        self,
        name: str,
        namespace: str,
        kind: CertificateKind,
        ca_pem: bytes,
        rotate_before: timedelta,
    ) -> CertificateInfo | None:
        """Stored certificate validity, or None when it must be reissued.

        A certificate bundled with a different CA than the current one was
        signed by a replaced CA and is treated as missing.
        """
        secret = await self._cert_store.get(name, namespace)
        if secret is None:
            return None
        if secret.data.get(CA_CERT_KEY) != ca_pem:
            logger.info("Certificate bundles a stale CA", secret=name, namespace=namespace)
            return None
        return certificate_info_from_secret(secret, kind, rotate_before)

    async def _issue_server(
        self, pool: Pool, ca: CertificateAuthority, ca_pem: bytes
    ) -> IssuedCertificate:
        request = CertificateRequest(
            common_name=f"{pool.name}.{pool.namespace}.svc.cluster.local",
            dns_names=server_dns_names(pool),
            ip_addresses=("127.0.0.1",),
            organization=pool.spec.tls.auto.organization or DEFAULT_SERVER_ORGANIZATION,
            duration=pool.spec.server_cert_duration(self._certs),
            is_server=True,
        )
        issued = self._issuer.issue(request, ca)
        await self._cert_store.store(
            server_secret_name(pool.name),
            pool.namespace,
            issued.cert_pem,
            issued.key_pem,
            ca_cert_pem=ca_pem,
            labels=pool_labels("tls", pool.name),
            kind=CertificateKind.SERVER,
            owner_references=[pool.owner_reference(self._k8s_config)],
        )
        return issued

    async def _issue_client(
        self, pool: Pool, ca: CertificateAuthority, ca_pem: bytes
    ) -> IssuedCertificate:
        request = CertificateRequest(
            common_name=f"client@{pool.name}",
            organization=CLIENT_ORGANIZATION,
            duration=pool.spec.client_cert_duration(self._certs),
            is_client=True,
        )
        issued = self._issuer.issue(request, ca)
        await self._cert_store.store(
            client_secret_name(pool.name),
            pool.namespace,
            issued.cert_pem,
            issued.key_pem,
            ca_cert_pem=ca_pem,
            labels=pool_labels("client-certs", pool.name),
            kind=CertificateKind.CLIENT,
            owner_references=[pool.owner_reference(self._k8s_config)],
        )
        return issued

    async def _issue_worker(
        self, pool: Pool, ca: CertificateAuthority, ca_pem: bytes
    ) -> IssuedCertificate:
        worker_host = f"buildkit-worker.{pool.namespace}.svc.cluster.local"
        request = CertificateRequest(
            common_name=worker_host,
            dns_names=(worker_host, f"*.{pool.namespace}.svc.cluster.local"),
            ip_addresses=WORKER_IP_SANS,
            organization=WORKER_ORGANIZATION,
            duration=pool.spec.server_cert_duration(self._certs),
            is_server=True,
        )
        issued = self._issuer.issue(request, ca)
        await self._cert_store.store(
            worker_secret_name(pool.name),
            pool.namespace,
            issued.cert_pem,
            issued.key_pem,
            ca_cert_pem=ca_pem,
            labels=pool_labels("worker-tls", pool.name),
            kind=CertificateKind.SERVER,
            owner_references=[pool.owner_reference(self._k8s_config)],
        )
        return issued
