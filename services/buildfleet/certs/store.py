"""Idempotent persistence of certificate material.

Secrets are only written when their managed data keys or desired labels
differ from what is stored. Unconditional writes would wake every watcher of
the secret and restart workloads that mount it.
"""

from datetime import timedelta
from enum import StrEnum

from buildfleet.certs.ca import CA_CERT_KEY, CA_PRIVATE_KEY_KEY
from buildfleet.certs.issuer import CertificateInfo, certificate_info_from_pem
from buildfleet.k8s.protocol import (
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    OwnerReference,
    Secret,
    SecretStore,
)
from buildfleet.logging_config import get_logger

logger = get_logger(__name__)


class CertificateKind(StrEnum):
    """Which fixed data keys a secret uses."""

    CA = "ca"
    SERVER = "server"
    CLIENT = "client"


# (certificate key, private key key) per kind
DATA_KEYS: dict[CertificateKind, tuple[str, str]] = {
    CertificateKind.CA: (CA_CERT_KEY, CA_PRIVATE_KEY_KEY),
    CertificateKind.SERVER: ("tls.crt", "tls.key"),
    CertificateKind.CLIENT: ("client.crt", "client.key"),
}


def managed_keys(kind: CertificateKind) -> frozenset[str]:
    """Data keys owned by this kind, including the optional CA bundle."""
    return frozenset(DATA_KEYS[kind]) | {CA_CERT_KEY}


def build_secret_data(
    kind: CertificateKind,
    cert_pem: bytes,
    key_pem: bytes,
    ca_cert_pem: bytes | None = None,
) -> dict[str, bytes]:
    cert_key, private_key_key = DATA_KEYS[kind]
    data = {cert_key: cert_pem, private_key_key: key_pem}
    if ca_cert_pem is not None and kind is not CertificateKind.CA:
        data[CA_CERT_KEY] = ca_cert_pem
    return data


def needs_update(
    existing: Secret,
    desired_data: dict[str, bytes],
    labels: dict[str, str],
    kind: CertificateKind = CertificateKind.SERVER,
) -> bool:
    """Whether the stored secret differs from the desired content.

    A managed key present in the secret but absent from ``desired_data``
    counts as a difference. Labels only differ when a desired label is
    missing or has another value; extra stored labels are ignored.
    """
    for key in managed_keys(kind) | desired_data.keys():
        if existing.data.get(key) != desired_data.get(key):
            return True
    return any(existing.labels.get(key) != value for key, value in labels.items())


class CertificateStore:
    """Writes issued certificates to secrets only when they changed."""

    def __init__(self, secret_store: SecretStore):
        self._store = secret_store

    async def get(self, name: str, namespace: str) -> Secret | None:
        try:
            return await self._store.get(name, namespace)
        except ObjectNotFoundError:
            return None

    async def store(
        self,
        name: str,
        namespace: str,
        cert_pem: bytes,
        key_pem: bytes,
        ca_cert_pem: bytes | None = None,
        labels: dict[str, str] | None = None,
        kind: CertificateKind = CertificateKind.SERVER,
        owner_references: list[OwnerReference] | None = None,
    ) -> bool:
        """Create or update the secret. Returns whether a write happened."""
        labels = labels or {}
        desired = build_secret_data(kind, cert_pem, key_pem, ca_cert_pem)

        existing = await self.get(name, namespace)
        if existing is None:
            try:
                await self._store.create(name, namespace, desired, labels, owner_references)
            except ObjectAlreadyExistsError:
                existing = await self._store.get(name, namespace)
            else:
                logger.info(
                    "Created certificate secret", secret=name, namespace=namespace, kind=kind.value
                )
                return True

        if not needs_update(existing, desired, labels, kind):
            logger.debug("Certificate secret unchanged", secret=name, namespace=namespace)
            return False

        # Keys outside this kind's set belong to someone else
        data = {
            key: value for key, value in existing.data.items() if key not in managed_keys(kind)
        }
        data.update(desired)

        await self._store.update(
            name,
            namespace,
            data,
            {**existing.labels, **labels},
            owner_references=owner_references or existing.owner_references,
            resource_version=existing.resource_version,
        )
        logger.info("Updated certificate secret", secret=name, namespace=namespace, kind=kind.value)
        return True

    async def read_certificate_info(
        self,
        name: str,
        namespace: str,
        kind: CertificateKind = CertificateKind.SERVER,
        renewal_window: timedelta | None = None,
    ) -> CertificateInfo | None:
        """Validity of the stored certificate, or None if absent or unreadable."""
        secret = await self.get(name, namespace)
        if secret is None:
            return None
        return certificate_info_from_secret(secret, kind, renewal_window)


def certificate_info_from_secret(
    secret: Secret,
    kind: CertificateKind,
    renewal_window: timedelta | None = None,
) -> CertificateInfo | None:
    cert_pem = secret.data.get(DATA_KEYS[kind][0])
    if not cert_pem:
        return None
    try:
        return certificate_info_from_pem(cert_pem, renewal_window)
    except ValueError as e:
        logger.warning(
            "Stored certificate is unreadable",
            secret=secret.name,
            namespace=secret.namespace,
            error=str(e),
        )
        return None
