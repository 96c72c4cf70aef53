"""Certificate Authority module for buildfleet.

Handles generation, loading and persistence of the CA that signs every pool's
gateway, client and worker certificates. The CA is an ECDSA P-256 key with a
self-signed certificate, stored in a single secret (``ca.crt``/``ca.key``).

Stored material that fails to parse, uses another key algorithm, or whose key
does not match its certificate is never used. It is reported as an alert and
either regenerated or, in strict mode, surfaced as ``InvalidCAError``.
"""

import datetime

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from buildfleet.config import CAConfig, settings
from buildfleet.k8s.protocol import (
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    Secret,
    SecretStore,
)
from buildfleet.logging_config import get_logger

logger = get_logger(__name__)

CA_CERT_KEY = "ca.crt"
CA_PRIVATE_KEY_KEY = "ca.key"

CA_LABELS = {
    "app.kubernetes.io/name": "buildkit-controller",
    "app.kubernetes.io/component": "ca",
    "app.kubernetes.io/managed-by": "buildkit-controller",
}


# --- Exceptions ---


class CertificateError(Exception):
    """Base exception for CA and certificate operations."""


class CANotFoundError(CertificateError):
    """Raised when no CA material is stored."""


class InvalidCAError(CertificateError):
    """Raised when stored CA material cannot be used."""


class CertificateAuthority:
    """Certificate Authority for issuing pool certificates."""

    def __init__(
        self,
        ca_cert: x509.Certificate,
        ca_key: ec.EllipticCurvePrivateKey,
    ):
        self._ca_cert = ca_cert
        self._ca_key = ca_key

    @property
    def ca_cert(self) -> x509.Certificate:
        return self._ca_cert

    @property
    def ca_key(self) -> ec.EllipticCurvePrivateKey:
        return self._ca_key

    @property
    def ca_cert_pem(self) -> bytes:
        """Return the CA certificate as PEM bytes."""
        return serialize_certificate(self._ca_cert)

    @property
    def fingerprint(self) -> str:
        return get_certificate_fingerprint(self._ca_cert)

    @classmethod
    def generate(cls, validity_days: int = 3650) -> "CertificateAuthority":
        """Generate a new CA certificate and P-256 key pair."""
        private_key = ec.generate_private_key(ec.SECP256R1())
        public_key = private_key.public_key()

        subject = issuer = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "BuildKit Controller"),
                x509.NameAttribute(NameOID.COMMON_NAME, "BuildKit CA"),
                x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            ]
        )

        now = datetime.datetime.now(datetime.UTC).replace(microsecond=0)

        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=validity_days))
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_cert_sign=True,
                    crl_sign=False,
                    key_encipherment=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key),
                critical=False,
            )
            .sign(private_key, hashes.SHA256())
        )

        logger.info(
            "Generated new CA certificate",
            fingerprint=get_certificate_fingerprint(cert)[:16],
            expires=cert.not_valid_after_utc.isoformat(),
        )

        return cls(ca_cert=cert, ca_key=private_key)

    @classmethod
    def load(cls, cert_pem: bytes, key_pem: bytes) -> "CertificateAuthority":
        """Load CA from PEM-encoded certificate and key.

        Accepts ``EC PRIVATE KEY`` and PKCS#8 keys.

        Raises:
            InvalidCAError: If either PEM fails to parse, the key is not
                P-256, or the key does not belong to the certificate.
        """
        try:
            cert = x509.load_pem_x509_certificate(cert_pem)
            key = serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidCAError(f"failed to parse CA material: {e}") from e

        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise InvalidCAError(f"expected ECDSA private key, got {type(key).__name__}")
        if not isinstance(key.curve, ec.SECP256R1):
            raise InvalidCAError(f"expected P-256 curve, got {key.curve.name}")

        cert_public = cert.public_key()
        if not isinstance(cert_public, ec.EllipticCurvePublicKey) or (
            cert_public.public_numbers() != key.public_key().public_numbers()
        ):
            raise InvalidCAError("CA private key does not match CA certificate")

        return cls(ca_cert=cert, ca_key=key)

    @classmethod
    def from_secret(cls, secret: Secret) -> "CertificateAuthority":
        cert_pem = secret.data.get(CA_CERT_KEY)
        key_pem = secret.data.get(CA_PRIVATE_KEY_KEY)
        if not cert_pem or not key_pem:
            raise InvalidCAError(
                f"secret {secret.namespace}/{secret.name} is missing "
                f"{CA_CERT_KEY} or {CA_PRIVATE_KEY_KEY}"
            )
        return cls.load(cert_pem, key_pem)

    def to_secret_data(self) -> dict[str, bytes]:
        return {
            CA_CERT_KEY: serialize_certificate(self._ca_cert),
            CA_PRIVATE_KEY_KEY: serialize_private_key(self._ca_key),
        }


# ── Serialization Helpers ────────────────────────────────────────────────


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def serialize_private_key(key: ec.EllipticCurvePrivateKey) -> bytes:
    """Serialize an EC private key as an ``EC PRIVATE KEY`` PEM block."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_certificate(pem_data: bytes) -> x509.Certificate:
    """Load certificate from PEM data."""
    return x509.load_pem_x509_certificate(pem_data)


def get_certificate_fingerprint(cert: x509.Certificate) -> str:
    """Get SHA256 fingerprint of certificate."""
    return cert.fingerprint(hashes.SHA256()).hex()


# ── Lifecycle ────────────────────────────────────────────────────────────


class CAManager:
    """Bootstraps, persists and reads the CA for one scope.

    Holds no CA state between calls; every call re-reads the secret store.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        name: str | None = None,
        namespace: str | None = None,
        ca_config: CAConfig | None = None,
    ):
        self._store = secret_store
        self._config = ca_config or settings.ca
        self.name = name or self._config.secret_name
        self.namespace = namespace or self._config.namespace

    async def ensure_ca(self) -> CertificateAuthority:
        """Return the stored CA, generating and persisting one if needed.

        Raises:
            InvalidCAError: If stored material is unusable and
                ``ca.fail_on_invalid`` is set.
        """
        try:
            secret = await self._store.get(self.name, self.namespace)
        except ObjectNotFoundError:
            return await self._bootstrap()

        try:
            return CertificateAuthority.from_secret(secret)
        except InvalidCAError as e:
            logger.critical(
                "Stored CA material is invalid",
                alert="ca_material_invalid",
                secret=self.name,
                namespace=self.namespace,
                error=str(e),
                regenerate=not self._config.fail_on_invalid,
            )
            if self._config.fail_on_invalid:
                raise
            return await self._regenerate(secret)

    async def get_ca(self) -> CertificateAuthority:
        """Read the stored CA without generating one.

        Raises:
            CANotFoundError: If no CA secret exists.
            InvalidCAError: If the stored material is unusable.
        """
        try:
            secret = await self._store.get(self.name, self.namespace)
        except ObjectNotFoundError as e:
            raise CANotFoundError(f"CA secret {self.namespace}/{self.name} not found") from e
        return CertificateAuthority.from_secret(secret)

    async def get_ca_cert_pem(self) -> bytes:
        ca = await self.get_ca()
        return ca.ca_cert_pem

    async def _bootstrap(self) -> CertificateAuthority:
        ca = CertificateAuthority.generate(validity_days=self._config.validity_days)
        try:
            await self._store.create(
                self.name, self.namespace, ca.to_secret_data(), dict(CA_LABELS)
            )
        except ObjectAlreadyExistsError:
            # Another reconciler stored its CA first; use theirs
            logger.info(
                "CA created concurrently, using stored CA",
                secret=self.name,
                namespace=self.namespace,
            )
            return await self.get_ca()

        logger.info(
            "Stored new CA",
            secret=self.name,
            namespace=self.namespace,
            fingerprint=ca.fingerprint[:16],
        )
        return ca

    async def _regenerate(self, existing: Secret) -> CertificateAuthority:
        ca = CertificateAuthority.generate(validity_days=self._config.validity_days)
        await self._store.update(
            self.name,
            self.namespace,
            ca.to_secret_data(),
            {**existing.labels, **CA_LABELS},
            owner_references=existing.owner_references,
            resource_version=existing.resource_version,
        )
        logger.warning(
            "Regenerated CA; certificates issued by the previous CA are no longer trusted",
            secret=self.name,
            namespace=self.namespace,
            fingerprint=ca.fingerprint[:16],
        )
        return ca
