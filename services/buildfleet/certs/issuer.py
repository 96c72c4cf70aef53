"""Leaf certificate issuance and renewal timing."""

import datetime
import ipaddress
from dataclasses import dataclass
from typing import Any

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from buildfleet.certs.ca import (
    CertificateAuthority,
    CertificateError,
    serialize_certificate,
    serialize_private_key,
)
from buildfleet.config import CertConfig, settings
from buildfleet.logging_config import get_logger

logger = get_logger(__name__)

SHORT_LIVED_RENEWAL_FRACTION = 0.8


class CertificateIssueError(CertificateError):
    """Raised when a leaf certificate cannot be generated or signed."""


@dataclass(frozen=True)
class CertificateRequest:
    """Subject, SANs, lifetime and usage of a leaf certificate."""

    common_name: str
    dns_names: tuple[str, ...] = ()
    ip_addresses: tuple[str, ...] = ()
    organization: str = ""
    duration: datetime.timedelta | None = None
    is_server: bool = False
    is_client: bool = False


@dataclass(frozen=True)
class CertificateInfo:
    """Validity of an issued certificate.

    ``renewal_time`` is None when the info was read back from stored material
    without a renewal window.
    """

    not_before: datetime.datetime
    not_after: datetime.datetime
    renewal_time: datetime.datetime | None = None

    def to_status(self) -> dict[str, Any]:
        status = {
            "notBefore": _format(self.not_before),
            "notAfter": _format(self.not_after),
        }
        if self.renewal_time is not None:
            status["renewalTime"] = _format(self.renewal_time)
        return status


@dataclass(frozen=True)
class IssuedCertificate:
    cert_pem: bytes
    key_pem: bytes
    info: CertificateInfo


def _format(value: datetime.datetime) -> str:
    return value.astimezone(datetime.UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def compute_renewal_time(
    not_before: datetime.datetime,
    not_after: datetime.datetime,
    renewal_window: datetime.timedelta,
) -> datetime.datetime:
    """When a certificate should be renewed.

    Certificates living shorter than ``renewal_window`` renew 80% of their
    lifetime before expiry; longer ones renew ``renewal_window`` before
    expiry. A non-positive window also uses the 80% rule. Never earlier than
    ``not_before``.
    """
    duration = not_after - not_before
    if renewal_window <= datetime.timedelta(0) or duration < renewal_window:
        renewal_time = not_after - duration * SHORT_LIVED_RENEWAL_FRACTION
    else:
        renewal_time = not_after - renewal_window
    return max(renewal_time, not_before)


def should_rotate(
    info: CertificateInfo | None,
    rotate_before: datetime.timedelta,
    now: datetime.datetime,
) -> bool:
    """Whether a certificate is due for reissue at ``now``.

    Missing info always rotates. A stored renewal time wins; otherwise it is
    recomputed from the validity window and ``rotate_before``.
    """
    if info is None:
        return True
    renewal_time = info.renewal_time or compute_renewal_time(
        info.not_before, info.not_after, rotate_before
    )
    return now >= renewal_time


def certificate_info_from_pem(
    cert_pem: bytes, renewal_window: datetime.timedelta | None = None
) -> CertificateInfo:
    """Read validity back from a PEM certificate.

    Raises:
        ValueError: If the PEM does not hold a certificate.
    """
    cert = x509.load_pem_x509_certificate(cert_pem)
    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    renewal_time = None
    if renewal_window is not None:
        renewal_time = compute_renewal_time(not_before, not_after, renewal_window)
    return CertificateInfo(not_before=not_before, not_after=not_after, renewal_time=renewal_time)


class CertificateIssuer:
    """Issues leaf certificates signed by a CA.

    Issuance is not retried; callers decide whether to try again.
    """

    def __init__(self, config: CertConfig | None = None):
        self._config = config or settings.certs

    def default_duration(self, request: CertificateRequest) -> datetime.timedelta:
        if request.duration is not None:
            return request.duration
        if request.is_server:
            return self._config.server_cert_duration
        return self._config.client_cert_duration

    def issue(self, request: CertificateRequest, ca: CertificateAuthority) -> IssuedCertificate:
        """Generate a fresh P-256 key and a certificate for ``request``.

        Raises:
            CertificateIssueError: If the request is unusable or signing fails.
        """
        duration = self.default_duration(request)
        if duration <= datetime.timedelta(0):
            raise CertificateIssueError(f"certificate duration must be positive, got {duration}")

        try:
            private_key = ec.generate_private_key(ec.SECP256R1())
            public_key = private_key.public_key()

            name_attributes = [x509.NameAttribute(NameOID.COMMON_NAME, request.common_name)]
            if request.organization:
                name_attributes.append(
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, request.organization)
                )

            now = datetime.datetime.now(datetime.UTC).replace(microsecond=0)
            not_after = now + duration

            builder = (
                x509.CertificateBuilder()
                .subject_name(x509.Name(name_attributes))
                .issuer_name(ca.ca_cert.subject)
                .public_key(public_key)
                .serial_number(x509.random_serial_number())
                .not_valid_before(now)
                .not_valid_after(not_after)
                .add_extension(
                    x509.BasicConstraints(ca=False, path_length=None),
                    critical=True,
                )
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        key_encipherment=True,
                        content_commitment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.AuthorityKeyIdentifier.from_issuer_public_key(ca.ca_key.public_key()),
                    critical=False,
                )
            )

            usages = []
            if request.is_server:
                usages.append(ExtendedKeyUsageOID.SERVER_AUTH)
            if request.is_client:
                usages.append(ExtendedKeyUsageOID.CLIENT_AUTH)
            if usages:
                builder = builder.add_extension(x509.ExtendedKeyUsage(usages), critical=False)

            sans: list[x509.GeneralName] = [x509.DNSName(name) for name in request.dns_names]
            sans.extend(
                x509.IPAddress(ipaddress.ip_address(ip)) for ip in request.ip_addresses
            )
            if sans:
                builder = builder.add_extension(
                    x509.SubjectAlternativeName(sans), critical=False
                )

            cert = builder.sign(ca.ca_key, hashes.SHA256())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.error(
                "Failed to issue certificate", common_name=request.common_name, error=str(e)
            )
            raise CertificateIssueError(
                f"failed to issue certificate for {request.common_name}: {e}"
            ) from e

        info = CertificateInfo(
            not_before=now,
            not_after=not_after,
            renewal_time=compute_renewal_time(now, not_after, self._config.renewal_window),
        )

        logger.info(
            "Issued certificate",
            common_name=request.common_name,
            server=request.is_server,
            client=request.is_client,
            expires=_format(not_after),
        )

        return IssuedCertificate(
            cert_pem=serialize_certificate(cert),
            key_pem=serialize_private_key(private_key),
            info=info,
        )
