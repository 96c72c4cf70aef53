"""Pool access checks for pre-authenticated identities.

Identity verification happens upstream. By the time a request reaches this
module it carries a subject and the pool names the verifier granted. Access
to pool X requires both:

1. The identity lists X (or ``*``) among its pools.
2. If the pool enables RBAC, some rule matches both the subject and X.
"""

from dataclasses import dataclass

from buildfleet.fleet.models import Pool
from buildfleet.logging_config import get_logger

logger = get_logger(__name__)


class PoolAccessDenied(Exception):
    """Raised when an identity may not use a pool."""

    def __init__(self, subject: str, pool_name: str, reason: str) -> None:
        self.subject = subject
        self.pool_name = pool_name
        self.reason = reason
        super().__init__(f"access denied: {subject} may not use pool {pool_name} ({reason})")


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Subject and permitted pools as asserted by the identity verifier."""

    subject: str
    pools: frozenset[str] = frozenset()

    @classmethod
    def from_header_values(cls, subject: str, pools: str | None) -> "AuthenticatedIdentity":
        """Build from a subject and a comma-separated pool list."""
        names = frozenset(p.strip() for p in (pools or "").split(",") if p.strip())
        return cls(subject=subject.strip(), pools=names)


def match_pattern(pattern: str, value: str) -> bool:
    """Match ``*``, a ``prefix*`` wildcard, or an exact value."""
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    return pattern == value


def _matches_any(patterns: list[str], value: str) -> bool:
    return any(match_pattern(pattern, value) for pattern in patterns)


def check_pool_access(identity: AuthenticatedIdentity, pool: Pool) -> None:
    """Raise ``PoolAccessDenied`` unless ``identity`` may use ``pool``."""
    if not identity.subject:
        raise PoolAccessDenied(identity.subject, pool.name, "no subject")

    if "*" not in identity.pools and pool.name not in identity.pools:
        raise PoolAccessDenied(identity.subject, pool.name, "pool not granted to identity")

    rbac = pool.spec.auth.rbac
    if rbac is None or not rbac.enabled:
        return

    for rule in rbac.rules:
        if _matches_any(rule.users, identity.subject) and _matches_any(rule.pools, pool.name):
            return

    raise PoolAccessDenied(identity.subject, pool.name, "no matching RBAC rule")


def is_permitted(identity: AuthenticatedIdentity, pool: Pool) -> bool:
    """Whether ``identity`` may use ``pool``. Denials are logged at debug level."""
    try:
        check_pool_access(identity, pool)
    except PoolAccessDenied as e:
        logger.debug(
            "Pool access denied",
            subject=identity.subject,
            pool=pool.name,
            namespace=pool.namespace,
            reason=e.reason,
        )
        return False
    return True
