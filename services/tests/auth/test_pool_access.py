"""Tests for pool access checks."""

import pytest

from buildfleet.auth.pool_access import (
    AuthenticatedIdentity,
    PoolAccessDenied,
    check_pool_access,
    is_permitted,
    match_pattern,
)
from buildfleet.fleet.models import Pool


def _pool(name: str = "ci", rbac: dict | None = None) -> Pool:
    spec: dict = {"scaling": {"min": 0}}
    if rbac is not None:
        spec["auth"] = {"rbac": rbac}
    return Pool.from_k8s({"metadata": {"name": name, "namespace": "builds"}, "spec": spec})


class TestMatchPattern:
    @pytest.mark.parametrize(
        "pattern,value,expected",
        [
            ("*", "anything", True),
            ("ci", "ci", True),
            ("ci", "ci-2", False),
            ("team-*", "team-a", True),
            ("team-*", "team-", True),
            ("team-*", "other", False),
        ],
    )
    def test_patterns(self, pattern, value, expected):
        assert match_pattern(pattern, value) is expected


class TestAuthenticatedIdentity:
    def test_from_header_values(self):
        identity = AuthenticatedIdentity.from_header_values(" alice ", "ci, release ,,")
        assert identity.subject == "alice"
        assert identity.pools == frozenset({"ci", "release"})

    def test_missing_pools(self):
        assert AuthenticatedIdentity.from_header_values("alice", None).pools == frozenset()


class TestCheckPoolAccess:
    def test_granted_pool_without_rbac(self):
        check_pool_access(AuthenticatedIdentity("alice", frozenset({"ci"})), _pool())

    def test_wildcard_pool_grant(self):
        check_pool_access(AuthenticatedIdentity("alice", frozenset({"*"})), _pool("release"))

    def test_pool_not_granted(self):
        with pytest.raises(PoolAccessDenied) as exc_info:
            check_pool_access(AuthenticatedIdentity("alice", frozenset({"other"})), _pool())
        assert exc_info.value.reason == "pool not granted to identity"
        assert exc_info.value.pool_name == "ci"

    def test_empty_subject_denied(self):
        with pytest.raises(PoolAccessDenied, match="no subject"):
            check_pool_access(AuthenticatedIdentity("", frozenset({"*"})), _pool())

    def test_rbac_rule_must_match_user_and_pool(self):
        pool = _pool(rbac={"enabled": True, "rules": [{"users": ["alice"], "pools": ["ci"]}]})
        check_pool_access(AuthenticatedIdentity("alice", frozenset({"ci"})), pool)

        with pytest.raises(PoolAccessDenied, match="no matching RBAC rule"):
            check_pool_access(AuthenticatedIdentity("bob", frozenset({"ci"})), pool)

    def test_rbac_wildcards(self):
        pool = _pool(
            "team-a-ci",
            rbac={"enabled": True, "rules": [{"users": ["svc-*"], "pools": ["team-a-*"]}]},
        )
        check_pool_access(AuthenticatedIdentity("svc-builder", frozenset({"*"})), pool)

    def test_rbac_rule_for_other_pool(self):
        pool = _pool(rbac={"enabled": True, "rules": [{"users": ["*"], "pools": ["release"]}]})
        with pytest.raises(PoolAccessDenied):
            check_pool_access(AuthenticatedIdentity("alice", frozenset({"ci"})), pool)

    def test_rbac_does_not_widen_grant(self):
        pool = _pool(rbac={"enabled": True, "rules": [{"users": ["*"], "pools": ["*"]}]})
        with pytest.raises(PoolAccessDenied, match="not granted"):
            check_pool_access(AuthenticatedIdentity("alice", frozenset()), pool)

    def test_disabled_rbac_ignored(self):
        pool = _pool(rbac={"enabled": False, "rules": []})
        check_pool_access(AuthenticatedIdentity("alice", frozenset({"ci"})), pool)

    def test_enabled_rbac_without_rules_denies(self):
        pool = _pool(rbac={"enabled": True})
        with pytest.raises(PoolAccessDenied):
            check_pool_access(AuthenticatedIdentity("alice", frozenset({"ci"})), pool)


class TestIsPermitted:
    def test_true_and_false(self):
        pool = _pool()
        assert is_permitted(AuthenticatedIdentity("alice", frozenset({"ci"})), pool) is True
        assert is_permitted(AuthenticatedIdentity("alice", frozenset()), pool) is False
