"""Tests for the pool read endpoints."""

from unittest.mock import AsyncMock

import httpx
import pytest

from buildfleet.api.app import create_application
from buildfleet.api.dependencies import get_pool_store
from buildfleet.k8s.protocol import StoreError


@pytest.fixture
def app(pool_store):
    application = create_application()
    application.dependency_overrides[get_pool_store] = lambda: pool_store
    return application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _headers(subject: str = "alice", pools: str = "ci") -> dict[str, str]:
    return {"X-Authenticated-Subject": subject, "X-Authenticated-Pools": pools}


class TestGetPool:
    async def test_returns_counts_and_secret_names(self, client, pool_store, pool_factory):
        raw = pool_factory(min_idle=2)
        raw["status"] = {
            "phase": "Running",
            "scaleToZeroActive": False,
            "workers": {"total": 3, "ready": 2, "idle": 2, "allocated": 0, "provisioning": 1},
            "serverCert": {
                "notBefore": "2026-01-01T00:00:00Z",
                "notAfter": "2027-01-01T00:00:00Z",
            },
        }
        pool_store.add(raw)

        res = await client.get("/api/v1/pools/builds/ci", headers=_headers())

        assert res.status_code == 200
        body = res.json()
        assert body["name"] == "ci"
        assert body["namespace"] == "builds"
        assert body["phase"] == "Running"
        assert body["min_idle"] == 2
        assert body["workers"]["idle"] == 2
        assert body["workers"]["provisioning"] == 1
        assert body["workers"]["failed"] == 0
        assert body["tls_enabled"] is True
        assert body["secrets"] == {
            "server": "ci-tls",
            "client": "ci-client-certs",
            "worker": "ci-worker-tls",
        }
        assert body["server_cert"]["notAfter"] == "2027-01-01T00:00:00Z"

    async def test_tls_disabled_has_no_secrets(self, client, pool_store, pool_factory):
        pool_store.add(pool_factory(tls_enabled=False))

        res = await client.get("/api/v1/pools/builds/ci", headers=_headers())

        assert res.status_code == 200
        assert res.json()["secrets"] is None
        assert res.json()["phase"] == ""

    async def test_missing_identity(self, client, pool_store, pool_factory):
        pool_store.add(pool_factory())

        res = await client.get("/api/v1/pools/builds/ci")

        assert res.status_code == 401

    async def test_blank_subject(self, client, pool_store, pool_factory):
        pool_store.add(pool_factory())

        res = await client.get("/api/v1/pools/builds/ci", headers=_headers(subject=""))

        assert res.status_code == 401

    async def test_not_found(self, client):
        res = await client.get("/api/v1/pools/builds/missing", headers=_headers(pools="*"))

        assert res.status_code == 404
        assert res.json()["detail"] == "Pool not found"

    async def test_pool_not_granted(self, client, pool_store, pool_factory):
        pool_store.add(pool_factory())

        res = await client.get("/api/v1/pools/builds/ci", headers=_headers(pools="release"))

        assert res.status_code == 403
        assert res.json()["detail"] == "Access denied"

    async def test_rbac_denies_unlisted_user(self, client, pool_store, pool_factory):
        pool_store.add(
            pool_factory(
                auth={"rbac": {"enabled": True, "rules": [{"users": ["bob"], "pools": ["ci"]}]}}
            )
        )

        denied = await client.get("/api/v1/pools/builds/ci", headers=_headers("alice"))
        allowed = await client.get("/api/v1/pools/builds/ci", headers=_headers("bob"))

        assert denied.status_code == 403
        assert allowed.status_code == 200

    async def test_request_id_echoed(self, client, pool_store, pool_factory):
        pool_store.add(pool_factory())

        res = await client.get(
            "/api/v1/pools/builds/ci", headers={**_headers(), "X-Request-ID": "req-123"}
        )

        assert res.headers["X-Request-ID"] == "req-123"

    async def test_request_id_generated(self, client, pool_store, pool_factory):
        pool_store.add(pool_factory())

        res = await client.get("/api/v1/pools/builds/ci", headers=_headers())

        assert res.headers["X-Request-ID"]

    async def test_store_failure_is_503(self, app, client):
        failing = AsyncMock()
        failing.get_pool.side_effect = StoreError("Failed to get pool: 500 boom")
        app.dependency_overrides[get_pool_store] = lambda: failing

        res = await client.get("/api/v1/pools/builds/ci", headers=_headers())

        assert res.status_code == 503
        assert res.json()["detail"] == "Kubernetes API unavailable"


class TestListPools:
    async def test_lists_permitted_pools(self, client, pool_store, pool_factory):
        ci = pool_factory("ci")
        ci["status"] = {"phase": "Running", "endpoint": "tcp://ci.builds.svc:1235"}
        pool_store.add(ci)
        pool_store.add(pool_factory("release"))
        pool_store.add(pool_factory("secret", namespace="other"))

        res = await client.get("/api/v1/pools", headers=_headers(pools="ci,release"))

        assert res.status_code == 200
        pools = sorted(res.json()["pools"], key=lambda p: p["name"])
        assert pools == [
            {
                "name": "ci",
                "namespace": "builds",
                "endpoint": "tcp://ci.builds.svc:1235",
                "status": "Running",
            },
            {"name": "release", "namespace": "builds", "endpoint": "", "status": "Unknown"},
        ]

    async def test_wildcard_grant_sees_everything(self, client, pool_store, pool_factory):
        pool_store.add(pool_factory("ci"))
        pool_store.add(pool_factory("release", namespace="other"))

        res = await client.get("/api/v1/pools", headers=_headers(pools="*"))

        assert {p["name"] for p in res.json()["pools"]} == {"ci", "release"}

    async def test_missing_identity(self, client):
        res = await client.get("/api/v1/pools")

        assert res.status_code == 401

    async def test_malformed_pool_skipped(self, client, pool_store, pool_factory):
        broken = pool_factory("broken")
        broken["spec"]["scaling"]["min"] = -1
        pool_store.add(broken)
        pool_store.add(pool_factory("ci"))

        res = await client.get("/api/v1/pools", headers=_headers(pools="*"))

        assert [p["name"] for p in res.json()["pools"]] == ["ci"]
