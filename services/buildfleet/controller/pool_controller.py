"""One reconciliation tick for one pool.

Order within a tick: CA, TLS secrets, workers, status. A TLS failure does not
stop worker reconciliation; both are reported in the pool status and in the
returned outcome so the caller can back off.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from buildfleet.certs.ca import CAManager, CertificateError
from buildfleet.controller.status import (
    build_pool_status,
    calculate_requeue_interval,
    status_changed,
)
from buildfleet.fleet.models import Pool
from buildfleet.fleet.reconciler import ReconcileResult, WorkerReconciler
from buildfleet.k8s.protocol import PoolStore, StoreError
from buildfleet.logging_config import get_logger
from buildfleet.tls.manager import TLSManager, TLSStatus

logger = get_logger(__name__)


@dataclass
class PoolReconcileOutcome:
    """What one tick did and when the pool wants its next tick."""

    pool: Pool
    workers: ReconcileResult | None
    tls: TLSStatus | None
    status: dict[str, Any]
    status_written: bool
    requeue_after: timedelta
    errors: list[str]

    @property
    def ok(self) -> bool:
        return not self.errors and (self.workers is None or self.workers.ok)


class PoolReconciler:
    """Runs the CA, TLS, worker and status steps for a pool."""

    def __init__(
        self,
        pool_store: PoolStore,
        ca_manager: CAManager,
        tls_manager: TLSManager,
        worker_reconciler: WorkerReconciler,
    ):
        self._pool_store = pool_store
        self._ca_manager = ca_manager
        self._tls_manager = tls_manager
        self._worker_reconciler = worker_reconciler

    async def reconcile(self, pool: Pool, now: datetime | None = None) -> PoolReconcileOutcome:
        now = now or datetime.now(UTC)
        log = logger.bind(pool=pool.name, namespace=pool.namespace)
        errors: list[str] = []

        tls: TLSStatus | None = None
        if pool.spec.tls.enabled:
            try:
                ca = await self._ca_manager.ensure_ca()
                tls = await self._tls_manager.reconcile(pool, now, ca=ca)
            except (CertificateError, StoreError) as e:
                log.error("TLS reconciliation failed", error=str(e))
                errors.append(f"tls: {e}")

        workers: ReconcileResult | None = None
        try:
            workers = await self._worker_reconciler.reconcile(pool, now)
        except StoreError as e:
            log.error("Worker reconciliation failed", error=str(e))
            errors.append(f"workers: {e}")

        status = build_pool_status(pool, workers, tls, error="; ".join(errors) or None)
        status_written = False
        if status_changed(pool.status, status):
            try:
                await self._pool_store.update_pool_status(pool.namespace, pool.name, status)
                status_written = True
            except StoreError as e:
                log.error("Failed to update pool status", error=str(e))
                errors.append(f"status: {e}")
            else:
                log.debug("Pool status updated", phase=status.get("phase"))

        requeue_after = calculate_requeue_interval(
            pool.spec.tls.enabled, tls.server_cert if tls else None, now
        )

        return PoolReconcileOutcome(
            pool=pool,
            workers=workers,
            tls=tls,
            status=status,
            status_written=status_written,
            requeue_after=requeue_after,
            errors=errors,
        )
