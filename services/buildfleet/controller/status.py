"""Pool status rendering and requeue timing."""

from datetime import datetime, timedelta
from typing import Any

from buildfleet.certs.issuer import CertificateInfo
from buildfleet.fleet.models import Pool, WorkerCategories
from buildfleet.fleet.reconciler import ReconcileResult
from buildfleet.tls.manager import TLSStatus

STATUS_UPDATE_INTERVAL = timedelta(seconds=30)
MIN_REQUEUE_INTERVAL = timedelta(seconds=1)

PHASE_RUNNING = "Running"
PHASE_DEGRADED = "Degraded"

# Keys owned by this controller; everything else in status is left alone
_MANAGED_KEYS = ("phase", "workers", "tls", "serverCert", "scaleToZeroActive", "message")


def worker_counts(categories: WorkerCategories, target: int) -> dict[str, int]:
    """Worker counters in the shape of the pool's ``status.workers``."""
    ready = categories.ready
    # Stuck workers still report a provisioning phase
    provisioning = len(categories.provisioning) + len(categories.stuck)
    desired = target + len(categories.allocated)
    return {
        "total": categories.total,
        "ready": ready,
        "idle": len(categories.idle),
        "allocated": len(categories.allocated),
        "provisioning": provisioning,
        "failed": len(categories.failed),
        "desired": desired,
        "needed": max(desired - (ready + provisioning), 0),
    }


def build_pool_status(
    pool: Pool,
    workers: ReconcileResult | None,
    tls: TLSStatus | None,
    error: str | None = None,
) -> dict[str, Any]:
    """Render the controller-owned part of the pool status.

    Fields not produced this tick keep their current values.
    """
    status = {key: pool.status[key] for key in _MANAGED_KEYS if key in pool.status}

    if workers is not None:
        status["workers"] = worker_counts(workers.categories, workers.plan.target)
        status["scaleToZeroActive"] = workers.plan.scale_to_zero

    if tls is not None:
        tls_status = tls.to_status()
        server_cert = tls_status.pop("serverCert", None)
        status["tls"] = tls_status
        if server_cert is not None:
            status["serverCert"] = server_cert
    elif not pool.spec.tls.enabled:
        # None removes the field under a merge patch
        status["tls"] = None
        status["serverCert"] = None

    failures = list(workers.failures) if workers is not None else []
    if error:
        failures.insert(0, error)

    if failures:
        status["phase"] = PHASE_DEGRADED
        status["message"] = "; ".join(failures)
    else:
        status["phase"] = PHASE_RUNNING
        status["message"] = ""

    return status


def status_changed(current: dict[str, Any], desired: dict[str, Any]) -> bool:
    """Whether writing ``desired`` would change any controller-owned field."""
    return any(current.get(key) != desired.get(key) for key in _MANAGED_KEYS)


def renewal_requeue_interval(
    server_cert: CertificateInfo | None, now: datetime
) -> timedelta | None:
    """Time until the gateway certificate renews, at least one second."""
    if server_cert is None or server_cert.renewal_time is None:
        return None
    return max(server_cert.renewal_time - now, MIN_REQUEUE_INTERVAL)


def calculate_requeue_interval(
    tls_enabled: bool,
    server_cert: CertificateInfo | None,
    now: datetime,
) -> timedelta:
    """How long to wait before the next tick of a pool.

    Worker status is refreshed every 30 seconds. A certificate renewal due
    sooner than that brings the next tick forward to the renewal time.
    """
    requeue = STATUS_UPDATE_INTERVAL
    if not tls_enabled:
        return requeue
    renewal = renewal_requeue_interval(server_cert, now)
    if renewal is None:
        return requeue
    return min(requeue, renewal)
