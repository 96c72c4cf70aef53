"""Controller main loop.

Entrypoint: python -m buildfleet.controller.manager

The manager:
1. Lists pools every resync interval
2. Starts a tick for each pool that is due and not already running
3. Runs ticks for distinct pools concurrently, up to a limit
4. Backs off exponentially on pools whose tick failed

Leader election is assumed to happen outside this process; only one replica
should run the manager at a time.
"""

import asyncio
import signal
import time

from buildfleet.certs.ca import CAManager
from buildfleet.certs.issuer import CertificateIssuer
from buildfleet.certs.store import CertificateStore
from buildfleet.config import ControllerConfig, KubernetesConfig, settings
from buildfleet.controller.pool_controller import PoolReconciler, PoolReconcileOutcome
from buildfleet.fleet.models import Pool
from buildfleet.fleet.reconciler import WorkerReconciler
from buildfleet.k8s.kubernetes import (
    KubernetesPoolStore,
    KubernetesSecretStore,
    KubernetesWorkerStore,
    init_k8s,
)
from buildfleet.k8s.protocol import PoolStore
from buildfleet.logging_config import configure_logging, get_logger
from buildfleet.tls.manager import TLSManager

logger = get_logger(__name__)

# Shutdown flag
_shutdown = asyncio.Event()


def backoff_delay(failures: int, base: float, maximum: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at maximum."""
    if failures <= 0:
        return 0.0
    return min(base * (2 ** (failures - 1)), maximum)


class ControllerManager:
    """Schedules pool reconciliation ticks."""

    def __init__(
        self,
        pool_store: PoolStore,
        reconciler: PoolReconciler,
        config: ControllerConfig | None = None,
        namespace: str | None = None,
    ):
        self._pool_store = pool_store
        self._reconciler = reconciler
        self._config = config or settings.controller
        self._namespace = settings.kubernetes.watch_namespace if namespace is None else namespace
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_reconciles)
        self.active_tasks: dict[str, asyncio.Task] = {}  # pool key → task
        self._next_run: dict[str, float] = {}  # pool key → monotonic deadline
        self._failures: dict[str, int] = {}

    def is_due(self, key: str, now: float) -> bool:
        return key not in self.active_tasks and self._next_run.get(key, 0.0) <= now

    async def resync(self) -> list[asyncio.Task]:
        """List pools and start a tick for every due pool. Returns the started tasks."""
        self._reap()

        items = await self._pool_store.list_pools(self._namespace)
        now = time.monotonic()
        started: list[asyncio.Task] = []
        seen: set[str] = set()

        for item in items:
            try:
                pool = Pool.from_k8s(item)
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed pool", error=str(e))
                continue
            seen.add(pool.key)
            if not self.is_due(pool.key, now):
                continue
            task = asyncio.create_task(self._tick(pool), name=f"reconcile-{pool.key}")
            self.active_tasks[pool.key] = task
            started.append(task)

        # Forget pools that were deleted
        for key in list(self._next_run):
            if key not in seen and key not in self.active_tasks:
                self._next_run.pop(key, None)
                self._failures.pop(key, None)

        return started

    async def _tick(self, pool: Pool) -> PoolReconcileOutcome | None:
        log = logger.bind(pool=pool.name, namespace=pool.namespace)
        async with self._semaphore:
            try:
                outcome = await self._reconciler.reconcile(pool)
            except Exception as e:
                log.error("Pool reconciliation failed", error=str(e), exc_info=e)
                self._record_failure(pool.key)
                return None

        if outcome.ok:
            self._failures.pop(pool.key, None)
            self._next_run[pool.key] = time.monotonic() + outcome.requeue_after.total_seconds()
        else:
            self._record_failure(pool.key)
        return outcome

    def _record_failure(self, key: str) -> None:
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = backoff_delay(
            failures, self._config.backoff_base_seconds, self._config.backoff_max_seconds
        )
        self._next_run[key] = time.monotonic() + delay
        logger.warning("Backing off pool", pool=key, failures=failures, retry_in_seconds=delay)

    def _reap(self) -> None:
        completed = [key for key, task in self.active_tasks.items() if task.done()]
        for key in completed:
            task = self.active_tasks.pop(key)
            if not task.cancelled() and task.exception():
                logger.error(
                    "Pool task failed with exception", pool=key, error=str(task.exception())
                )

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Resync until ``stop`` is set, then cancel in-flight ticks."""
        stop = stop or _shutdown
        interval = self._config.resync_interval_seconds
        logger.info(
            "Controller started", resync_interval_seconds=interval, namespace=self._namespace
        )

        while not stop.is_set():
            try:
                await self.resync()
            except Exception as e:
                logger.error("Pool resync failed", error=str(e), exc_info=e)

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                pass

        await self.shutdown()

    async def shutdown(self) -> None:
        """Cancel in-flight ticks. Applied actions stay; the next leader reconciles forward."""
        for key, task in self.active_tasks.items():
            if not task.done():
                logger.info("Cancelling pool reconciliation", pool=key)
                task.cancel()
        if self.active_tasks:
            await asyncio.gather(*self.active_tasks.values(), return_exceptions=True)
        self.active_tasks.clear()
        logger.info("Controller stopped")


def build_manager(
    k8s_config: KubernetesConfig | None = None,
    config: ControllerConfig | None = None,
) -> ControllerManager:
    """Wire the Kubernetes-backed stores into a manager."""
    k8s_config = k8s_config or settings.kubernetes
    pool_store = KubernetesPoolStore(k8s_config=k8s_config)
    secret_store = KubernetesSecretStore()
    ca_manager = CAManager(secret_store)
    tls_manager = TLSManager(
        ca_manager, CertificateIssuer(), CertificateStore(secret_store), k8s_config=k8s_config
    )
    workers = WorkerReconciler(KubernetesWorkerStore(k8s_config=k8s_config), k8s_config=k8s_config)
    reconciler = PoolReconciler(pool_store, ca_manager, tls_manager, workers)
    return ControllerManager(pool_store, reconciler, config=config)


def _handle_signals() -> None:
    """Register signal handlers for graceful shutdown."""
    loop = asyncio.get_event_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _shutdown.set())


def main() -> None:
    """Main entry point for the controller."""
    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, app_name=settings.app_name
    )
    logger.info("Starting buildfleet controller")

    init_k8s()
    manager = build_manager()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _handle_signals()

    try:
        loop.run_until_complete(manager.run())
    except KeyboardInterrupt:
        _shutdown.set()
    finally:
        loop.close()
        logger.info("Controller exited")


if __name__ == "__main__":
    main()
