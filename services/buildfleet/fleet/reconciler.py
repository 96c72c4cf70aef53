"""Apply scaling plans to a pool's workers through the object store.

Each tick re-reads the pool's workers, classifies them, plans, and applies
the plan action by action, then re-reads the fleet when anything changed.
A failed action is logged and counted; the rest of the plan still runs, and
the next tick re-plans from fresh state.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from buildfleet.config import KubernetesConfig, ScalingConfig, settings
from buildfleet.fleet.classifier import classify
from buildfleet.fleet.models import (
    MalformedWorkerError,
    Pool,
    WorkerCategories,
    WorkerRecord,
)
from buildfleet.fleet.planner import ScalingPlan, plan
from buildfleet.k8s.kubernetes import POOL_LABEL, WORKER_LABEL
from buildfleet.k8s.protocol import StoreError, WorkerStore
from buildfleet.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one worker reconciliation tick.

    ``categories`` describes the fleet after the plan was applied.
    """

    plan: ScalingPlan
    categories: WorkerCategories
    deleted: int = 0
    created: int = 0
    failures: list[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


def build_worker_body(pool: Pool, k8s_config: KubernetesConfig) -> dict[str, Any]:
    """Render a new worker custom resource owned by ``pool``."""
    return {
        "apiVersion": k8s_config.api_version,
        "kind": k8s_config.worker_kind,
        "metadata": {
            "generateName": f"{pool.name}-worker-",
            "namespace": pool.namespace,
            "labels": {
                POOL_LABEL: pool.name,
                WORKER_LABEL: "true",
            },
            "ownerReferences": [pool.owner_reference(k8s_config).to_dict()],
        },
        "spec": {
            "poolRef": {
                "name": pool.name,
                "namespace": pool.namespace,
            },
        },
    }


def parse_workers(items: list[dict[str, Any]], pool: Pool) -> tuple[list[WorkerRecord], int]:
    """Parse raw worker objects, skipping and logging malformed ones."""
    records: list[WorkerRecord] = []
    skipped = 0
    for item in items:
        try:
            records.append(WorkerRecord.from_k8s(item))
        except MalformedWorkerError as e:
            skipped += 1
            logger.warning(
                "Skipping malformed worker",
                pool=pool.name,
                namespace=pool.namespace,
                error=str(e),
            )
    return records, skipped


class WorkerReconciler:
    """Keeps a pool's worker count at its idle target."""

    def __init__(
        self,
        store: WorkerStore,
        scaling: ScalingConfig | None = None,
        k8s_config: KubernetesConfig | None = None,
    ):
        self._store = store
        self._scaling = scaling or settings.scaling
        self._k8s_config = k8s_config or settings.kubernetes

    async def reconcile(self, pool: Pool, now: datetime | None = None) -> ReconcileResult:
        """Run one tick for ``pool``.

        Listing failures propagate since there is nothing to plan from.
        ``asyncio.CancelledError`` propagates between actions; actions already
        applied are left in place.
        """
        now = now or datetime.now(UTC)
        log = logger.bind(pool=pool.name, namespace=pool.namespace)

        items = await self._store.list_workers(pool.namespace, pool.name)
        records, skipped = parse_workers(items, pool)
        categories = classify(records, now, self._scaling.worker_stuck_threshold)
        scaling_plan = plan(pool.spec, categories, now, self._scaling.schedule_window)

        result = ReconcileResult(plan=scaling_plan, categories=categories, skipped=skipped)
        if scaling_plan.empty:
            log.debug("Worker fleet at target", idle=len(categories.idle))
            return result

        log.info(
            "Applying scaling plan",
            delete=[w.name for w in scaling_plan.delete],
            create=scaling_plan.create,
            scale_to_zero=scaling_plan.scale_to_zero,
            target=scaling_plan.target,
        )

        for worker in scaling_plan.delete:
            try:
                await self._store.delete_worker(worker.namespace or pool.namespace, worker.name)
            except Exception as e:
                log.error("Failed to delete worker", worker=worker.name, error=str(e))
                result.failures.append(f"delete {worker.name}: {e}")
                continue
            result.deleted += 1
            log.info("Deleted worker", worker=worker.name, phase=worker.phase.value)

        for _ in range(scaling_plan.create):
            body = build_worker_body(pool, self._k8s_config)
            try:
                created = await self._store.create_worker(pool.namespace, body)
            except Exception as e:
                log.error("Failed to create worker", error=str(e))
                result.failures.append(f"create worker: {e}")
                continue
            result.created += 1
            log.info("Created worker", worker=created.get("metadata", {}).get("name"))

        if result.deleted or result.created:
            result.categories = await self._refresh(pool, now, categories)
        return result

    async def _refresh(
        self, pool: Pool, now: datetime, fallback: WorkerCategories
    ) -> WorkerCategories:
        """Re-read the fleet after acting. Keeps ``fallback`` if the read fails."""
        try:
            items = await self._store.list_workers(pool.namespace, pool.name)
        except StoreError as e:
            logger.warning(
                "Failed to re-read workers after scaling",
                pool=pool.name,
                namespace=pool.namespace,
                error=str(e),
            )
            return fallback
        records, _ = parse_workers(items, pool)
        return classify(records, now, self._scaling.worker_stuck_threshold)
