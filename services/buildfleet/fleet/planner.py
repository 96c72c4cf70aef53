"""Scaling decisions for a pool's worker fleet.

``plan`` is a pure function of the pool spec, a classified worker snapshot
and the current time. Applying the plan is the reconciler's job.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from buildfleet.fleet.models import PoolSpec, WorkerCategories, WorkerRecord
from buildfleet.fleet.schedule import DEFAULT_WINDOW, should_scale_to_zero


@dataclass
class ScalingPlan:
    """Workers to delete and the number of workers to create."""

    delete: list[WorkerRecord] = field(default_factory=list)
    create: int = 0
    scale_to_zero: bool = False
    target: int = 0

    @property
    def empty(self) -> bool:
        return not self.delete and self.create == 0


def _age_order(worker: WorkerRecord) -> tuple[datetime, str]:
    return (worker.created_at, worker.name)


def plan(
    spec: PoolSpec,
    categories: WorkerCategories,
    now: datetime,
    schedule_window: timedelta = DEFAULT_WINDOW,
) -> ScalingPlan:
    """Compute the actions that move the pool toward its idle target.

    Failed and stuck workers are always deleted. During an active scale-down
    window every idle worker is deleted and nothing is created. Otherwise the
    oldest excess idle workers are trimmed down to ``scaling.min`` and the
    remaining deficit (counting non-stuck provisioning workers as capacity)
    is created. Allocated workers are never selected.
    """
    result = ScalingPlan()
    result.delete.extend(categories.failed)
    result.delete.extend(categories.stuck)

    provisioning_count = len(categories.provisioning)

    if should_scale_to_zero(spec.scaling.scale_down_schedule, now, schedule_window):
        result.scale_to_zero = True
        result.delete.extend(sorted(categories.idle, key=_age_order))
        return result

    target = spec.scaling.min
    result.target = target

    idle_count = len(categories.idle)
    if idle_count > target:
        excess = idle_count - target
        result.delete.extend(sorted(categories.idle, key=_age_order)[:excess])
        idle_count = target

    deficit = target - (idle_count + provisioning_count)
    result.create = max(deficit, 0)
    return result
