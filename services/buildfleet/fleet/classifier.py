"""Worker state classification.

Partitions a snapshot of a pool's workers into disjoint categories using the
reported phase and the age of provisioning workers.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta

from buildfleet.fleet.models import WorkerCategories, WorkerCategory, WorkerPhase, WorkerRecord


def categorize(worker: WorkerRecord, now: datetime, stuck_threshold: timedelta) -> WorkerCategory:
    """Return the single category a worker belongs to."""
    match worker.phase:
        case WorkerPhase.FAILED:
            return WorkerCategory.FAILED
        case WorkerPhase.PENDING | WorkerPhase.PROVISIONING:
            if now - worker.created_at > stuck_threshold:
                return WorkerCategory.STUCK
            return WorkerCategory.PROVISIONING
        case WorkerPhase.IDLE:
            return WorkerCategory.IDLE
        case WorkerPhase.ALLOCATED:
            return WorkerCategory.ALLOCATED
        case WorkerPhase.RUNNING:
            return WorkerCategory.RUNNING
        case WorkerPhase.TERMINATING:
            return WorkerCategory.TERMINATING


def classify(
    workers: Iterable[WorkerRecord], now: datetime, stuck_threshold: timedelta
) -> WorkerCategories:
    """Partition workers into idle, allocated, provisioning, stuck and failed.

    Running and terminating workers are collected for reporting only. Input
    order is preserved within each category.
    """
    categories = WorkerCategories()
    for worker in workers:
        categories.bucket(categorize(worker, now, stuck_threshold)).append(worker)
    return categories
