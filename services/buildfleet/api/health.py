"""
Liveness and readiness probes.

/health answers as long as the process serves requests. /ready also requires
a reachable Kubernetes API and, when the controller loop runs in-process, a
live loop task.
"""

from fastapi import APIRouter, Request, Response, status

from buildfleet.api.dependencies import get_pool_store_or_none
from buildfleet.k8s.kubernetes import get_k8s_health
from buildfleet.logging_config import get_logger

router = APIRouter(tags=["health"])
logger = get_logger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


def _state(ok: bool) -> str:
    return HEALTHY if ok else UNHEALTHY


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    return {"status": HEALTHY}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(request: Request, response: Response) -> dict[str, str | dict[str, str]]:
    """Readiness probe. 503 with per-check results when any check fails."""
    checks = {
        "kubernetes": _state(get_pool_store_or_none() is not None and await get_k8s_health()),
    }

    controller_task = getattr(request.app.state, "controller_task", None)
    if controller_task is not None:
        checks["controller"] = _state(not controller_task.done())

    if UNHEALTHY in checks.values():
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not ready", "checks": checks}

    return {"status": "ready", "checks": checks}
