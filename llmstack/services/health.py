from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable

from llmstack.models import HealthCheck
from llmstack.proc import AdapterCommandError
from llmstack.services.kube_adapter import KubeAdapter

logger = logging.getLogger(__name__)

HEALTH_RUNNING = "running"
HEALTH_NOT_RUNNING = "not-running"
HEALTH_SKIPPED = "skipped"


@dataclass(frozen=True)
class HealthResult:
    label: str
    state: str
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.state != HEALTH_NOT_RUNNING


def check_health(kube: KubeAdapter, checks: Iterable[HealthCheck]) -> list[HealthResult]:
    """Post-run verification; problems are reported as warnings and never fail the run."""
    results: list[HealthResult] = []
    gpu_nodes: int | None = None
    for check in checks:
        if check.requires_gpu:
            if gpu_nodes is None:
                gpu_nodes = _gpu_nodes(kube)
            if gpu_nodes == 0:
                logger.warning("No GPU nodes detected. %s may not be necessary.", check.label)
                results.append(HealthResult(check.label, HEALTH_SKIPPED, "no GPU nodes detected"))
                continue

        try:
            phases = kube.pod_phases(namespace=check.namespace, selector=check.selector)
        except AdapterCommandError as exc:
            logger.warning("Could not list %s pods: %s", check.label, exc)
            results.append(HealthResult(check.label, HEALTH_NOT_RUNNING, "pod lookup failed"))
            continue

        if "Running" in phases:
            logger.info("%s is running", check.label)
            results.append(HealthResult(check.label, HEALTH_RUNNING))
        else:
            detail = ", ".join(phases) or "no pods"
            logger.warning("%s may not be running properly (%s)", check.label, detail)
            results.append(HealthResult(check.label, HEALTH_NOT_RUNNING, detail))
    return results


def _gpu_nodes(kube: KubeAdapter) -> int:
    try:
        return kube.gpu_node_count()
    except AdapterCommandError as exc:
        logger.warning("Could not read node GPU capacity: %s", exc)
        return 0
