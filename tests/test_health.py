from __future__ import annotations

import logging

from llmstack.models import HealthCheck
from llmstack.services.health import HEALTH_NOT_RUNNING, HEALTH_RUNNING, HEALTH_SKIPPED, check_health
from llmstack.services.kube_adapter import KubeAdapter
from tests.fakes import FakeCluster

_PROMETHEUS = HealthCheck("Prometheus", "monitoring", "app.kubernetes.io/name=prometheus")
_DCGM = HealthCheck("DCGM exporter", "monitoring", "app=nvidia-dcgm-exporter", requires_gpu=True)


def test_running_pods_are_reported_ok(cluster: FakeCluster) -> None:
    [health] = check_health(KubeAdapter(runner=cluster), [_PROMETHEUS])

    assert health.state == HEALTH_RUNNING
    assert health.ok is True
    pods = cluster.commands("kubectl", "get", "pods")[0]
    assert pods[pods.index("-l") + 1] == "app.kubernetes.io/name=prometheus"
    assert pods[pods.index("--namespace") + 1] == "monitoring"


def test_pods_that_are_not_running_produce_a_warning(cluster: FakeCluster, caplog) -> None:
    cluster.pod_phases["app.kubernetes.io/name=prometheus"] = "Pending CrashLoopBackOff"

    with caplog.at_level(logging.WARNING):
        [health] = check_health(KubeAdapter(runner=cluster), [_PROMETHEUS])

    assert health.state == HEALTH_NOT_RUNNING
    assert health.ok is False
    assert health.detail == "Pending, CrashLoopBackOff"
    assert "Prometheus may not be running properly" in caplog.text


def test_no_matching_pods_is_not_running(cluster: FakeCluster) -> None:
    cluster.pod_phases["app.kubernetes.io/name=prometheus"] = ""

    [health] = check_health(KubeAdapter(runner=cluster), [_PROMETHEUS])

    assert health.state == HEALTH_NOT_RUNNING
    assert health.detail == "no pods"


def test_gpu_check_is_skipped_without_gpu_nodes(cluster: FakeCluster, caplog) -> None:
    with caplog.at_level(logging.WARNING):
        [health] = check_health(KubeAdapter(runner=cluster), [_DCGM])

    assert health.state == HEALTH_SKIPPED
    assert health.ok is True
    assert "No GPU nodes detected. DCGM exporter may not be necessary." in caplog.text
    assert cluster.commands("kubectl", "get", "pods") == []


def test_gpu_check_runs_when_a_node_has_gpus(cluster: FakeCluster) -> None:
    cluster.gpu_allocatable = "0 2"

    results = check_health(KubeAdapter(runner=cluster), [_PROMETHEUS, _DCGM, _DCGM])

    assert [r.state for r in results] == [HEALTH_RUNNING, HEALTH_RUNNING, HEALTH_RUNNING]
    assert len(cluster.commands("kubectl", "get", "nodes")) == 1


def test_lookup_failures_are_warnings_not_errors(cluster: FakeCluster) -> None:
    cluster.failures[("kubectl", "get", "pods")] = "Unable to connect to the server: i/o timeout"
    cluster.failures[("kubectl", "get", "nodes")] = "Unable to connect to the server: i/o timeout"

    results = check_health(KubeAdapter(runner=cluster), [_PROMETHEUS, _DCGM])

    assert [(r.state, r.detail) for r in results] == [
        (HEALTH_NOT_RUNNING, "pod lookup failed"),
        (HEALTH_SKIPPED, "no GPU nodes detected"),
    ]
