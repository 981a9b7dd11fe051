from __future__ import annotations

import json
from pathlib import Path
import subprocess

import pytest

from llmstack.proc import AdapterCommandError
from llmstack.services.helm_adapter import HelmAdapter, HelmfileAdapter
from llmstack.services.kube_adapter import KubeAdapter
from llmstack.services.script_adapter import ScriptAdapter
from tests.fakes import result as _result


def test_kube_ensure_namespace_creates_when_missing() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        if cmd[:4] == ["kubectl", "get", "namespace", "ns-a"]:
            return _result(args=cmd, returncode=1, stderr="Error from server (NotFound): namespaces \"ns-a\" not found")
        if cmd[:4] == ["kubectl", "create", "namespace", "ns-a"]:
            return _result(args=cmd, returncode=0, stdout="namespace/ns-a created")
        raise AssertionError(f"unexpected command: {cmd}")

    adapter = KubeAdapter(runner=runner)
    out = adapter.ensure_namespace("ns-a")

    assert out.changed is True
    assert calls[0][:4] == ["kubectl", "get", "namespace", "ns-a"]
    assert calls[1][:4] == ["kubectl", "create", "namespace", "ns-a"]


def test_kube_ensure_namespace_is_noop_when_present() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd, returncode=0, stdout="namespace/ns-a")

    out = KubeAdapter(runner=runner).ensure_namespace("ns-a")

    assert out.changed is False
    assert len(calls) == 1


def test_kube_ensure_namespace_tolerates_concurrent_creation() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        if cmd[1] == "get":
            return _result(args=cmd, returncode=1, stderr="namespaces \"ns-a\" not found")
        return _result(args=cmd, returncode=1, stderr="Error from server (AlreadyExists): namespaces \"ns-a\" already exists")

    out = KubeAdapter(runner=runner).ensure_namespace("ns-a")
    assert out.changed is False


def test_kube_namespace_exists_bubbles_non_not_found_errors_as_classified() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Unable to connect to the server: i/o timeout")

    adapter = KubeAdapter(runner=runner)
    with pytest.raises(AdapterCommandError) as exc_info:
        adapter.namespace_exists("ns-a")
    assert exc_info.value.retryable is True
    assert "i/o timeout" in str(exc_info.value).lower()


def test_kube_can_i_treats_no_and_failures_as_false() -> None:
    answers = iter(
        [
            _result(args=[], returncode=0, stdout="yes\n"),
            _result(args=[], returncode=1, stdout="no\n"),
            _result(args=[], returncode=1, stderr="error: You must be logged in to the server"),
        ]
    )

    adapter = KubeAdapter(runner=lambda cmd: next(answers))
    assert adapter.can_i("create", "pods", "ns-a") is True
    assert adapter.can_i("create", "pods", "ns-a") is False
    assert adapter.can_i("create", "pods", "ns-a") is False


def test_kube_apply_secret_renders_then_applies_rendered_manifest() -> None:
    calls: list[list[str]] = []
    applied_content: str | None = None

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        nonlocal applied_content
        calls.append(cmd)
        if cmd[:4] == ["kubectl", "create", "secret", "generic"]:
            return _result(args=cmd, stdout="apiVersion: v1\nkind: Secret\nmetadata:\n  name: hf-token\n")
        if cmd[:2] == ["kubectl", "apply"]:
            applied_content = Path(cmd[cmd.index("-f") + 1]).read_text()
            return _result(args=cmd, stdout="secret/hf-token configured\n")
        raise AssertionError(f"unexpected command: {cmd}")

    out = KubeAdapter(runner=runner).apply_secret(name="hf-token", namespace="llmd", data={"HF_TOKEN": "abc"})

    render_cmd = calls[0]
    assert "--from-literal=HF_TOKEN=abc" in render_cmd
    assert "--dry-run=client" in render_cmd
    assert applied_content is not None and "kind: Secret" in applied_content
    assert out.target == "secret/hf-token"
    assert out.changed is True
    assert not Path(calls[1][calls[1].index("-f") + 1]).exists()


def test_kube_secret_render_failure_redacts_literal_values() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="error: failed to create secret")

    with pytest.raises(AdapterCommandError) as exc_info:
        KubeAdapter(runner=runner).apply_secret(name="hf-token", namespace="llmd", data={"HF_TOKEN": "s3cr3t"})

    message = str(exc_info.value)
    assert "s3cr3t" not in message
    assert "--from-literal=HF_TOKEN=***" in message


def test_kube_apply_reports_unchanged_output_as_not_changed() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, stdout="deployment.apps/openwebui unchanged\nservice/openwebui-service unchanged\n")

    out = KubeAdapter(runner=runner).apply_file("manifest.yaml", namespace="openwebui")
    assert out.changed is False


def test_kube_wait_for_condition_builds_wait_command() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd, stdout="condition met")

    KubeAdapter(runner=runner).wait_for_condition(
        "deployment/openwebui", namespace="openwebui", condition="available", timeout=300
    )
    assert calls == [
        [
            "kubectl",
            "wait",
            "--for=condition=available",
            "--timeout=300s",
            "deployment/openwebui",
            "--namespace",
            "openwebui",
        ]
    ]


def test_kube_service_node_port_parses_jsonpath_output() -> None:
    adapter = KubeAdapter(runner=lambda cmd: _result(args=cmd, stdout="31234"))
    assert adapter.service_node_port("grafana", namespace="monitoring") == 31234

    adapter = KubeAdapter(runner=lambda cmd: _result(args=cmd, stdout=""))
    assert adapter.service_node_port("grafana", namespace="monitoring") is None


def test_kube_secret_keys_returns_none_when_missing() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Error from server (NotFound): secrets \"openwebui-secret\" not found")

    assert KubeAdapter(runner=runner).secret_keys(name="openwebui-secret", namespace="openwebui") is None


def test_kube_secret_keys_lists_data_keys_without_values() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        payload = {"kind": "Secret", "data": {"webui-secret-key": "c2VjcmV0", "extra": "eA=="}}
        return _result(args=cmd, stdout=json.dumps(payload))

    keys = KubeAdapter(runner=runner).secret_keys(name="openwebui-secret", namespace="openwebui")

    assert keys == {"webui-secret-key", "extra"}
    assert calls == [["kubectl", "get", "secret", "openwebui-secret", "--namespace", "openwebui", "-o", "json"]]


def test_kube_secret_keys_rejects_invalid_json_as_fatal() -> None:
    adapter = KubeAdapter(runner=lambda cmd: _result(args=cmd, stdout="not json"))
    with pytest.raises(AdapterCommandError) as exc_info:
        adapter.secret_keys(name="openwebui-secret", namespace="openwebui")
    assert exc_info.value.retryable is False


def test_kube_pod_phases_splits_jsonpath_output() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd, stdout="Running Pending")

    phases = KubeAdapter(runner=runner).pod_phases(namespace="monitoring", selector="app.kubernetes.io/name=grafana")

    assert phases == ["Running", "Pending"]
    assert calls[0][calls[0].index("-l") + 1] == "app.kubernetes.io/name=grafana"
    assert calls[0][-1] == "jsonpath={.items[*].status.phase}"


def test_kube_gpu_node_count_ignores_nodes_without_gpus() -> None:
    adapter = KubeAdapter(runner=lambda cmd: _result(args=cmd, stdout="1 0 2"))
    assert adapter.gpu_node_count() == 2

    adapter = KubeAdapter(runner=lambda cmd: _result(args=cmd, stdout=""))
    assert adapter.gpu_node_count() == 0


def test_helm_upgrade_install_passes_values_and_returns_status() -> None:
    calls: list[list[str]] = []
    seen_values: dict | None = None
    installed = False

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        nonlocal seen_values, installed
        calls.append(cmd)
        if cmd[:3] == ["helm", "upgrade", "--install"]:
            values_path = Path(cmd[cmd.index("--values") + 1])
            seen_values = json.loads(values_path.read_text())
            installed = True
            return _result(args=cmd, returncode=0, stdout="Release upgraded")
        if cmd[:2] == ["helm", "status"]:
            if not installed:
                return _result(args=cmd, returncode=1, stderr="Error: release: not found")
            payload = {"info": {"status": "deployed"}, "version": 7}
            return _result(args=cmd, returncode=0, stdout=json.dumps(payload))
        raise AssertionError(f"unexpected command: {cmd}")

    adapter = HelmAdapter(runner=runner)
    out = adapter.upgrade_install(
        release_name="rel-a",
        namespace="ns-a",
        chart_ref="prometheus-community/kube-prometheus-stack",
        chart_version="1.2.3",
        values={"grafana": {"adminPassword": "pw"}},
        timeout=600,
    )

    assert out.changed is True
    assert out.status == "deployed"
    assert out.revision == 7
    assert seen_values == {"grafana": {"adminPassword": "pw"}}
    assert [cmd[1] for cmd in calls] == ["upgrade", "status"]
    upgrade_cmd = calls[0]
    assert upgrade_cmd[:5] == ["helm", "upgrade", "--install", "rel-a", "prometheus-community/kube-prometheus-stack"]
    assert "--wait" in upgrade_cmd
    assert upgrade_cmd[upgrade_cmd.index("--timeout") + 1] == "600s"
    assert upgrade_cmd[upgrade_cmd.index("--version") + 1] == "1.2.3"


def test_helm_status_invalid_json_raises_fatal_command_error() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, stdout="<html>proxy error</html>")

    with pytest.raises(AdapterCommandError) as exc_info:
        HelmAdapter(runner=runner).get_release_status(release_name="rel-a", namespace="ns-a")
    assert exc_info.value.retryable is False
    assert "invalid json" in str(exc_info.value).lower()


def test_helm_repo_add_is_forced_so_reruns_succeed() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd)

    HelmAdapter(runner=runner).repo_add(name="grafana", url="https://grafana.github.io/helm-charts")
    assert calls == [["helm", "repo", "add", "grafana", "https://grafana.github.io/helm-charts", "--force-update"]]


def test_helm_status_not_found_returns_exists_false() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Error: release: not found")

    adapter = HelmAdapter(runner=runner)
    out = adapter.get_release_status(release_name="rel-a", namespace="ns-a")
    assert out.exists is False
    assert out.status is None


def test_helm_uninstall_not_found_is_idempotent() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return _result(args=cmd, returncode=1, stderr="Error: uninstall: Release not loaded: rel-a: release: not found")

    adapter = HelmAdapter(runner=runner)
    out = adapter.uninstall(release_name="rel-a", namespace="ns-a", timeout=120)
    assert out.changed is False
    assert out.status == "not-found"


def test_helm_upgrade_install_timeout_raises_command_error() -> None:
    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        if cmd[:2] == ["helm", "status"]:
            return _result(args=cmd, returncode=1, stderr="Error: release: not found")
        return _result(args=cmd, returncode=1, stderr="UPGRADE FAILED: context deadline exceeded")

    adapter = HelmAdapter(runner=runner)
    with pytest.raises(AdapterCommandError) as exc_info:
        adapter.upgrade_install(
            release_name="rel-a",
            namespace="ns-a",
            chart_ref="oci://example/chart",
            values={},
            timeout=300,
        )
    assert "context deadline exceeded" in str(exc_info.value).lower()
    assert exc_info.value.retryable is True


def test_helmfile_apply_places_global_flags_before_verb() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd)

    HelmfileAdapter(runner=runner).apply(file="helmfile.yaml", namespace="llmd", environment="kgateway")
    HelmfileAdapter(runner=runner).apply(file="kgateway.helmfile.yaml")

    assert calls[0] == [
        "helmfile",
        "--file",
        "helmfile.yaml",
        "--namespace",
        "llmd",
        "--environment",
        "kgateway",
        "apply",
    ]
    assert calls[1] == ["helmfile", "--file", "kgateway.helmfile.yaml", "apply"]


def test_script_adapter_downloads_remote_script_before_running_it() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        if cmd[0] == "curl":
            Path(cmd[cmd.index("-o") + 1]).write_text("echo installing\n")
            return _result(args=cmd)
        if cmd[0] == "bash":
            assert Path(cmd[1]).read_text() == "echo installing\n"
            return _result(args=cmd, stdout="installing\n")
        raise AssertionError(f"unexpected command: {cmd}")

    out = ScriptAdapter(runner=runner).run("https://example.test/install-deps.sh", args=("--yes",))

    assert out == "installing\n"
    assert calls[0][:3] == ["curl", "-fsSL", "-o"]
    assert calls[1][0] == "bash"
    assert calls[1][1].endswith("install-deps.sh")
    assert calls[1][2:] == ["--yes"]


def test_script_adapter_runs_local_script_directly() -> None:
    calls: list[list[str]] = []

    def runner(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(cmd)
        return _result(args=cmd)

    ScriptAdapter(runner=runner).run("/opt/scripts/setup.sh")
    assert calls == [["bash", "/opt/scripts/setup.sh"]]
