from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import json
import logging
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Iterator, Mapping

from llmstack.proc import AdapterCommandError, CommandRunner, run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NamespaceResult:
    name: str
    changed: bool


@dataclass(frozen=True)
class ApplyResult:
    target: str
    changed: bool


class KubeAdapter:
    """Adapter for the cluster-state operations used by provisioning steps."""

    def __init__(self, *, runner: CommandRunner | None = None) -> None:
        self._runner = runner

    def ensure_namespace(self, name: str) -> NamespaceResult:
        if self.namespace_exists(name):
            logger.debug("Namespace already exists: %s", name)
            return NamespaceResult(name=name, changed=False)

        try:
            run_command(
                ["kubectl", "create", "namespace", name],
                runner=self._runner,
                error_message=f"Failed to create namespace {name}",
            )
        except AdapterCommandError as exc:
            # Created concurrently between the lookup and the create.
            if "alreadyexists" in exc.output or "already exists" in exc.output:
                return NamespaceResult(name=name, changed=False)
            raise
        logger.info("Created namespace: %s", name)
        return NamespaceResult(name=name, changed=True)

    def namespace_exists(self, name: str) -> bool:
        try:
            run_command(
                ["kubectl", "get", "namespace", name, "-o", "name"],
                runner=self._runner,
                error_message=f"Failed to check namespace {name}",
            )
            return True
        except AdapterCommandError as exc:
            if "not found" in exc.output:
                return False
            raise

    def can_i(self, verb: str, resource: str, namespace: str) -> bool:
        try:
            result = run_command(
                ["kubectl", "auth", "can-i", verb, resource, "--namespace", namespace],
                runner=self._runner,
                error_message=f"Failed to check permission to {verb} {resource} in {namespace}",
            )
        except AdapterCommandError as exc:
            # `can-i` answers "no" with a non-zero exit code.
            logger.debug("Authorization check failed for namespace %s: %s", namespace, exc)
            return False
        return result.stdout.strip().lower() == "yes"

    def render_secret(self, *, name: str, namespace: str, data: Mapping[str, str]) -> str:
        cmd = ["kubectl", "create", "secret", "generic", name]
        cmd.extend(f"--from-literal={key}={value}" for key, value in data.items())
        cmd.extend(["--namespace", namespace, "--dry-run=client", "-o", "yaml"])
        result = run_command(
            cmd,
            runner=self._runner,
            error_message=f"Failed to render secret {name}",
        )
        return result.stdout

    def apply_secret(self, *, name: str, namespace: str, data: Mapping[str, str]) -> ApplyResult:
        rendered = self.render_secret(name=name, namespace=namespace, data=data)
        return self.apply_content(rendered, target=f"secret/{name}")

    def secret_keys(self, *, name: str, namespace: str) -> set[str] | None:
        """Keys held by an existing Secret, or None when the Secret does not exist."""
        try:
            result = run_command(
                ["kubectl", "get", "secret", name, "--namespace", namespace, "-o", "json"],
                runner=self._runner,
                error_message=f"Failed to read secret {name}",
            )
        except AdapterCommandError as exc:
            if "not found" in exc.output:
                return None
            raise
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise AdapterCommandError(
                message=f"Invalid JSON from kubectl get secret {name}",
                result=result,
                category="fatal",
            ) from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        return set(data) if isinstance(data, dict) else set()

    def apply_file(self, source: str, *, namespace: str | None = None) -> ApplyResult:
        cmd = ["kubectl", "apply", "-f", source]
        if namespace:
            cmd.extend(["--namespace", namespace])
        result = run_command(
            cmd,
            runner=self._runner,
            error_message=f"Failed to apply {source}",
        )
        return ApplyResult(target=source, changed=_apply_changed(result.stdout))

    def apply_content(
        self,
        content: str,
        *,
        target: str,
        namespace: str | None = None,
    ) -> ApplyResult:
        with _manifest_file(content) as path:
            cmd = ["kubectl", "apply", "-f", str(path)]
            if namespace:
                cmd.extend(["--namespace", namespace])
            result = run_command(
                cmd,
                runner=self._runner,
                error_message=f"Failed to apply {target}",
            )
        return ApplyResult(target=target, changed=_apply_changed(result.stdout))

    def wait_for_condition(
        self,
        resource: str,
        *,
        namespace: str,
        condition: str,
        timeout: int,
    ) -> None:
        run_command(
            [
                "kubectl",
                "wait",
                f"--for=condition={condition}",
                f"--timeout={timeout}s",
                resource,
                "--namespace",
                namespace,
            ],
            runner=self._runner,
            error_message=f"Failed waiting for {resource} to become {condition}",
        )

    def label(
        self,
        *,
        kind: str,
        name: str,
        namespace: str,
        labels: Mapping[str, str],
    ) -> ApplyResult:
        cmd = ["kubectl", "label", kind, name, "--namespace", namespace, "--overwrite"]
        cmd.extend(f"{key}={value}" for key, value in sorted(labels.items()))
        result = run_command(
            cmd,
            runner=self._runner,
            error_message=f"Failed to label {kind}/{name}",
        )
        changed = "not labeled" not in result.stdout.lower()
        return ApplyResult(target=f"{kind}/{name}", changed=changed)

    def cluster_info(self) -> str:
        result = run_command(
            ["kubectl", "cluster-info"],
            runner=self._runner,
            error_message="Cannot connect to Kubernetes cluster",
        )
        return result.stdout

    def current_context(self) -> str:
        result = run_command(
            ["kubectl", "config", "current-context"],
            runner=self._runner,
            error_message="Failed to read current kubectl context",
        )
        return result.stdout.strip()

    def service_node_port(self, service: str, *, namespace: str) -> int | None:
        result = run_command(
            [
                "kubectl",
                "get",
                "svc",
                service,
                "--namespace",
                namespace,
                "-o",
                "jsonpath={.spec.ports[0].nodePort}",
            ],
            runner=self._runner,
            error_message=f"Failed to read service {service}",
        )
        raw = result.stdout.strip()
        return int(raw) if raw.isdigit() else None

    def pod_phases(self, *, namespace: str, selector: str) -> list[str]:
        result = run_command(
            [
                "kubectl",
                "get",
                "pods",
                "--namespace",
                namespace,
                "-l",
                selector,
                "-o",
                "jsonpath={.items[*].status.phase}",
            ],
            runner=self._runner,
            error_message=f"Failed to list pods matching {selector} in {namespace}",
        )
        return result.stdout.split()

    def gpu_node_count(self) -> int:
        """Nodes advertising at least one allocatable ``nvidia.com/gpu``."""
        result = run_command(
            ["kubectl", "get", "nodes", "-o", r"jsonpath={.items[*].status.allocatable.nvidia\.com/gpu}"],
            runner=self._runner,
            error_message="Failed to read node GPU capacity",
        )
        return sum(1 for value in result.stdout.split() if value.isdigit() and int(value) > 0)


def _apply_changed(output: str) -> bool:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return True
    return not all(line.endswith("unchanged") for line in lines)


@contextmanager
def _manifest_file(content: str) -> Iterator[Path]:
    tmp = NamedTemporaryFile(mode="w", encoding="utf-8", suffix=".yaml", delete=False)
    try:
        tmp.write(content)
        tmp.flush()
        tmp.close()
        yield Path(tmp.name)
    finally:
        path = Path(tmp.name)
        if path.exists():
            path.unlink()
