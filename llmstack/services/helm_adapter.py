from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Mapping

from llmstack.proc import AdapterCommandError, CommandRunner, run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HelmReleaseOperationResult:
    release_name: str
    namespace: str
    changed: bool
    status: str | None = None
    revision: int | None = None


@dataclass(frozen=True)
class HelmReleaseStatusResult:
    release_name: str
    namespace: str
    exists: bool
    status: str | None = None
    revision: int | None = None


class HelmAdapter:
    """Adapter for Helm repository and release lifecycle operations."""

    def __init__(self, *, runner: CommandRunner | None = None) -> None:
        self._runner = runner

    def repo_add(self, *, name: str, url: str) -> None:
        run_command(
            ["helm", "repo", "add", name, url, "--force-update"],
            runner=self._runner,
            error_message=f"Failed to add Helm repository {name}",
        )

    def repo_update(self) -> None:
        run_command(
            ["helm", "repo", "update"],
            runner=self._runner,
            error_message="Failed to update Helm repositories",
        )

    def upgrade_install(
        self,
        *,
        release_name: str,
        namespace: str,
        chart_ref: str,
        values: Mapping[str, Any],
        timeout: int,
        chart_version: str | None = None,
        wait: bool = True,
    ) -> HelmReleaseOperationResult:
        with _values_file(values) as values_file:
            cmd = [
                "helm",
                "upgrade",
                "--install",
                release_name,
                chart_ref,
                "--namespace",
                namespace,
                "--timeout",
                f"{timeout}s",
                "--values",
                str(values_file),
            ]
            if chart_version:
                cmd.extend(["--version", chart_version])
            if wait:
                cmd.append("--wait")

            run_command(
                cmd,
                runner=self._runner,
                error_message=f"Failed to upgrade/install release {release_name}",
            )

        after = self.get_release_status(release_name=release_name, namespace=namespace)
        return HelmReleaseOperationResult(
            release_name=release_name,
            namespace=namespace,
            # helm records a new revision on every upgrade.
            changed=True,
            status=after.status,
            revision=after.revision,
        )

    def uninstall(
        self,
        *,
        release_name: str,
        namespace: str,
        timeout: int,
    ) -> HelmReleaseOperationResult:
        cmd = [
            "helm",
            "uninstall",
            release_name,
            "--namespace",
            namespace,
            "--timeout",
            f"{timeout}s",
            "--wait",
        ]
        try:
            run_command(
                cmd,
                runner=self._runner,
                error_message=f"Failed to uninstall release {release_name}",
            )
            return HelmReleaseOperationResult(
                release_name=release_name,
                namespace=namespace,
                changed=True,
                status="uninstalled",
            )
        except AdapterCommandError as exc:
            if "not found" in exc.output:
                logger.debug("Release %s was already absent from %s", release_name, namespace)
                return HelmReleaseOperationResult(
                    release_name=release_name,
                    namespace=namespace,
                    changed=False,
                    status="not-found",
                )
            raise

    def get_release_status(self, *, release_name: str, namespace: str) -> HelmReleaseStatusResult:
        try:
            result = run_command(
                ["helm", "status", release_name, "--namespace", namespace, "--output", "json"],
                runner=self._runner,
                error_message=f"Failed to fetch release status for {release_name}",
            )
        except AdapterCommandError as exc:
            if "not found" in exc.output:
                return HelmReleaseStatusResult(release_name=release_name, namespace=namespace, exists=False)
            raise

        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise AdapterCommandError(
                message=f"Invalid JSON from helm status for release {release_name}",
                result=result,
                category="fatal",
            ) from exc

        info = payload.get("info", {}) if isinstance(payload, dict) else {}
        status = info.get("status") if isinstance(info, dict) else None
        revision = payload.get("version") if isinstance(payload, dict) else None
        if not isinstance(revision, int):
            revision = None

        return HelmReleaseStatusResult(
            release_name=release_name,
            namespace=namespace,
            exists=True,
            status=status if isinstance(status, str) else None,
            revision=revision,
        )


class HelmfileAdapter:
    """Adapter for helmfile-managed release sets."""

    def __init__(self, *, runner: CommandRunner | None = None) -> None:
        self._runner = runner

    def apply(self, *, file: str, namespace: str | None = None, environment: str | None = None) -> str:
        result = run_command(
            self._command("apply", file=file, namespace=namespace, environment=environment),
            runner=self._runner,
            error_message=f"Failed to apply helmfile {file}",
        )
        return result.stdout

    def destroy(self, *, file: str, namespace: str | None = None, environment: str | None = None) -> str:
        result = run_command(
            self._command("destroy", file=file, namespace=namespace, environment=environment),
            runner=self._runner,
            error_message=f"Failed to destroy helmfile {file}",
        )
        return result.stdout

    @staticmethod
    def _command(verb: str, *, file: str, namespace: str | None, environment: str | None) -> list[str]:
        cmd = ["helmfile", "--file", file]
        if namespace:
            cmd.extend(["--namespace", namespace])
        if environment:
            cmd.extend(["--environment", environment])
        cmd.append(verb)
        return cmd


class _values_file:
    def __init__(self, values: Mapping[str, Any]) -> None:
        self._values = values
        self.path: Path | None = None

    def __enter__(self) -> Path:
        tmp = NamedTemporaryFile(mode="w", encoding="utf-8", suffix=".json", delete=False)
        tmp.write(json.dumps(dict(self._values)))
        tmp.flush()
        tmp.close()
        self.path = Path(tmp.name)
        return self.path

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path and self.path.exists():
            self.path.unlink()
