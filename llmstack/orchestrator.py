from __future__ import annotations

import logging
from pathlib import Path
import time
from typing import Any, Callable, Iterable, Mapping, Optional

import yaml

from llmstack.config import OrchestratorSettings, validate_context
from llmstack.errors import (
    ApplyError,
    ChartError,
    NotReadyError,
    PipelineError,
    PrereqError,
    ProvisionTimeoutError,
)
from llmstack.models import (
    NAMESPACE_ALREADY_EXISTS,
    NAMESPACE_CREATED,
    OUTCOME_APPLIED,
    OUTCOME_FAILED,
    OUTCOME_READY,
    OUTCOME_UNCHANGED,
    RUN_STATUS_FAILED,
    RUN_STATUS_NOT_STARTED,
    RUN_STATUS_RUNNING,
    RUN_STATUS_SUCCEEDED,
    ApplyHelmfile,
    ApplyManifest,
    CreateOrUpdateSecret,
    DestroyHelmfile,
    EnsureNamespace,
    HelmRepo,
    InstallOrUpgradeChart,
    LabelResource,
    ManifestOverlay,
    NamespaceState,
    PipelineReport,
    PipelineRun,
    ProvisioningStep,
    RetryPolicy,
    RunExternalScript,
    StepOutcome,
    UninstallChart,
    WaitForReady,
    is_url,
)
from llmstack.proc import AdapterCommandError, CommandRunner, ToolProbe, default_tool_probe
from llmstack.services.helm_adapter import HelmAdapter, HelmfileAdapter
from llmstack.services.kube_adapter import ApplyResult, KubeAdapter
from llmstack.services.script_adapter import ScriptAdapter

logger = logging.getLogger(__name__)

StepResult = tuple[str, Optional[str]]


def apply_overlays(content: str, overlays: Iterable[ManifestOverlay], *, source: str) -> str:
    """Apply literal overlays to manifest text, checking the result is still YAML."""
    patched = content
    for overlay in overlays:
        if overlay.find not in patched:
            raise ApplyError(f"Overlay pattern {overlay.find!r} not found in {source}")
        patched = patched.replace(overlay.find, overlay.replace)

    try:
        documents = [doc for doc in yaml.safe_load_all(patched) if doc is not None]
    except yaml.YAMLError as exc:
        raise ApplyError(f"Manifest {source} is not valid YAML after applying overlays: {exc}") from exc
    if not documents:
        raise ApplyError(f"Manifest {source} contains no documents")
    return patched


class Orchestrator:
    """Runs provisioning pipelines against the cluster and chart collaborators."""

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        kube: KubeAdapter | None = None,
        helm: HelmAdapter | None = None,
        helmfile: HelmfileAdapter | None = None,
        scripts: ScriptAdapter | None = None,
        settings: OrchestratorSettings | None = None,
        tool_probe: ToolProbe | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runner = runner
        self._kube = kube or KubeAdapter(runner=runner)
        self._helm = helm or HelmAdapter(runner=runner)
        self._helmfile = helmfile or HelmfileAdapter(runner=runner)
        self._scripts = scripts or ScriptAdapter(runner=runner)
        self._settings = settings or OrchestratorSettings()
        self._tool_probe = tool_probe or default_tool_probe
        self._sleep = sleep
        self._clock = clock

    @property
    def runner(self) -> CommandRunner | None:
        return self._runner

    @property
    def kube(self) -> KubeAdapter:
        return self._kube

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    # Pre-flight

    def validate(self, context: Mapping[str, str], required: Iterable[str] = ()) -> None:
        validate_context(context, required)
        logger.debug("Configuration is valid (%d keys)", len(context))

    def check_prerequisites(self, tools: Iterable[str]) -> None:
        wanted = sorted(set(tools))
        logger.info("Checking prerequisites: %s", ", ".join(wanted) or "-")
        missing = [tool for tool in wanted if not self._tool_probe(tool)]
        if missing:
            for tool in missing:
                logger.error("%s is required but not installed", tool)
            raise PrereqError(missing)
        logger.info("Prerequisites check passed.")

    def check_cluster_access(self) -> None:
        try:
            self._kube.cluster_info()
        except AdapterCommandError as exc:
            raise PrereqError([], detail=f"cannot connect to Kubernetes cluster ({exc})") from exc

    # Actions

    def ensure_namespace(self, name: str, *, retry_policy: RetryPolicy | None = None) -> NamespaceState:
        try:
            result = self._kube.ensure_namespace(name)
        except AdapterCommandError as exc:
            raise ApplyError(f"Failed to ensure namespace {name}: {exc}") from exc

        if result.changed:
            state: NamespaceState = NAMESPACE_CREATED
        else:
            logger.info("Namespace '%s' already exists.", name)
            state = NAMESPACE_ALREADY_EXISTS

        policy = retry_policy or RetryPolicy(
            max_attempts=self._settings.namespace_ready_attempts,
            delay_seconds=self._settings.namespace_ready_interval,
        )
        self._await_namespace_usable(name, policy)
        return state

    def _await_namespace_usable(self, name: str, policy: RetryPolicy) -> None:
        logger.info("Verifying namespace '%s' is ready...", name)
        for attempt in range(1, policy.max_attempts + 1):
            if self._kube.can_i("create", "pods", name):
                logger.info("Namespace '%s' is ready.", name)
                return
            logger.debug("Namespace '%s' not usable yet (attempt %d/%d)", name, attempt, policy.max_attempts)
            if attempt < policy.max_attempts:
                self._sleep(policy.delay_for(attempt))
        raise NotReadyError(name, policy.max_attempts)

    def create_or_update_secret(
        self,
        name: str,
        namespace: str,
        payload: Mapping[str, str],
        *,
        keep_existing: bool = False,
    ) -> ApplyResult:
        try:
            if keep_existing:
                existing = self._kube.secret_keys(name=name, namespace=namespace)
                if existing is not None and set(payload) <= existing:
                    logger.info("Secret '%s' already holds %s; keeping existing values.", name, ", ".join(sorted(payload)))
                    return ApplyResult(target=f"secret/{name}", changed=False)
            return self._kube.apply_secret(name=name, namespace=namespace, data=payload)
        except AdapterCommandError as exc:
            raise ApplyError(f"Failed to apply secret {name} in {namespace}: {exc}") from exc

    def apply_manifest(
        self,
        source: str,
        *,
        namespace: str | None = None,
        overlays: Iterable[ManifestOverlay] = (),
    ) -> ApplyResult:
        overlays = tuple(overlays)
        try:
            if not overlays:
                return self._kube.apply_file(source, namespace=namespace)
            content = self._read_source(source)
            patched = apply_overlays(content, overlays, source=source)
            return self._kube.apply_content(patched, target=source, namespace=namespace)
        except AdapterCommandError as exc:
            raise ApplyError(f"Failed to apply manifest {source}: {exc}") from exc

    def _read_source(self, source: str) -> str:
        if is_url(source):
            return self._scripts.fetch(source)
        try:
            return Path(source).read_text(encoding="utf-8")
        except OSError as exc:
            raise ApplyError(f"Unable to read manifest {source}: {exc}") from exc

    def install_or_upgrade_chart(
        self,
        release_name: str,
        chart_ref: str,
        namespace: str,
        values: Mapping[str, Any],
        wait_timeout: int,
        *,
        repo: HelmRepo | None = None,
        version: str | None = None,
    ):
        try:
            if repo is not None:
                logger.info("Adding Helm repository %s (%s)", repo.name, repo.url)
                self._helm.repo_add(name=repo.name, url=repo.url)
                self._helm.repo_update()
            return self._helm.upgrade_install(
                release_name=release_name,
                namespace=namespace,
                chart_ref=chart_ref,
                values=values,
                timeout=wait_timeout,
                chart_version=version,
                wait=True,
            )
        except AdapterCommandError as exc:
            raise ChartError(release_name, str(exc)) from exc

    def uninstall_chart(self, release_name: str, namespace: str, *, timeout: int):
        try:
            return self._helm.uninstall(release_name=release_name, namespace=namespace, timeout=timeout)
        except AdapterCommandError as exc:
            raise ChartError(release_name, str(exc)) from exc

    def apply_helmfile(self, file: str, namespace: str | None = None, *, environment: str | None = None) -> None:
        try:
            self._helmfile.apply(file=file, namespace=namespace, environment=environment)
        except AdapterCommandError as exc:
            raise ChartError(file, str(exc)) from exc

    def destroy_helmfile(self, file: str, namespace: str | None = None, *, environment: str | None = None) -> None:
        try:
            self._helmfile.destroy(file=file, namespace=namespace, environment=environment)
        except AdapterCommandError as exc:
            raise ChartError(file, str(exc)) from exc

    def wait_for_deployment_ready(
        self,
        deployment_name: str,
        namespace: str,
        timeout: int,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Wait for ``deployment/<name>`` to become available.

        ``timeout`` bounds the whole step: with a retry policy each attempt only
        gets the budget left over from the previous attempts and delays.
        """
        policy = retry_policy or RetryPolicy(max_attempts=1, delay_seconds=0)
        resource = f"deployment/{deployment_name}"
        deadline = self._clock() + timeout
        remaining = timeout
        logger.info("Waiting for deployment '%s' to be ready...", deployment_name)
        for attempt in range(1, policy.max_attempts + 1):
            try:
                self._kube.wait_for_condition(
                    resource,
                    namespace=namespace,
                    condition="available",
                    timeout=remaining,
                )
                logger.info("Deployment '%s' is available.", deployment_name)
                return
            except AdapterCommandError as exc:
                logger.debug("Wait for %s failed (attempt %d/%d): %s", resource, attempt, policy.max_attempts, exc)
                if "timed out" in exc.output:
                    raise ProvisionTimeoutError(deployment_name, timeout) from exc
                if attempt == policy.max_attempts:
                    if policy.max_attempts > 1:
                        raise NotReadyError(deployment_name, policy.max_attempts) from exc
                    raise ApplyError(f"Failed waiting for {resource} in {namespace}: {exc}") from exc
                self._sleep(policy.delay_for(attempt))
                remaining = int(deadline - self._clock())
                if remaining < 1:
                    raise ProvisionTimeoutError(deployment_name, timeout) from exc

    def run_external_script(self, source: str, *, args: Iterable[str] = ()) -> None:
        try:
            self._scripts.run(source, args=tuple(args))
        except AdapterCommandError as exc:
            raise ApplyError(f"External script {source} failed: {exc}") from exc

    def label_resource(self, kind: str, name: str, namespace: str, labels: Mapping[str, str]) -> ApplyResult:
        try:
            return self._kube.label(kind=kind, name=name, namespace=namespace, labels=labels)
        except AdapterCommandError as exc:
            raise ApplyError(f"Failed to label {kind}/{name}: {exc}") from exc

    # Pipeline

    def run_pipeline(self, run: PipelineRun) -> PipelineReport:
        if run.status != RUN_STATUS_NOT_STARTED:
            raise ValueError(f"Pipeline run '{run.name}' has already been started")

        report = PipelineReport(pipeline=run.name)
        run.status = RUN_STATUS_RUNNING
        total = len(run.steps)
        logger.info("Starting pipeline '%s' (%d steps)", run.name, total)

        for index, step in enumerate(run.steps, start=1):
            logger.info("[%d/%d] %s: %s", index, total, step.name, step.action.describe())
            started = time.monotonic()
            try:
                state, detail = self._execute(step)
            except Exception as exc:
                duration_ms = int((time.monotonic() - started) * 1000)
                logger.error("Step '%s' failed: %s", step.name, exc)
                logger.debug("Step '%s' failure traceback", step.name, exc_info=True)
                report.add(
                    StepOutcome(
                        name=step.name,
                        action=step.action.kind,
                        state=OUTCOME_FAILED,
                        detail=str(exc),
                        duration_ms=duration_ms,
                    )
                )
                run.status = RUN_STATUS_FAILED
                run.failed_step = step.name
                run.cause = exc
                skipped = total - index
                if skipped:
                    logger.error("Aborting pipeline '%s'; %d remaining step(s) not executed", run.name, skipped)
                raise PipelineError(step.name, exc, report) from exc

            duration_ms = int((time.monotonic() - started) * 1000)
            report.add(
                StepOutcome(
                    name=step.name,
                    action=step.action.kind,
                    state=state,
                    detail=detail,
                    duration_ms=duration_ms,
                )
            )
            logger.info("Step '%s' finished: %s", step.name, state)

        run.status = RUN_STATUS_SUCCEEDED
        logger.info("Pipeline '%s' succeeded (%s)", run.name, report.summary())
        return report

    def _execute(self, step: ProvisioningStep) -> StepResult:
        action = step.action
        if isinstance(action, EnsureNamespace):
            return self.ensure_namespace(action.namespace, retry_policy=step.retry_policy), None
        if isinstance(action, CreateOrUpdateSecret):
            return _applied(
                self.create_or_update_secret(action.name, action.namespace, action.data, keep_existing=action.keep_existing)
            )
        if isinstance(action, ApplyManifest):
            return _applied(
                self.apply_manifest(action.source, namespace=action.namespace, overlays=action.overlays)
            )
        if isinstance(action, InstallOrUpgradeChart):
            result = self.install_or_upgrade_chart(
                action.release,
                action.chart,
                action.namespace,
                action.values,
                action.timeout or self._settings.chart_timeout,
                repo=action.repo,
                version=action.version,
            )
            state = OUTCOME_APPLIED if result.changed else OUTCOME_UNCHANGED
            return state, f"status={result.status} revision={result.revision}"
        if isinstance(action, ApplyHelmfile):
            self.apply_helmfile(action.file, action.namespace, environment=action.environment)
            return OUTCOME_APPLIED, None
        if isinstance(action, DestroyHelmfile):
            self.destroy_helmfile(action.file, action.namespace, environment=action.environment)
            return OUTCOME_APPLIED, None
        if isinstance(action, UninstallChart):
            result = self.uninstall_chart(
                action.release,
                action.namespace,
                timeout=action.timeout or self._settings.wait_timeout,
            )
            return (OUTCOME_APPLIED if result.changed else OUTCOME_UNCHANGED), result.status
        if isinstance(action, WaitForReady):
            self.wait_for_deployment_ready(
                action.deployment,
                action.namespace,
                action.timeout or self._settings.wait_timeout,
                retry_policy=step.retry_policy,
            )
            return OUTCOME_READY, None
        if isinstance(action, RunExternalScript):
            self.run_external_script(action.source, args=action.args)
            return OUTCOME_APPLIED, None
        if isinstance(action, LabelResource):
            return _applied(self.label_resource(action.resource_kind, action.name, action.namespace, action.labels))
        raise TypeError(f"Unsupported action type: {type(action).__name__}")


def _applied(result: ApplyResult) -> StepResult:
    return (OUTCOME_APPLIED if result.changed else OUTCOME_UNCHANGED), result.target
