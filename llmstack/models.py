from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Union

RUN_STATUS_NOT_STARTED = "not-started"
RUN_STATUS_RUNNING = "running"
RUN_STATUS_SUCCEEDED = "succeeded"
RUN_STATUS_FAILED = "failed"

NAMESPACE_CREATED = "created"
NAMESPACE_ALREADY_EXISTS = "already-exists"

OUTCOME_APPLIED = "applied"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_READY = "ready"
OUTCOME_FAILED = "failed"

RunStatus = Literal["not-started", "running", "succeeded", "failed"]
NamespaceState = Literal["created", "already-exists"]
BackoffKind = Literal["fixed", "exponential"]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    delay_seconds: float
    backoff: BackoffKind = "fixed"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        if self.backoff == "exponential":
            return self.delay_seconds * (2 ** (attempt - 1))
        return self.delay_seconds


@dataclass(frozen=True)
class ManifestOverlay:
    """A literal find/replace patch applied to a manifest before it is applied."""

    find: str
    replace: str


@dataclass(frozen=True)
class HelmRepo:
    name: str
    url: str


@dataclass(frozen=True)
class EnsureNamespace:
    namespace: str

    kind = "ensure_namespace"
    tools = ("kubectl",)

    def describe(self) -> str:
        return f"ensure namespace '{self.namespace}'"


@dataclass(frozen=True)
class CreateOrUpdateSecret:
    name: str
    namespace: str
    data: Mapping[str, str] = field(default_factory=dict)
    # Leave keys the Secret already holds untouched, for generated values.
    keep_existing: bool = False

    kind = "create_or_update_secret"
    tools = ("kubectl",)

    def describe(self) -> str:
        keys = ", ".join(sorted(self.data)) or "-"
        return f"create or update secret '{self.name}' in '{self.namespace}' (keys: {keys})"


@dataclass(frozen=True)
class ApplyManifest:
    source: str
    namespace: str | None = None
    overlays: tuple[ManifestOverlay, ...] = ()

    kind = "apply_manifest"

    @property
    def tools(self) -> tuple[str, ...]:
        if self.overlays and is_url(self.source):
            return ("kubectl", "curl")
        return ("kubectl",)

    def describe(self) -> str:
        target = f" in '{self.namespace}'" if self.namespace else ""
        return f"apply manifest {self.source}{target}"


@dataclass(frozen=True)
class InstallOrUpgradeChart:
    release: str
    chart: str
    namespace: str
    values: Mapping[str, Any] = field(default_factory=dict)
    timeout: int | None = None
    repo: HelmRepo | None = None
    version: str | None = None

    kind = "install_or_upgrade_chart"
    tools = ("helm",)

    def describe(self) -> str:
        return f"install or upgrade release '{self.release}' ({self.chart}) in '{self.namespace}'"


@dataclass(frozen=True)
class ApplyHelmfile:
    file: str
    namespace: str | None = None
    environment: str | None = None

    kind = "apply_helmfile"
    tools = ("helmfile", "helm")

    def describe(self) -> str:
        env = f" (environment {self.environment})" if self.environment else ""
        target = f" in '{self.namespace}'" if self.namespace else ""
        return f"apply helmfile {self.file}{target}{env}"


@dataclass(frozen=True)
class DestroyHelmfile:
    file: str
    namespace: str | None = None
    environment: str | None = None

    kind = "destroy_helmfile"
    tools = ("helmfile", "helm")

    def describe(self) -> str:
        target = f" in '{self.namespace}'" if self.namespace else ""
        return f"destroy helmfile {self.file} releases{target}"


@dataclass(frozen=True)
class UninstallChart:
    release: str
    namespace: str
    timeout: int | None = None

    kind = "uninstall_chart"
    tools = ("helm",)

    def describe(self) -> str:
        return f"uninstall release '{self.release}' from '{self.namespace}'"


@dataclass(frozen=True)
class WaitForReady:
    deployment: str
    namespace: str
    timeout: int | None = None

    kind = "wait_for_ready"
    tools = ("kubectl",)

    def describe(self) -> str:
        return f"wait for deployment '{self.deployment}' in '{self.namespace}' to become available"


@dataclass(frozen=True)
class RunExternalScript:
    source: str
    args: tuple[str, ...] = ()

    kind = "run_external_script"

    @property
    def tools(self) -> tuple[str, ...]:
        if is_url(self.source):
            return ("curl", "bash")
        return ("bash",)

    def describe(self) -> str:
        return f"run external script {self.source}"


@dataclass(frozen=True)
class LabelResource:
    resource_kind: str
    name: str
    namespace: str
    labels: Mapping[str, str] = field(default_factory=dict)

    kind = "label_resource"
    tools = ("kubectl",)

    def describe(self) -> str:
        pairs = ",".join(f"{k}={v}" for k, v in sorted(self.labels.items()))
        return f"label {self.resource_kind}/{self.name} in '{self.namespace}' with {pairs}"


Action = Union[
    EnsureNamespace,
    CreateOrUpdateSecret,
    ApplyManifest,
    InstallOrUpgradeChart,
    ApplyHelmfile,
    DestroyHelmfile,
    UninstallChart,
    WaitForReady,
    RunExternalScript,
    LabelResource,
]

# Only readiness gates honour a step-level retry policy.
RETRYABLE_ACTIONS = (EnsureNamespace, WaitForReady)


@dataclass(frozen=True)
class ProvisioningStep:
    name: str
    action: Action
    retry_policy: RetryPolicy | None = None
    # Every action is expressed as ensure-desired-state; this is never False.
    idempotent: bool = True


@dataclass(frozen=True)
class StepOutcome:
    name: str
    action: str
    state: str
    detail: str | None = None
    duration_ms: int = 0


@dataclass
class PipelineReport:
    pipeline: str
    outcomes: list[StepOutcome] = field(default_factory=list)

    def add(self, outcome: StepOutcome) -> None:
        self.outcomes.append(outcome)

    def summary(self) -> str:
        failed = sum(1 for o in self.outcomes if o.state == OUTCOME_FAILED)
        return f"steps={len(self.outcomes)} ok={len(self.outcomes) - failed} failed={failed}"


@dataclass
class PipelineRun:
    name: str
    steps: tuple[ProvisioningStep, ...]
    context: Mapping[str, str]
    endpoints: tuple[ServiceEndpoint, ...] = ()
    health_checks: tuple[HealthCheck, ...] = ()
    status: RunStatus = RUN_STATUS_NOT_STARTED
    failed_step: str | None = None
    cause: Exception | None = None

    @property
    def required_tools(self) -> set[str]:
        tools: set[str] = set()
        for step in self.steps:
            tools.update(step.action.tools)
        return tools

    @property
    def finished(self) -> bool:
        return self.status in (RUN_STATUS_SUCCEEDED, RUN_STATUS_FAILED)


@dataclass(frozen=True)
class ServiceEndpoint:
    service: str
    namespace: str
    label: str | None = None


def is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


@dataclass(frozen=True)
class HealthCheck:
    """Pods selected by ``selector`` in ``namespace`` that should be Running after a run."""

    label: str
    namespace: str
    selector: str
    requires_gpu: bool = False
