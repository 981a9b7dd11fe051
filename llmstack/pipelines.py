from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
import secrets
from typing import Any, Mapping

from jsonschema import ValidationError
from jsonschema import validate as jsonschema_validate
import yaml

from llmstack.errors import InvalidConfigError, MissingConfigError, PipelineDefinitionError
from llmstack.models import (
    RETRYABLE_ACTIONS,
    Action,
    ApplyHelmfile,
    ApplyManifest,
    CreateOrUpdateSecret,
    DestroyHelmfile,
    EnsureNamespace,
    HealthCheck,
    HelmRepo,
    InstallOrUpgradeChart,
    LabelResource,
    ManifestOverlay,
    PipelineRun,
    ProvisioningStep,
    RetryPolicy,
    RunExternalScript,
    ServiceEndpoint,
    UninstallChart,
    WaitForReady,
    is_url,
)

logger = logging.getLogger(__name__)

DEFINITIONS_DIR = Path(__file__).resolve().parent / "definitions"

_STRING = {"type": "string", "minLength": 1}
_TIMEOUT = {"type": ["integer", "string"]}
_STRING_MAP = {"type": "object", "additionalProperties": {"type": "string"}}


def _action_rule(action: str, required: list[str]) -> dict[str, Any]:
    return {
        "if": {"properties": {"action": {"const": action}}},
        "then": {"required": required},
    }


_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name", "action"],
    "properties": {
        "name": _STRING,
        "action": {
            "enum": [
                "ensure_namespace",
                "create_or_update_secret",
                "apply_manifest",
                "install_or_upgrade_chart",
                "apply_helmfile",
                "destroy_helmfile",
                "uninstall_chart",
                "wait_for_ready",
                "run_external_script",
                "label_resource",
            ]
        },
        "namespace": _STRING,
        "secret": _STRING,
        "data": _STRING_MAP,
        "keep_existing": {"type": "boolean"},
        "source": _STRING,
        "overlays": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["find", "replace"],
                "properties": {"find": _STRING, "replace": {"type": "string"}},
                "additionalProperties": False,
            },
        },
        "release": _STRING,
        "chart": _STRING,
        "version": _STRING,
        "values": {"type": "object"},
        "repo": {
            "type": "object",
            "required": ["name", "url"],
            "properties": {"name": _STRING, "url": _STRING},
            "additionalProperties": False,
        },
        "timeout": _TIMEOUT,
        "file": _STRING,
        "environment": _STRING,
        "deployment": _STRING,
        "args": {"type": "array", "items": {"type": "string"}},
        "kind": _STRING,
        "resource": _STRING,
        "labels": _STRING_MAP,
        "retry": {
            "type": "object",
            "required": ["attempts"],
            "properties": {
                "attempts": {"type": "integer", "minimum": 1},
                "delay": {"type": "number", "minimum": 0},
                "backoff": {"enum": ["fixed", "exponential"]},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
    "allOf": [
        _action_rule("ensure_namespace", ["namespace"]),
        _action_rule("create_or_update_secret", ["secret", "namespace", "data"]),
        _action_rule("apply_manifest", ["source"]),
        _action_rule("install_or_upgrade_chart", ["release", "chart", "namespace"]),
        _action_rule("apply_helmfile", ["file"]),
        _action_rule("destroy_helmfile", ["file"]),
        _action_rule("uninstall_chart", ["release", "namespace"]),
        _action_rule("wait_for_ready", ["deployment", "namespace"]),
        _action_rule("run_external_script", ["source"]),
        _action_rule("label_resource", ["kind", "resource", "namespace", "labels"]),
    ],
}

PIPELINE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name", "steps"],
    "properties": {
        "name": _STRING,
        "description": {"type": "string"},
        "defaults": {"type": "object", "additionalProperties": {"type": ["string", "integer"]}},
        "required": {"type": "array", "items": _STRING},
        "generated": {"type": "array", "items": _STRING},
        "endpoints": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["service", "namespace"],
                "properties": {"service": _STRING, "namespace": _STRING, "label": _STRING},
                "additionalProperties": False,
            },
        },
        "health_checks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["label", "namespace", "selector"],
                "properties": {
                    "label": _STRING,
                    "namespace": _STRING,
                    "selector": _STRING,
                    "requires_gpu": {"type": "boolean"},
                },
                "additionalProperties": False,
            },
        },
        "steps": {"type": "array", "minItems": 1, "items": _STEP_SCHEMA},
    },
    "additionalProperties": False,
}


# Only bare {identifier} tokens; Go/Helm templates such as {{ .Release.Name }} pass through.
_PLACEHOLDER_RE = re.compile(r"(?<!\{)\{([A-Za-z_][A-Za-z0-9_]*)\}(?!\})")


def _lookup(context: Mapping[str, str], key: str) -> str:
    if key not in context:
        raise MissingConfigError(key)
    return str(context[key])


def render(value: Any, context: Mapping[str, str]) -> Any:
    """Substitute ``{key}`` placeholders in strings, recursing into lists and mappings."""
    if isinstance(value, str):
        return _PLACEHOLDER_RE.sub(lambda match: _lookup(context, match.group(1)), value)
    if isinstance(value, Mapping):
        return {render(k, context): render(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render(item, context) for item in value]
    return value


def _as_timeout(value: Any, *, step: str) -> int | None:
    if value is None:
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidConfigError(f"{step}.timeout", f"{value!r} is not a number of seconds") from exc
    if seconds < 1:
        raise InvalidConfigError(f"{step}.timeout", "must be at least 1 second")
    return seconds


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    steps: tuple[dict[str, Any], ...]
    description: str = ""
    defaults: Mapping[str, str] = field(default_factory=dict)
    required: tuple[str, ...] = ()
    generated: tuple[str, ...] = ()
    endpoints: tuple[dict[str, Any], ...] = ()
    health_checks: tuple[dict[str, Any], ...] = ()
    base_dir: Path = DEFINITIONS_DIR

    def context_defaults(self) -> dict[str, str]:
        """Static defaults plus freshly generated values for ``generated`` keys."""
        defaults = dict(self.defaults)
        for key in self.generated:
            defaults.setdefault(key, secrets.token_hex(32))
        return defaults

    def build(self, context: Mapping[str, str]) -> PipelineRun:
        steps = tuple(self._build_step(raw, context) for raw in self.steps)
        endpoints = tuple(
            ServiceEndpoint(
                service=render(raw["service"], context),
                namespace=render(raw["namespace"], context),
                label=raw.get("label"),
            )
            for raw in self.endpoints
        )
        health_checks = tuple(
            HealthCheck(
                label=raw["label"],
                namespace=render(raw["namespace"], context),
                selector=render(raw["selector"], context),
                requires_gpu=raw.get("requires_gpu", False),
            )
            for raw in self.health_checks
        )
        return PipelineRun(
            name=self.name,
            steps=steps,
            context=context,
            endpoints=endpoints,
            health_checks=health_checks,
        )

    def _build_step(self, raw: Mapping[str, Any], context: Mapping[str, str]) -> ProvisioningStep:
        rendered = render(dict(raw), context)
        name = rendered["name"]
        action = self._build_action(rendered)
        retry_policy = None
        if "retry" in rendered:
            if not isinstance(action, RETRYABLE_ACTIONS):
                raise PipelineDefinitionError(f"Step '{name}': retry is only supported on readiness steps")
            retry = rendered["retry"]
            retry_policy = RetryPolicy(
                max_attempts=retry["attempts"],
                delay_seconds=float(retry.get("delay", 0)),
                backoff=retry.get("backoff", "fixed"),
            )
        return ProvisioningStep(name=name, action=action, retry_policy=retry_policy)

    def _build_action(self, step: Mapping[str, Any]) -> Action:
        kind = step["action"]
        name = step["name"]
        if kind == "ensure_namespace":
            return EnsureNamespace(namespace=step["namespace"])
        if kind == "create_or_update_secret":
            return CreateOrUpdateSecret(
                name=step["secret"],
                namespace=step["namespace"],
                data=step["data"],
                keep_existing=step.get("keep_existing", False),
            )
        if kind == "apply_manifest":
            return ApplyManifest(
                source=self._resolve_source(step["source"]),
                namespace=step.get("namespace"),
                overlays=tuple(ManifestOverlay(find=o["find"], replace=o["replace"]) for o in step.get("overlays", [])),
            )
        if kind == "install_or_upgrade_chart":
            repo = step.get("repo")
            return InstallOrUpgradeChart(
                release=step["release"],
                chart=step["chart"],
                namespace=step["namespace"],
                values=step.get("values", {}),
                timeout=_as_timeout(step.get("timeout"), step=name),
                repo=HelmRepo(name=repo["name"], url=repo["url"]) if repo else None,
                version=step.get("version"),
            )
        if kind == "apply_helmfile":
            return ApplyHelmfile(
                file=self._resolve_source(step["file"]),
                namespace=step.get("namespace"),
                environment=step.get("environment"),
            )
        if kind == "destroy_helmfile":
            return DestroyHelmfile(
                file=self._resolve_source(step["file"]),
                namespace=step.get("namespace"),
                environment=step.get("environment"),
            )
        if kind == "uninstall_chart":
            return UninstallChart(
                release=step["release"],
                namespace=step["namespace"],
                timeout=_as_timeout(step.get("timeout"), step=name),
            )
        if kind == "wait_for_ready":
            return WaitForReady(
                deployment=step["deployment"],
                namespace=step["namespace"],
                timeout=_as_timeout(step.get("timeout"), step=name),
            )
        if kind == "run_external_script":
            return RunExternalScript(source=self._resolve_source(step["source"]), args=tuple(step.get("args", [])))
        if kind == "label_resource":
            return LabelResource(
                resource_kind=step["kind"],
                name=step["resource"],
                namespace=step["namespace"],
                labels=step["labels"],
            )
        raise PipelineDefinitionError(f"Step '{name}': unsupported action {kind!r}")

    def _resolve_source(self, source: str) -> str:
        if is_url(source) or Path(source).is_absolute():
            return source
        return str(self.base_dir / source)


def parse_definition(document: Any, *, base_dir: Path, origin: str) -> PipelineDefinition:
    try:
        jsonschema_validate(instance=document, schema=PIPELINE_SCHEMA)
    except ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise PipelineDefinitionError(f"Invalid pipeline definition {origin} at {location}: {exc.message}") from exc

    names = [step["name"] for step in document["steps"]]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise PipelineDefinitionError(f"Duplicate step names in {origin}: {', '.join(duplicates)}")

    return PipelineDefinition(
        name=document["name"],
        description=document.get("description", ""),
        defaults={k: str(v) for k, v in document.get("defaults", {}).items()},
        required=tuple(document.get("required", [])),
        generated=tuple(document.get("generated", [])),
        endpoints=tuple(document.get("endpoints", [])),
        health_checks=tuple(document.get("health_checks", [])),
        steps=tuple(document["steps"]),
        base_dir=base_dir,
    )


def load_definition_file(path: Path) -> PipelineDefinition:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PipelineDefinitionError(f"Unable to read pipeline definition {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise PipelineDefinitionError(f"Invalid YAML in pipeline definition {path}: {exc}") from exc
    return parse_definition(document, base_dir=path.resolve().parent, origin=str(path))


def builtin_pipelines() -> dict[str, Path]:
    return {path.stem: path for path in sorted(DEFINITIONS_DIR.glob("*.yaml"))}


def load_definition(ref: str) -> PipelineDefinition:
    """Load a built-in pipeline by name, or a pipeline definition file by path."""
    builtins = builtin_pipelines()
    if ref in builtins:
        logger.debug("Loading built-in pipeline %s", ref)
        return load_definition_file(builtins[ref])
    path = Path(ref)
    if path.is_file():
        return load_definition_file(path)
    known = ", ".join(builtins) or "-"
    raise PipelineDefinitionError(f"Unknown pipeline {ref!r}; expected a file path or one of: {known}")
