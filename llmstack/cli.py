from __future__ import annotations

from dataclasses import asdict
import logging
from pathlib import Path

import typer
import yaml

from llmstack.config import OrchestratorSettings, is_credential_key, load_env_source, resolve_context
from llmstack.errors import ConfigError, InvalidConfigError, PipelineError, PrereqError
from llmstack.logging_config import configure_logging, register_secret_values
from llmstack.models import PipelineRun
from llmstack.orchestrator import Orchestrator
from llmstack.pipelines import PipelineDefinition, builtin_pipelines, load_definition
from llmstack.services.access import resolve_endpoints, resolve_node_host
from llmstack.services.health import HEALTH_RUNNING, HEALTH_SKIPPED, check_health

EXIT_CONFIG_ERROR = 3
EXIT_PREREQ_ERROR = 4
EXIT_PROVISION_ERROR = 5

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="Provision a local LLM serving stack on Kubernetes", pretty_exceptions_show_locals=False)

_NAMESPACE_OPTION = typer.Option(None, "--namespace", "-n", help="Override the pipeline's target namespace.")
_RELEASE_OPTION = typer.Option(None, "--release-name", help="Override the pipeline's release name.")
_SET_OPTION = typer.Option(None, "--set", help="Override a context value, KEY=VALUE. Repeatable.")
_ENV_FILE_OPTION = typer.Option(
    None,
    "--env-file",
    help="Dotenv file with credentials (default: LLMSTACK_ENV_FILE or .env.local).",
)


def build_orchestrator(settings: OrchestratorSettings) -> Orchestrator:
    return Orchestrator(settings=settings)


def _parse_overrides(
    *,
    namespace: str | None,
    release_name: str | None,
    set_values: list[str] | None,
) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for item in set_values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise InvalidConfigError("--set", f"expected KEY=VALUE, got {item!r}")
        overrides[key.strip()] = value
    if namespace is not None:
        overrides["namespace"] = namespace
    if release_name is not None:
        overrides["release_name"] = release_name
    return overrides


def _prepare(
    *,
    pipeline: str,
    namespace: str | None,
    release_name: str | None,
    set_values: list[str] | None,
    env_file: Path | None,
) -> tuple[Orchestrator, PipelineDefinition, PipelineRun]:
    settings = OrchestratorSettings.from_env()
    definition = load_definition(pipeline)
    env = load_env_source(env_file or settings.env_file)
    context = resolve_context(
        defaults=definition.context_defaults(),
        required=definition.required,
        env=env,
        overrides=_parse_overrides(namespace=namespace, release_name=release_name, set_values=set_values),
    )
    register_secret_values(value for key, value in context.items() if is_credential_key(key))
    orchestrator = build_orchestrator(settings)
    orchestrator.validate(context, definition.required)
    return orchestrator, definition, definition.build(context)


def _preflight(orchestrator: Orchestrator, run: PipelineRun) -> None:
    tools = run.required_tools
    orchestrator.check_prerequisites(tools)
    if "kubectl" in tools:
        orchestrator.check_cluster_access()


def _exit_for_config_error(exc: ConfigError) -> None:
    logger.error("Configuration error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=EXIT_CONFIG_ERROR)


def _exit_for_prereq_error(exc: PrereqError) -> None:
    logger.error("Prerequisite check failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=EXIT_PREREQ_ERROR)


def _echo_yaml_entity(entity: object) -> None:
    typer.echo(yaml.safe_dump(entity, sort_keys=False), nl=False)


def _describe_run(run: PipelineRun) -> dict:
    return {
        "pipeline": run.name,
        "tools": sorted(run.required_tools),
        "steps": [
            {
                "name": step.name,
                "action": step.action.kind,
                "description": step.action.describe(),
                **({"retry": asdict(step.retry_policy)} if step.retry_policy else {}),
            }
            for step in run.steps
        ],
    }


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (default: LLMSTACK_LOG_LEVEL or INFO)."),
) -> None:
    if log_level is not None:
        configure_logging(level=log_level)


@app.command("list")
def list_pipelines() -> None:
    entries = []
    for name, path in builtin_pipelines().items():
        try:
            description = load_definition(str(path)).description
        except ConfigError as e:
            description = f"<invalid: {e}>"
        entries.append({"name": name, "description": description})
    _echo_yaml_entity(entries)


@app.command("show")
def show(
    pipeline: str = typer.Argument(..., help="Built-in pipeline name or path to a pipeline YAML file."),
    namespace: str | None = _NAMESPACE_OPTION,
    release_name: str | None = _RELEASE_OPTION,
    set_values: list[str] | None = _SET_OPTION,
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    try:
        _, _, run = _prepare(
            pipeline=pipeline,
            namespace=namespace,
            release_name=release_name,
            set_values=set_values,
            env_file=env_file,
        )
    except ConfigError as e:
        _exit_for_config_error(e)
    _echo_yaml_entity(_describe_run(run))


@app.command("check")
def check(
    pipeline: str = typer.Argument(..., help="Built-in pipeline name or path to a pipeline YAML file."),
    namespace: str | None = _NAMESPACE_OPTION,
    release_name: str | None = _RELEASE_OPTION,
    set_values: list[str] | None = _SET_OPTION,
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    try:
        orchestrator, _, run = _prepare(
            pipeline=pipeline,
            namespace=namespace,
            release_name=release_name,
            set_values=set_values,
            env_file=env_file,
        )
        _preflight(orchestrator, run)
    except ConfigError as e:
        _exit_for_config_error(e)
    except PrereqError as e:
        _exit_for_prereq_error(e)
    typer.echo(f"Pipeline '{run.name}' is ready to run ({len(run.steps)} steps).")


@app.command("run")
def run(
    pipeline: str = typer.Argument(..., help="Built-in pipeline name or path to a pipeline YAML file."),
    namespace: str | None = _NAMESPACE_OPTION,
    release_name: str | None = _RELEASE_OPTION,
    set_values: list[str] | None = _SET_OPTION,
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    try:
        orchestrator, _, pipeline_run = _prepare(
            pipeline=pipeline,
            namespace=namespace,
            release_name=release_name,
            set_values=set_values,
            env_file=env_file,
        )
        _preflight(orchestrator, pipeline_run)
    except ConfigError as e:
        _exit_for_config_error(e)
    except PrereqError as e:
        _exit_for_prereq_error(e)

    try:
        report = orchestrator.run_pipeline(pipeline_run)
    except PipelineError as e:
        _echo_yaml_entity(asdict(e.report))
        typer.echo(f"Error: {e}", err=True)
        typer.echo(
            f"Fix the cause and re-run 'llmstack run {pipeline}'; completed steps are safe to repeat.",
            err=True,
        )
        raise typer.Exit(code=EXIT_PROVISION_ERROR)

    _echo_yaml_entity(asdict(report))
    if pipeline_run.health_checks:
        for health in check_health(orchestrator.kube, pipeline_run.health_checks):
            if health.state == HEALTH_RUNNING:
                typer.echo(f"OK: {health.label} is running")
            elif health.state == HEALTH_SKIPPED:
                typer.echo(f"SKIPPED: {health.label} ({health.detail})")
            else:
                typer.echo(f"WARNING: {health.label} may not be running properly ({health.detail})")
    if pipeline_run.endpoints:
        host = resolve_node_host(orchestrator.kube, runner=orchestrator.runner)
        for access in resolve_endpoints(orchestrator.kube, pipeline_run.endpoints, host=host):
            if access.url:
                typer.echo(f"{access.label} is available at: {access.url}")
            typer.echo(f"  or run: {access.port_forward}")


if __name__ == "__main__":
    app()
