from __future__ import annotations

import pytest
from typer.testing import CliRunner

from llmstack.config import OrchestratorSettings
from llmstack.orchestrator import Orchestrator
from tests.fakes import FakeCluster, RecordingSleep, tool_probe_for

ALL_TOOLS = ("kubectl", "helm", "helmfile", "curl", "bash", "minikube")


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def orchestrator(cluster: FakeCluster, sleeper: RecordingSleep) -> Orchestrator:
    return Orchestrator(
        runner=cluster,
        settings=OrchestratorSettings(),
        tool_probe=tool_probe_for(*ALL_TOOLS),
        sleep=sleeper,
    )


@pytest.fixture
def cli_runner(cluster: FakeCluster, sleeper: RecordingSleep, tmp_path, monkeypatch):
    import llmstack.cli as cli

    available = list(ALL_TOOLS)

    def build_orchestrator(settings: OrchestratorSettings) -> Orchestrator:
        return Orchestrator(runner=cluster, settings=settings, tool_probe=tool_probe_for(*available), sleep=sleeper)

    for name in ("HF_TOKEN", "GRAFANA_ADMIN_PASSWORD", "NAMESPACE", "LLMSTACK_ENV_FILE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LLMSTACK_ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setattr(cli, "build_orchestrator", build_orchestrator)
    return CliRunner(), cli.app, available
