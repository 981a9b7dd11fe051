from __future__ import annotations

import logging
from pathlib import Path
from tempfile import TemporaryDirectory

from llmstack.models import is_url
from llmstack.proc import CommandRunner, run_command

logger = logging.getLogger(__name__)


class ScriptAdapter:
    """Fetches remote documents with curl and runs installer scripts with bash."""

    def __init__(self, *, runner: CommandRunner | None = None) -> None:
        self._runner = runner

    def fetch(self, url: str) -> str:
        result = run_command(
            ["curl", "-fsSL", url],
            runner=self._runner,
            error_message=f"Failed to download {url}",
        )
        return result.stdout

    def run(self, source: str, *, args: tuple[str, ...] = ()) -> str:
        if not is_url(source):
            return self._run_local(source, args)

        with TemporaryDirectory(prefix="llmstack-script-") as workdir:
            script = Path(workdir) / (Path(source).name or "script.sh")
            run_command(
                ["curl", "-fsSL", "-o", str(script), source],
                runner=self._runner,
                error_message=f"Failed to download script {source}",
            )
            logger.debug("Downloaded %s to %s", source, script)
            return self._run_local(str(script), args, label=source)

    def _run_local(self, path: str, args: tuple[str, ...], *, label: str | None = None) -> str:
        result = run_command(
            ["bash", path, *args],
            runner=self._runner,
            error_message=f"Script {label or path} failed",
        )
        return result.stdout
