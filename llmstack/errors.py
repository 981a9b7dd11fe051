from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from llmstack.models import PipelineReport


class LlmstackException(Exception):
    pass


class ConfigError(LlmstackException):
    pass


class MissingConfigError(ConfigError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Missing required configuration value: {key}")


class InvalidConfigError(ConfigError):
    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration value for {key}: {reason}")


class PipelineDefinitionError(ConfigError):
    pass


class PrereqError(LlmstackException):
    def __init__(self, missing_tools: list[str], *, detail: str | None = None) -> None:
        self.missing_tools = sorted(missing_tools)
        self.detail = detail
        if self.missing_tools:
            message = f"Required tools are not installed: {', '.join(self.missing_tools)}"
        else:
            message = "Prerequisite check failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ProvisionError(LlmstackException):
    pass


class ApplyError(ProvisionError):
    pass


class ChartError(ProvisionError):
    def __init__(self, release_name: str, cause: str) -> None:
        self.release_name = release_name
        self.cause = cause
        super().__init__(f"Chart operation failed for release {release_name}: {cause}")


class ProvisionTimeoutError(ProvisionError):
    def __init__(self, target: str, timeout: int) -> None:
        self.target = target
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for {target}")


class NotReadyError(ProvisionError):
    def __init__(self, target: str, attempts: int) -> None:
        self.target = target
        self.attempts = attempts
        super().__init__(f"{target} is not ready after {attempts} attempts")


class PipelineError(LlmstackException):
    """A step failed; the remaining steps of the run were not executed."""

    def __init__(self, step_name: str, cause: Exception, report: PipelineReport) -> None:
        self.step_name = step_name
        self.cause = cause
        self.report = report
        super().__init__(f"Step '{step_name}' failed: {cause}")
