from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from dotenv import dotenv_values

from llmstack.errors import InvalidConfigError, MissingConfigError

logger = logging.getLogger(__name__)

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_CREDENTIAL_MARKERS = ("token", "password", "secret")

DEFAULT_ENV_FILE = ".env.local"


def is_valid_dns_label(value: str) -> bool:
    return bool(DNS_LABEL_RE.fullmatch(value))


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidConfigError(name, f"expected an integer, got {raw!r}") from exc
    if value < 1:
        raise InvalidConfigError(name, "must be at least 1")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise InvalidConfigError(name, f"expected a number, got {raw!r}") from exc
    if value < 0:
        raise InvalidConfigError(name, "must not be negative")
    return value


@dataclass(frozen=True)
class OrchestratorSettings:
    namespace_ready_attempts: int = 30
    namespace_ready_interval: float = 2.0
    wait_timeout: int = 300
    chart_timeout: int = 600
    env_file: str = DEFAULT_ENV_FILE

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        return cls(
            namespace_ready_attempts=_env_int("LLMSTACK_NAMESPACE_READY_ATTEMPTS", cls.namespace_ready_attempts),
            namespace_ready_interval=_env_float("LLMSTACK_NAMESPACE_READY_INTERVAL", cls.namespace_ready_interval),
            wait_timeout=_env_int("LLMSTACK_WAIT_TIMEOUT", cls.wait_timeout),
            chart_timeout=_env_int("LLMSTACK_CHART_TIMEOUT", cls.chart_timeout),
            env_file=os.getenv("LLMSTACK_ENV_FILE") or DEFAULT_ENV_FILE,
        )


class Context(Mapping[str, str]):
    """Read-only configuration for one pipeline run."""

    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = MappingProxyType(dict(values))

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        shown = {k: ("***" if is_credential_key(k) else v) for k, v in self._values.items()}
        return f"Context({shown!r})"


def is_credential_key(key: str) -> bool:
    lowered = key.lower()
    # e.g. hf_token_name names the Secret object, it is not a credential.
    if lowered.endswith("_name"):
        return False
    return any(marker in lowered for marker in _CREDENTIAL_MARKERS)


def load_env_source(env_file: str | Path | None = None, *, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Process environment layered over the optional dotenv file."""
    source: dict[str, str] = {}
    if env_file is not None:
        path = Path(env_file)
        if path.is_file():
            logger.debug("Loading environment overrides from %s", path)
            source.update({k: v for k, v in dotenv_values(path).items() if v is not None})
        else:
            logger.debug("Environment file %s not found; using process environment only", path)
    source.update(os.environ if environ is None else environ)
    return source


def resolve_context(
    *,
    defaults: Mapping[str, str],
    required: Iterable[str] = (),
    env: Mapping[str, str],
    overrides: Mapping[str, str] | None = None,
) -> Context:
    """Merge defaults, environment (KEY.upper()) and explicit overrides, in that precedence order."""
    overrides = overrides or {}
    keys = list(dict.fromkeys([*defaults, *required, *overrides]))
    values: dict[str, str] = {}
    for key in keys:
        if key in overrides:
            values[key] = str(overrides[key])
        elif key.upper() in env:
            values[key] = str(env[key.upper()])
        elif key in defaults:
            values[key] = str(defaults[key])
    return Context(values)


def validate_context(context: Mapping[str, str], required: Iterable[str] = ()) -> None:
    for key in required:
        if key not in context:
            raise MissingConfigError(key)
        if not str(context[key]).strip():
            raise InvalidConfigError(key, "must not be empty")

    for key, value in context.items():
        lowered = key.lower()
        if is_credential_key(key) and not value.strip():
            raise InvalidConfigError(key, "credential must not be empty")
        if lowered == "namespace" or lowered.endswith("_namespace"):
            if not is_valid_dns_label(value):
                raise InvalidConfigError(key, f"{value!r} is not a valid DNS-1123 label")
        if "timeout" in lowered:
            if not value.isdigit() or int(value) < 1:
                raise InvalidConfigError(key, f"{value!r} is not a positive number of seconds")
