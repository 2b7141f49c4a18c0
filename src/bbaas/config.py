"""
Configuration for the orchestrator and the sandbox worker.

Values are resolved from the environment exactly once (``from_env``) and the
resulting objects are passed explicitly to the components that need them.
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict

from .log_config import get_logger

log = get_logger("config")

DEFAULT_OLLAMA_ENDPOINT = "http://host.docker.internal:11434/api/generate"
DEFAULT_OLLAMA_MODEL = "gemma3:4b"
DEFAULT_WORKER_IMAGE = "bbaas-worker:latest"
DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"


def _resolve_number(
    environ: Mapping[str, str],
    name: str,
    default: float,
    min_value: float,
    max_value: float,
) -> float:
    """Read a numeric env value, falling back to the default and clamping to bounds."""
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default

    try:
        value = float(raw)
    except ValueError:
        log.warn(
            "config.value_invalid",
            name=name,
            detail=f"invalid value '{raw}', using default",
            default=default,
        )
        return default

    if value < min_value:
        log.warn("config.value_clamped", name=name, detail=f"below min ({min_value}), clamped")
        return min_value
    if value > max_value:
        log.warn("config.value_clamped", name=name, detail=f"above max ({max_value}), clamped")
        return max_value
    return value


def _resolve_flag(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class InferenceConfig(BaseModel):
    """Where the sandbox sends its language-model requests."""

    model_config = ConfigDict(frozen=True)

    endpoint: str = DEFAULT_OLLAMA_ENDPOINT
    model: str = DEFAULT_OLLAMA_MODEL
    timeout_seconds: float = 120.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "InferenceConfig":
        env = os.environ if environ is None else environ
        return cls(
            endpoint=env.get("OLLAMA_ENDPOINT") or DEFAULT_OLLAMA_ENDPOINT,
            model=env.get("OLLAMA_MODEL") or DEFAULT_OLLAMA_MODEL,
            timeout_seconds=_resolve_number(env, "OLLAMA_TIMEOUT_SECONDS", 120.0, 5.0, 900.0),
        )


class WorkerConfig(BaseModel):
    """Settings of the in-sandbox worker and its agent loop."""

    model_config = ConfigDict(frozen=True)

    inference: InferenceConfig = InferenceConfig()
    max_iterations: int = 5
    navigation_timeout_ms: float = 30_000
    element_wait_timeout_ms: float = 2_000
    settle_delay_ms: float = 500
    describe_text_limit: int = 5_000
    agent_text_limit: int = 8_000
    viewport_width: int = 1280
    viewport_height: int = 800

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "WorkerConfig":
        env = os.environ if environ is None else environ
        return cls(
            inference=InferenceConfig.from_env(env),
            max_iterations=int(_resolve_number(env, "AGENT_MAX_ITERATIONS", 5, 1, 50)),
            navigation_timeout_ms=_resolve_number(
                env, "NAVIGATION_TIMEOUT_MS", 30_000, 1_000, 300_000
            ),
            element_wait_timeout_ms=_resolve_number(
                env, "ELEMENT_WAIT_TIMEOUT_MS", 2_000, 100, 60_000
            ),
            settle_delay_ms=_resolve_number(env, "SETTLE_DELAY_MS", 500, 0, 10_000),
        )


class OrchestratorConfig(BaseModel):
    """Host-side settings for launching and supervising sandboxes."""

    model_config = ConfigDict(frozen=True)

    worker_image: str = DEFAULT_WORKER_IMAGE
    docker_host: str = DEFAULT_DOCKER_HOST
    tty: bool = False
    ollama_model: str | None = None
    ollama_endpoint: str | None = None
    remove_grace_seconds: float = 10.0
    max_line_bytes: int = 16 * 1024 * 1024

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "OrchestratorConfig":
        env = os.environ if environ is None else environ
        return cls(
            worker_image=env.get("WORKER_IMAGE") or DEFAULT_WORKER_IMAGE,
            docker_host=env.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST,
            tty=_resolve_flag(env, "SANDBOX_TTY"),
            ollama_model=env.get("OLLAMA_MODEL") or None,
            ollama_endpoint=env.get("OLLAMA_ENDPOINT") or None,
            remove_grace_seconds=_resolve_number(
                env, "SANDBOX_REMOVE_GRACE_SECONDS", 10.0, 1.0, 120.0
            ),
        )

    def sandbox_env(self, payload: str) -> list[str]:
        """Environment handed to a new sandbox: the payload plus inference overrides."""
        env = [f"JOB_PAYLOAD={payload}"]
        if self.ollama_model:
            env.append(f"OLLAMA_MODEL={self.ollama_model}")
        if self.ollama_endpoint:
            env.append(f"OLLAMA_ENDPOINT={self.ollama_endpoint}")
        return env
