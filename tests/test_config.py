"""Tests for environment-driven configuration."""

from bbaas.config import (
    DEFAULT_OLLAMA_ENDPOINT,
    DEFAULT_OLLAMA_MODEL,
    DEFAULT_WORKER_IMAGE,
    InferenceConfig,
    OrchestratorConfig,
    WorkerConfig,
)


class TestWorkerConfig:
    """Test worker settings resolution."""

    def test_defaults(self):
        config = WorkerConfig.from_env({})

        assert config.max_iterations == 5
        assert config.inference.endpoint == DEFAULT_OLLAMA_ENDPOINT
        assert config.inference.model == DEFAULT_OLLAMA_MODEL
        assert config.describe_text_limit == 5_000
        assert config.agent_text_limit == 8_000

    def test_overrides(self):
        config = WorkerConfig.from_env(
            {
                "OLLAMA_ENDPOINT": "http://ollama:11434/api/generate",
                "OLLAMA_MODEL": "llava:7b",
                "AGENT_MAX_ITERATIONS": "8",
                "ELEMENT_WAIT_TIMEOUT_MS": "5000",
            }
        )

        assert config.inference.endpoint == "http://ollama:11434/api/generate"
        assert config.inference.model == "llava:7b"
        assert config.max_iterations == 8
        assert config.element_wait_timeout_ms == 5000

    def test_iterations_are_clamped(self):
        assert WorkerConfig.from_env({"AGENT_MAX_ITERATIONS": "0"}).max_iterations == 1
        assert WorkerConfig.from_env({"AGENT_MAX_ITERATIONS": "500"}).max_iterations == 50

    def test_invalid_number_falls_back_to_default(self):
        assert WorkerConfig.from_env({"AGENT_MAX_ITERATIONS": "five"}).max_iterations == 5

    def test_inference_timeout(self):
        assert InferenceConfig.from_env({"OLLAMA_TIMEOUT_SECONDS": "30"}).timeout_seconds == 30


class TestOrchestratorConfig:
    """Test orchestrator settings and the sandbox environment."""

    def test_defaults(self):
        config = OrchestratorConfig.from_env({})

        assert config.worker_image == DEFAULT_WORKER_IMAGE
        assert config.tty is False
        assert config.ollama_model is None

    def test_tty_flag(self):
        assert OrchestratorConfig.from_env({"SANDBOX_TTY": "true"}).tty is True
        assert OrchestratorConfig.from_env({"SANDBOX_TTY": "0"}).tty is False

    def test_sandbox_env_carries_payload_only_by_default(self):
        env = OrchestratorConfig().sandbox_env('{"action":"scrape"}')

        assert env == ['JOB_PAYLOAD={"action":"scrape"}']

    def test_sandbox_env_passes_inference_overrides(self):
        config = OrchestratorConfig.from_env(
            {"OLLAMA_MODEL": "gemma3:12b", "OLLAMA_ENDPOINT": "http://10.0.0.5:11434/api/generate"}
        )

        env = config.sandbox_env("{}")

        assert "OLLAMA_MODEL=gemma3:12b" in env
        assert "OLLAMA_ENDPOINT=http://10.0.0.5:11434/api/generate" in env
