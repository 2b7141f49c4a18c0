"""Data contract carried across the sandbox boundary."""

import json
from enum import Enum

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

UPDATE_MARKER = "JOB_UPDATE:"
RESULT_MARKER = "JOB_RESULT:"
PAYLOAD_ENV = "JOB_PAYLOAD"
SANDBOX_LABEL = "bbaas.sandbox"


class JobAction(str, Enum):
    """Action handler the sandbox runs for a job."""

    SCRAPE = "scrape"
    DESCRIBE = "describe"
    AGENT_ACT = "agent_act"

    @classmethod
    def _missing_(cls, value: object) -> "JobAction | None":
        # Older front-ends submit the agent action under its previous name.
        if value == "ai_action":
            return cls.AGENT_ACT
        return None


class SandboxStatus(str, Enum):
    """Lifecycle status of a sandbox handle."""

    RUNNING = "running"
    EXITED = "exited"
    REMOVED = "removed"
    FAILED = "failed"


class DescriptorError(ValueError):
    """Raised when a job payload cannot be decoded into a JobDescriptor."""


class JobDescriptor(BaseModel):
    """What a sandbox should do. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    action: JobAction
    url: str
    target: str = ""

    def to_payload(self) -> str:
        """Serialize to the opaque string injected into the sandbox environment."""
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: str | None) -> "JobDescriptor":
        if not payload:
            raise DescriptorError(f"{PAYLOAD_ENV} environment variable is required")

        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as e:
            raise DescriptorError(f"failed to unmarshal payload: {e}") from e
        if not isinstance(raw, dict):
            raise DescriptorError("failed to unmarshal payload: expected a JSON object")

        action = raw.get("action")
        try:
            raw["action"] = JobAction(action)
        except ValueError:
            raise DescriptorError(f"unknown action: {action}") from None

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise DescriptorError(f"invalid payload: {e}") from e


class JobResult(BaseModel):
    """Terminal outcome of a job. ``success`` is False exactly when ``error`` is set."""

    model_config = ConfigDict(frozen=True)

    success: bool
    data: str | None = None
    image: str | None = None
    error: str | None = None

    @field_validator("data", "image", "error", mode="before")
    @classmethod
    def _empty_is_absent(cls, value: object) -> object:
        return value or None

    @model_validator(mode="after")
    def _check_success_matches_error(self) -> "JobResult":
        if self.success == (self.error is not None):
            raise ValueError("success must be false exactly when error is set")
        return self

    @classmethod
    def ok(cls, data: str | None = None, image: str | None = None) -> "JobResult":
        return cls(success=True, data=data, image=image)

    @classmethod
    def failure(cls, error: str) -> "JobResult":
        return cls(success=False, error=error or "unknown error")

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class ProgressUpdate(BaseModel):
    """Intermediate screenshot emitted while a job runs."""

    model_config = ConfigDict(frozen=True)

    image: str

    @field_validator("image")
    @classmethod
    def _image_required(cls, value: str) -> str:
        if not value:
            raise ValueError("image must not be empty")
        return value
