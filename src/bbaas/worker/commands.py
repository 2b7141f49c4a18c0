"""Parsing of the model's free-form response into agent commands."""

import json
import re
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_WRAPPER_KEYS = ("actions", "commands", "steps")


class CommandParseError(ValueError):
    """Raised when no usable command list can be extracted from a response."""


class CommandAction(str, Enum):
    FILL = "fill"
    CLICK = "click"
    PRESS = "press"
    FINISH = "finish"


class AgentCommand(BaseModel):
    """One UI action requested by the model."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    action: CommandAction = Field(validation_alias=AliasChoices("action", "type"))
    id: int | None = Field(default=None, validation_alias=AliasChoices("id", "element_id"))
    value: str = ""
    key: str = ""
    result: str = ""

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("value", "key", "result", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value) if isinstance(value, (dict, list)) else str(value)

    def describe(self) -> str:
        if self.action is CommandAction.FILL:
            return f"fill [{self.id}] with '{self.value}'"
        if self.action is CommandAction.CLICK:
            return f"click [{self.id}]"
        if self.action is CommandAction.PRESS:
            return f"press {self.key or self.value or 'Enter'}"
        return "finish"


def _holds_commands(value: Any) -> bool:
    if isinstance(value, dict):
        return True
    return isinstance(value, list) and any(isinstance(item, dict) for item in value)


def extract_json(text: str) -> Any:
    """
    Return the first JSON value in ``text`` that can hold commands.

    Responses may wrap the JSON in prose or markdown fences; every ``[`` or
    ``{`` is tried as a starting point. An object, or an array with at least
    one object in it, wins over bracketed prose such as ``[3]``; if nothing
    qualifies, the first array found is returned.
    """
    cleaned = _FENCE_RE.sub("", text)
    decoder = json.JSONDecoder()
    fallback: Any = None

    for idx, ch in enumerate(cleaned):
        if ch not in "[{":
            continue
        try:
            value, _end = decoder.raw_decode(cleaned, idx)
        except json.JSONDecodeError:
            continue
        if _holds_commands(value):
            return value
        if fallback is None and isinstance(value, list):
            fallback = value

    if fallback is not None:
        return fallback
    raise CommandParseError("no JSON array or object found in model response")


def parse_commands(text: str) -> list[AgentCommand]:
    """
    Decode a model response into an ordered list of commands.

    Raises:
        CommandParseError: No JSON found, or it does not describe commands.
    """
    value = extract_json(text)

    if isinstance(value, dict):
        wrapped = next(
            (value[key] for key in _WRAPPER_KEYS if isinstance(value.get(key), list)),
            None,
        )
        items = wrapped if wrapped is not None else [value]
    else:
        items = value

    if not items:
        raise CommandParseError("model returned an empty command list")

    commands = []
    for position, item in enumerate(items, 1):
        if not isinstance(item, dict):
            raise CommandParseError(f"command {position} is not a JSON object")
        try:
            commands.append(AgentCommand.model_validate(item))
        except ValidationError as e:
            reason = e.errors()[0]["msg"]
            raise CommandParseError(f"command {position} is invalid: {reason}") from e
    return commands
