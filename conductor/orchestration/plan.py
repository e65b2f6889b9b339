from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import PlanParseError
from ..core.logging import get_logger

logger = get_logger(name=__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")


def _coerce_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, int)):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError("expected a list of identifiers")
    result: list[str] = []
    for item in value:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            result.append(text)
    return result


class PlannedAssignment(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    agent_id: str = Field(..., min_length=1)
    task_description: str = Field(..., min_length=1)
    sequence_order: int = Field(1)
    depends_on: list[str] = Field(default_factory=list)
    matched_skills: list[str] = Field(default_factory=list)
    selection_reason: str | None = None
    is_terminal: bool = False

    @field_validator("agent_id", mode="before")
    @classmethod
    def _coerce_agent_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("depends_on", "matched_skills", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)


class TaskPlan(BaseModel):
    analysis: str = ""
    assignments: list[PlannedAssignment] = Field(default_factory=list)
    requires_confirmation: bool | None = None

    def ordered(self) -> list[PlannedAssignment]:
        return sorted(self.assignments, key=lambda item: item.sequence_order)


def extract_json_object(text: str) -> str:
    """Return the JSON object embedded in a model response."""
    fenced = _FENCE_PATTERN.search(text)
    if fenced is not None:
        return fenced.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise PlanParseError("Control hub response did not contain a JSON object")
    return text[start : end + 1]


def sanitize_json(snippet: str) -> str:
    """Repair common model mistakes: trailing commas and raw control characters in strings."""
    repaired: list[str] = []
    in_string = False
    escaped = False
    for char in snippet:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            elif ord(char) < 0x20:
                repaired.append({"\n": "\\n", "\r": "\\r", "\t": "\\t"}.get(char, " "))
                continue
        elif char == '"':
            in_string = True
        repaired.append(char)
    return _TRAILING_COMMA_PATTERN.sub(r"\1", "".join(repaired))


def parse_task_plan(text: str) -> TaskPlan:
    snippet = extract_json_object(text.strip())
    try:
        payload = json.loads(snippet)
    except json.JSONDecodeError:
        try:
            payload = json.loads(sanitize_json(snippet))
        except json.JSONDecodeError as exc:
            raise PlanParseError(f"Plan JSON is malformed: {exc.msg} at position {exc.pos}") from exc
    if not isinstance(payload, dict):
        raise PlanParseError("Plan JSON must be an object")
    try:
        plan = TaskPlan.model_validate(payload)
    except ValidationError as exc:
        raise PlanParseError(f"Plan does not match the expected structure: {exc.error_count()} error(s)") from exc
    logger.debug("plan_parsed", assignments=len(plan.assignments))
    return plan


__all__ = [
    "PlannedAssignment",
    "TaskPlan",
    "extract_json_object",
    "parse_task_plan",
    "sanitize_json",
]
