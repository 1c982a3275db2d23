from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

ERROR_PREFIX = "Error: "

InputValues = Dict[str, str]


class ToolInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    required: bool = False


class PromptTemplate(BaseModel):
    """A prompt template as supplied by the tool definition.

    Fields other than ``raw_text`` are kept as-is and forwarded to the backend
    next to the rendered ``content``.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    raw_text: str = Field("", description="Template text with {{name}} placeholders")


class Tool(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    credits_cost: int = Field(0, ge=0, description="Display-only cost shown on the submit action")
    inputs: List[ToolInput] = Field(default_factory=list)
    prompts: List[PromptTemplate] = Field(default_factory=list)


class GenerationRequest(BaseModel):
    """Value object built once per attempt."""

    model_config = ConfigDict(frozen=True)

    tool_id: str
    inputs: InputValues
    templates: List[PromptTemplate]
    rendered_prompts: List[str]

    @model_validator(mode="after")
    def _prompts_line_up(self) -> "GenerationRequest":
        if len(self.templates) != len(self.rendered_prompts):
            raise ValueError("rendered_prompts must have one entry per template")
        return self

    def payload(self) -> Dict[str, Any]:
        prompts = [
            {**tpl.model_dump(), "content": content}
            for tpl, content in zip(self.templates, self.rendered_prompts)
        ]
        return {"toolId": self.tool_id, "inputs": dict(self.inputs), "prompts": prompts}


class RetryState(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    attempt_count: int = Field(0, ge=0)
    max_attempts: int = Field(2, ge=0)

    @model_validator(mode="after")
    def _within_bound(self) -> "RetryState":
        if self.attempt_count > self.max_attempts:
            raise ValueError("attempt_count cannot exceed max_attempts")
        return self

    def can_retry(self) -> bool:
        return self.attempt_count < self.max_attempts

    def advance(self) -> int:
        if not self.can_retry():
            raise ValueError(f"retry bound reached ({self.max_attempts})")
        self.attempt_count += 1
        return self.attempt_count

    def reset(self) -> None:
        self.attempt_count = 0


class FailureKind(str, Enum):
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    NETWORK = "network"
    FORMAT = "format"
    UNKNOWN = "unknown"


class Success(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: Literal[True] = True
    text: str

    @property
    def display_text(self) -> str:
        return self.text


class Failure(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: Literal[False] = False
    kind: FailureKind
    message: str

    @property
    def display_text(self) -> str:
        return f"{ERROR_PREFIX}{self.message}"


GenerationOutcome = Union[Success, Failure]


class RevealCursor(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    full_text: str
    position: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _inside_text(self) -> "RevealCursor":
        if self.position > len(self.full_text):
            raise ValueError("position past end of text")
        return self

    @property
    def done(self) -> bool:
        return self.position >= len(self.full_text)

    @property
    def prefix(self) -> str:
        return self.full_text[: self.position]

    def advance(self, step: int = 1) -> str:
        self.position = min(len(self.full_text), self.position + max(1, step))
        return self.prefix


class Phase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    GENERATING = "generating"
    REVEALING = "revealing"
    SETTLED = "settled"


class GenerationView(BaseModel):
    """What the presentation layer needs to draw the current cycle."""

    model_config = ConfigDict(frozen=True)

    phase: Phase
    text: str = ""
    outcome: Optional[Union[Success, Failure]] = None
    inputs_locked: bool = False
    submit_label: str = ""
