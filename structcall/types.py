"""Type definitions for the structcall package."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import (
    Any,
    Optional,
    Sequence,
    Union,
)

from langchain_core.messages import MessageLikeRepresentation
from langchain_core.prompt_values import PromptValue
from typing_extensions import TypedDict


class Mode(str, Enum):
    """Strategy used to elicit structured output from a model."""

    TOOL_CALL = "tool_call"
    TOOL_CALL_STRICT = "tool_call_strict"
    JSON = "json"
    JSON_STRICT = "json_strict"
    JSON_SCHEMA = "json_schema"
    MARKDOWN_JSON = "markdown_json"
    DEFAULT = "default"


class Provider(str, Enum):
    """Identity of the provider behind an adapter."""

    OPENAI = "OpenAI"
    ANTHROPIC = "Anthropic"
    COHERE = "Cohere"
    GOOGLE = "Google"
    UNKNOWN = "Unknown"


@dataclass
class UsageSum:
    """Running token counts across the attempts of one logical call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(
        self, input_tokens: int, output_tokens: int, total_tokens: Optional[int] = None
    ) -> "UsageSum":
        if total_tokens is None:
            total_tokens = input_tokens + output_tokens
        self.input_tokens += int(input_tokens)
        self.output_tokens += int(output_tokens)
        self.total_tokens += int(total_tokens)
        return self

    def copy(self) -> "UsageSum":
        return replace(self)

    def __add__(self, other: "UsageSum") -> "UsageSum":
        if not isinstance(other, UsageSum):
            return NotImplemented
        return UsageSum(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
            self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True, kw_only=True)
class Options:
    """Adapter configuration. ``None`` fields fall back to the defaults."""

    mode: Optional[Mode] = field(default=None)
    max_retries: Optional[int] = field(default=None)
    validate: Optional[bool] = field(default=None)


def merge_options(*opts: Optional[Options]) -> Options:
    """Apply each options value on top of the configured defaults, left to right."""
    from structcall.settings import get_settings

    settings = get_settings()
    merged = Options(
        mode=Mode(settings.MODE),
        max_retries=settings.MAX_RETRIES,
        validate=settings.VALIDATE,
    )
    for opt in opts:
        if opt is None:
            continue
        updates = {
            f.name: getattr(opt, f.name)
            for f in fields(opt)
            if getattr(opt, f.name) is not None
        }
        merged = replace(merged, **updates)
    if merged.max_retries is not None and merged.max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {merged.max_retries}")
    return merged


def with_mode(mode: Union[Mode, str]) -> Options:
    return Options(mode=Mode(mode))


def with_max_retries(max_retries: int) -> Options:
    return Options(max_retries=max_retries)


def with_validation() -> Options:
    return Options(validate=True)


class ExtractionOutputs(TypedDict):
    response: Any
    """The decoded (and, if enabled, validated) value."""
    raw: Any
    """The provider response, with usage summed over every attempt."""
    usage: UsageSum
    attempts: int


Messages = Union[MessageLikeRepresentation, Sequence[MessageLikeRepresentation]]

RequestLike = Union[Messages, PromptValue, str]
