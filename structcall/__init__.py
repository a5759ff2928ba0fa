"""Typed structured-output extraction from LLM responses, with retries.

This package turns free-text model responses into validated values of a
caller-declared type. Provider adapters implement a small capability contract;
the engine builds on it a validate-and-retry loop that sums token usage across
attempts, and a streaming decoder that yields JSON array elements as the
model's tokens arrive.
"""

from structcall._base import (
    ArrayStream,
    ChatModelInstructor,
    DecodeError,
    ExtractionOutputs,
    Instructor,
    InvalidRequestShapeError,
    Mode,
    NoStructuredOutputError,
    Options,
    Provider,
    ProviderError,
    Schema,
    StructcallError,
    UnsupportedModeError,
    UsageSum,
    ValidationError,
    create_extractor,
    from_chat_model,
)

__all__ = [
    "create_extractor",
    "from_chat_model",
    "ArrayStream",
    "ChatModelInstructor",
    "DecodeError",
    "ExtractionOutputs",
    "Instructor",
    "InvalidRequestShapeError",
    "Mode",
    "NoStructuredOutputError",
    "Options",
    "Provider",
    "ProviderError",
    "Schema",
    "StructcallError",
    "UnsupportedModeError",
    "UsageSum",
    "ValidationError",
]
