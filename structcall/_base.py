"""Facade module for the structcall package.

This module re-exports the key functionality from the other modules in the package.
It serves as the main entry point to the library, providing a simplified interface
for users.
"""

from structcall.chat_model import ChatModelInstructor, from_chat_model
from structcall.errors import (
    DecodeError,
    InvalidRequestShapeError,
    NoStructuredOutputError,
    ProviderError,
    StructcallError,
    UnsupportedModeError,
    ValidationError,
)
from structcall.extract import aextract, create_extractor, extract
from structcall.instructor import Instructor
from structcall.schema import FunctionDefinition, Schema, create_gemini_compatible_schema
from structcall.states import ExtractionState
from structcall.stream import (
    ARRAY_START,
    COMPACT_ARRAY_START,
    ArrayStream,
    ArrayStreamParser,
    StreamWrapper,
    envelope_schemas,
    parse_stream,
)
from structcall.tools import _convert_any_typed_dicts_to_pydantic, ensure_response_model
from structcall.types import (
    ExtractionOutputs,
    Mode,
    Options,
    Provider,
    UsageSum,
    merge_options,
    with_max_retries,
    with_mode,
    with_validation,
)
from structcall.validation import CallableValidator, JSONSchemaValidator, Validator

__all__ = [
    "create_extractor",
    "extract",
    "aextract",
    "from_chat_model",
    "ensure_response_model",
    "merge_options",
    "parse_stream",
    "envelope_schemas",
    "with_max_retries",
    "with_mode",
    "with_validation",
    "create_gemini_compatible_schema",
    "ARRAY_START",
    "COMPACT_ARRAY_START",
    "ArrayStream",
    "ArrayStreamParser",
    "CallableValidator",
    "ChatModelInstructor",
    "DecodeError",
    "ExtractionOutputs",
    "ExtractionState",
    "FunctionDefinition",
    "Instructor",
    "InvalidRequestShapeError",
    "JSONSchemaValidator",
    "Mode",
    "NoStructuredOutputError",
    "Options",
    "Provider",
    "ProviderError",
    "Schema",
    "StreamWrapper",
    "StructcallError",
    "UnsupportedModeError",
    "UsageSum",
    "ValidationError",
    "Validator",
    "_convert_any_typed_dicts_to_pydantic",
]
