"""
Derives the schema structcall shows a model from the caller's target type: a
JSON schema, the JSON text of that schema, function definitions for tool-call
modes, and a Gemini-compatible rendering for Google models.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Tuple,
    Union,
    get_args,
    get_origin,
)

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from structcall.errors import DecodeError
from structcall.tools import RESPONSE_MODEL_T, ensure_response_model
from structcall.utils import _exclude_none

logger = logging.getLogger("extraction")

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]+")


@dataclass(frozen=True)
class FunctionDefinition:
    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass(frozen=True)
class Schema:
    """Structural description of a target type, derived once per call."""

    target: Any
    name: str
    description: str
    json_schema: Dict[str, Any]
    functions: Tuple[FunctionDefinition, ...]
    adapter: TypeAdapter = field(repr=False, compare=False)

    @classmethod
    def from_type(cls, target: RESPONSE_MODEL_T, name: Optional[str] = None) -> "Schema":
        resolved = ensure_response_model(target)
        adapter = TypeAdapter(resolved)
        json_schema = _exclude_none(adapter.json_schema())
        name = _function_name(
            name
            or (resolved.__name__ if _is_model(resolved) else None)
            or json_schema.get("title")
            or getattr(resolved, "__name__", None)
            or "Response"
        )
        description = json_schema.get("description") or (
            f"Correctly extracted `{name}` with all the required"
            " parameters with correct types"
        )
        function = FunctionDefinition(
            name=name, description=description, parameters=json_schema
        )
        return cls(
            target=resolved,
            name=name,
            description=description,
            json_schema=json_schema,
            functions=(function,),
            adapter=adapter,
        )

    @property
    def string(self) -> str:
        """The JSON text of the schema, as embedded in prompts."""
        return json.dumps(self.json_schema)

    def name_from_ref(self) -> str:
        ref = self.json_schema.get("$ref")
        if isinstance(ref, str) and ref:
            return ref.rsplit("/", 1)[-1]
        return self.name

    def decode(self, text: Union[str, bytes]) -> Any:
        """Decode JSON text into the target type."""
        try:
            return self.adapter.validate_json(text)
        except PydanticValidationError as e:
            raise DecodeError(
                f"Could not decode response into {self.name}: {e}",
                details=e.errors(include_url=False),
                text=text if isinstance(text, str) else text.decode(errors="replace"),
            ) from e

    def to_tool(self, strict: bool = False, for_gemini: bool = False) -> Dict[str, Any]:
        """Render the first function definition as an OpenAI-format tool."""
        function = self.functions[0]
        if for_gemini and _is_model(self.target):
            parameters = create_gemini_compatible_schema(self.target)
        else:
            parameters = copy.deepcopy(function.parameters)
        tool: Dict[str, Any] = {
            "type": "function",
            "function": {
                "name": function.name,
                "description": function.description,
                "parameters": _strict_schema(parameters) if strict else parameters,
            },
        }
        if strict:
            tool["function"]["strict"] = True
        return tool


def _is_model(type_: Any) -> bool:
    return isinstance(type_, type) and issubclass(type_, BaseModel)


def _function_name(name: str) -> str:
    return _INVALID_NAME_CHARS.sub("_", name).strip("_") or "Response"


def _strict_schema(schema: Any) -> Any:
    """Close every object schema and mark all its properties required."""
    if isinstance(schema, dict):
        out = {k: _strict_schema(v) for k, v in schema.items()}
        if isinstance(out.get("properties"), dict):
            out["additionalProperties"] = False
            out["required"] = list(out["properties"])
        return out
    if isinstance(schema, list):
        return [_strict_schema(v) for v in schema]
    return schema


def create_gemini_compatible_schema(model_class: type) -> Dict[str, Any]:
    """
    Create a Gemini-compatible schema from a Pydantic model.

    Gemini rejects ``$ref`` and expects upper-case type names, so nested models
    are inlined. Properties keep their declaration order.

    Args:
        model_class: The Pydantic model class

    Returns:
        A Gemini-compatible schema dictionary
    """
    gemini_schema: Dict[str, Any] = {
        "type": "OBJECT",
        "title": model_class.__name__,
        "description": model_class.__doc__ or f"A {model_class.__name__} object",
        "properties": {},
        "required": [],
    }
    for field_name, model_field in model_class.model_fields.items():
        if model_field.is_required():
            gemini_schema["required"].append(field_name)
        gemini_schema["properties"][field_name] = _to_gemini(
            model_field.annotation,
            model_field.description or f"The {field_name} field",
        )
    return gemini_schema


_GEMINI_PRIMITIVES = {str: "STRING", int: "INTEGER", float: "NUMBER", bool: "BOOLEAN"}


def _to_gemini(annotation: Any, description: Optional[str] = None) -> Dict[str, Any]:
    """Convert a Python type annotation to a Gemini schema type definition."""
    result: Dict[str, Any]
    origin = get_origin(annotation)
    if annotation in _GEMINI_PRIMITIVES:
        result = {"type": _GEMINI_PRIMITIVES[annotation]}
    elif origin in (list, List):
        args = get_args(annotation)
        result = {"type": "ARRAY", "items": _to_gemini(args[0] if args else str)}
    elif origin is dict:
        result = {"type": "OBJECT"}
    elif origin is Union:
        # First non-None member is the primary type
        types = get_args(annotation)
        primary = next((t for t in types if t is not type(None)), types[0])
        result = _to_gemini(primary)
        if type(None) in types:
            result["nullable"] = True
    elif _is_model(annotation):
        result = create_gemini_compatible_schema(annotation)
    else:
        result = {"type": "STRING"}
    if description and "description" not in result:
        result["description"] = description
    return result
