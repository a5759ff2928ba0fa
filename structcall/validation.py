"""Validation-related functionality for the structcall package."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from jsonschema import Draft202012Validator
from jsonschema import ValidationError as JSONSchemaValidationError
from pydantic_core import to_jsonable_python
from typing_extensions import Protocol, runtime_checkable

from structcall.errors import ValidationError

logger = logging.getLogger("extraction")


@runtime_checkable
class Validator(Protocol):
    """Pass/fail check over a decoded value. Raises on failure."""

    def validate(self, value: Any, json_schema: Optional[Dict[str, Any]] = None) -> None:
        ...


class JSONSchemaValidator:
    """Check the JSON rendering of a value against the target's JSON schema."""

    def validate(self, value: Any, json_schema: Optional[Dict[str, Any]] = None) -> None:
        if not json_schema:
            return
        instance = to_jsonable_python(value, by_alias=True)
        validator = Draft202012Validator(json_schema)
        errors = sorted(validator.iter_errors(instance), key=lambda e: list(e.path))
        if errors:
            raise JSONSchemaValidationError(
                "; ".join(_format_error(e) for e in errors)
            )


class CallableValidator:
    """Adapt a plain function into a validator.

    The function may raise, or return ``False`` to reject the value.
    """

    def __init__(self, func: Callable[[Any], Any]):
        self.func = func

    def validate(self, value: Any, json_schema: Optional[Dict[str, Any]] = None) -> None:
        if self.func(value) is False:
            raise ValueError(
                f"{getattr(self.func, '__name__', 'validator')} rejected the value"
            )


def ensure_validator(
    validator: Optional[Validator | Callable[[Any], Any]],
) -> Optional[Validator]:
    if validator is None or isinstance(validator, Validator):
        return validator
    if callable(validator):
        return CallableValidator(validator)
    raise TypeError(f"Invalid validator type: {type(validator)}")


def run_validator(
    validator: Validator, value: Any, json_schema: Optional[Dict[str, Any]] = None
) -> None:
    """Run ``validator`` and surface any failure as ``ValidationError``."""
    try:
        validator.validate(value, json_schema)
    except ValidationError:
        raise
    except Exception as e:
        raise ValidationError(f"Validation failed: {e}", details=repr(e)) from e


def _format_error(error: JSONSchemaValidationError) -> str:
    path = "/".join(str(p) for p in error.path)
    return f"{path or '<root>'}: {error.message}"
