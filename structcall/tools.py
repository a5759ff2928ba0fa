"""Normalization of caller-declared response models."""

from __future__ import annotations

import inspect
from typing import (
    Any,
    Callable,
    Dict,
    Type,
    Union,
    cast,
    get_args,
)

from dydantic import create_model_from_schema
from langchain_core.tools import BaseTool, create_schema_from_function
from pydantic import BaseModel
from typing_extensions import Annotated, get_origin, is_typeddict

from structcall.utils import _strip_injected

RESPONSE_MODEL_T = Union[BaseTool, Type[BaseModel], Callable, Dict[str, Any], type]
"""Type for response models that can be extracted.

Can be one of:
- Type[BaseModel]: A Pydantic model class
- TypedDict: converted to a Pydantic model
- Dict[str, Any]: A JSON schema, optionally in OpenAI function format
- BaseTool: A LangChain tool; its argument schema is used
- Callable: A function; its signature is used
- any other type pydantic can validate (``int``, ``list[Item]``, ...)
"""


def ensure_response_model(target: RESPONSE_MODEL_T) -> Any:
    """Convert the supported response model formats to something pydantic validates.

    Raises:
        ValueError: If the target is in an unsupported format
    """
    if isinstance(target, dict):
        if all(k in target for k in ("name", "description", "parameters")):
            model = create_model_from_schema({"title": target["name"], **target["parameters"]})
            model.__doc__ = target.get("description") or model.__doc__
            model.__name__ = target["name"]
            return model
        if all(k in target for k in ("type", "function")):
            # Already in openai format
            return ensure_response_model(target["function"])
        model = create_model_from_schema(target)
        if not model.__doc__:
            model.__doc__ = target.get("description") or model.__name__
        return model
    if is_typeddict(target):
        return _convert_any_typed_dicts_to_pydantic(cast(type, target))
    if isinstance(target, BaseTool):
        if target.args_schema is None or isinstance(target.args_schema, dict):
            raise ValueError(f"Tool {target.name} has no pydantic argument schema")
        return target.args_schema
    if isinstance(target, type) or get_origin(target) is not None:
        return target
    if callable(target):
        return csff_(target)
    raise ValueError(f"Invalid response model type: {type(target)}")


def csff_(function: Callable) -> Type[BaseModel]:
    """Create a schema from a function."""
    fn = _strip_injected(function)
    schema = create_schema_from_function(function.__name__, fn)
    schema.__name__ = function.__name__
    if function.__doc__ and not schema.__doc__:
        schema.__doc__ = inspect.getdoc(function)
    return schema


_MAX_TYPED_DICT_RECURSION = 25


def _convert_any_typed_dicts_to_pydantic(
    type_: type,
    *,
    visited: dict | None = None,
    depth: int = 0,
) -> type:
    """Convert TypedDict to Pydantic model.

    Args:
        type_: The type to convert
        visited: A dictionary of already visited types
        depth: The current recursion depth

    Returns:
        The converted type
    """
    from pydantic import Field, create_model

    visited = visited if visited is not None else {}
    if type_ in visited:
        return visited[type_]
    elif depth >= _MAX_TYPED_DICT_RECURSION:
        return type_
    elif is_typeddict(type_):
        typed_dict = type_
        docstring = inspect.getdoc(typed_dict)
        annotations_ = typed_dict.__annotations__
        fields: dict = {}
        for arg, arg_type in annotations_.items():
            if get_origin(arg_type) is Annotated:
                annotated_args = get_args(arg_type)
                new_arg_type = _convert_any_typed_dicts_to_pydantic(
                    annotated_args[0], depth=depth + 1, visited=visited
                )
                field_kwargs = dict(zip(("default", "description"), annotated_args[1:]))
                if (field_desc := field_kwargs.get("description")) and not isinstance(
                    field_desc, str
                ):
                    raise ValueError(
                        f"Invalid annotation for field {arg}. Third argument to "
                        f"Annotated must be a string description, received value of "
                        f"type {type(field_desc)}."
                    )
                fields[arg] = (new_arg_type, Field(**field_kwargs))
            else:
                new_arg_type = _convert_any_typed_dicts_to_pydantic(
                    arg_type, depth=depth + 1, visited=visited
                )
                fields[arg] = (new_arg_type, Field(default=...))
        model = create_model(typed_dict.__name__, **fields)
        model.__doc__ = docstring or ""
        visited[typed_dict] = model
        return model
    elif (origin := get_origin(type_)) and (type_args := get_args(type_)):
        type_args = tuple(
            _convert_any_typed_dicts_to_pydantic(arg, depth=depth + 1, visited=visited)
            for arg in type_args  # type: ignore[index]
        )
        return origin[type_args]  # type: ignore[index]
    else:
        return type_
