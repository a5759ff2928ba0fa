"""Utility functions for the structcall package."""

from __future__ import annotations

import functools
import inspect
import json
import logging
import re
from typing import (
    Any,
    Callable,
    Dict,
    Optional,
    Tuple,
    Type,
    get_args,
)

from langchain_core.language_models import BaseChatModel
from langchain_core.tools import InjectedToolArg

from structcall.types import Provider

logger = logging.getLogger("extraction")

_PROVIDER_HINTS = (
    (Provider.GOOGLE, ("vertex", "google", "gemini", "genai")),
    (Provider.ANTHROPIC, ("anthropic", "claude")),
    (Provider.COHERE, ("cohere",)),
    (Provider.OPENAI, ("openai", "azure")),
)


def infer_provider(llm: BaseChatModel) -> Provider:
    """Guess which provider a LangChain chat model talks to."""
    module_path = ""
    if hasattr(llm, "__class__") and hasattr(llm.__class__, "__module__"):
        module_path = llm.__class__.__module__.lower()
    model_name = getattr(llm, "model_name", None) or getattr(llm, "model", None) or ""
    model_name = model_name.lower() if isinstance(model_name, str) else ""

    for provider, terms in _PROVIDER_HINTS:
        if any(term in module_path for term in terms):
            return provider
    for provider, terms in _PROVIDER_HINTS:
        if any(term in model_name for term in terms):
            return provider
    if model_name.startswith(("gpt-", "o1", "o3", "o4")):
        return Provider.OPENAI
    return Provider.UNKNOWN


def _exclude_none(d: Dict[str, Any]) -> Dict[str, Any]:
    """Remove None values from a dictionary recursively."""
    return {
        k: v if not isinstance(v, dict) else _exclude_none(v)
        for k, v in d.items()
        if v is not None
    }


def _is_injected_arg_type(type_: Type) -> bool:
    """Check if a type is an injected argument type."""
    return any(
        isinstance(arg, InjectedToolArg)
        or (isinstance(arg, type) and issubclass(arg, InjectedToolArg))
        for arg in get_args(type_)[1:]
    )


def _curry(func: Callable, **fixed_kwargs: Any) -> Callable:
    """Bind parameters to a function, removing those parameters from the signature.

    Useful for exposing a narrower interface than what the the original function
    provides.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        new_kwargs = {**fixed_kwargs, **kwargs}
        return func(*args, **new_kwargs)

    sig = inspect.signature(func)
    invalid_kwargs = set(fixed_kwargs) - set(sig.parameters)
    if invalid_kwargs:
        raise ValueError(f"Invalid parameters: {invalid_kwargs}")

    new_params = [p for name, p in sig.parameters.items() if name not in fixed_kwargs]
    wrapper.__signature__ = sig.replace(parameters=new_params)  # type: ignore
    return wrapper


def _strip_injected(fn: Callable) -> Callable:
    """Strip injected arguments from a function's signature."""
    injected = [
        p.name
        for p in inspect.signature(fn).parameters.values()
        if _is_injected_arg_type(p.annotation)
    ]
    return _curry(fn, **{k: None for k in injected})


def extract_json(text: str) -> str:
    """Cut ``text`` down to the span between the first opening and last closing
    JSON bracket. Text with no such span is returned stripped."""
    trimmed = text.strip()
    first = min(
        (i for i in (trimmed.find("{"), trimmed.find("[")) if i != -1), default=-1
    )
    last = max(trimmed.rfind("}"), trimmed.rfind("]"))
    if first == -1 or last == -1 or first > last:
        return trimmed
    return trimmed[first : last + 1]


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def extract_fenced_json(text: str) -> str:
    """Return the body of the first ```json fenced block, or the JSON span of
    ``text`` when there is no fence."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1)
    return extract_json(text)


_SEPARATORS = " \t\r\n,"
_SCALAR_TERMINATORS = " \t\r\n,]}"


def first_json_value(buffer: str, final: bool = False) -> Optional[Tuple[str, str]]:
    """Find the first complete top-level JSON value in ``buffer``.

    Leading whitespace and commas are skipped. Brackets inside string literals
    (including escaped quotes) do not count towards nesting depth.

    Returns ``(value_text, remainder)`` or ``None`` while the value is still
    incomplete. A bare scalar (number, ``true``...) is only complete once a
    terminator follows it, unless ``final`` is set.
    """
    start = 0
    while start < len(buffer) and buffer[start] in _SEPARATORS:
        start += 1
    if start >= len(buffer):
        return None

    first = buffer[start]
    if first in "]}":
        return None

    if first == '"':
        end = _string_end(buffer, start)
        if end == -1:
            return None
        return buffer[start : end + 1], buffer[end + 1 :]

    if first not in "{[":
        end = start
        while end < len(buffer) and buffer[end] not in _SCALAR_TERMINATORS:
            end += 1
        if end == len(buffer) and not final:
            return None
        return buffer[start:end], buffer[end:]

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(buffer)):
        char = buffer[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return buffer[start : i + 1], buffer[i + 1 :]
    return None


def _string_end(buffer: str, start: int) -> int:
    escaped = False
    for i in range(start + 1, len(buffer)):
        char = buffer[i]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            return i
    return -1


def _try_parse_json_value(value):
    """Try to parse a string value as JSON if it looks like JSON."""
    if isinstance(value, str) and (value.startswith("{") or value.startswith("[")):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass
    return value
