"""The capability contract every provider adapter implements.

The extraction engine only ever talks to providers through :class:`Instructor`.
An adapter performs its own mode dispatch inside :meth:`Instructor.call` and
:meth:`Instructor.call_stream`, and exposes four small usage hooks so the
engine can sum token counts across attempts without knowing how the
provider's response object stores them.
"""

from __future__ import annotations

import abc
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Iterator,
    Optional,
    Tuple,
)

from langchain_core.runnables import RunnableConfig

from structcall.schema import Schema
from structcall.stream import ARRAY_START, Marker
from structcall.tools import RESPONSE_MODEL_T
from structcall.types import Mode, Options, Provider, UsageSum, merge_options
from structcall.validation import (
    JSONSchemaValidator,
    Validator,
    ensure_validator,
)


class Instructor(abc.ABC):
    """Base class for provider adapters."""

    def __init__(
        self,
        *opts: Options,
        validator: Optional[Validator | Callable[[Any], Any]] = None,
    ):
        self.options = merge_options(*opts)
        self._validator = ensure_validator(validator)

    # Static configuration

    @abc.abstractmethod
    def provider(self) -> Provider:
        ...

    def mode(self) -> Mode:
        return Mode(self.options.mode)

    def max_retries(self) -> int:
        return int(self.options.max_retries or 0)

    def should_validate(self) -> bool:
        return bool(self.options.validate)

    @property
    def validator(self) -> Validator:
        return self._validator or JSONSchemaValidator()

    # Provider round trips

    @abc.abstractmethod
    def call(
        self, request: Any, schema: Schema, config: Optional[RunnableConfig] = None
    ) -> Tuple[str, Any]:
        """Make one provider round trip and return ``(text, raw_response)``.

        Failures raise a ``StructcallError`` whose ``response`` carries the
        raw response, if one was received, so its usage can still be counted.
        """

    @abc.abstractmethod
    async def acall(
        self, request: Any, schema: Schema, config: Optional[RunnableConfig] = None
    ) -> Tuple[str, Any]:
        ...

    @abc.abstractmethod
    def call_stream(
        self, request: Any, schema: Schema, config: Optional[RunnableConfig] = None
    ) -> Iterator[str]:
        """Stream the provider's text fragments.

        Raises ``UnsupportedModeError`` before producing anything when the mode
        cannot be streamed.
        """

    @abc.abstractmethod
    async def acall_stream(
        self, request: Any, schema: Schema, config: Optional[RunnableConfig] = None
    ) -> AsyncIterator[str]:
        """Async variant of :meth:`call_stream`.

        May be a coroutine resolving to an async iterator of fragments or an
        async generator yielding them directly. Only the coroutine form can fail
        fast on an unsupported mode.
        """

    def stream_marker(self) -> Marker:
        """Text (or texts) that opens the streamed envelope's array."""
        return ARRAY_START

    # Usage hooks

    @abc.abstractmethod
    def empty_response_with_usage(self, usage: UsageSum) -> Any:
        ...

    @abc.abstractmethod
    def usage_only_view(self, response: Any) -> Any:
        ...

    @abc.abstractmethod
    def merge_usage_into_response(self, response: Any, usage: UsageSum) -> Any:
        ...

    @abc.abstractmethod
    def extract_usage(self, response: Any, usage: UsageSum) -> UsageSum:
        ...

    def with_feedback(
        self, request: Any, schema: Schema, text: str, error: Exception
    ) -> Any:
        """Return the request to use for the next attempt after ``error``."""
        return request

    # Caller-facing API

    def create(
        self,
        request: Any,
        response_model: RESPONSE_MODEL_T,
        config: Optional[RunnableConfig] = None,
    ) -> Tuple[Any, Any]:
        """Extract one ``response_model`` value, retrying on failure.

        Returns ``(value, response)`` where ``response`` carries the usage of
        every attempt.
        """
        from structcall.extract import extract

        return extract(self, request, response_model, config=config)

    async def acreate(
        self,
        request: Any,
        response_model: RESPONSE_MODEL_T,
        config: Optional[RunnableConfig] = None,
    ) -> Tuple[Any, Any]:
        from structcall.extract import aextract

        return await aextract(self, request, response_model, config=config)

    def create_stream(
        self,
        request: Any,
        response_model: RESPONSE_MODEL_T,
        config: Optional[RunnableConfig] = None,
    ) -> Iterator[Any]:
        """Yield ``response_model`` values as the model streams a JSON array."""
        from structcall.stream import stream_array

        return stream_array(self, request, response_model, config=config)

    async def acreate_stream(
        self,
        request: Any,
        response_model: RESPONSE_MODEL_T,
        *,
        cancel: Optional[Any] = None,
        timeout: Optional[float] = None,
        config: Optional[RunnableConfig] = None,
    ):
        """Async variant of :meth:`create_stream`, returning an ``ArrayStream``."""
        from structcall.stream import astream_array

        return await astream_array(
            self, request, response_model, cancel=cancel, timeout=timeout, config=config
        )
