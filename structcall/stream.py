"""Incremental extraction of JSON array elements from a model's token stream.

Models are asked for a single object ``{"items": [...]}`` rather than a bare
array, since many JSON modes insist on a top-level object. The decoder skips
everything up to the ``"items": [`` marker (or whichever markers the
instructor names), then emits each element as soon as
it is balanced, decodes and (optionally) validates.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Generic,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel

from structcall.errors import (
    DecodeError,
    ProviderError,
    StructcallError,
    ValidationError,
)
from structcall.schema import Schema
from structcall.tools import RESPONSE_MODEL_T
from structcall.utils import first_json_value
from structcall.validation import Validator, run_validator

if TYPE_CHECKING:
    from structcall.instructor import Instructor

logger = logging.getLogger("extraction")

T = TypeVar("T")

ARRAY_START = '"items": ['
"""Literal text that opens the envelope's array."""

COMPACT_ARRAY_START = '"items":['
"""The same opening as rendered by whitespace-free JSON encoders."""

Marker = Union[str, Sequence[str]]


class StreamWrapper(BaseModel, Generic[T]):
    """Envelope asked of the model when streaming a list of values."""

    items: List[T]


def envelope_schemas(response_model: RESPONSE_MODEL_T) -> Tuple[Schema, Schema]:
    """Return ``(element_schema, envelope_schema)`` for ``response_model``."""
    element = Schema.from_type(response_model)
    envelope = Schema.from_type(
        StreamWrapper[element.target], name=f"{element.name}Stream"
    )
    return element, envelope


class ArrayStreamParser:
    """Buffering state machine shared by the sync and async decoders.

    ``feed`` and ``close`` return lazy iterators; exhaust one before feeding
    the next fragment.
    """

    def __init__(
        self,
        schema: Schema,
        validator: Optional[Validator] = None,
        marker: Marker = ARRAY_START,
    ):
        self.schema = schema
        self.validator = validator
        self.markers: Tuple[str, ...] = (
            (marker,) if isinstance(marker, str) else tuple(marker)
        )
        self.buffer = ""
        self.in_array = False

    def feed(self, fragment: str) -> Iterator[Any]:
        self.buffer += fragment
        if not self.in_array:
            self.in_array = self._start_array()
            if not self.in_array:
                return iter(())
        return self._drain()

    def close(self) -> Iterator[Any]:
        """Flush whatever element is still pending once upstream is exhausted."""
        if not self.in_array:
            if self.buffer.strip():
                logger.debug(
                    f"Stream ended before any of {self.markers!r}; discarding"
                    f" {len(self.buffer)} buffered characters"
                )
            return iter(())
        # The last ']' closes the envelope's array; what follows is not element content.
        idx = self.buffer.rfind("]")
        if idx != -1:
            self.buffer = self.buffer[:idx]
        return self._drain(final=True)

    def _start_array(self) -> bool:
        found = [(self.buffer.find(marker), marker) for marker in self.markers]
        found = [f for f in found if f[0] != -1]
        if not found:
            return False
        idx, marker = min(found)
        self.buffer = self.buffer[idx + len(marker) :].lstrip()
        logger.debug(f"Found {marker!r}, draining {self.schema.name} elements")
        return True

    def _drain(self, final: bool = False) -> Iterator[Any]:
        while True:
            found = first_json_value(self.buffer, final=final)
            if found is None:
                return
            text, remaining = found
            try:
                value = self.schema.decode(text)
                if self.validator is not None:
                    run_validator(self.validator, value, self.schema.json_schema)
            except (DecodeError, ValidationError) as e:
                logger.debug(f"Element not ready, waiting for more input: {e}")
                return
            self.buffer = remaining
            yield value


def parse_stream(
    fragments: Iterable[str],
    schema: Schema,
    validator: Optional[Validator] = None,
    marker: Marker = ARRAY_START,
) -> Iterator[Any]:
    """Decode elements from a synchronous fragment stream.

    Closing the returned generator stops consumption of ``fragments`` and
    closes it. Errors raised while reading ``fragments`` surface as
    ``ProviderError``.
    """
    parser = ArrayStreamParser(schema, validator, marker)
    iterator = iter(fragments)
    try:
        while True:
            try:
                fragment = next(iterator)
            except StopIteration:
                break
            except StructcallError:
                raise
            except Exception as e:
                raise ProviderError(f"Stream failed: {e!r}", details=repr(e)) from e
            yield from parser.feed(fragment)
        yield from parser.close()
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            close()


_DONE = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class ArrayStream(Generic[T]):
    """Async sequence of decoded elements fed by one producer task.

    The producer hands each element over through a rendezvous: it does not read
    further fragments until the consumer has taken the previous element. Setting
    ``cancel`` (or the ``timeout`` elapsing, or :meth:`aclose`) stops the
    producer at its next suspension point without flushing partial elements.
    """

    def __init__(
        self,
        fragments: AsyncIterator[str],
        parser: ArrayStreamParser,
        *,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ):
        self._fragments = fragments
        self._parser = parser
        self.cancel = cancel if cancel is not None else asyncio.Event()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        loop = asyncio.get_running_loop()
        self._timer = (
            loop.call_later(timeout, self.cancel.set) if timeout is not None else None
        )
        self._task = loop.create_task(self._produce())

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        # Dropping this generator (a `break` out of `async for`) finalizes it,
        # which stops the producer and closes the upstream fragments.
        try:
            while True:
                try:
                    item = await self.__anext__()
                except StopAsyncIteration:
                    return
                yield item
        finally:
            if not self._task.done():
                self._closed = True
                self.cancel.set()

    async def __anext__(self) -> T:
        if self._closed or self.cancel.is_set():
            self._closed = True
            raise StopAsyncIteration
        item = await self._queue.get()
        self._queue.task_done()
        if item is _DONE:
            self._closed = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._closed = True
            raise item.error
        return item

    async def aclose(self) -> None:
        self._closed = True
        self.cancel.set()
        await self._task

    async def __aenter__(self) -> "ArrayStream[T]":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _race(self, aw: Any) -> Tuple[bool, Any]:
        """Await ``aw`` unless cancellation fires first; return ``(cancelled, result)``."""
        if self.cancel.is_set():
            aw.close()
            return True, None
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self.cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
        # Cancellation wins even when the awaited step finished in the same tick.
        if task in done and not self.cancel.is_set():
            return False, task.result()
        if task.done():
            if not task.cancelled():
                task.exception()
            return True, None
        task.cancel()
        await asyncio.wait({task})
        return True, None

    async def _emit(self, values: Iterator[Any]) -> bool:
        for value in values:
            self._queue.put_nowait(value)
            cancelled, _ = await self._race(self._queue.join())
            if cancelled:
                return False
        return True

    async def _produce(self) -> None:
        iterator = self._fragments.__aiter__()
        try:
            while True:
                cancelled, fragment = await self._race(_next_fragment(iterator))
                if cancelled:
                    logger.debug("Stream cancelled, dropping buffered input")
                    return
                if fragment is _DONE:
                    break
                if not await self._emit(self._parser.feed(fragment)):
                    return
            await self._emit(self._parser.close())
        except Exception as e:
            logger.error(f"Stream failed: {e!r}")
            self._queue.put_nowait(_Failure(e))
        finally:
            if self._timer is not None:
                self._timer.cancel()
            self._queue.put_nowait(_DONE)
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug(f"Error closing upstream stream: {e!r}")


async def _next_fragment(iterator: AsyncIterator[str]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _DONE
    except StructcallError:
        raise
    except Exception as e:
        raise ProviderError(f"Stream failed: {e!r}", details=repr(e)) from e


def stream_array(
    instructor: Instructor,
    request: Any,
    response_model: RESPONSE_MODEL_T,
    config: Optional[RunnableConfig] = None,
) -> Iterator[Any]:
    """Stream ``response_model`` elements from ``instructor``.

    The provider call starts (and an unsupported mode fails) immediately; the
    returned generator decodes lazily.
    """
    element, envelope = envelope_schemas(response_model)
    fragments = instructor.call_stream(request, envelope, config)
    validator = instructor.validator if instructor.should_validate() else None
    return parse_stream(fragments, element, validator, instructor.stream_marker())


async def astream_array(
    instructor: Instructor,
    request: Any,
    response_model: RESPONSE_MODEL_T,
    *,
    cancel: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
    config: Optional[RunnableConfig] = None,
) -> ArrayStream[Any]:
    from structcall.settings import get_settings

    element, envelope = envelope_schemas(response_model)
    fragments = instructor.acall_stream(request, envelope, config)
    if inspect.isawaitable(fragments):
        fragments = await fragments
    validator = instructor.validator if instructor.should_validate() else None
    if timeout is None:
        timeout = get_settings().STREAM_TIMEOUT
    return ArrayStream(
        fragments,
        ArrayStreamParser(element, validator, instructor.stream_marker()),
        cancel=cancel,
        timeout=timeout,
    )
