"""Capability adapter over LangChain chat models.

Any ``BaseChatModel`` (``ChatOpenAI``, ``ChatAnthropic``, ``ChatCohere``,
``ChatGoogleGenerativeAI``...) can back an :class:`~structcall.instructor.Instructor`
through :class:`ChatModelInstructor`. Requests are message sequences, responses
are ``AIMessage`` objects, and usage lives in ``AIMessage.usage_metadata``.
"""

from __future__ import annotations

import json
import logging
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
    cast,
)

import langsmith as ls
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    convert_to_messages,
)
from langchain_core.messages.ai import UsageMetadata
from langchain_core.prompt_values import PromptValue
from langchain_core.runnables import Runnable, RunnableConfig

from structcall.errors import (
    InvalidRequestShapeError,
    NoStructuredOutputError,
    ProviderError,
    StructcallError,
    UnsupportedModeError,
)
from structcall.instructor import Instructor
from structcall.schema import Schema
from structcall.stream import ARRAY_START, COMPACT_ARRAY_START, Marker
from structcall.types import Mode, Options, Provider, RequestLike, UsageSum
from structcall.utils import (
    _try_parse_json_value,
    extract_fenced_json,
    extract_json,
    infer_provider,
)
from structcall.validation import Validator

logger = logging.getLogger("extraction")

JSON_PROMPT = (
    "Please respond with JSON in the following JSON schema - make sure to return"
    " an instance of the JSON, not the schema itself: {schema}"
)
JSON_STRICT_PROMPT = (
    "Please respond with a JSON object with exactly one key, \"{name}\", whose"
    " value is an instance of the following JSON schema - make sure to return an"
    " instance of the JSON, not the schema itself: {schema}"
)
JSON_SCHEMA_PROMPT = (
    "You are a helpful assistant that responds with valid JSON according to the"
    " following schema:\n\n{schema}\n\nRespond with valid JSON only."
)
MARKDOWN_JSON_PROMPT = (
    "Respond with the correct JSON response within a ```json codeblock, following"
    " this JSON schema (return an instance, not the schema itself): {schema}"
)
STREAM_PROMPT = (
    'Format the whole response as {{"items": [ ... ]}}, written exactly with'
    ' "items": [ as shown, and put one {name} per array element.'
)

_STREAMABLE_MODES = (
    Mode.JSON,
    Mode.JSON_STRICT,
    Mode.JSON_SCHEMA,
    Mode.MARKDOWN_JSON,
)


class ChatModelInstructor(Instructor):
    """Instructor backed by a LangChain chat model."""

    def __init__(
        self,
        llm: BaseChatModel,
        *opts: Options,
        validator: Optional[Union[Validator, Callable[[Any], Any]]] = None,
        provider: Optional[Provider] = None,
    ):
        super().__init__(*opts, validator=validator)
        self.llm = llm
        self._provider = provider or infer_provider(llm)

    def provider(self) -> Provider:
        return self._provider

    def mode(self) -> Mode:
        mode = super().mode()
        if mode is Mode.DEFAULT:
            # Cohere tool calls do not carry arguments we can decode.
            return Mode.JSON if self._provider is Provider.COHERE else Mode.TOOL_CALL
        return mode

    # Request preparation

    def _coerce_request(self, request: RequestLike) -> List[BaseMessage]:
        if isinstance(request, str):
            return [HumanMessage(content=request)]
        if isinstance(request, PromptValue):
            return request.to_messages()
        if isinstance(request, BaseMessage):
            return [request]
        if isinstance(request, dict) and "messages" in request:
            return self._coerce_request(request["messages"])
        if isinstance(request, (list, tuple)):
            try:
                return list(convert_to_messages(request))
            except (ValueError, TypeError, NotImplementedError) as e:
                raise InvalidRequestShapeError(
                    f"invalid request type for {self._provider.value} client: {e}"
                ) from e
        raise InvalidRequestShapeError(
            f"invalid request type for {self._provider.value} client:"
            f" {type(request).__name__}"
        )

    def _prepare(
        self, request: Any, schema: Schema, streaming: bool = False
    ) -> Tuple[Runnable, List[BaseMessage]]:
        mode = self.mode()
        messages = self._coerce_request(request)
        if streaming and mode not in _STREAMABLE_MODES:
            raise UnsupportedModeError(
                f"mode '{mode.value}' is not supported for streaming"
                f" with {self._provider.value}"
            )

        if mode in (Mode.TOOL_CALL, Mode.TOOL_CALL_STRICT):
            strict = mode is Mode.TOOL_CALL_STRICT
            tool = schema.to_tool(
                strict=strict, for_gemini=self._provider is Provider.GOOGLE
            )
            kwargs: dict = {"tool_choice": schema.name}
            if strict:
                kwargs["strict"] = True
            try:
                bound = self.llm.bind_tools([tool], **kwargs)
            except NotImplementedError as e:
                raise UnsupportedModeError(
                    f"mode '{mode.value}' is not supported for {self._provider.value}:"
                    f" {type(self.llm).__name__} does not support tool calling"
                ) from e
            return bound, messages

        if mode is Mode.JSON:
            prompt = JSON_PROMPT.format(schema=schema.string)
        elif mode is Mode.JSON_STRICT:
            prompt = JSON_STRICT_PROMPT.format(
                name=schema.name_from_ref(), schema=schema.string
            )
        elif mode is Mode.JSON_SCHEMA:
            prompt = JSON_SCHEMA_PROMPT.format(schema=schema.string)
        elif mode is Mode.MARKDOWN_JSON:
            prompt = MARKDOWN_JSON_PROMPT.format(schema=schema.string)
        else:
            raise UnsupportedModeError(
                f"mode '{mode.value}' is not supported for {self._provider.value}"
            )
        if streaming:
            prompt += "\n" + STREAM_PROMPT.format(name=schema.name.removesuffix("Stream"))

        bound: Runnable = self.llm
        if mode is Mode.JSON_SCHEMA and self._provider is Provider.OPENAI:
            bound = self.llm.bind(
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": schema.name,
                        "description": schema.description,
                        "schema": schema.json_schema,
                    },
                }
            )
        return bound, _add_or_concat_system_prompt(messages, prompt)

    # Response handling

    @ls.traceable(tags=["langsmith:hidden"])
    def _tear_down(self, msg: AIMessage, schema: Schema) -> str:
        mode = self.mode()
        if mode in (Mode.TOOL_CALL, Mode.TOOL_CALL_STRICT):
            return self._tool_call_text(msg)
        text = _message_text(msg)
        if mode is Mode.MARKDOWN_JSON:
            return extract_fenced_json(text)
        text = extract_json(text)
        if mode is Mode.JSON_STRICT:
            return _unwrap_strict(text, schema.name_from_ref())
        return text

    def _tool_call_text(self, msg: AIMessage) -> str:
        tool_calls = list(msg.tool_calls)
        if not tool_calls:
            invalid = list(getattr(msg, "invalid_tool_calls", None) or [])
            if invalid:
                # Malformed arguments still go to the decoder so the error
                # can be fed back on the next attempt.
                return invalid[0].get("args") or ""
            raise NoStructuredOutputError(
                "received no tool calls from model, expected at least 1",
                response=self.usage_only_view(msg),
            )
        args = [_try_parse_json_value(tc["args"]) for tc in tool_calls]
        if len(args) == 1:
            return json.dumps(args[0])
        return json.dumps(args)

    def call(
        self, request: Any, schema: Schema, config: Optional[RunnableConfig] = None
    ) -> Tuple[str, AIMessage]:
        bound, messages = self._prepare(request, schema)
        try:
            msg = cast(AIMessage, bound.invoke(messages, config))
        except StructcallError:
            raise
        except Exception as e:
            raise ProviderError(
                f"{self._provider.value} call failed: {e!r}", details=repr(e)
            ) from e
        return self._tear_down(msg, schema), msg

    async def acall(
        self, request: Any, schema: Schema, config: Optional[RunnableConfig] = None
    ) -> Tuple[str, AIMessage]:
        bound, messages = self._prepare(request, schema)
        try:
            msg = cast(AIMessage, await bound.ainvoke(messages, config))
        except StructcallError:
            raise
        except Exception as e:
            raise ProviderError(
                f"{self._provider.value} call failed: {e!r}", details=repr(e)
            ) from e
        return self._tear_down(msg, schema), msg

    def call_stream(
        self, request: Any, schema: Schema, config: Optional[RunnableConfig] = None
    ) -> Iterator[str]:
        bound, messages = self._prepare(request, schema, streaming=True)
        return _iter_text(bound.stream(messages, config))

    async def acall_stream(
        self, request: Any, schema: Schema, config: Optional[RunnableConfig] = None
    ) -> AsyncIterator[str]:
        bound, messages = self._prepare(request, schema, streaming=True)
        return _aiter_text(bound.astream(messages, config))

    def stream_marker(self) -> Marker:
        # Native JSON modes (OpenAI response_format) emit whitespace-free JSON.
        return (ARRAY_START, COMPACT_ARRAY_START)

    def with_feedback(
        self, request: Any, schema: Schema, text: str, error: Exception
    ) -> List[BaseMessage]:
        messages = self._coerce_request(request)
        return messages + [
            AIMessage(content=text),
            HumanMessage(
                content=f"Error:\n\n```\n{error}\n```\n"
                "Expected JSON Schema:\n\n"
                f"```json\n{schema.string}\n```\n"
                "Please fix all of the errors above and respond again."
            ),
        ]

    # Usage hooks

    def empty_response_with_usage(self, usage: UsageSum) -> AIMessage:
        return AIMessage(content="", usage_metadata=_usage_metadata(usage))

    def usage_only_view(self, response: Optional[AIMessage]) -> Optional[AIMessage]:
        if response is None:
            return None
        return AIMessage(
            content="", id=response.id, usage_metadata=response.usage_metadata
        )

    def merge_usage_into_response(
        self, response: Optional[AIMessage], usage: UsageSum
    ) -> AIMessage:
        if response is None:
            return self.empty_response_with_usage(usage)
        return response.model_copy(update={"usage_metadata": _usage_metadata(usage)})

    def extract_usage(self, response: Optional[AIMessage], usage: UsageSum) -> UsageSum:
        metadata = getattr(response, "usage_metadata", None)
        if not metadata:
            return usage
        return usage.add(
            metadata.get("input_tokens", 0),
            metadata.get("output_tokens", 0),
            metadata.get("total_tokens"),
        )


def from_chat_model(
    llm: BaseChatModel,
    *opts: Options,
    mode: Optional[Union[Mode, str]] = None,
    max_retries: Optional[int] = None,
    validate: Optional[bool] = None,
    validator: Optional[Union[Validator, Callable[[Any], Any]]] = None,
    provider: Optional[Provider] = None,
) -> ChatModelInstructor:
    """Wrap a LangChain chat model as an instructor.

    Examples:
        >>> from langchain_anthropic import ChatAnthropic
        >>> instructor = from_chat_model(
        ...     ChatAnthropic(model="claude-3-5-haiku-latest"),
        ...     mode="json",
        ...     max_retries=2,
        ... )  # doctest: +SKIP
    """
    overrides = Options(
        mode=Mode(mode) if mode is not None else None,
        max_retries=max_retries,
        validate=validate,
    )
    return ChatModelInstructor(
        llm, *opts, overrides, validator=validator, provider=provider
    )


def _usage_metadata(usage: UsageSum) -> UsageMetadata:
    return UsageMetadata(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
    )


def _add_or_concat_system_prompt(
    messages: List[BaseMessage], prompt: str
) -> List[BaseMessage]:
    messages = list(messages)
    if messages and isinstance(messages[0], SystemMessage):
        system_message = messages.pop(0)
        if isinstance(system_message.content, str):
            content: Any = system_message.content + "\n\n" + prompt
        else:
            content = list(system_message.content) + ["\n\n" + prompt]
        system_message = system_message.model_copy(update={"content": content})
    else:
        system_message = SystemMessage(content=prompt)
    return [system_message] + messages


def _message_text(msg: BaseMessage) -> str:
    content = msg.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _unwrap_strict(text: str, name: str) -> str:
    """Return the JSON of ``{name: value}``'s value, or ``text`` if it has no such key."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(data, dict) and name in data:
        return json.dumps(data[name])
    return text


def _iter_text(chunks: Iterator[BaseMessage]) -> Iterator[str]:
    for chunk in chunks:
        text = _message_text(chunk)
        if text:
            yield text


async def _aiter_text(chunks: AsyncIterator[BaseMessage]) -> AsyncIterator[str]:
    async for chunk in chunks:
        text = _message_text(chunk)
        if text:
            yield text
