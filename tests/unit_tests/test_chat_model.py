from typing import Any, Dict, Iterator, List, Optional

import pytest
from langchain_core.callbacks import CallbackManagerForLLMRun
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult
from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, Field

from structcall._base import (
    ChatModelInstructor,
    DecodeError,
    InvalidRequestShapeError,
    Mode,
    NoStructuredOutputError,
    Options,
    Provider,
    Schema,
    UnsupportedModeError,
    UsageSum,
    from_chat_model,
)


class FakeChatModel(BaseChatModel):
    """Fake Chat Model that replays scripted responses and records requests."""

    responses: List[AIMessage] = Field(default_factory=list)
    requests: List[Dict[str, Any]] = Field(default_factory=list)
    i: int = 0

    def _next(self, messages: List[BaseMessage], kwargs: Dict[str, Any]) -> AIMessage:
        self.requests.append({"messages": messages, **kwargs})
        message = self.responses[self.i % len(self.responses)]
        self.i += 1
        return message

    def _generate(
        self,
        messages: List[BaseMessage],
        stop: Optional[List[str]] = None,
        run_manager: Optional[CallbackManagerForLLMRun] = None,
        **kwargs: Any,
    ) -> ChatResult:
        message = self._next(messages, kwargs)
        return ChatResult(generations=[ChatGeneration(message=message)])

    def _stream(
        self,
        messages: List[BaseMessage],
        stop: Optional[List[str]] = None,
        run_manager: Optional[CallbackManagerForLLMRun] = None,
        **kwargs: Any,
    ) -> Iterator[ChatGenerationChunk]:
        text = self._next(messages, kwargs).content
        for i in range(0, len(text), 3):
            yield ChatGenerationChunk(message=AIMessageChunk(content=text[i : i + 3]))

    @property
    def _llm_type(self) -> str:
        return "fake-chat-model"

    @property
    def _identifying_params(self) -> Dict[str, Any]:
        return {"key": "fake"}

    def bind_tools(self, tools: list, **kwargs: Any):  # type: ignore
        """Bind tools to the model."""
        return self.bind(tools=tools, **kwargs)


class NoToolsChatModel(FakeChatModel):
    def bind_tools(self, tools: list, **kwargs: Any):  # type: ignore
        raise NotImplementedError()


class Item(BaseModel):
    """An extracted item."""

    a: int


def _usage(input_tokens: int, output_tokens: int) -> Dict[str, int]:
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


def _tool_message(*args: Dict[str, Any], usage=(10, 5)) -> AIMessage:
    return AIMessage(
        content="",
        tool_calls=[
            {"name": "Item", "args": a, "id": f"call_{i}"} for i, a in enumerate(args)
        ],
        usage_metadata=_usage(*usage),
    )


def _text_message(text: str, usage=(10, 5)) -> AIMessage:
    return AIMessage(content=text, usage_metadata=_usage(*usage))


def test_tool_call_mode() -> None:
    llm = FakeChatModel(responses=[_tool_message({"a": 1})])
    instructor = from_chat_model(llm, mode="tool_call")
    value, response = instructor.create("extract it", Item)

    assert value == Item(a=1)
    assert response.usage_metadata["input_tokens"] == 10
    request = llm.requests[0]
    assert request["tool_choice"] == "Item"
    assert request["tools"][0]["function"]["name"] == "Item"
    assert request["tools"][0]["function"]["description"] == "An extracted item."
    assert "strict" not in request
    assert isinstance(request["messages"][0], HumanMessage)


def test_tool_call_strict_mode() -> None:
    llm = FakeChatModel(responses=[_tool_message({"a": 2})])
    instructor = from_chat_model(llm, mode=Mode.TOOL_CALL_STRICT)
    value, _ = instructor.create("extract it", Item)

    assert value == Item(a=2)
    request = llm.requests[0]
    assert request["strict"] is True
    function = request["tools"][0]["function"]
    assert function["strict"] is True
    assert function["parameters"]["additionalProperties"] is False
    assert function["parameters"]["required"] == ["a"]


def test_multiple_tool_calls_decode_as_a_list() -> None:
    llm = FakeChatModel(responses=[_tool_message({"a": 1}, {"a": 2})])
    instructor = from_chat_model(llm, mode="tool_call")
    value, _ = instructor.create("extract them", List[Item])
    assert value == [Item(a=1), Item(a=2)]


def test_default_mode_resolution() -> None:
    llm = FakeChatModel()
    assert from_chat_model(llm).mode() is Mode.TOOL_CALL
    assert from_chat_model(llm, provider=Provider.COHERE).mode() is Mode.JSON
    assert from_chat_model(llm, mode="markdown_json").mode() is Mode.MARKDOWN_JSON


def test_missing_tool_call_is_retried_then_raised() -> None:
    llm = FakeChatModel(responses=[_text_message("I'd rather not.", usage=(4, 2))])
    instructor = from_chat_model(llm, mode="tool_call", max_retries=1)
    with pytest.raises(NoStructuredOutputError) as exc_info:
        instructor.create("extract it", Item)
    assert llm.i == 2
    assert exc_info.value.usage == UsageSum(8, 4, 12)
    assert exc_info.value.response.usage_metadata["input_tokens"] == 8


def test_tool_calls_unsupported_by_model() -> None:
    llm = NoToolsChatModel(responses=[_tool_message({"a": 1})])
    instructor = from_chat_model(llm, mode="tool_call", max_retries=3)
    with pytest.raises(UnsupportedModeError):
        instructor.create("extract it", Item)
    assert llm.i == 0


def test_json_mode() -> None:
    llm = FakeChatModel(
        responses=[_text_message('Here you go: {"a": 3} hope that helps!')]
    )
    instructor = from_chat_model(llm, mode="json")
    value, _ = instructor.create("extract it", Item)

    assert value == Item(a=3)
    messages = llm.requests[0]["messages"]
    assert isinstance(messages[0], SystemMessage)
    assert messages[0].content.startswith("Please respond with JSON")
    assert '"a"' in messages[0].content
    assert "tools" not in llm.requests[0]


def test_json_mode_concatenates_existing_system_prompt() -> None:
    llm = FakeChatModel(responses=[_text_message('{"a": 3}')])
    instructor = from_chat_model(llm, mode="json")
    instructor.create([("system", "You are terse."), ("user", "extract it")], Item)

    messages = llm.requests[0]["messages"]
    assert len(messages) == 2
    assert messages[0].content.startswith("You are terse.\n\nPlease respond with JSON")


def test_json_strict_mode_unwraps_named_object() -> None:
    llm = FakeChatModel(responses=[_text_message('{"Item": {"a": 4}}')])
    instructor = from_chat_model(llm, mode="json_strict")
    value, _ = instructor.create("extract it", Item)
    assert value == Item(a=4)
    assert '"Item"' in llm.requests[0]["messages"][0].content


def test_json_schema_mode() -> None:
    llm = FakeChatModel(responses=[_text_message('{"a": 6}')])
    value, _ = from_chat_model(llm, mode="json_schema").create("extract it", Item)
    assert value == Item(a=6)
    assert "response_format" not in llm.requests[0]

    openai_llm = FakeChatModel(responses=[_text_message('{"a": 6}')])
    instructor = from_chat_model(
        openai_llm, mode="json_schema", provider=Provider.OPENAI
    )
    instructor.create("extract it", Item)
    response_format = openai_llm.requests[0]["response_format"]
    assert response_format["type"] == "json_schema"
    assert response_format["json_schema"]["name"] == "Item"


def test_markdown_json_mode() -> None:
    llm = FakeChatModel(
        responses=[_text_message('Sure!\n```json\n{"a": 5}\n```\nAnything else?')]
    )
    instructor = from_chat_model(llm, mode="markdown_json")
    value, _ = instructor.create("extract it", Item)
    assert value == Item(a=5)


def test_retry_feeds_the_error_back() -> None:
    llm = FakeChatModel(
        responses=[
            _text_message('{"a": "three"}', usage=(10, 1)),
            _text_message('{"a": 3}', usage=(12, 2)),
        ]
    )
    instructor = from_chat_model(llm, mode="json", max_retries=2)
    value, response = instructor.create("extract it", Item)

    assert value == Item(a=3)
    assert response.content == '{"a": 3}'
    assert response.usage_metadata == _usage(22, 3)

    retry = llm.requests[1]["messages"]
    assert isinstance(retry[0], SystemMessage)
    assert retry[1].content == "extract it"
    assert isinstance(retry[2], AIMessage)
    assert retry[2].content == '{"a": "three"}'
    assert isinstance(retry[3], HumanMessage)
    assert retry[3].content.startswith("Error:")
    assert "Expected JSON Schema" in retry[3].content


def test_exhausted_retries_raise_decode_error() -> None:
    llm = FakeChatModel(responses=[_text_message("no json here", usage=(3, 3))])
    instructor = from_chat_model(llm, mode="json", max_retries=2)
    with pytest.raises(DecodeError) as exc_info:
        instructor.create("extract it", Item)
    assert llm.i == 3
    assert exc_info.value.response.usage_metadata == _usage(9, 9)


async def test_async_create() -> None:
    llm = FakeChatModel(
        responses=[_text_message("{", usage=(1, 1)), _text_message('{"a": 7}')]
    )
    instructor = from_chat_model(llm, mode="json", max_retries=1)
    value, response = await instructor.acreate("extract it", Item)
    assert value == Item(a=7)
    assert response.usage_metadata["input_tokens"] == 11


def test_request_shapes() -> None:
    llm = FakeChatModel(responses=[_text_message('{"a": 1}')])
    instructor = from_chat_model(llm, mode="json")
    prompt = ChatPromptTemplate.from_messages([("user", "extract {thing}")])

    for request in [
        "extract it",
        HumanMessage(content="extract it"),
        [("user", "extract it")],
        {"messages": [("user", "extract it")]},
        prompt.invoke({"thing": "it"}),
    ]:
        value, _ = instructor.create(request, Item)
        assert value == Item(a=1)
    assert llm.i == 5


def test_invalid_request_shape_is_terminal() -> None:
    llm = FakeChatModel(responses=[_text_message('{"a": 1}')])
    instructor = from_chat_model(llm, mode="json", max_retries=3)
    with pytest.raises(InvalidRequestShapeError):
        instructor.create(42, Item)
    assert llm.i == 0


def test_stream_json_mode() -> None:
    llm = FakeChatModel(
        responses=[_text_message('{"items": [{"a": 1}, {"a": 2}, {"a": 3}]}')]
    )
    instructor = from_chat_model(llm, mode="json")
    assert list(instructor.create_stream("extract them", Item)) == [
        Item(a=1),
        Item(a=2),
        Item(a=3),
    ]
    system = llm.requests[0]["messages"][0].content
    assert '"items": [' in system
    assert "one Item per array element" in system


async def test_astream_markdown_mode() -> None:
    llm = FakeChatModel(
        responses=[_text_message('```json\n{"items": [{"a": 1}, {"a": 2}]}\n```')]
    )
    instructor = from_chat_model(llm, mode="markdown_json")
    stream = await instructor.acreate_stream("extract them", Item)
    assert [item async for item in stream] == [Item(a=1), Item(a=2)]


def test_stream_openai_json_schema_mode_reads_compact_json() -> None:
    llm = FakeChatModel(responses=[_text_message('{"items":[{"a":1},{"a":2}]}')])
    instructor = from_chat_model(llm, mode="json_schema", provider=Provider.OPENAI)
    assert list(instructor.create_stream("extract them", Item)) == [
        Item(a=1),
        Item(a=2),
    ]
    assert llm.requests[0]["response_format"]["type"] == "json_schema"


def test_stream_json_strict_mode() -> None:
    llm = FakeChatModel(
        responses=[_text_message('{"ItemStream": {"items": [{"a": 1}, {"a": 2}]}}')]
    )
    instructor = from_chat_model(llm, mode="json_strict")
    assert list(instructor.create_stream("extract them", Item)) == [
        Item(a=1),
        Item(a=2),
    ]
    assert "exactly one key" in llm.requests[0]["messages"][0].content


async def test_astream_json_strict_mode() -> None:
    llm = FakeChatModel(
        responses=[_text_message('{"ItemStream":{"items":[{"a":1},{"a":2}]}}')]
    )
    instructor = from_chat_model(llm, mode="json_strict")
    stream = await instructor.acreate_stream("extract them", Item)
    async with stream:
        assert [item async for item in stream] == [Item(a=1), Item(a=2)]


@pytest.mark.parametrize("mode", ["tool_call", "tool_call_strict"])
def test_stream_unsupported_modes_fail_fast(mode: str) -> None:
    llm = FakeChatModel(responses=[_text_message('{"items": []}')])
    instructor = from_chat_model(llm, mode=mode)
    with pytest.raises(UnsupportedModeError):
        instructor.create_stream("extract them", Item)
    assert llm.i == 0


def test_usage_hooks() -> None:
    instructor = ChatModelInstructor(FakeChatModel(), Options(mode=Mode.JSON))
    usage = UsageSum(5, 7, 12)

    empty = instructor.empty_response_with_usage(usage)
    assert empty.content == ""
    assert empty.usage_metadata == _usage(5, 7)

    original = _text_message('{"a": 1}', usage=(1, 1))
    merged = instructor.merge_usage_into_response(original, usage)
    assert merged.content == '{"a": 1}'
    assert merged.usage_metadata == _usage(5, 7)
    assert original.usage_metadata == _usage(1, 1)

    view = instructor.usage_only_view(original)
    assert view.content == ""
    assert view.usage_metadata == _usage(1, 1)
    assert instructor.usage_only_view(None) is None

    assert instructor.extract_usage(None, UsageSum(1, 1, 2)) == UsageSum(1, 1, 2)
    assert instructor.extract_usage(AIMessage(content="x"), UsageSum()) == UsageSum()
    assert instructor.extract_usage(original, UsageSum(1, 0, 1)) == UsageSum(2, 1, 3)


def test_gemini_tools_inline_nested_models() -> None:
    class Inner(BaseModel):
        """Inner."""

        name: str

    class Outer(BaseModel):
        """Outer."""

        inner: Inner
        tags: List[str]

    tool = Schema.from_type(Outer).to_tool(for_gemini=True)
    parameters = tool["function"]["parameters"]
    assert parameters["type"] == "OBJECT"
    assert parameters["properties"]["inner"]["type"] == "OBJECT"
    assert parameters["properties"]["inner"]["properties"]["name"]["type"] == "STRING"
    assert parameters["properties"]["tags"]["items"]["type"] == "STRING"
    assert "$ref" not in str(parameters)
