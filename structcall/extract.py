"""Extraction-related functionality for the structcall package."""

from __future__ import annotations

import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Literal,
    Optional,
    Tuple,
    cast,
)

import langsmith as ls
from langchain_core.runnables import Runnable, RunnableConfig, RunnableLambda
from langgraph.graph import END, START, StateGraph

from structcall.errors import (
    TERMINAL_ERRORS,
    DecodeError,
    ProviderError,
    StructcallError,
    ValidationError,
)
from structcall.schema import Schema
from structcall.states import ExtractionState
from structcall.tools import RESPONSE_MODEL_T
from structcall.types import ExtractionOutputs, UsageSum
from structcall.validation import run_validator

if TYPE_CHECKING:
    from structcall.instructor import Instructor

logger = logging.getLogger("extraction")

# Graph steps taken by one attempt: call + decode.
_STEPS_PER_ATTEMPT = 2


class _Call:
    """One provider round trip, with usage accounting."""

    def __init__(self, instructor: Instructor, schema: Schema):
        self.instructor = instructor
        self.schema = schema

    def _tear_down(self, text: str, response: Any, state: ExtractionState) -> dict:
        usage = self.instructor.extract_usage(response, state.usage.copy())
        return {
            "attempts": 1,
            "text": text,
            "response": response,
            "usage": usage,
            "error": None,
        }

    def _on_error(self, error: Exception, state: ExtractionState) -> dict:
        if not isinstance(error, StructcallError):
            error = _wrap_provider_error(error)
        error = cast(StructcallError, error)
        usage = self.instructor.extract_usage(error.response, state.usage.copy())
        return {
            "attempts": 1,
            "text": "",
            "response": None,
            "usage": usage,
            "error": error,
        }

    def invoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        try:
            text, response = self.instructor.call(state.request, self.schema, config)
        except Exception as e:
            return self._on_error(e, state)
        return self._tear_down(text, response, state)

    async def ainvoke(self, state: ExtractionState, config: RunnableConfig) -> dict:
        try:
            text, response = await self.instructor.acall(
                state.request, self.schema, config
            )
        except Exception as e:
            return self._on_error(e, state)
        return self._tear_down(text, response, state)

    def as_runnable(self) -> Runnable:
        return RunnableLambda(self.invoke, afunc=self.ainvoke, name="call")


def _wrap_provider_error(error: Exception) -> ProviderError:
    wrapped = ProviderError(f"Provider call failed: {error!r}", details=repr(error))
    wrapped.__cause__ = error
    return wrapped


@ls.traceable(tags=["langsmith:hidden"])
def _decode_and_validate(
    instructor: Instructor, schema: Schema, text: str
) -> Any:
    value = schema.decode(text)
    if instructor.should_validate():
        run_validator(instructor.validator, value, schema.json_schema)
    return value


def create_extractor(
    instructor: Instructor,
    response_model: RESPONSE_MODEL_T,
) -> Runnable[Any, ExtractionOutputs]:
    """Create a runnable that extracts one validated ``response_model`` value.

    The schema is derived once and reused by every attempt. Each attempt calls
    the provider, decodes the returned text and, when the instructor asks for
    it, validates the decoded value. Failed attempts are retried (with the
    adapter's corrective feedback, if any) up to ``instructor.max_retries()``
    times. Token usage of every attempt, failed ones included, is summed.

    Args:
        instructor (Instructor): The provider adapter to call.
        response_model (RESPONSE_MODEL_T): The target type. Can be a pydantic
            model, a TypedDict, a JSON schema dict, a function or any type
            pydantic can validate.

    Returns:
        Runnable[Any, ExtractionOutputs]: A runnable taking the adapter's
        request and returning the decoded value, the provider response with
        summed usage, the usage itself and the number of attempts. Raises the
        last attempt's error once retries are exhausted.

    Examples:
        >>> from langchain_openai import ChatOpenAI
        >>> from pydantic import BaseModel
        >>> from structcall import from_chat_model
        >>>
        >>> class UserInfo(BaseModel):
        ...     name: str
        ...     age: int
        >>>
        >>> instructor = from_chat_model(ChatOpenAI(model="gpt-4o-mini"))
        >>> extractor = create_extractor(instructor, UserInfo)
        >>> result = extractor.invoke(
        ...     [("human", "My name is Alice and I'm 30 years old")]
        ... )
        >>> result["response"]
        UserInfo(name='Alice', age=30)
        >>> result["raw"].usage_metadata  # doctest: +SKIP
        {'input_tokens': 71, 'output_tokens': 18, 'total_tokens': 89}
    """
    schema = Schema.from_type(response_model)
    max_retries = instructor.max_retries()
    max_attempts = max_retries + 1

    def decode(state: ExtractionState) -> dict:
        try:
            value = _decode_and_validate(instructor, schema, state.text)
        except (DecodeError, ValidationError) as e:
            update: dict = {"error": e, "value": None}
            if state.attempts < max_attempts:
                update["request"] = instructor.with_feedback(
                    state.request, schema, state.text, e
                )
            return update
        return {"value": value, "error": None}

    def after_call(state: ExtractionState) -> Literal["decode", "call", "__end__"]:
        if state.error is None:
            return "decode"
        return _retry_or_end(state)

    def after_decode(state: ExtractionState) -> Literal["call", "__end__"]:
        if state.error is None:
            return "__end__"
        return _retry_or_end(state)

    def _retry_or_end(state: ExtractionState) -> Literal["call", "__end__"]:
        error = state.error
        if isinstance(error, TERMINAL_ERRORS):
            logger.error(f"Extraction of {schema.name} cannot proceed: {error}")
            return "__end__"
        if state.attempts >= max_attempts:
            logger.error(
                f"Extraction of {schema.name} failed after"
                f" {state.attempts} attempt(s): {error}"
            )
            return "__end__"
        logger.warning(
            f"Attempt {state.attempts}/{max_attempts} to extract"
            f" {schema.name} failed, retrying: {error}"
        )
        return "call"

    builder = StateGraph(ExtractionState)
    builder.add_node("call", _Call(instructor, schema).as_runnable())
    builder.add_node("decode", decode)
    builder.add_edge(START, "call")
    builder.add_conditional_edges(
        "call", after_call, path_map=["decode", "call", END]
    )
    builder.add_conditional_edges("decode", after_decode, path_map=["call", END])
    compiled = builder.compile(checkpointer=False)
    compiled.name = "Structcall"

    def filter_state(state: dict) -> ExtractionOutputs:
        """Reduce the final graph state to the caller's result, or raise."""
        usage: UsageSum = state.get("usage") or UsageSum()
        attempts = state.get("attempts", 0)
        error = state.get("error")
        if error is not None:
            error.response = instructor.empty_response_with_usage(usage)
            error.usage = usage
            error.attempts = attempts
            raise error
        raw = instructor.merge_usage_into_response(state.get("response"), usage)
        return {
            "response": state.get("value"),
            "raw": raw,
            "usage": usage,
            "attempts": attempts,
        }

    def coerce_inputs(request: Any) -> dict:
        return {"request": request}

    # Caller configs carry their own recursion limit; ours is derived from
    # max_retries so the graph can always finish its last attempt.
    recursion_limit = _STEPS_PER_ATTEMPT * max_attempts + 2

    def run_graph(inputs: dict, config: RunnableConfig) -> dict:
        return compiled.invoke(inputs, {**config, "recursion_limit": recursion_limit})

    async def arun_graph(inputs: dict, config: RunnableConfig) -> dict:
        return await compiled.ainvoke(
            inputs, {**config, "recursion_limit": recursion_limit}
        )

    return (
        RunnableLambda(coerce_inputs, name="coerce_inputs")
        | RunnableLambda(run_graph, afunc=arun_graph, name="extract")
        | RunnableLambda(filter_state, name="filter_state")
    ).with_config(run_name="Structcall")


def extract(
    instructor: Instructor,
    request: Any,
    response_model: RESPONSE_MODEL_T,
    config: Optional[RunnableConfig] = None,
) -> Tuple[Any, Any]:
    """Extract one value; return ``(value, response_with_summed_usage)``."""
    result = create_extractor(instructor, response_model).invoke(request, config)
    return result["response"], result["raw"]


async def aextract(
    instructor: Instructor,
    request: Any,
    response_model: RESPONSE_MODEL_T,
    config: Optional[RunnableConfig] = None,
) -> Tuple[Any, Any]:
    result = await create_extractor(instructor, response_model).ainvoke(
        request, config
    )
    return result["response"], result["raw"]
