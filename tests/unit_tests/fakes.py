"""Scripted provider adapters shared by the unit tests."""

from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Tuple, Union

from structcall._base import Instructor, Options, Provider, UsageSum


@dataclass
class FakeResponse:
    content: str
    usage: Optional[Tuple[int, int, int]] = None
    extra: dict = field(default_factory=dict)


Scripted = Union[Tuple[str, Tuple[int, int, int]], Exception]


class FakeInstructor(Instructor):
    """Scripted capability that records every provider call."""

    def __init__(
        self,
        script: List[Scripted],
        *opts: Options,
        validator: Any = None,
        feedback: bool = False,
    ):
        super().__init__(*opts, validator=validator)
        self.script = script
        self.requests: List[Any] = []
        self.feedback = feedback

    @property
    def calls(self) -> int:
        return len(self.requests)

    def provider(self) -> Provider:
        return Provider.UNKNOWN

    def _next(self, request: Any) -> Tuple[str, FakeResponse]:
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.requests.append(request)
        if isinstance(item, Exception):
            raise item
        text, usage = item
        return text, FakeResponse(text, usage)

    def call(self, request, schema, config=None):
        return self._next(request)

    async def acall(self, request, schema, config=None):
        return self._next(request)

    def call_stream(self, request, schema, config=None) -> Iterator[str]:
        text, _ = self._next(request)
        return iter(text)

    async def acall_stream(self, request, schema, config=None):
        text, _ = self._next(request)

        async def fragments():
            for char in text:
                yield char

        return fragments()

    def empty_response_with_usage(self, usage: UsageSum) -> FakeResponse:
        return FakeResponse(
            "", (usage.input_tokens, usage.output_tokens, usage.total_tokens)
        )

    def usage_only_view(self, response: Optional[FakeResponse]):
        if response is None:
            return None
        return FakeResponse("", response.usage)

    def merge_usage_into_response(self, response, usage: UsageSum) -> FakeResponse:
        return FakeResponse(
            response.content,
            (usage.input_tokens, usage.output_tokens, usage.total_tokens),
            response.extra,
        )

    def extract_usage(self, response, usage: UsageSum) -> UsageSum:
        if response is None or response.usage is None:
            return usage
        return usage.add(*response.usage)

    def with_feedback(self, request, schema, text, error):
        if not self.feedback:
            return request
        return list(request) + [f"fix {schema.name}: {error}"]
