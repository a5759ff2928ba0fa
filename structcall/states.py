import operator
from dataclasses import dataclass, field
from typing import Any, Optional

from typing_extensions import Annotated

from structcall.types import UsageSum


@dataclass(kw_only=True)
class ExtractionState:
    request: Any = field(default=None)
    """The provider request. Adapters may rewrite it between attempts."""
    attempts: Annotated[int, operator.add] = field(default=0)
    usage: UsageSum = field(default_factory=UsageSum)
    """Token counts summed over every attempt so far."""
    text: str = field(default="")
    response: Any = field(default=None)
    """Raw provider response of the latest attempt."""
    value: Any = field(default=None)
    error: Optional[BaseException] = field(default=None)
    """Error of the latest attempt, cleared by a successful one."""
