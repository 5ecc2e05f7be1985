from dataclasses import dataclass
from typing import Any, Optional

from common.errors import ChatError


@dataclass(frozen=True)
class NetworkResult:
    '''
    Outcome of an operation that touches the network.
    Expected faults (disconnects, unreachable peers) come back as an ``error``
    instead of being raised, so the caller decides how fatal they are.
        - value: whatever the operation produced (read bytes, frames, ...)
        - error: the ChatError describing the failure, None on success
    '''
    value: Any = None
    error: Optional[ChatError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: Any = None) -> "NetworkResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ChatError) -> "NetworkResult":
        return cls(error=error)


OK = NetworkResult()
