from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """
    Remote invocation endpoint.

    ``invoke`` returns the endpoint's response on success and raises
    ThrottledError, TransientError or FatalError on failure. Any other
    exception is classified by the executor.
    """

    async def invoke(self, payload: bytes) -> Any:
        ...


@runtime_checkable
class BatchTransport(Transport, Protocol):
    """
    Transport that accepts a whole batch as one call.

    ``invoke_batch`` returns one entry per payload, in order: the response
    for a delivered payload or the exception instance for a failed one.
    """

    async def invoke_batch(self, payloads: Sequence[bytes]) -> list[Any]:
        ...
