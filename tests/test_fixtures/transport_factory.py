"""
Scripted Transports for Testing

Deterministic transport stubs: each payload can be given a script of
results (responses or exception instances) consumed one per attempt.
"""

import asyncio
from collections import defaultdict
from collections.abc import Sequence
from typing import Any


class ScriptedTransport:
    """
    Transport stub driven by per-payload scripts.

    Unscripted payloads (or exhausted scripts) succeed with ``default``.
    Tracks the delivery order and the peak number of concurrent calls.
    """

    def __init__(
        self,
        scripts: dict[bytes, Sequence[Any]] | None = None,
        default: Any = "ok",
        delay: float = 0.0,
    ):
        self._scripts = {payload: list(script) for payload, script in (scripts or {}).items()}
        self.default = default
        self.delay = delay
        self.calls: list[bytes] = []
        self.call_counts: dict[bytes, int] = defaultdict(int)
        self.in_flight = 0
        self.peak_in_flight = 0

    def _next_result(self, payload: bytes) -> Any:
        script = self._scripts.get(payload)
        if script:
            return script.pop(0)
        return self.default

    async def invoke(self, payload: bytes) -> Any:
        self.calls.append(payload)
        self.call_counts[payload] += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            result = self._next_result(payload)
        finally:
            self.in_flight -= 1

        if isinstance(result, BaseException):
            raise result
        return result


class ScriptedBatchTransport(ScriptedTransport):
    """ScriptedTransport that also accepts whole batches in one call."""

    def __init__(self, *args, batch_error: BaseException | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.batch_error = batch_error
        self.batches: list[list[bytes]] = []

    async def invoke_batch(self, payloads: Sequence[bytes]) -> list[Any]:
        self.batches.append(list(payloads))
        await asyncio.sleep(self.delay)
        if self.batch_error is not None:
            error, self.batch_error = self.batch_error, None
            raise error

        results = []
        for payload in payloads:
            self.calls.append(payload)
            self.call_counts[payload] += 1
            results.append(self._next_result(payload))
        return results


class BlockingTransport:
    """Transport whose calls never finish until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[bytes] = []

    async def invoke(self, payload: bytes) -> Any:
        self.calls.append(payload)
        self.started.set()
        await self.release.wait()
        return "ok"
