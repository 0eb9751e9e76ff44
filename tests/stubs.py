from __future__ import annotations

import asyncio
import random
from typing import Optional

from invokers import BaseInvoker, InvokeError, InvokeResponse
from runner import TargetVariant


class StubInvoker(BaseInvoker):
    """In-process invoker with a fixed or jittered latency and optional failure modes."""

    def __init__(
        self,
        latency_s: float = 0.0,
        *,
        jitter_s: float = 0.0,
        error: Optional[str] = None,
        fault: Optional[BaseException] = None,
        fault_after: int = 0,
        input_tokens: int = 10,
        output_tokens: int = 20,
    ) -> None:
        self.latency_s = latency_s
        self.jitter_s = jitter_s
        self.error = error
        self.fault = fault
        self.fault_after = fault_after
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls = 0
        self.inflight = 0
        self.max_inflight = 0
        self.entered = 0
        self.closed = 0
        self._rng = random.Random(1234)

    async def __aenter__(self) -> "StubInvoker":
        self.entered += 1
        return self

    async def aclose(self) -> None:
        self.closed += 1

    async def invoke(self, system_prompt: str, user_prompt: str, stream: bool) -> InvokeResponse:
        self.calls += 1
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            delay = self.latency_s
            if self.jitter_s:
                delay += self._rng.uniform(0.0, self.jitter_s)
            await asyncio.sleep(delay)
            if self.fault is not None and self.calls > self.fault_after:
                raise self.fault
            if self.error is not None:
                raise InvokeError(self.error)
            return InvokeResponse(
                content="ok",
                input_tokens=self.input_tokens,
                output_tokens=self.output_tokens,
                ttft_ms=5.0 if stream else None,
                tokens_per_sec=100.0 if stream else None,
            )
        finally:
            self.inflight -= 1


def stub_variant(
    name: str,
    invoker: StubInvoker,
    *,
    levels: tuple[int, ...] = (),
    stream: Optional[bool] = None,
) -> TargetVariant:
    return TargetVariant(
        name=name,
        invoker_factory=lambda _concurrency: invoker,
        concurrency_levels=levels,
        stream=stream,
    )
