from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

import httpx

from invokers import InvokeError, Invoker

LOG = logging.getLogger("loadgen")

REQUEST_ERRORS = (InvokeError, httpx.HTTPError)

DISPATCH_TOKEN = object()
STOP_TOKEN = object()


def percentile(values: list[float], pct: float) -> Optional[float]:
    """Nearest-rank percentile: index floor((n - 1) * pct / 100) of the sorted values."""
    if pct < 0 or pct > 100:
        raise ValueError(f"percentile must be within [0, 100], got {pct}")
    if not values:
        return None
    ordered = sorted(values)
    return float(ordered[_rank(len(ordered), pct)])


def percentiles(values: list[float], pcts: list[int]) -> dict[int, float]:
    if not values:
        return {}
    ordered = sorted(values)
    result: dict[int, float] = {}
    for pct in pcts:
        if pct < 0 or pct > 100:
            raise ValueError(f"percentile must be within [0, 100], got {pct}")
        result[pct] = float(ordered[_rank(len(ordered), pct)])
    return result


def _rank(count: int, pct: float) -> int:
    return int(math.floor((count - 1) * (pct / 100.0)))


@dataclass
class InvokeRequest:
    system_prompt: str
    user_prompt: str
    stream: bool


@dataclass
class WorkOutcome:
    success: bool
    latency_ms: float
    input_tokens: int = 0
    output_tokens: int = 0
    error: Optional[str] = None
    ttft_ms: Optional[float] = None
    tokens_per_sec: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SampleRecorder:
    on_record: Optional[Callable[[WorkOutcome], None]] = None
    success_count: int = 0
    failed_count: int = 0
    latency_sum_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    latencies_ms: list[float] = field(default_factory=list)
    success_latencies_ms: list[float] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    ttft_values_ms: list[float] = field(default_factory=list)
    stream_rates: list[float] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = asyncio.Lock()

    @property
    def completed(self) -> int:
        return self.success_count + self.failed_count

    async def record(self, outcome: WorkOutcome) -> None:
        async with self._lock:
            self.latencies_ms.append(outcome.latency_ms)
            if outcome.success:
                self.success_count += 1
                self.latency_sum_ms += outcome.latency_ms
                self.input_tokens += outcome.input_tokens
                self.output_tokens += outcome.output_tokens
                self.success_latencies_ms.append(outcome.latency_ms)
                if outcome.ttft_ms is not None:
                    self.ttft_values_ms.append(outcome.ttft_ms)
                if outcome.tokens_per_sec is not None:
                    self.stream_rates.append(outcome.tokens_per_sec)
            else:
                self.failed_count += 1
                self.errors.append(outcome.error or "unknown error")
        if self.on_record is not None:
            self.on_record(outcome)


async def execute_request(
    invoker: Invoker,
    request: InvokeRequest,
    timeout_s: float,
) -> WorkOutcome:
    started = time.perf_counter()
    try:
        response = await asyncio.wait_for(
            invoker.invoke(request.system_prompt, request.user_prompt, request.stream),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError:
        latency_ms = (time.perf_counter() - started) * 1000.0
        return WorkOutcome(
            success=False,
            latency_ms=latency_ms,
            error=f"request timed out after {timeout_s:g}s",
        )
    except REQUEST_ERRORS as exc:
        latency_ms = (time.perf_counter() - started) * 1000.0
        return WorkOutcome(
            success=False,
            latency_ms=latency_ms,
            error=str(exc) or type(exc).__name__,
        )
    latency_ms = (time.perf_counter() - started) * 1000.0

    return WorkOutcome(
        success=True,
        latency_ms=latency_ms,
        input_tokens=int(response.input_tokens),
        output_tokens=int(response.output_tokens),
        ttft_ms=response.ttft_ms if request.stream else None,
        tokens_per_sec=response.tokens_per_sec if request.stream else None,
    )


async def worker_loop(
    worker_id: int,
    dispatch: asyncio.Queue[object],
    invoker: Invoker,
    request: InvokeRequest,
    timeout_s: float,
    recorder: SampleRecorder,
    inflight_semaphore: asyncio.Semaphore,
) -> None:
    while True:
        token = await dispatch.get()
        if token is STOP_TOKEN:
            return
        async with inflight_semaphore:
            outcome = await execute_request(invoker, request, timeout_s)
        if not outcome.success:
            LOG.debug("Worker %s request failed: %s", worker_id, outcome.error)
        await recorder.record(outcome)


class WorkerPool:
    def __init__(
        self,
        *,
        concurrency: int,
        invoker: Invoker,
        request: InvokeRequest,
        timeout_s: float,
        recorder: SampleRecorder,
        queue_depth: int,
    ) -> None:
        if concurrency <= 0:
            raise ValueError(f"concurrency must be > 0, got {concurrency}")
        self.concurrency = concurrency
        self.invoker = invoker
        self.request = request
        self.timeout_s = timeout_s
        self.recorder = recorder
        self.dispatch: asyncio.Queue[object] = asyncio.Queue(maxsize=max(1, queue_depth))
        self._inflight_semaphore = asyncio.Semaphore(concurrency)
        self._tasks: list[asyncio.Task[None]] = []
        self._exited = asyncio.Event()

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError("worker pool already started")
        for worker_id in range(self.concurrency):
            task = asyncio.create_task(
                worker_loop(
                    worker_id=worker_id,
                    dispatch=self.dispatch,
                    invoker=self.invoker,
                    request=self.request,
                    timeout_s=self.timeout_s,
                    recorder=self.recorder,
                    inflight_semaphore=self._inflight_semaphore,
                )
            )
            task.add_done_callback(lambda _task: self._exited.set())
            self._tasks.append(task)

    def try_dispatch(self) -> bool:
        try:
            self.dispatch.put_nowait(DISPATCH_TOKEN)
        except asyncio.QueueFull:
            return False
        return True

    async def _close_dispatch(self) -> None:
        for _ in self._tasks:
            await self.dispatch.put(STOP_TOKEN)

    async def drain(self) -> None:
        closer = asyncio.create_task(self._close_dispatch())
        try:
            done, _pending = await asyncio.wait(
                self._tasks, return_when=asyncio.FIRST_EXCEPTION
            )
            for task in done:
                if task.cancelled():
                    raise asyncio.CancelledError()
                exc = task.exception()
                if exc is not None:
                    raise exc
        finally:
            if not closer.done():
                closer.cancel()
            await asyncio.gather(closer, return_exceptions=True)

    async def abort(self) -> None:
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
