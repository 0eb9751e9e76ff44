from __future__ import annotations

import asyncio
import logging
import statistics
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from tqdm import tqdm

from invokers import Invoker
from loadgen import InvokeRequest, SampleRecorder, WorkerPool, percentiles

LOG = logging.getLogger("runner")

DEFAULT_PERCENTILES = (50, 90, 95, 99)


@dataclass(frozen=True)
class RunConfig:
    duration_s: float = 30.0
    warmup_s: float = 0.0
    request_timeout_s: float = 30.0
    queue_depth_factor: int = 2
    latency_percentiles: tuple[int, ...] = DEFAULT_PERCENTILES
    show_progress: bool = False
    concurrency: int = 1
    concurrency_levels: tuple[int, ...] = ()
    stream: bool = False
    system_prompt: str = ""
    user_prompt: str = ""
    max_retries: int = 0


@dataclass(frozen=True)
class TargetVariant:
    name: str
    invoker_factory: Callable[[int], Invoker]
    concurrency_levels: tuple[int, ...] = ()
    stream: Optional[bool] = None


@dataclass
class CellResult:
    variant: str
    concurrency: int
    stream: bool
    total_requests: int = 0
    success_requests: int = 0
    failed_requests: int = 0
    elapsed_s: float = 0.0
    avg_latency_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    avg_input_tokens: float = 0.0
    avg_output_tokens: float = 0.0
    avg_total_tokens: float = 0.0
    requests_per_sec: float = 0.0
    tokens_per_sec: float = 0.0
    latency_percentiles: dict[int, float] = field(default_factory=dict)
    latencies_ms: list[float] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    avg_ttft_ms: Optional[float] = None
    avg_stream_tokens_per_sec: Optional[float] = None

    @property
    def success_rate(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return self.success_requests / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["success_rate"] = self.success_rate
        return payload


ResultSet = dict[tuple[str, int], CellResult]


class CellError(RuntimeError):
    def __init__(self, variant: str, concurrency: int, message: str) -> None:
        super().__init__(f"model {variant} at concurrency {concurrency} failed: {message}")
        self.variant = variant
        self.concurrency = concurrency


def resolve_concurrency_levels(variant: TargetVariant, config: RunConfig) -> list[int]:
    if variant.concurrency_levels:
        return list(variant.concurrency_levels)
    if config.concurrency_levels:
        return list(config.concurrency_levels)
    return [config.concurrency]


def resolve_stream(variant: TargetVariant, config: RunConfig) -> bool:
    if variant.stream is not None:
        return variant.stream
    return config.stream


async def _run_phase(
    *,
    invoker: Invoker,
    request: InvokeRequest,
    concurrency: int,
    config: RunConfig,
    recorder: SampleRecorder,
    duration_s: float,
) -> tuple[int, float]:
    pool = WorkerPool(
        concurrency=concurrency,
        invoker=invoker,
        request=request,
        timeout_s=config.request_timeout_s,
        recorder=recorder,
        queue_depth=concurrency * config.queue_depth_factor,
    )
    pool.start()
    loop = asyncio.get_running_loop()
    scheduled = 0
    started = time.perf_counter()
    deadline = loop.time() + duration_s
    try:
        while loop.time() < deadline and not pool.exited:
            if pool.try_dispatch():
                scheduled += 1
            else:
                await asyncio.sleep(0)
        await pool.drain()
    except BaseException:
        await pool.abort()
        raise
    return scheduled, time.perf_counter() - started


def _aggregate(
    variant: TargetVariant,
    concurrency: int,
    stream: bool,
    config: RunConfig,
    recorder: SampleRecorder,
    scheduled: int,
    elapsed_s: float,
) -> CellResult:
    result = CellResult(
        variant=variant.name,
        concurrency=concurrency,
        stream=stream,
        total_requests=scheduled,
        success_requests=recorder.success_count,
        failed_requests=recorder.failed_count,
        elapsed_s=elapsed_s,
        latencies_ms=list(recorder.latencies_ms),
        errors=list(recorder.errors),
    )
    success = recorder.success_count
    if success > 0:
        result.avg_latency_ms = recorder.latency_sum_ms / success
        result.input_tokens = recorder.input_tokens
        result.output_tokens = recorder.output_tokens
        result.total_tokens = recorder.input_tokens + recorder.output_tokens
        result.avg_input_tokens = result.input_tokens / success
        result.avg_output_tokens = result.output_tokens / success
        result.avg_total_tokens = result.total_tokens / success
        if elapsed_s > 0:
            result.requests_per_sec = success / elapsed_s
            result.tokens_per_sec = result.total_tokens / elapsed_s
        result.latency_percentiles = percentiles(
            recorder.success_latencies_ms, list(config.latency_percentiles)
        )
        if recorder.ttft_values_ms:
            result.avg_ttft_ms = float(statistics.fmean(recorder.ttft_values_ms))
        if recorder.stream_rates:
            result.avg_stream_tokens_per_sec = float(statistics.fmean(recorder.stream_rates))
    return result


async def run_cell(variant: TargetVariant, concurrency: int, config: RunConfig) -> CellResult:
    stream = resolve_stream(variant, config)
    request = InvokeRequest(
        system_prompt=config.system_prompt,
        user_prompt=config.user_prompt,
        stream=stream,
    )
    LOG.debug("Starting cell model=%s concurrency=%s stream=%s", variant.name, concurrency, stream)

    try:
        invoker = variant.invoker_factory(concurrency)
    except Exception as exc:
        raise CellError(variant.name, concurrency, f"could not construct invoker: {exc}") from exc

    progress = tqdm(
        desc=f"{variant.name} c={concurrency}",
        unit="req",
        leave=False,
        disable=not config.show_progress,
    )
    try:
        async with invoker:
            if config.warmup_s > 0:
                LOG.debug("Warming up model=%s for %.1fs", variant.name, config.warmup_s)
                await _run_phase(
                    invoker=invoker,
                    request=request,
                    concurrency=concurrency,
                    config=config,
                    recorder=SampleRecorder(),
                    duration_s=config.warmup_s,
                )
            recorder = SampleRecorder(on_record=lambda _outcome: progress.update(1))
            scheduled, elapsed_s = await _run_phase(
                invoker=invoker,
                request=request,
                concurrency=concurrency,
                config=config,
                recorder=recorder,
                duration_s=config.duration_s,
            )
    except Exception as exc:
        raise CellError(variant.name, concurrency, f"invoker fault: {exc!r}") from exc
    finally:
        progress.close()

    if recorder.completed != scheduled:
        raise CellError(
            variant.name,
            concurrency,
            f"scheduled {scheduled} requests but recorded {recorder.completed} outcomes",
        )

    result = _aggregate(variant, concurrency, stream, config, recorder, scheduled, elapsed_s)
    LOG.info(
        "model=%s concurrency=%s requests=%s ok=%s failed=%s elapsed=%.2fs rps=%.2f tps=%.2f",
        result.variant,
        result.concurrency,
        result.total_requests,
        result.success_requests,
        result.failed_requests,
        result.elapsed_s,
        result.requests_per_sec,
        result.tokens_per_sec,
    )
    return result


async def run_matrix(variants: list[TargetVariant], config: RunConfig) -> ResultSet:
    results: ResultSet = {}
    for variant in variants:
        levels = resolve_concurrency_levels(variant, config)
        LOG.info("Testing model %s at concurrency levels %s", variant.name, levels)
        for concurrency in levels:
            key = (variant.name, concurrency)
            if key in results:
                LOG.warning(
                    "Duplicate cell model=%s concurrency=%s, overwriting earlier result",
                    variant.name,
                    concurrency,
                )
            results[key] = await run_cell(variant, concurrency, config)
    return results
