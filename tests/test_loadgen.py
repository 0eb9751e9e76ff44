"""Tests for the worker pool, sample recorder and percentile reducer."""

import asyncio

import httpx
import pytest

from loadgen import (
    InvokeRequest,
    SampleRecorder,
    WorkerPool,
    WorkOutcome,
    execute_request,
    percentile,
    percentiles,
)
from tests.stubs import StubInvoker

REQUEST = InvokeRequest(system_prompt="sys", user_prompt="hello", stream=False)


class TestPercentile:
    def test_nearest_rank_median(self):
        assert percentile([10, 20, 30, 40, 50], 50) == 30

    def test_input_order_does_not_matter(self):
        assert percentile([50, 10, 40, 20, 30], 50) == 30

    @pytest.mark.parametrize(
        "pct,expected",
        [(0, 1.0), (50, 5.0), (90, 9.0), (99, 9.0), (100, 10.0)],
    )
    def test_rank_is_floor_of_scaled_index(self, pct, expected):
        values = [float(v) for v in range(1, 11)]
        assert percentile(values, pct) == expected

    def test_empty_values_yield_none(self):
        assert percentile([], 50) is None

    @pytest.mark.parametrize("pct", [-1, 101])
    def test_out_of_range_rejected(self, pct):
        with pytest.raises(ValueError):
            percentile([1.0], pct)

    def test_percentiles_are_monotonic(self):
        values = [float(v * 7 % 23) for v in range(100)]
        result = percentiles(values, [50, 90, 95, 99])
        assert list(result) == [50, 90, 95, 99]
        assert result[50] <= result[90] <= result[95] <= result[99]

    def test_percentiles_of_empty_is_empty(self):
        assert percentiles([], [50, 99]) == {}


class TestSampleRecorder:
    @pytest.mark.asyncio
    async def test_counts_split_by_outcome(self):
        seen = []
        recorder = SampleRecorder(on_record=seen.append)
        await recorder.record(WorkOutcome(success=True, latency_ms=12.0, input_tokens=3, output_tokens=4))
        await recorder.record(WorkOutcome(success=False, latency_ms=99.0, error="boom"))
        await recorder.record(WorkOutcome(success=True, latency_ms=8.0, input_tokens=1, output_tokens=2))

        assert recorder.success_count == 2
        assert recorder.failed_count == 1
        assert recorder.completed == 3
        assert recorder.latencies_ms == [12.0, 99.0, 8.0]
        assert recorder.success_latencies_ms == [12.0, 8.0]
        assert recorder.latency_sum_ms == 20.0
        assert recorder.input_tokens == 4
        assert recorder.output_tokens == 6
        assert recorder.errors == ["boom"]
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_streaming_fields_collected_for_successes(self):
        recorder = SampleRecorder()
        await recorder.record(
            WorkOutcome(success=True, latency_ms=10.0, ttft_ms=2.0, tokens_per_sec=50.0)
        )
        await recorder.record(WorkOutcome(success=True, latency_ms=10.0))
        assert recorder.ttft_values_ms == [2.0]
        assert recorder.stream_rates == [50.0]


class TestExecuteRequest:
    @pytest.mark.asyncio
    async def test_success_carries_tokens(self):
        outcome = await execute_request(StubInvoker(), REQUEST, timeout_s=1.0)
        assert outcome.success
        assert outcome.input_tokens == 10
        assert outcome.output_tokens == 20
        assert outcome.latency_ms >= 0
        assert outcome.ttft_ms is None

    @pytest.mark.asyncio
    async def test_stream_request_keeps_stream_fields(self):
        request = InvokeRequest(system_prompt="", user_prompt="hi", stream=True)
        outcome = await execute_request(StubInvoker(), request, timeout_s=1.0)
        assert outcome.ttft_ms == 5.0
        assert outcome.tokens_per_sec == 100.0

    @pytest.mark.asyncio
    async def test_invoke_error_is_a_failed_outcome(self):
        outcome = await execute_request(StubInvoker(error="HTTP 500: oops"), REQUEST, timeout_s=1.0)
        assert not outcome.success
        assert outcome.error == "HTTP 500: oops"

    @pytest.mark.asyncio
    async def test_transport_error_is_a_failed_outcome(self):
        invoker = StubInvoker(fault=httpx.ConnectError("refused"))
        outcome = await execute_request(invoker, REQUEST, timeout_s=1.0)
        assert not outcome.success
        assert "refused" in outcome.error

    @pytest.mark.asyncio
    async def test_deadline_is_a_failed_outcome(self):
        outcome = await execute_request(StubInvoker(latency_s=0.5), REQUEST, timeout_s=0.05)
        assert not outcome.success
        assert "timed out" in outcome.error
        assert outcome.latency_ms < 500

    @pytest.mark.asyncio
    async def test_unexpected_exception_propagates(self):
        with pytest.raises(KeyError):
            await execute_request(StubInvoker(fault=KeyError("bug")), REQUEST, timeout_s=1.0)


def _pool(invoker, recorder, concurrency=4, queue_depth=8):
    return WorkerPool(
        concurrency=concurrency,
        invoker=invoker,
        request=REQUEST,
        timeout_s=1.0,
        recorder=recorder,
        queue_depth=queue_depth,
    )


class TestWorkerPool:
    def test_rejects_non_positive_concurrency(self):
        with pytest.raises(ValueError):
            _pool(StubInvoker(), SampleRecorder(), concurrency=0)

    @pytest.mark.asyncio
    async def test_dispatch_refused_when_channel_full(self):
        pool = _pool(StubInvoker(), SampleRecorder(), concurrency=1, queue_depth=2)
        assert pool.try_dispatch()
        assert pool.try_dispatch()
        assert not pool.try_dispatch()

    @pytest.mark.asyncio
    async def test_drain_records_every_dispatched_token(self):
        recorder = SampleRecorder()
        pool = _pool(StubInvoker(latency_s=0.01), recorder)
        pool.start()
        dispatched = 0
        while dispatched < 25:
            if pool.try_dispatch():
                dispatched += 1
            else:
                await asyncio.sleep(0)
        await pool.drain()
        assert recorder.completed == 25
        assert recorder.success_count == 25
        assert pool.exited

    @pytest.mark.asyncio
    async def test_inflight_never_exceeds_concurrency(self):
        invoker = StubInvoker(latency_s=0.01)
        pool = _pool(invoker, SampleRecorder(), concurrency=5, queue_depth=10)
        pool.start()
        dispatched = 0
        while dispatched < 60:
            if pool.try_dispatch():
                dispatched += 1
            else:
                await asyncio.sleep(0)
        await pool.drain()
        assert 1 <= invoker.max_inflight <= 5

    @pytest.mark.asyncio
    async def test_worker_fault_surfaces_from_drain(self):
        pool = _pool(StubInvoker(fault=RuntimeError("broken invoker")), SampleRecorder())
        pool.start()
        pool.try_dispatch()
        with pytest.raises(RuntimeError, match="broken invoker"):
            await pool.drain()
        await pool.abort()
        assert pool.exited
