from __future__ import annotations

import csv
import io
import json
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from runner import CellResult, ResultSet

REPORT_FORMATS = ("text", "json", "csv")
REPORT_EXTENSIONS = {"text": "md", "json": "json", "csv": "csv"}


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _fmt_latency(value_ms: Optional[float]) -> str:
    if value_ms is None or math.isnan(value_ms):
        return "-"
    if value_ms < 1.0:
        return f"{value_ms * 1000.0:.2f} µs"
    if value_ms < 1000.0:
        return f"{value_ms:.2f} ms"
    return f"{value_ms / 1000.0:.2f} s"


def _sorted_cells(results: ResultSet) -> list[CellResult]:
    return sorted(results.values(), key=lambda cell: (cell.variant, cell.concurrency))


def _all_percentiles(cells: list[CellResult]) -> list[int]:
    found: set[int] = set()
    for cell in cells:
        found.update(cell.latency_percentiles)
    return sorted(found)


def render_text(results: ResultSet) -> str:
    cells = _sorted_cells(results)
    pcts = _all_percentiles(cells)
    lines: list[str] = []
    lines.append("# LLM API Load Test Report")
    lines.append("")
    lines.append("## Results")
    lines.append("")
    header = (
        "| Model | Concurrency | OK/Total | Success % | Avg latency | Avg input tok | "
        "Avg output tok | Avg total tok | RPS | TPS"
    )
    header += "".join(f" | P{pct}" for pct in pcts)
    lines.append(header + " |")
    lines.append("|---|---:|---:|---:|---:|---:|---:|---:|---:|---:" + "|---:" * len(pcts) + "|")

    for cell in cells:
        row = (
            "| "
            f"{cell.variant} | "
            f"{cell.concurrency} | "
            f"{cell.success_requests}/{cell.total_requests} | "
            f"{_fmt(cell.success_rate * 100.0)} | "
            f"{_fmt_latency(cell.avg_latency_ms if cell.success_requests else None)} | "
            f"{_fmt(cell.avg_input_tokens)} | "
            f"{_fmt(cell.avg_output_tokens)} | "
            f"{_fmt(cell.avg_total_tokens)} | "
            f"{_fmt(cell.requests_per_sec)} | "
            f"{_fmt(cell.tokens_per_sec)}"
        )
        for pct in pcts:
            row += f" | {_fmt_latency(cell.latency_percentiles.get(pct))}"
        lines.append(row + " |")

    streaming = [cell for cell in cells if cell.avg_ttft_ms is not None]
    if streaming:
        lines.append("")
        lines.append("## Streaming")
        lines.append("")
        lines.append("| Model | Concurrency | Avg TTFT | Avg stream tok/s |")
        lines.append("|---|---:|---:|---:|")
        for cell in streaming:
            lines.append(
                "| "
                f"{cell.variant} | "
                f"{cell.concurrency} | "
                f"{_fmt_latency(cell.avg_ttft_ms)} | "
                f"{_fmt(cell.avg_stream_tokens_per_sec)} |"
            )

    return "\n".join(lines) + "\n"


def render_csv(results: ResultSet) -> str:
    cells = _sorted_cells(results)
    pcts = _all_percentiles(cells)
    fieldnames = [
        "model",
        "concurrency",
        "avg_latency_ms",
        "avg_input_tokens",
        "avg_output_tokens",
        "avg_total_tokens",
        "requests_per_sec",
        "tokens_per_sec",
        "success_rate_pct",
        "total_requests",
        "success_requests",
        "failed_requests",
    ] + [f"p{pct}_ms" for pct in pcts]

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames, lineterminator="\n")
    writer.writeheader()
    for cell in cells:
        row: dict[str, Any] = {
            "model": cell.variant,
            "concurrency": cell.concurrency,
            "avg_latency_ms": _fmt(cell.avg_latency_ms),
            "avg_input_tokens": _fmt(cell.avg_input_tokens),
            "avg_output_tokens": _fmt(cell.avg_output_tokens),
            "avg_total_tokens": _fmt(cell.avg_total_tokens),
            "requests_per_sec": _fmt(cell.requests_per_sec),
            "tokens_per_sec": _fmt(cell.tokens_per_sec),
            "success_rate_pct": _fmt(cell.success_rate * 100.0),
            "total_requests": cell.total_requests,
            "success_requests": cell.success_requests,
            "failed_requests": cell.failed_requests,
        }
        for pct in pcts:
            row[f"p{pct}_ms"] = _fmt(cell.latency_percentiles.get(pct))
        writer.writerow(row)
    return buffer.getvalue()


def _json_record(cell: CellResult) -> dict[str, Any]:
    return {
        "model_name": cell.variant,
        "concurrency": cell.concurrency,
        "stream": cell.stream,
        "avg_latency_ms": cell.avg_latency_ms,
        "avg_input_tokens": cell.avg_input_tokens,
        "avg_output_tokens": cell.avg_output_tokens,
        "avg_total_tokens": cell.avg_total_tokens,
        "requests_per_sec": cell.requests_per_sec,
        "tokens_per_sec": cell.tokens_per_sec,
        "success_rate": cell.success_rate,
        "total_requests": cell.total_requests,
        "success_requests": cell.success_requests,
        "failed_requests": cell.failed_requests,
        "elapsed_s": cell.elapsed_s,
        "avg_ttft_ms": cell.avg_ttft_ms,
        "avg_stream_tokens_per_sec": cell.avg_stream_tokens_per_sec,
        "percentiles": [
            {"percentile": pct, "latency_ms": cell.latency_percentiles[pct]}
            for pct in sorted(cell.latency_percentiles)
        ],
    }


def render_json(results: ResultSet) -> str:
    payload = {"test_results": [_json_record(cell) for cell in _sorted_cells(results)]}
    return json.dumps(payload, indent=2)


def render_report(results: ResultSet, fmt: str) -> str:
    if fmt == "text":
        return render_text(results)
    if fmt == "json":
        return render_json(results)
    if fmt == "csv":
        return render_csv(results)
    raise ValueError(f"Unsupported report format: {fmt}. Expected one of {list(REPORT_FORMATS)}.")


def report_filename(fmt: str, stream: bool, now: Optional[datetime] = None) -> str:
    if fmt not in REPORT_EXTENSIONS:
        raise ValueError(f"Unsupported report format: {fmt}. Expected one of {list(REPORT_FORMATS)}.")
    timestamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    mode = "stream" if stream else "standard"
    return f"llm_test_report_{timestamp}_{mode}.{REPORT_EXTENSIONS[fmt]}"


def write_report(output_path: Path, content: str) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(content, encoding="utf-8")
