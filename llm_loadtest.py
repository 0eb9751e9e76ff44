from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence

from config import ConfigError, apply_overrides, build_run_config, build_variants, load_config, parse_duration
from report import REPORT_FORMATS, render_report, report_filename, write_report
from runner import CellError, run_matrix

LOG = logging.getLogger("llm_loadtest")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _parse_duration_arg(value: str) -> float:
    try:
        seconds = parse_duration(value, "--duration")
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"--duration must be > 0, got {value}")
    return seconds


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Concurrent load test for LLM completion APIs across models and concurrency levels."
    )
    parser.add_argument("--config", type=Path, default=Path("config.yaml"), help="YAML config file")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Base concurrency (overrides test.concurrency)",
    )
    parser.add_argument(
        "--duration",
        type=_parse_duration_arg,
        default=None,
        help="Measurement duration per cell, e.g. 30s or 2m (overrides test.duration)",
    )
    parser.add_argument("--output", choices=list(REPORT_FORMATS), default="text")
    parser.add_argument("--output-dir", type=Path, default=Path("."))
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.concurrency is not None and args.concurrency <= 0:
        parser.error("--concurrency must be > 0")
    configure_logging(args.verbose)

    try:
        settings = load_config(args.config)
    except ConfigError as exc:
        LOG.error("Failed to load config: %s", exc)
        return 1
    settings = apply_overrides(settings, concurrency=args.concurrency, duration_s=args.duration)
    run_config = build_run_config(settings)
    variants = build_variants(settings)
    if not variants:
        LOG.error("Every configured model is marked skip; nothing to test")
        return 1

    LOG.info(
        "Starting load test: concurrency=%s duration=%.1fs stream=%s",
        run_config.concurrency,
        run_config.duration_s,
        run_config.stream,
    )
    LOG.info("Models: %s", [variant.name for variant in variants])

    try:
        results = asyncio.run(run_matrix(variants, run_config))
    except CellError as exc:
        LOG.error("Load test aborted: %s", exc)
        return 1

    content = render_report(results, args.output)
    print(content)

    output_path = args.output_dir / report_filename(args.output, run_config.stream)
    try:
        write_report(output_path, content)
    except OSError as exc:
        LOG.error("Failed to save report to %s: %s", output_path, exc)
    else:
        LOG.info("Report saved to %s", output_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
