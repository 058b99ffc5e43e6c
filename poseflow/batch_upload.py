#!/usr/bin/env python3
"""
PoseFlow Batch Uploader

Uploads a list of captured frames to the pose scoring endpoint and writes
an aggregate report.

Pipeline:
    frame list (parquet/csv/excel) → UploadScheduler (bounded, prioritised)
        → retry with backoff → per-frame outcomes → BatchSummary
        → <output>_overview.json + <output>_frames.csv

Examples:
  poseflow-batch --config session.json
  poseflow-batch --input frames.csv --output runs/session1 --pose-id warrior_2
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from collections import Counter
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import aiohttp
import polars as pl
from tqdm.asyncio import tqdm

from .backoff import RetryStrategy, get_strategy
from .batch import BatchOptions, BatchSummary, UploadJob, run_batch
from .single_upload import DEFAULT_ENDPOINT, PoseScoringClient, build_trace_config, load_input_file

logger = logging.getLogger(__name__)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def _monotonic() -> float:
    """Monotonic time for duration measurements."""
    return time.monotonic()


def _percentile(values: list[float], p: float) -> Optional[float]:
    """
    Calculate percentile using linear interpolation.

    Args:
        values: List of numeric values
        p: Percentile in range [0, 1]

    Returns:
        Percentile value or None if list is empty
    """
    if not values:
        return None

    sorted_values = sorted(values)
    n = len(sorted_values)

    if n == 1:
        return sorted_values[0]

    idx = (n - 1) * p
    lower = int(idx)
    upper = min(lower + 1, n - 1)

    if lower == upper:
        return sorted_values[lower]

    weight = idx - lower
    return sorted_values[lower] + weight * (sorted_values[upper] - sorted_values[lower])


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Main application configuration."""
    input_path: str
    output_path: str

    input_format: Optional[str] = None
    file_col: str = "file_path"
    pose_col: Optional[str] = None
    pose_id: Optional[str] = None

    endpoint_url: str = DEFAULT_ENDPOINT
    concurrency: int = 3
    timeout_sec: float = 60.0

    # Retry configuration
    retry_strategy: str = "UPLOAD"
    enable_retry: bool = True
    max_retries: Optional[int] = None
    skip_failed_frames: bool = True

    # Output options
    create_overview: bool = True
    verbose: bool = False

    def __post_init__(self) -> None:
        # Fail fast on unknown strategy names
        get_strategy(self.retry_strategy)
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")

    def to_retry_strategy(self) -> RetryStrategy:
        """Resolve the preset and apply the max_retries override."""
        strategy = get_strategy(self.retry_strategy)
        if self.max_retries is not None:
            strategy = strategy.replace(max_retries=self.max_retries)
        return strategy

    def to_batch_options(self, **callbacks: Any) -> BatchOptions:
        return BatchOptions(
            concurrency=self.concurrency,
            enable_retry=self.enable_retry,
            strategy=self.to_retry_strategy(),
            timeout_sec=self.timeout_sec,
            skip_failed_frames=self.skip_failed_frames,
            **callbacks,
        )


def load_config_file(path: str) -> Config:
    """Build a Config from a JSON file."""
    with Path(path).open("r") as f:
        data = json.load(f)

    max_retries = data.get("max_retries")
    return Config(
        input_path=data.get("input", ""),
        output_path=data.get("output", ""),
        input_format=data.get("input_format"),
        file_col=data.get("file_col", "file_path"),
        pose_col=data.get("pose_col"),
        pose_id=data.get("pose_id"),
        endpoint_url=data.get("endpoint_url", DEFAULT_ENDPOINT),
        concurrency=int(data.get("concurrency", 3)),
        timeout_sec=float(data.get("timeout", 60.0)),
        retry_strategy=str(data.get("retry_strategy", "UPLOAD")),
        enable_retry=bool(data.get("enable_retry", True)),
        max_retries=int(max_retries) if max_retries is not None else None,
        skip_failed_frames=bool(data.get("skip_failed_frames", True)),
        create_overview=bool(data.get("create_overview", True)),
        verbose=bool(data.get("verbose", False)),
    )


def parse_args(argv: Optional[list[str]] = None) -> Config:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="PoseFlow batch frame uploader",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  poseflow-batch --config session.json
  poseflow-batch --input frames.csv --output runs/session1 --pose-id warrior_2
""",
    )

    p.add_argument("--config", type=str, help="Path to JSON config file")

    # Input/Output
    p.add_argument("--input", dest="input_path", type=str, help="Frame list (parquet/csv/excel)")
    p.add_argument("--input_format", type=str, default=None)
    p.add_argument("--file_col", type=str, default="file_path")
    p.add_argument("--pose_col", type=str, default=None)
    p.add_argument("--pose-id", dest="pose_id", type=str, default=None)
    p.add_argument("--output", dest="output_path", type=str, help="Report path prefix")

    # Upload settings
    p.add_argument("--endpoint", dest="endpoint_url", type=str, default=DEFAULT_ENDPOINT)
    p.add_argument("--concurrency", type=int, default=3)
    p.add_argument("--timeout", dest="timeout_sec", type=float, default=60.0)

    # Retry
    p.add_argument("--retry_strategy", type=str, default="UPLOAD", help="NETWORK | UPLOAD | FAST")
    p.add_argument("--max_retries", type=int, default=None)
    p.add_argument("--no_retry", action="store_true")
    p.add_argument("--fail_fast", action="store_true", help="Abort the batch on the first failed frame")

    # Output options
    p.add_argument("--no_overview", action="store_true")
    p.add_argument("-v", "--verbose", action="store_true")

    args = p.parse_args(argv)

    if args.config:
        return load_config_file(args.config)

    if not args.input_path or not args.output_path:
        p.error("--input and --output are required unless --config is provided")

    try:
        return Config(
            input_path=args.input_path,
            output_path=args.output_path,
            input_format=args.input_format,
            file_col=args.file_col,
            pose_col=args.pose_col,
            pose_id=args.pose_id,
            endpoint_url=args.endpoint_url,
            concurrency=args.concurrency,
            timeout_sec=args.timeout_sec,
            retry_strategy=args.retry_strategy,
            enable_retry=not args.no_retry,
            max_retries=args.max_retries,
            skip_failed_frames=not args.fail_fast,
            create_overview=not args.no_overview,
            verbose=args.verbose,
        )
    except ValueError as e:
        p.error(str(e))


# =============================================================================
# INPUT VALIDATION AND LOADING
# =============================================================================

def validate_and_load(cfg: Config) -> pl.DataFrame:
    """Load the frame list and drop unusable rows."""
    in_path = Path(cfg.input_path)
    if not in_path.exists():
        raise FileNotFoundError(f"Input file not found: {in_path}")

    df = load_input_file(str(in_path), cfg.input_format)

    if cfg.file_col not in df.columns:
        raise ValueError(f"File column '{cfg.file_col}' not found. Available: {df.columns[:10]}...")

    if cfg.pose_col is not None and cfg.pose_col not in df.columns:
        raise ValueError(f"Pose column '{cfg.pose_col}' not found.")

    df = df.filter(pl.col(cfg.file_col).is_not_null())
    df = df.with_columns(
        pl.col(cfg.file_col).cast(pl.Utf8).str.strip_chars().alias(cfg.file_col)
    )
    df = df.filter(pl.col(cfg.file_col).str.len_chars() > 0)

    if df.height == 0:
        raise ValueError("No frame paths found after filtering.")

    return df


def build_jobs(cfg: Config, df: pl.DataFrame) -> list[UploadJob]:
    jobs = []
    for row in df.iter_rows(named=True):
        pose_id = row.get(cfg.pose_col) if cfg.pose_col is not None else None
        jobs.append(UploadJob(
            file_path=row[cfg.file_col],
            pose_id=str(pose_id) if pose_id is not None else cfg.pose_id,
        ))
    return jobs


# =============================================================================
# REPORTS
# =============================================================================

FRAME_SCHEMA = {
    "index": pl.Int64,
    "file_path": pl.Utf8,
    "pose_id": pl.Utf8,
    "code": pl.Utf8,
    "score": pl.Float64,
    "valid": pl.Boolean,
    "skeleton_url": pl.Utf8,
    "error": pl.Utf8,
    "duration_sec": pl.Float64,
}


def write_frame_results(summary: BatchSummary, path: Path) -> str:
    """Write one CSV row per frame, in input order."""
    rows = [r.to_dict() for r in summary.raw_results]
    pl.DataFrame(rows, schema=FRAME_SCHEMA).write_csv(path)
    return str(path.resolve())


def write_overview(
    *,
    cfg: Config,
    summary: BatchSummary,
    elapsed_sec: float,
    interrupted: bool = False,
) -> str:
    """Write JSON overview report next to the output prefix."""
    err_counter = Counter(r.code for r in summary.errors)
    code_counter = Counter(r.code for r in summary.raw_results)
    durations = [r.duration_sec for r in summary.raw_results if r.duration_sec is not None]
    p50 = _percentile(durations, 0.5)
    p95 = _percentile(durations, 0.95)

    config = asdict(cfg)
    config["retry"] = {
        k: v for k, v in asdict(cfg.to_retry_strategy()).items() if k != "retry_condition"
    }

    report = {
        "script_inputs": config,
        "summary": {
            "total_frames": summary.total_frames,
            "valid_frames": summary.valid_frames,
            "processed_frames": summary.processed_frames,
            "failed_frames": summary.failed_frames,
            "average_score": summary.average_score,
            "stats": summary.stats,
            "message": summary.message,
            "elapsed_sec": round(elapsed_sec, 3),
            "task_duration_p50_sec": round(p50, 3) if p50 is not None else None,
            "task_duration_p95_sec": round(p95, 3) if p95 is not None else None,
            "shutdown_requested": interrupted,
        },
        "outcome_codes": dict(code_counter.most_common()),
        "error_breakdown": [
            {"code": code, "count": cnt}
            for code, cnt in err_counter.most_common()
        ],
        "timestamp_local": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime()),
    }

    out = Path(cfg.output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    overview_path = out.with_name(out.name + "_overview.json")

    with overview_path.open("w") as f:
        json.dump(report, f, indent=2)

    return str(overview_path.resolve())


# =============================================================================
# MAIN
# =============================================================================

async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point; returns the process exit code."""
    cfg = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if cfg.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    print("=" * 72)
    print("PoseFlow Batch Uploader")
    print("=" * 72)

    df = validate_and_load(cfg)
    jobs = build_jobs(cfg, df)
    print(f"[Load] Frames after filtering: {len(jobs)}")

    strategy = cfg.to_retry_strategy()
    print(
        f"[Retry] {cfg.retry_strategy.upper()} | max_retries={strategy.max_retries} "
        f"| enabled={cfg.enable_retry}"
    )

    pbar = tqdm(total=len(jobs), desc="Scoring", unit="frame")
    options = cfg.to_batch_options(on_progress=lambda info: pbar.update(1))

    connector = aiohttp.TCPConnector(limit=max(10, cfg.concurrency * 2))
    interrupted = False
    summary: Optional[BatchSummary] = None
    start = _monotonic()

    try:
        async with aiohttp.ClientSession(
            connector=connector,
            headers={"User-Agent": "PoseFlow/1.0"},
            trace_configs=[build_trace_config()],
        ) as session:
            client = PoseScoringClient(session, cfg.endpoint_url, timeout_sec=cfg.timeout_sec)
            batch_task = asyncio.ensure_future(run_batch(client.upload, jobs, options))

            def _request_shutdown() -> None:
                nonlocal interrupted
                print("\n[Shutdown] Interrupt received. Cancelling outstanding uploads...")
                interrupted = True
                batch_task.cancel()

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, _request_shutdown)
                except (NotImplementedError, RuntimeError):
                    logger.debug("Signal handlers unavailable on this platform")

            try:
                summary = await batch_task
            except asyncio.CancelledError:
                if not interrupted:
                    raise
            finally:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    try:
                        loop.remove_signal_handler(sig)
                    except (NotImplementedError, RuntimeError):
                        pass
    finally:
        pbar.close()

    elapsed = _monotonic() - start

    if summary is None:
        print("[Shutdown] Batch cancelled before completion; no report written.")
        return 130

    print("\n" + "=" * 72)
    print("FINAL SUMMARY")
    print("=" * 72)
    print(f"Total frames:          {summary.total_frames}")
    print(f"Valid frames:          {summary.valid_frames}")
    print(f"No keypoint:           {summary.stats['no_keypoint']}")
    print(f"Failed uploads:        {summary.failed_frames}")
    print(f"Average score:         {summary.average_score}")
    print(f"Elapsed time:          {elapsed:.2f}s")

    if cfg.create_overview:
        try:
            overview = write_overview(cfg=cfg, summary=summary, elapsed_sec=elapsed, interrupted=interrupted)
            print(f"[Report] Overview: {overview}")
            out = Path(cfg.output_path)
            frames = write_frame_results(summary, out.with_name(out.name + "_frames.csv"))
            print(f"[Report] Frames: {frames}")
        except OSError as e:
            print(f"[Report] Failed: {e}")

    print("=" * 72)
    return 0


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
