"""
Main orchestration module for bulkload.

This module ties everything together:
1. Lists the source directory once (files arriving later wait for the next run)
2. Creates done/ and starts one task per file
3. Admits at most `workers` loads at a time through a semaphore
4. Waits for every task, whatever its outcome, and logs a run summary
5. Pushes run metrics and turns the summary into an exit status

Key resilience principles:
1. One file's failure or timeout never cancels another file's load
2. Only configuration, listing and done/ creation errors abort the run
3. A file leaves the source directory only after its load succeeded
"""

import argparse
import asyncio
import fnmatch
import logging
import sys
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Sequence

import structlog

from bulkload import __version__, archiver
from bulkload.config import MODES, RunConfig
from bulkload.errors import BulkloadError, DirectoryCreationError, EnumerationError
from bulkload.executor import execute_job
from bulkload.http_loader import HttpLoader
from bulkload.jobs import Job, Outcome, OutcomeKind
from bulkload.loader import ClickHouseClientLoader, Loader
from bulkload.metrics import MetricsClient

log = structlog.get_logger()

# Exit statuses
EXIT_OK = 0
EXIT_JOBS_FAILED = 1
EXIT_ABORTED = 2


@dataclass
class RunSummary:
    """Aggregate result of a run."""
    outcomes: dict[str, Outcome] = field(default_factory=dict)  # Job name -> Outcome
    duration_seconds: float = 0.0

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes.values() if o.kind is kind)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self.count(OutcomeKind.SUCCESS)

    @property
    def failed(self) -> int:
        return self.count(OutcomeKind.FAILURE)

    @property
    def timed_out(self) -> int:
        return self.count(OutcomeKind.TIMEOUT)

    @property
    def skipped(self) -> int:
        return self.count(OutcomeKind.SKIPPED)

    @property
    def relocation_warnings(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.warning)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.timed_out > 0

    def exit_code(self, fail_on_error: bool = True) -> int:
        """Skipped jobs never fail a run; failures and timeouts do unless allowed."""
        if fail_on_error and self.has_failures:
            return EXIT_JOBS_FAILED
        return EXIT_OK


def enumerate_jobs(config: RunConfig) -> list[Job]:
    """
    Snapshot the source directory into a fixed list of jobs.

    Only regular files directly inside source_dir whose name matches the
    configured pattern are included; done/ and any other subdirectory are
    ignored.

    Raises:
        EnumerationError: If the directory can't be read
    """
    try:
        paths = sorted(
            p for p in config.source_dir.iterdir()
            if p.is_file() and fnmatch.fnmatch(p.name, config.pattern)
        )
    except OSError as e:
        raise EnumerationError(f"cannot read directory {config.source_dir}: {e}") from e

    return [Job(path=p) for p in paths]


def ensure_done_dir(config: RunConfig) -> Path:
    """
    Create done/ if it's missing; an existing directory is fine.

    Raises:
        DirectoryCreationError: If it can't be created
    """
    try:
        config.done_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DirectoryCreationError(f"cannot create {config.done_dir}: {e}") from e
    return config.done_dir


def create_loader(config: RunConfig) -> Loader:
    """Pick the loader backend for the configured mode."""
    if config.mode == "http":
        return HttpLoader(config)
    return ClickHouseClientLoader(config)


async def run_job(job: Job, config: RunConfig, loader: Loader, gate: asyncio.Semaphore) -> Outcome:
    """Load one file under a gate permit, then move or report it."""
    async with gate:
        outcome = await execute_job(job, config, loader)
        # A cross-device move copies the whole file; keep it off the event loop
        return await asyncio.to_thread(archiver.complete, job, outcome, config.done_dir)


async def run_all(config: RunConfig, loader: Loader) -> RunSummary:
    """
    Load every file in the source directory.

    Never raises for per-job problems - they are captured in the summary.

    Args:
        config: Validated run configuration
        loader: Backend used for every job

    Returns:
        RunSummary with one Outcome per listed file

    Raises:
        EnumerationError: If the source directory can't be listed
        DirectoryCreationError: If done/ can't be created
    """
    started = time.monotonic()
    jobs = enumerate_jobs(config)

    if not jobs:
        log.info("nothing_to_do", source_dir=str(config.source_dir), pattern=config.pattern)
        return RunSummary(duration_seconds=time.monotonic() - started)

    ensure_done_dir(config)

    log.info(
        "run_starting",
        file_count=len(jobs),
        workers=config.workers,
        threads=config.threads,
        mode=config.mode,
        table=config.table,
    )

    gate = asyncio.Semaphore(config.workers)
    try:
        results = await asyncio.gather(
            *(run_job(job, config, loader, gate) for job in jobs),
            return_exceptions=True,
        )
    finally:
        await loader.aclose()

    summary = RunSummary()
    for job, result in zip(jobs, results):
        if isinstance(result, Outcome):
            summary.outcomes[job.name] = result
        elif isinstance(result, Exception):
            # This shouldn't happen, but the job still needs exactly one outcome
            log.error(
                "unexpected_job_error",
                file=job.name,
                error=str(result),
                error_type=type(result).__name__,
            )
            summary.outcomes[job.name] = Outcome.failure(0.0, f"{type(result).__name__}: {result}")
        else:
            # BaseException such as CancelledError: let it end the run
            raise result

    summary.duration_seconds = time.monotonic() - started
    log.info(
        "run_complete",
        total=summary.total,
        succeeded=summary.succeeded,
        failed=summary.failed,
        timed_out=summary.timed_out,
        skipped=summary.skipped,
        relocation_warnings=summary.relocation_warnings,
        duration_seconds=round(summary.duration_seconds, 2),
    )
    return summary


def push_metrics(metrics: MetricsClient, summary: RunSummary) -> None:
    metrics.gauge("bulkload.jobs.succeeded", summary.succeeded)
    metrics.gauge("bulkload.jobs.failed", summary.failed)
    metrics.gauge("bulkload.jobs.timed_out", summary.timed_out)
    metrics.gauge("bulkload.jobs.skipped", summary.skipped)
    metrics.gauge("bulkload.jobs.relocation_warnings", summary.relocation_warnings)
    metrics.gauge("bulkload.run.duration_seconds", round(summary.duration_seconds, 3))
    metrics.increment("bulkload.runs")
    metrics.flush()


def configure_logging(log_format: str = "console", level: str = "INFO") -> None:
    """Configure structlog once for the whole process."""
    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bulkload",
        description="Load a directory of columnar files into ClickHouse in parallel",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # Everything defaults to None so unset options don't mask the config file or environment
    parser.add_argument("-d", "--dir", dest="source_dir", help="Directory containing the files to load")
    parser.add_argument("-t", "--table", help="Target table")
    parser.add_argument("--user", help="ClickHouse user (default: default)")
    parser.add_argument("--password", help="ClickHouse password (or BULKLOAD_PASSWORD)")
    parser.add_argument("-w", "--workers", type=int, help="Max files loaded at once (default: 4)")
    parser.add_argument("--threads", type=int, help="max_insert_threads per load (default: 8)")
    parser.add_argument("--timeout-secs", dest="timeout_secs", type=float, help="Per-file timeout in seconds (default: 1800)")
    parser.add_argument("--mode", choices=MODES, help="Load through clickhouse-client or HTTP (default: client)")
    parser.add_argument("--host", help="ClickHouse host (default: localhost)")
    parser.add_argument("--port", type=int, help="ClickHouse port (default: 9000 client, 8123 http)")
    parser.add_argument("--http-url", dest="http_url", help="Base URL for http mode, overrides --host/--port")
    parser.add_argument("--format", dest="input_format", help="Input format for the INSERT (default: ORC)")
    parser.add_argument("--pattern", help="Only load files whose name matches this glob (default: *)")
    parser.add_argument("--loader-binary", dest="loader_binary", help="clickhouse-client executable")

    nice = parser.add_mutually_exclusive_group()
    nice.add_argument("--nice", type=int, help="Niceness for the loader process (default: 10)")
    nice.add_argument("--no-nice", dest="no_nice", action="store_true", help="Run the loader without nice")

    parser.add_argument(
        "--allow-failures",
        dest="allow_failures",
        action="store_true",
        help="Exit 0 even when some files failed or timed out",
    )
    parser.add_argument("--config", help="YAML file with default settings")
    parser.add_argument("--log-format", dest="log_format", choices=("console", "json"), default="console")
    parser.add_argument("--log-level", dest="log_level", default="INFO")
    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """Resolve the RunConfig from parsed arguments plus file and environment."""
    overrides = {
        "source_dir": args.source_dir,
        "table": args.table,
        "user": args.user,
        "password": args.password,
        "workers": args.workers,
        "threads": args.threads,
        "timeout_secs": args.timeout_secs,
        "mode": args.mode,
        "host": args.host,
        "port": args.port,
        "http_url": args.http_url,
        "input_format": args.input_format,
        "pattern": args.pattern,
        "loader_binary": args.loader_binary,
        "nice": args.nice,
        "fail_on_error": False if args.allow_failures else None,
    }
    config = RunConfig.from_sources(overrides=overrides, config_file=args.config)
    if args.no_nice:
        config = replace(config, nice=None)
    return config


def main(argv: Sequence[str] | None = None) -> int:
    """Command-line entry point; returns the process exit status."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_format, args.log_level)

    try:
        config = config_from_args(args)
        loader = create_loader(config)
        loader.check_available()
        summary = asyncio.run(run_all(config, loader))
    except BulkloadError as e:
        log.error("run_aborted", error=str(e), error_type=type(e).__name__)
        return EXIT_ABORTED

    if summary.total:
        push_metrics(MetricsClient.from_env(dimensions={"table": config.table}), summary)

    exit_code = summary.exit_code(config.fail_on_error)
    if exit_code != EXIT_OK:
        log.warning(
            "run_had_failures",
            failed=summary.failed,
            timed_out=summary.timed_out,
        )
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
