"""
Runs a single load job.

The executor is called once the job holds a concurrency permit. It:
1. Re-checks that the file is still there (it may have been moved since listing)
2. Opens it and hands it to the loader backend
3. Races the load against the per-job deadline
4. Classifies the result into an Outcome

Every per-job problem ends up in the returned Outcome. Nothing raised here
reaches sibling jobs.
"""

import asyncio
import time

import structlog

from bulkload.config import RunConfig
from bulkload.errors import SpawnError
from bulkload.jobs import Job, Outcome, classify
from bulkload.loader import Loader, RunningLoad

log = structlog.get_logger()


async def execute_job(job: Job, config: RunConfig, loader: Loader) -> Outcome:
    """
    Load one file and return its Outcome.

    Args:
        job: The file to load
        config: Run configuration (timeout, table, credentials)
        loader: Backend that starts the actual load

    Returns:
        Outcome for the job; elapsed time counts from this call
    """
    started = time.monotonic()
    log.info("job_started", file=job.name)

    if not job.path.exists():
        return Outcome.skipped("file no longer exists")

    try:
        source = open(job.path, "rb")
    except OSError as e:
        return Outcome.skipped(f"cannot open file: {e}")

    with source:
        try:
            running = await loader.start(job, source)
        except SpawnError as e:
            return Outcome.failure(time.monotonic() - started, str(e))

        return await supervise(job, running, config.timeout_secs, started)


async def supervise(job: Job, running: RunningLoad, timeout_secs: float, started: float) -> Outcome:
    """
    Wait for a running load, killing it if it outlives the deadline.

    Only one branch wins: either the load finishes and its status is
    classified, or the deadline passes, the load is killed and the job is
    a timeout. Nothing the load wrote before the kill is kept.

    Args:
        job: The job being supervised (for logging)
        running: The started load
        timeout_secs: Deadline in seconds
        started: time.monotonic() value when the job started

    Returns:
        The job's Outcome
    """
    try:
        status, stderr = await asyncio.wait_for(running.wait(), timeout=timeout_secs)
    except asyncio.TimeoutError:
        await _kill(job, running)
        return Outcome.timeout(time.monotonic() - started, timeout_secs)
    except asyncio.CancelledError:
        # The run itself is being torn down; don't leave the loader behind
        await _kill(job, running)
        raise
    except OSError as e:
        return Outcome.failure(time.monotonic() - started, f"cannot wait for loader: {e}")

    return classify(status, stderr, time.monotonic() - started)


async def _kill(job: Job, running: RunningLoad) -> None:
    """Best-effort kill; a failure is logged and doesn't change the outcome."""
    try:
        await running.kill()
    except OSError as e:
        log.warning("loader_kill_failed", file=job.name, error=str(e))
