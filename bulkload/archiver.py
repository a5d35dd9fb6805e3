"""Move loaded files into done/ and report every job's result.

A file is moved only when its load succeeded, so the next run over the
same directory picks up exactly the files that still need loading.
"""

import errno
import os
import shutil
import uuid
from pathlib import Path

import structlog

from bulkload.jobs import Job, Outcome, OutcomeKind, truncate

log = structlog.get_logger()


def relocate(src: Path, done_dir: Path) -> Path:
    """
    Move a file into done_dir under its original name.

    Uses an atomic rename. If src and done_dir are on different
    filesystems, copies to a temporary name in done_dir, renames that into
    place and then removes the source; the temporary copy is cleaned up if
    any step fails. If the source can't be removed after the copy, the
    copy in done_dir is deleted again so the file exists in one place only;
    when done_dir already held a file of the same name, that older file was
    overwritten by the copy and is lost too.

    Args:
        src: File to move
        done_dir: Existing destination directory

    Returns:
        The destination path

    Raises:
        OSError: If the file could not be moved; src is then still in place
    """
    dst = done_dir / src.name
    try:
        os.replace(src, dst)
        return dst
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    # Copy then delete (rename not possible across filesystems)
    tmp = done_dir / f".{src.name}.{uuid.uuid4().hex}.partial"
    try:
        shutil.copy2(src, tmp)
        os.replace(tmp, dst)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise

    try:
        src.unlink()
    except OSError:
        # Keep the file in exactly one place: back out the copy
        dst.unlink(missing_ok=True)
        raise

    return dst


def complete(job: Job, outcome: Outcome, done_dir: Path) -> Outcome:
    """
    Apply the post-load side effect for one job and log its result.

    Args:
        job: The finished job
        outcome: Its Outcome from the executor
        done_dir: Where successfully loaded files go

    Returns:
        The Outcome, with a warning attached when a successful file
        could not be moved (the job still counts as a success)
    """
    if outcome.kind is OutcomeKind.SUCCESS:
        try:
            dst = relocate(job.path, done_dir)
        except OSError as e:
            warning = f"loaded but not moved to {done_dir}: {e}"
            log.warning(
                "relocation_failed",
                file=job.name,
                elapsed_seconds=round(outcome.elapsed, 2),
                error=str(e),
            )
            return outcome.with_warning(warning)

        log.info(
            "job_succeeded",
            file=job.name,
            elapsed_seconds=round(outcome.elapsed, 2),
            destination=str(dst),
        )
        return outcome

    # Failed, timed out or skipped: leave the file for the next run
    if outcome.kind is OutcomeKind.SKIPPED:
        emit, event = log.warning, "job_skipped"
    else:
        emit, event = log.error, "job_failed"
    emit(
        event,
        file=job.name,
        outcome=outcome.kind.value,
        elapsed_seconds=round(outcome.elapsed, 2),
        diagnostic=truncate(outcome.diagnostic or ""),
    )
    return outcome
