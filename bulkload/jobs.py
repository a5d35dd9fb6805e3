"""
Job and outcome types for the loader.

A Job is one input file. Every job ends in exactly one Outcome:
- success: the loader exited cleanly (a failed move to done/ only adds a warning)
- failure: the loader could not be started, could not be waited on, or exited non-zero
- timeout: the load ran past the deadline and was killed
- skipped: the file vanished or could not be opened before the load started
"""

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

# Cap on diagnostic text kept per job, so a chatty loader can't flood the logs
DIAGNOSTIC_LIMIT = 2000


@dataclass(frozen=True)
class Job:
    """A single file to load."""
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Outcome:
    """
    Result of one job.

    elapsed is measured from permit acquisition to the verdict, so it
    includes the full wait when the job times out.
    """
    kind: OutcomeKind
    elapsed: float = 0.0            # Seconds spent on the job
    diagnostic: str | None = None   # Loader stderr, error text or skip reason
    warning: str | None = None      # Set on success when the move to done/ failed

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(cls, elapsed: float) -> "Outcome":
        return cls(OutcomeKind.SUCCESS, elapsed)

    @classmethod
    def failure(cls, elapsed: float, diagnostic: str) -> "Outcome":
        return cls(OutcomeKind.FAILURE, elapsed, truncate(diagnostic))

    @classmethod
    def timeout(cls, elapsed: float, timeout_secs: float) -> "Outcome":
        return cls(OutcomeKind.TIMEOUT, elapsed, f"load timed out after {timeout_secs}s")

    @classmethod
    def skipped(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.SKIPPED, 0.0, truncate(reason))

    def with_warning(self, warning: str) -> "Outcome":
        return replace(self, warning=warning)


def truncate(text: str, limit: int = DIAGNOSTIC_LIMIT) -> str:
    """Trim text to at most limit characters."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit]


def classify(status: int, stderr: bytes, elapsed: float) -> Outcome:
    """
    Map a finished load to its Outcome.

    Args:
        status: Loader exit status (0 means the load succeeded)
        stderr: Captured diagnostic output, in any encoding
        elapsed: Seconds since the job started

    Returns:
        Outcome.success for status 0, otherwise Outcome.failure with the
        decoded stderr (or the exit status when stderr was empty)
    """
    if status == 0:
        return Outcome.success(elapsed)

    diagnostic = stderr.decode("utf-8", errors="replace").strip()
    if not diagnostic:
        diagnostic = f"exit status {status}"
    return Outcome.failure(elapsed, diagnostic)
