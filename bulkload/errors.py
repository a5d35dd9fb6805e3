"""Exceptions raised by bulkload.

Only the configuration, enumeration and done-directory errors abort a run.
SpawnError is raised by a loader backend and turned into a per-job failure
by the executor.
"""


class BulkloadError(Exception):
    """Base class for bulkload errors."""


class ConfigError(BulkloadError):
    """Invalid or incomplete run configuration."""


class EnumerationError(BulkloadError):
    """The source directory could not be listed."""


class DirectoryCreationError(BulkloadError):
    """The done directory could not be created."""


class SpawnError(BulkloadError):
    """The external loader could not be started for a job."""
