"""
Loader backends for bulkload.

A loader turns one open file into one running load. The orchestrator only
sees two operations on a running load: wait for its verdict, or kill it.
That lets the clickhouse-client command and the HTTP stream share the same
concurrency gate, deadline and move-to-done handling.
"""

import asyncio
import shutil
import subprocess
from typing import BinaryIO, Protocol

import structlog

from bulkload.config import RunConfig
from bulkload.errors import ConfigError, SpawnError
from bulkload.jobs import Job

log = structlog.get_logger()


class RunningLoad(Protocol):
    """
    Protocol for a load in progress.

    - wait: Block until the load ends; return (status, diagnostic bytes)
    - kill: Stop the load; called at most once, after wait was abandoned
    """

    async def wait(self) -> tuple[int, bytes]:
        ...

    async def kill(self) -> None:
        ...


class Loader(Protocol):
    """
    Protocol defining the loader interface.

    - check_available: Verify once, before any job runs, that loads can start
    - start: Begin loading one file; raise SpawnError if that's impossible
    - aclose: Release shared resources after the last job
    """

    def check_available(self) -> None:
        ...

    async def start(self, job: Job, source: BinaryIO) -> RunningLoad:
        ...

    async def aclose(self) -> None:
        ...


class ProcessLoad:
    """A clickhouse-client child process reading the file on stdin."""

    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait(self) -> tuple[int, bytes]:
        # stdout goes to /dev/null, so communicate only collects stderr
        _, stderr = await self.process.communicate()
        return self.process.returncode, stderr or b""

    async def kill(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                # Exited between the deadline and the kill
                pass
        # Reap the child so it doesn't linger as a zombie
        await self.process.wait()


class ClickHouseClientLoader:
    """
    Loads files by piping them into clickhouse-client.

    Each load runs:

        nice -n 10 clickhouse-client --host H --port P --user U --password ***
            --input_format_parallel_parsing 1 --max_insert_threads N
            -q "INSERT INTO <table> FORMAT ORC"

    with the file as stdin, stdout discarded and stderr captured.
    """

    def __init__(self, config: RunConfig):
        self.config = config

    def build_command(self, job: Job) -> list[str]:
        """Build the argv for loading one file."""
        cfg = self.config
        cmd = []
        if cfg.nice is not None:
            cmd.extend(["nice", "-n", str(cfg.nice)])
        cmd.extend([
            cfg.loader_binary,
            "--host", cfg.host,
            "--port", str(cfg.effective_port),
            "--user", cfg.user,
            "--password", cfg.password,
            "--input_format_parallel_parsing", "1",
            "--max_insert_threads", str(cfg.threads),
            "-q", cfg.insert_query,
        ])
        return cmd

    def check_available(self) -> None:
        """
        Make sure the loader binary (and nice, if used) can be found.

        A missing binary would fail every job the same way, so it's
        reported once up front instead.

        Raises:
            ConfigError: If an executable isn't on PATH
        """
        binaries = [self.config.loader_binary]
        if self.config.nice is not None:
            binaries.insert(0, "nice")

        for binary in binaries:
            if shutil.which(binary) is None:
                raise ConfigError(f"{binary} not found - is it installed and on PATH?")

    async def start(self, job: Job, source: BinaryIO) -> ProcessLoad:
        """
        Spawn the loader for one file.

        Args:
            job: The job being loaded (used for logging only)
            source: Open file handle connected to the child's stdin

        Returns:
            The running ProcessLoad

        Raises:
            SpawnError: If the process could not be started
        """
        cmd = self.build_command(job)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=source,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(f"cannot start {cmd[0]}: {e}") from e

        log.debug("loader_spawned", file=job.name, pid=process.pid)
        return ProcessLoad(process)

    async def aclose(self) -> None:
        # Each load owns its own process; nothing is shared between jobs
        return None
