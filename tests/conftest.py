"""Shared fixtures: run configs over tmp_path and fake loader backends."""

import asyncio
import sys
from pathlib import Path

import pytest

from bulkload.config import RunConfig
from bulkload.loader import ClickHouseClientLoader

# Default stand-in for clickhouse-client: swallow stdin and exit 0
SCRIPT_OK = "import sys; sys.stdin.buffer.read()"


class ScriptLoader(ClickHouseClientLoader):
    """clickhouse-client stand-in: runs a Python snippet with the file on stdin."""

    def __init__(self, config: RunConfig, script: str = SCRIPT_OK):
        super().__init__(config)
        self.script = script
        self.loads = []

    def build_command(self, job):
        return [sys.executable, "-c", self.script, job.name]

    def check_available(self) -> None:
        return None

    async def start(self, job, source):
        load = await super().start(job, source)
        self.loads.append(load)
        return load


class FakeLoad:
    def __init__(self, loader, delay, status, stderr):
        self.loader = loader
        self.delay = delay
        self.status = status
        self.stderr = stderr
        self.killed = False

    async def wait(self):
        try:
            await asyncio.sleep(self.delay)
            return self.status, self.stderr
        finally:
            self.loader.active -= 1

    async def kill(self):
        self.killed = True


class CountingLoader:
    """In-process loader that records how many loads run at the same time."""

    def __init__(self, delay: float = 0.05, statuses: dict[str, int] | None = None):
        self.delay = delay
        self.statuses = statuses or {}
        self.active = 0
        self.peak = 0
        self.started: list[str] = []
        self.payloads: dict[str, bytes] = {}
        self.closed = False

    def check_available(self) -> None:
        return None

    async def start(self, job, source):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.append(job.name)
        self.payloads[job.name] = source.read()
        status = self.statuses.get(job.name, 0)
        stderr = b"" if status == 0 else f"load of {job.name} failed".encode()
        return FakeLoad(self, self.delay, status, stderr)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def landing(tmp_path) -> Path:
    path = tmp_path / "landing"
    path.mkdir()
    return path


@pytest.fixture
def make_config(landing):
    def _make(**overrides) -> RunConfig:
        values = {
            "source_dir": landing,
            "table": "events",
            "password": "secret",
            "nice": None,
            "timeout_secs": 10.0,
        }
        values.update(overrides)
        return RunConfig(**values).validate()

    return _make


@pytest.fixture
def write_files(landing):
    def _write(*names: str) -> list[Path]:
        paths = []
        for name in names:
            path = landing / name
            path.write_bytes(f"ORC data for {name}".encode())
            paths.append(path)
        return paths

    return _write


@pytest.fixture
def script_loader():
    def _make(config: RunConfig, script: str = SCRIPT_OK) -> ScriptLoader:
        return ScriptLoader(config, script)

    return _make


@pytest.fixture
def counting_loader():
    def _make(**kwargs) -> CountingLoader:
        return CountingLoader(**kwargs)

    return _make
