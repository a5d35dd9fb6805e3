"""
Configuration management for bulkload.

This module handles:
- The typed, immutable RunConfig shared by every job in a run
- Layering defaults, an optional YAML file, BULKLOAD_* environment
  variables and command-line options (later sources win)
- Validating the result before any job is started
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from bulkload.errors import ConfigError

ENV_PREFIX = "BULKLOAD_"
DONE_DIR_NAME = "done"
MODES = ("client", "http")

# Default server ports per mode: native protocol for clickhouse-client, HTTP otherwise
DEFAULT_PORTS = {"client": 9000, "http": 8123}


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_nice(value: str) -> int | None:
    # "none" or an empty string disables the nice wrapper
    if value.strip().lower() in ("", "none", "off"):
        return None
    return int(value)


@dataclass(frozen=True)
class RunConfig:
    """
    Settings for one run, created once at startup and read-only afterwards.

    Works for both loader modes:
    - client: pipe each file into clickhouse-client
    - http: stream each file to the ClickHouse HTTP interface
    """
    source_dir: Path                # Directory holding the files to load
    table: str                      # Target table (e.g., "events" or "db.events")

    # Credentials
    user: str = "default"
    password: str = ""

    # Parallelism
    workers: int = 4                # Max loads in flight at once
    threads: int = 8                # max_insert_threads passed to each load
    timeout_secs: float = 1800.0    # Deadline per load

    # Loader
    mode: str = "client"            # "client" or "http"
    input_format: str = "ORC"       # FORMAT clause of the INSERT query
    pattern: str = "*"              # fnmatch pattern a file name must match
    loader_binary: str = "clickhouse-client"
    nice: int | None = 10           # Niceness for the loader; None runs it directly
    host: str = "localhost"
    port: int | None = None         # Defaults per mode, see DEFAULT_PORTS
    http_url: str | None = None     # Overrides host/port in http mode

    # Exit status policy: fail the run when any job fails or times out
    fail_on_error: bool = True

    @property
    def done_dir(self) -> Path:
        return self.source_dir / DONE_DIR_NAME

    @property
    def effective_port(self) -> int:
        return self.port if self.port is not None else DEFAULT_PORTS[self.mode]

    @property
    def base_url(self) -> str:
        if self.http_url:
            return self.http_url.rstrip("/")
        return f"http://{self.host}:{self.effective_port}"

    @property
    def insert_query(self) -> str:
        return f"INSERT INTO {self.table} FORMAT {self.input_format}"

    def validate(self) -> "RunConfig":
        """
        Check the settings that would otherwise fail mid-run.

        Returns:
            self, so calls can be chained

        Raises:
            ConfigError: If any setting is out of range
        """
        if not self.table:
            raise ConfigError("table is required")
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")
        if self.threads < 1:
            raise ConfigError(f"threads must be at least 1, got {self.threads}")
        if self.timeout_secs <= 0:
            raise ConfigError(f"timeout_secs must be positive, got {self.timeout_secs}")
        if self.mode not in MODES:
            raise ConfigError(f"mode must be one of {', '.join(MODES)}, got {self.mode!r}")
        return self

    @classmethod
    def from_sources(
        cls,
        overrides: Mapping[str, Any] | None = None,
        config_file: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "RunConfig":
        """
        Build a validated RunConfig from every configuration source.

        Precedence, lowest to highest:
            dataclass defaults < YAML file < BULKLOAD_* variables < overrides

        Args:
            overrides: Values given explicitly on the command line (None values are ignored)
            config_file: Optional YAML file whose keys are RunConfig field names
            environ: Environment to read (default: os.environ)

        Raises:
            ConfigError: On unknown keys, unparseable values or missing required settings
        """
        values: dict[str, Any] = {}

        if config_file is not None:
            values.update(load_config_file(config_file))

        values.update(_from_environ(os.environ if environ is None else environ))

        if overrides:
            values.update({k: v for k, v in overrides.items() if v is not None})

        for required in ("source_dir", "table"):
            if not values.get(required):
                raise ConfigError(f"{required} is required")

        values["source_dir"] = Path(values["source_dir"])
        return cls(**values).validate()


_FIELD_NAMES = {f.name for f in fields(RunConfig)}

# How to read each setting from an environment variable
_ENV_PARSERS = {
    "source_dir": str,
    "table": str,
    "user": str,
    "password": str,
    "workers": int,
    "threads": int,
    "timeout_secs": float,
    "mode": str,
    "input_format": str,
    "pattern": str,
    "loader_binary": str,
    "nice": _parse_nice,
    "host": str,
    "port": int,
    "http_url": str,
    "fail_on_error": _parse_bool,
}


def _from_environ(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect BULKLOAD_<FIELD> variables into RunConfig keyword arguments."""
    result = {}
    for name, parse in _ENV_PARSERS.items():
        key = f"{ENV_PREFIX}{name.upper()}"
        if key not in environ:
            continue
        try:
            result[name] = parse(environ[key])
        except ValueError as e:
            raise ConfigError(f"invalid value for {key}: {e}") from e
    return result


def load_config_file(path: str | Path) -> dict[str, Any]:
    """
    Load RunConfig settings from a YAML file.

    Example:

        table: analytics.events
        workers: 6
        timeout_secs: 3600
        nice: null

    Args:
        path: Path to the YAML file

    Returns:
        Mapping of RunConfig field names to values (empty for an empty file)

    Raises:
        ConfigError: If the file can't be read, isn't a mapping or has unknown keys
    """
    try:
        raw = yaml.safe_load(Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e

    # Skip empty files
    if not raw:
        return {}

    if not isinstance(raw, dict):
        raise ConfigError(f"config file {path} must contain a mapping")

    unknown = sorted(set(raw) - _FIELD_NAMES)
    if unknown:
        raise ConfigError(f"unknown keys in {path}: {', '.join(unknown)}")

    return {name: _coerce(name, value, path) for name, value in raw.items()}


# Settings that may be left empty (null) in a config file
_NULLABLE = {"nice", "port", "http_url"}


def _coerce(name: str, value: Any, path: str | Path) -> Any:
    """Convert a YAML value to the setting's type, the same way env values are parsed."""
    if value is None:
        if name in _NULLABLE:
            return None
        raise ConfigError(f"{name} in {path} must not be empty")
    try:
        return _ENV_PARSERS[name](str(value))
    except ValueError as e:
        raise ConfigError(f"invalid value for {name} in {path}: {e}") from e
