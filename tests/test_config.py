from pathlib import Path

import pytest

from bulkload.config import RunConfig, load_config_file
from bulkload.errors import ConfigError


def test_defaults_and_derived_values(tmp_path):
    config = RunConfig(source_dir=tmp_path, table="events").validate()

    assert config.workers == 4
    assert config.threads == 8
    assert config.timeout_secs == 1800.0
    assert config.nice == 10
    assert config.fail_on_error is True
    assert config.done_dir == tmp_path / "done"
    assert config.insert_query == "INSERT INTO events FORMAT ORC"
    assert config.effective_port == 9000


def test_http_mode_uses_http_port(tmp_path):
    config = RunConfig(source_dir=tmp_path, table="events", mode="http", host="ch01")

    assert config.base_url == "http://ch01:8123"


def test_explicit_http_url_wins(tmp_path):
    config = RunConfig(source_dir=tmp_path, table="t", mode="http", http_url="https://ch.example.com:8443/")

    assert config.base_url == "https://ch.example.com:8443"


@pytest.mark.parametrize(
    "overrides",
    [
        {"workers": 0},
        {"threads": 0},
        {"timeout_secs": 0},
        {"timeout_secs": -5},
        {"mode": "grpc"},
        {"table": ""},
    ],
)
def test_validate_rejects_bad_values(tmp_path, overrides):
    values = {"source_dir": tmp_path, "table": "events", **overrides}

    with pytest.raises(ConfigError):
        RunConfig(**values).validate()


def test_from_sources_precedence(tmp_path):
    config_file = tmp_path / "loader.yaml"
    config_file.write_text(
        "table: from_file\n"
        "workers: 2\n"
        "threads: 4\n"
        "timeout_secs: 60\n"
    )
    environ = {
        "BULKLOAD_WORKERS": "6",
        "BULKLOAD_PASSWORD": "from_env",
        "BULKLOAD_SOURCE_DIR": str(tmp_path),
    }

    config = RunConfig.from_sources(
        overrides={"workers": 3, "table": None},
        config_file=config_file,
        environ=environ,
    )

    assert config.table == "from_file"       # file, not overridden
    assert config.threads == 4               # file
    assert config.password == "from_env"     # env
    assert config.workers == 3               # command line beats env and file
    assert config.timeout_secs == 60
    assert config.source_dir == Path(tmp_path)


def test_from_sources_parses_env_types(tmp_path):
    environ = {
        "BULKLOAD_SOURCE_DIR": str(tmp_path),
        "BULKLOAD_TABLE": "events",
        "BULKLOAD_NICE": "none",
        "BULKLOAD_FAIL_ON_ERROR": "false",
        "BULKLOAD_TIMEOUT_SECS": "2.5",
        "BULKLOAD_PORT": "9440",
    }

    config = RunConfig.from_sources(environ=environ)

    assert config.nice is None
    assert config.fail_on_error is False
    assert config.timeout_secs == 2.5
    assert config.port == 9440


def test_from_sources_rejects_bad_env_value(tmp_path):
    environ = {"BULKLOAD_SOURCE_DIR": str(tmp_path), "BULKLOAD_TABLE": "t", "BULKLOAD_WORKERS": "many"}

    with pytest.raises(ConfigError, match="BULKLOAD_WORKERS"):
        RunConfig.from_sources(environ=environ)


def test_from_sources_requires_dir_and_table():
    with pytest.raises(ConfigError, match="source_dir"):
        RunConfig.from_sources(overrides={"table": "events"}, environ={})


def test_from_sources_rejects_zero_workers(tmp_path):
    with pytest.raises(ConfigError, match="workers"):
        RunConfig.from_sources(
            overrides={"source_dir": str(tmp_path), "table": "t", "workers": 0},
            environ={},
        )


def test_load_config_file_unknown_keys(tmp_path):
    config_file = tmp_path / "loader.yaml"
    config_file.write_text("table: t\nparallelism: 3\n")

    with pytest.raises(ConfigError, match="parallelism"):
        load_config_file(config_file)


def test_load_config_file_empty(tmp_path):
    config_file = tmp_path / "empty.yaml"
    config_file.write_text("")

    assert load_config_file(config_file) == {}


def test_load_config_file_missing(tmp_path):
    with pytest.raises(ConfigError):
        load_config_file(tmp_path / "missing.yaml")


def test_load_config_file_not_a_mapping(tmp_path):
    config_file = tmp_path / "list.yaml"
    config_file.write_text("- a\n- b\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config_file(config_file)


def test_load_config_file_rejects_wrong_types(tmp_path):
    config_file = tmp_path / "loader.yaml"
    config_file.write_text("table: t\nworkers: four\n")

    with pytest.raises(ConfigError, match="workers"):
        load_config_file(config_file)


def test_load_config_file_coerces_values(tmp_path):
    config_file = tmp_path / "loader.yaml"
    config_file.write_text(
        "workers: '6'\n"
        "timeout_secs: 90\n"
        "fail_on_error: no\n"
        "nice: null\n"
        "table: 2024\n"
    )

    values = load_config_file(config_file)

    assert values == {
        "workers": 6,
        "timeout_secs": 90.0,
        "fail_on_error": False,
        "nice": None,
        "table": "2024",
    }


def test_load_config_file_rejects_empty_required_value(tmp_path):
    config_file = tmp_path / "loader.yaml"
    config_file.write_text("workers: null\n")

    with pytest.raises(ConfigError, match="workers"):
        load_config_file(config_file)
