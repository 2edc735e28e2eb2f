import tomllib
from pathlib import Path

from foreman import __version__
from foreman.config import ForemanConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.ledger.root_dir = ".state"
    config.ledger.max_tasks_per_epic = 5
    config.catalog.default_namespace = "code"
    config.dispatch.inject_memories = False
    config.supervisor.stale_threshold_seconds = 12.5
    config.supervisor.max_retries = 4
    config.supervisor.timeout_seconds = 90.0
    config.ledger.stale_lock_seconds = 15.0
    config.batch.poll_interval_seconds = 0.05
    config.host.binary = "/opt/bin/agent-host"
    config.host.glitch_markers = ["Unexpected EOF", "socket hang up"]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.ledger.root_dir == ".state"
    assert loaded.ledger.max_tasks_per_epic == 5
    assert loaded.catalog.default_namespace == "code"
    assert loaded.dispatch.inject_memories is False
    assert loaded.supervisor.stale_threshold_seconds == 12.5
    assert loaded.supervisor.max_retries == 4
    assert loaded.supervisor.timeout_seconds == 90.0
    assert loaded.ledger.stale_lock_seconds == 15.0
    assert loaded.batch.poll_interval_seconds == 0.05
    assert loaded.host.binary == "/opt/bin/agent-host"
    assert loaded.host.glitch_markers == ["Unexpected EOF", "socket hang up"]
    assert loaded.registry.retention_seconds == 3600.0


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == ForemanConfig.default()
    assert loaded.ledger.max_tasks_per_epic == 3
    assert loaded.supervisor.stale_threshold_seconds == 30.0
    assert loaded.supervisor.max_retries == 2


def test_toml_dump_keeps_floats_as_floats() -> None:
    rendered = dumps_toml(ForemanConfig.default())
    parsed = tomllib.loads(rendered)

    assert "[supervisor]" in rendered
    assert "stale_threshold_seconds = 30.0" in rendered
    assert isinstance(parsed["registry"]["retention_seconds"], float)
    assert parsed["host"]["glitch_markers"] == ["Unexpected EOF"]


def test_partial_config_file_fills_missing_sections(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config_path.write_text("[supervisor]\nmax_retries = 1\n", encoding="utf-8")

    loaded = load_config(config_path)

    assert loaded.supervisor.max_retries == 1
    assert loaded.supervisor.scan_interval_seconds == 10.0
    assert loaded.ledger.root_dir == ".foreman"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
