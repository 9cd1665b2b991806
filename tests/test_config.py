import tomllib
from pathlib import Path

from conductor import __version__
from conductor.config import ConductorConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "config.toml"
    config = ConductorConfig.default()
    config.storage.data_dir = str(tmp_path / "data")
    config.claude.path = "/opt/bin/claude"
    config.codex.default_model = "gpt-5"
    config.engine.max_loop_iterations = 7
    config.engine.default_agent_type = "codex"
    config.process.sigterm_timeout_seconds = 0.5
    config.process.env_passthrough = ["PATH", "ANTHROPIC_API_KEY"]
    config.preferences.message_preview_length = 120
    config.tool_server.args = ["-m", "conductor", "tool-server", "--log-level", "debug"]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.storage.data_dir == str(tmp_path / "data")
    assert loaded.storage.state_dir == tmp_path / "data" / "state"
    assert loaded.claude.path == "/opt/bin/claude"
    assert loaded.codex.default_model == "gpt-5"
    assert loaded.engine.max_loop_iterations == 7
    assert loaded.engine.default_agent_type == "codex"
    assert loaded.process.sigterm_timeout_seconds == 0.5
    assert loaded.process.env_passthrough == ["PATH", "ANTHROPIC_API_KEY"]
    assert loaded.preferences.message_preview_length == 120
    assert loaded.tool_server.args[-1] == "debug"


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.engine.default_permission_mode == "bypassPermissions"
    assert loaded.engine.max_loop_iterations == 20
    assert loaded.preferences.message_preview_length == 500
    assert loaded.tool_server.name == "conductor"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ConductorConfig.default())

    for section in ("storage", "claude", "codex", "engine", "process", "bridge", "tool_server"):
        assert f"[{section}]" in rendered
    assert "max_line_bytes = 8388608" in rendered
    assert 'branch_prefix = "conductor"' in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
