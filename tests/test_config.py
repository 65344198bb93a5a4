import tomllib
from pathlib import Path

from specflow import __version__
from specflow.config import SpecflowConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "specflow.toml"
    config = SpecflowConfig.default()
    config.project.name = "widgets"
    config.project.test_command = "make check"
    config.agents.primary = "codex"
    config.agents.fallback = "claude"
    config.agents.max_retries = 3
    config.agents.retry_backoff_seconds = 1.25
    config.workflow.max_fix_attempts = 4
    config.workflow.minor_issue_threshold = 5
    config.workflow.isolation = "branch"
    config.workflow.draft_pull_requests = True
    config.workflow.reporters = ["log", "pr-comment"]
    config.issues.labels = ["automation"]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "widgets"
    assert loaded.project.test_command == "make check"
    assert loaded.agents.primary == "codex"
    assert loaded.agents.fallback == "claude"
    assert loaded.agents.max_retries == 3
    assert loaded.agents.retry_backoff_seconds == 1.25
    assert loaded.workflow.max_attempts == 2
    assert loaded.workflow.max_fix_attempts == 4
    assert loaded.workflow.minor_issue_threshold == 5
    assert loaded.workflow.isolation == "branch"
    assert loaded.workflow.draft_pull_requests is True
    assert loaded.workflow.reporters == ["log", "pr-comment"]
    assert loaded.issues.labels == ["automation"]
    assert loaded.state.sessions_dir == ".specflow/sessions"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == SpecflowConfig.default()
    assert loaded.workflow.max_attempts == 2
    assert loaded.workflow.max_fix_attempts == 2


def test_partial_config_keeps_defaults_for_missing_sections(tmp_path: Path) -> None:
    config_path = tmp_path / "specflow.toml"
    config_path.write_text('[workflow]\nmax_attempts = 5\n', encoding="utf-8")

    loaded = load_config(config_path)

    assert loaded.workflow.max_attempts == 5
    assert loaded.workflow.isolation == "worktree"
    assert loaded.agents.primary == "claude"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(SpecflowConfig.default())

    for section in ("[project]", "[agents]", "[workflow]", "[issues]", "[state]"):
        assert section in rendered
    assert "max_fix_attempts = 2" in rendered
    assert "minor_issue_threshold = 0" in rendered
    assert 'labels = ["specflow", "auto-created"]' in rendered
    assert "draft_pull_requests = false" in rendered
    assert 'reporters = ["log"]' in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
