"""Tests for project configuration and path resolution."""

import os

import pytest
import yaml

from trackdown.config import (
    ConflictPolicy,
    ProjectConfig,
    SyncConfig,
    find_project_root,
    get_actor,
    resolve_paths,
)
from trackdown.errors import ConfigurationError
from trackdown.models import TicketKind


def test_save_then_load(tmp_path):
    cfg = ProjectConfig(name="demo", default_assignee="alice")
    cfg.github_sync = SyncConfig(enabled=True, repository="acme/widgets",
                                 conflict_resolution=ConflictPolicy.MANUAL)
    cfg.save(str(tmp_path))

    loaded = ProjectConfig.load(str(tmp_path))
    assert loaded.name == "demo"
    assert loaded.default_assignee == "alice"
    assert loaded.naming_conventions.issue_prefix == "ISS"
    assert loaded.github_sync.repository == "acme/widgets"
    assert loaded.github_sync.conflict_resolution == ConflictPolicy.MANUAL


def test_token_not_written_unless_set(tmp_path):
    cfg = ProjectConfig(name="demo")
    cfg.github_sync = SyncConfig(enabled=True, repository="acme/widgets")
    cfg.save(str(tmp_path))
    with open(tmp_path / ".ai-trackdown" / "config.yaml") as f:
        data = yaml.safe_load(f)
    assert "token" not in data["github_sync"]


def test_missing_config(tmp_path):
    with pytest.raises(ConfigurationError, match="atd init"):
        ProjectConfig.load(str(tmp_path))


def test_missing_required_field(tmp_path):
    os.makedirs(tmp_path / ".ai-trackdown")
    with open(tmp_path / ".ai-trackdown" / "config.yaml", "w") as f:
        yaml.safe_dump({"name": "demo"}, f)
    with pytest.raises(ConfigurationError, match="structure"):
        ProjectConfig.load(str(tmp_path))


def test_invalid_policy():
    with pytest.raises(ConfigurationError):
        SyncConfig.from_dict({"conflict_resolution": "coin_flip"})


def test_batch_size_capped():
    assert SyncConfig.from_dict({"batch_size": 500}).batch_size == 100


def test_env_overrides(tmp_path, monkeypatch):
    ProjectConfig(name="demo").save(str(tmp_path))
    monkeypatch.setenv("ATD_DEFAULT_ASSIGNEE", "bob")
    monkeypatch.setenv("ATD_TASKS_DIR", "work")
    monkeypatch.setenv("GITHUB_TOKEN", "from-env")
    cfg = ProjectConfig.load(str(tmp_path))
    assert cfg.default_assignee == "bob"
    assert cfg.tasks_directory == "work"
    assert cfg.github_sync.token == "from-env"


def test_resolve_paths(tmp_path):
    cfg = ProjectConfig(name="demo")
    paths = resolve_paths(str(tmp_path), cfg)
    assert paths.type_directory(TicketKind.ISSUE) == os.path.join(str(tmp_path), "tasks", "issues")
    assert paths.counters_path == os.path.join(str(tmp_path), ".ai-trackdown", "counters.json")
    assert paths.sync_metadata_path.endswith("sync-metadata.json")
    assert paths.config_dir in paths.required_directories()


def test_find_project_root(tmp_path):
    ProjectConfig(name="demo").save(str(tmp_path))
    nested = tmp_path / "tasks" / "issues"
    os.makedirs(nested)
    assert find_project_root(str(nested)) == str(tmp_path)


def test_get_actor_from_env(monkeypatch):
    monkeypatch.setenv("ATD_ACTOR", "ci-bot")
    assert get_actor() == "ci-bot"
