"""Tests for CLI commands using Click's test runner."""

import json
import os

import pytest
import yaml
from click.testing import CliRunner

from trackdown.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path, runner):
    """A fresh project initialized through the CLI."""
    root = str(tmp_path)
    result = runner.invoke(cli, ["--root", root, "init", "--name", "demo"])
    assert result.exit_code == 0, result.output
    return root


@pytest.fixture
def atd(runner, project):
    def _run(*args):
        return runner.invoke(cli, ["--root", project, "--actor", "tester", *args])
    return _run


class TestInit:
    def test_init(self, runner, tmp_path):
        result = runner.invoke(cli, ["--root", str(tmp_path), "init", "--name", "demo"])
        assert result.exit_code == 0
        assert "Initialized trackdown" in result.output
        assert os.path.exists(tmp_path / ".ai-trackdown" / "config.yaml")
        assert os.path.exists(tmp_path / ".ai-trackdown" / "counters.json")
        assert os.path.isdir(tmp_path / "tasks" / "issues")

    def test_init_twice(self, runner, project):
        result = runner.invoke(cli, ["--root", project, "init"])
        assert result.exit_code == 0
        assert "already initialized" in result.output

    def test_outside_project(self, runner, tmp_path):
        result = runner.invoke(cli, ["--root", str(tmp_path), "show", "ISS-0001"])
        assert result.exit_code == 1
        assert "not in a trackdown project" in result.output


class TestCreate:
    def test_create_hierarchy(self, atd):
        result = atd("create", "epic", "--title", "Auth")
        assert result.exit_code == 0, result.output
        assert "Created epic EP-0001: Auth" in result.output

        assert atd("create", "issue", "-t", "Login", "--epic", "EP-0001").exit_code == 0
        result = atd("--json", "create", "task", "-t", "Form", "--issue", "ISS-0001")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["id"] == "TSK-0001"
        # epic inherited from the parent issue
        assert data["epic_id"] == "EP-0001"
        assert data["state"] == "planning"

    def test_create_silent(self, atd):
        result = atd("create", "issue", "-t", "Quiet", "--silent")
        assert result.exit_code == 0
        assert result.output.strip() == "ISS-0001"

    def test_task_requires_issue(self, atd):
        result = atd("create", "task", "-t", "Orphan")
        assert result.exit_code == 2
        assert "--issue is required" in result.output

    def test_missing_parent_warns(self, atd):
        result = atd("create", "issue", "-t", "Dangling", "--epic", "EP-0042")
        assert result.exit_code == 0
        assert "parent epic EP-0042 does not exist" in result.output


class TestShowAndSearch:
    @pytest.fixture
    def tickets(self, atd):
        atd("create", "epic", "-t", "Auth")
        atd("create", "issue", "-t", "Login page", "--epic", "EP-0001", "--tag", "ui", "-p", "high")
        atd("create", "issue", "-t", "Password reset", "--epic", "EP-0001")
        atd("create", "task", "-t", "Form", "--issue", "ISS-0001")

    def test_show_json(self, atd, tickets):
        result = atd("--json", "show", "ISS-0001")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["title"] == "Login page"
        assert data["_parent"] == "EP-0001"
        assert data["_children"] == ["TSK-0001"]
        assert "ready_for_engineering" in data["_available_transitions"]

    def test_show_text(self, atd, tickets):
        result = atd("show", "EP-0001")
        assert result.exit_code == 0
        assert "Children (2)" in result.output

    def test_show_unknown(self, atd):
        result = atd("show", "ISS-0404")
        assert result.exit_code == 1
        assert "Error: item not found" in result.output

    def test_search_text(self, atd, tickets):
        result = atd("search", "password")
        assert result.exit_code == 0
        assert "ISS-0002" in result.output
        assert "1 result(s)" in result.output

    def test_search_filters(self, atd, tickets):
        result = atd("--json", "search", "--kind", "issue", "--tag", "ui")
        assert [t["id"] for t in json.loads(result.output)] == ["ISS-0001"]

        result = atd("--json", "search", "--priority", "high", "--kind", "task")
        assert json.loads(result.output) == []

    def test_search_bad_duration(self, atd, tickets):
        result = atd("search", "--updated-within", "soon")
        assert result.exit_code == 2


class TestResolve:
    def test_resolve(self, atd):
        atd("create", "issue", "-t", "Login")
        result = atd("resolve", "ISS-0001", "ready_for_engineering", "--reason", "Scoped")
        assert result.exit_code == 0, result.output
        assert "ISS-0001: planning -> ready_for_engineering" in result.output

        data = json.loads(atd("--json", "show", "ISS-0001").output)
        assert data["state"] == "ready_for_engineering"
        assert data["status"] == "active"
        assert data["state_metadata"]["transitioned_by"] == "tester"
        assert data["state_metadata"]["transition_reason"] == "Scoped"

    def test_illegal_transition(self, atd):
        atd("create", "issue", "-t", "Login")
        result = atd("resolve", "ISS-0001", "done")
        assert result.exit_code == 1
        assert "not allowed" in result.output

    def test_unknown_state(self, atd):
        atd("create", "issue", "-t", "Login")
        assert atd("resolve", "ISS-0001", "shipped").exit_code == 2


class TestMigrate:
    @pytest.fixture
    def legacy(self, project):
        path = os.path.join(project, "tasks", "issues", "ISS-0001-legacy.md")
        with open(path, "w") as f:
            f.write(
                "---\n"
                "issue_id: ISS-0001\n"
                "title: Legacy\n"
                "status: completed\n"
                "priority: medium\n"
                "created_date: 2026-03-01T12:00:00Z\n"
                "updated_date: 2026-03-01T12:00:00Z\n"
                "---\n"
            )
        return path

    def test_dry_run(self, atd, legacy):
        with open(legacy) as f:
            before = f.read()
        result = atd("migrate", "--dry-run")
        assert result.exit_code == 0, result.output
        assert "1 need migration" in result.output
        assert "Would migrate 1 item(s)" in result.output
        with open(legacy) as f:
            assert f.read() == before

    def test_migrate(self, atd, legacy):
        result = atd("migrate")
        assert result.exit_code == 0, result.output
        assert "Migrated 1 item(s), 0 failed" in result.output
        data = json.loads(atd("--json", "show", "ISS-0001").output)
        assert data["state"] == "done"
        # relocated with its completed status
        assert os.sep + "completed" + os.sep in data["file_path"]

        assert "Migrated 0 item(s)" in atd("migrate").output

    def test_rollback_plan(self, atd, legacy):
        result = atd("--json", "migrate", "--dry-run", "--rollback-plan")
        data = json.loads(result.output)
        assert data["rollback_plan"][0]["action"] == "remove_state_fields"


class TestSync:
    def test_sync_not_configured(self, atd):
        result = atd("sync", "push")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_sync_status_not_configured(self, atd):
        result = atd("sync", "status")
        assert result.exit_code == 0, result.output
        assert "Enabled:    no" in result.output
        assert "Last sync:  never" in result.output

    def test_sync_status_without_token(self, atd, project, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        config_path = os.path.join(project, ".ai-trackdown", "config.yaml")
        with open(config_path) as f:
            data = yaml.safe_load(f)
        data["github_sync"] = {"enabled": True, "repository": "acme/widgets"}
        with open(config_path, "w") as f:
            yaml.safe_dump(data, f)

        result = atd("--json", "sync", "status")
        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["enabled"] is True
        assert report["sync_health"] == "failed"
        assert atd("sync", "push").exit_code == 1
