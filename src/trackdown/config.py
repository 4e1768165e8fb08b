"""Configuration management for trackdown.

Handles:
- .ai-trackdown/config.yaml parsing (project layout, naming, sync settings)
- Environment variable overrides
- Project root discovery
- Absolute path resolution for each ticket kind
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from typing import Any

import yaml

from trackdown.errors import ConfigurationError
from trackdown.models import TicketKind


CONFIG_DIR = ".ai-trackdown"
CONFIG_YAML = "config.yaml"
COUNTERS_JSON = "counters.json"
SYNC_METADATA_JSON = "sync-metadata.json"
DEFAULT_TASKS_DIR = "tasks"


@dataclass
class Structure:
    epics_dir: str = "epics"
    issues_dir: str = "issues"
    tasks_dir: str = "tasks"
    prs_dir: str = "prs"
    projects_dir: str = "projects"
    templates_dir: str = "templates"


@dataclass
class NamingConventions:
    project_prefix: str = "PRJ"
    epic_prefix: str = "EP"
    issue_prefix: str = "ISS"
    task_prefix: str = "TSK"
    pr_prefix: str = "PR"
    file_extension: str = ".md"

    def prefix_for(self, kind: str) -> str:
        return {
            TicketKind.PROJECT: self.project_prefix,
            TicketKind.EPIC: self.epic_prefix,
            TicketKind.ISSUE: self.issue_prefix,
            TicketKind.TASK: self.task_prefix,
            TicketKind.PR: self.pr_prefix,
        }[kind]

    def prefixes(self) -> dict[str, str]:
        return {kind: self.prefix_for(kind) for kind in TicketKind.ALL}


class ConflictPolicy:
    MOST_RECENT = "most_recent"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MANUAL = "manual"

    _VALID = {MOST_RECENT, LOCAL_WINS, REMOTE_WINS, MANUAL}

    @classmethod
    def is_valid(cls, p: str) -> bool:
        return p in cls._VALID


@dataclass
class SyncConfig:
    """GitHub sync settings (``github_sync`` section of config.yaml)."""
    enabled: bool = False
    repository: str = ""
    token: str = ""
    api_url: str = "https://api.github.com"
    conflict_resolution: str = ConflictPolicy.MOST_RECENT
    sync_labels: bool = True
    sync_assignees: bool = True
    sync_milestones: bool = False
    batch_size: int = 100
    rate_limit_delay: int = 100  # milliseconds
    degraded_threshold: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SyncConfig:
        cfg = cls()
        if not data:
            return cfg
        cfg.enabled = bool(data.get("enabled", False))
        cfg.repository = data.get("repository", "") or ""
        cfg.token = data.get("token", "") or ""
        cfg.api_url = data.get("api_url", cfg.api_url) or cfg.api_url
        cfg.conflict_resolution = data.get("conflict_resolution", ConflictPolicy.MOST_RECENT)
        cfg.sync_labels = bool(data.get("sync_labels", True))
        cfg.sync_assignees = bool(data.get("sync_assignees", True))
        cfg.sync_milestones = bool(data.get("sync_milestones", False))
        cfg.batch_size = min(int(data.get("batch_size", 100) or 100), 100)
        cfg.rate_limit_delay = int(data.get("rate_limit_delay", 100) or 0)
        cfg.degraded_threshold = int(data.get("degraded_threshold", 100) or 0)
        if not ConflictPolicy.is_valid(cfg.conflict_resolution):
            raise ConfigurationError(f"invalid conflict_resolution: {cfg.conflict_resolution}")
        return cfg

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "enabled": self.enabled,
            "repository": self.repository,
            "conflict_resolution": self.conflict_resolution,
            "sync_labels": self.sync_labels,
            "sync_assignees": self.sync_assignees,
            "sync_milestones": self.sync_milestones,
            "batch_size": self.batch_size,
            "rate_limit_delay": self.rate_limit_delay,
        }
        # Tokens belong in GITHUB_TOKEN, only persisted if set explicitly.
        if self.token:
            d["token"] = self.token
        if self.api_url != "https://api.github.com":
            d["api_url"] = self.api_url
        if self.degraded_threshold != 100:
            d["degraded_threshold"] = self.degraded_threshold
        return d


@dataclass
class ProjectConfig:
    """Project configuration from .ai-trackdown/config.yaml."""
    name: str = ""
    version: str = "1.0.0"
    description: str = ""
    tasks_directory: str = DEFAULT_TASKS_DIR
    structure: Structure = field(default_factory=Structure)
    naming_conventions: NamingConventions = field(default_factory=NamingConventions)
    default_assignee: str = "unassigned"
    github_sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def load(cls, project_root: str) -> ProjectConfig:
        """Load config.yaml from the project root, applying env overrides."""
        config_path = os.path.join(project_root, CONFIG_DIR, CONFIG_YAML)
        if not os.path.exists(config_path):
            raise ConfigurationError(
                f"trackdown configuration not found at {config_path}. "
                f"Run 'atd init' to create a new project."
            )
        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")

        for required in ("name", "structure", "naming_conventions"):
            if not data.get(required):
                raise ConfigurationError(f"Configuration missing required field: {required}")

        cfg = cls()
        cfg.name = data["name"]
        cfg.version = str(data.get("version", "1.0.0"))
        cfg.description = data.get("description", "") or ""
        cfg.tasks_directory = data.get("tasks_directory", DEFAULT_TASKS_DIR) or DEFAULT_TASKS_DIR
        cfg.structure = _merge_dataclass(Structure(), data["structure"])
        cfg.naming_conventions = _merge_dataclass(NamingConventions(), data["naming_conventions"])
        cfg.default_assignee = data.get("default_assignee", "unassigned") or "unassigned"
        cfg.github_sync = SyncConfig.from_dict(data.get("github_sync"))

        # Environment variable overrides
        if os.environ.get("ATD_DEFAULT_ASSIGNEE"):
            cfg.default_assignee = os.environ["ATD_DEFAULT_ASSIGNEE"]
        if os.environ.get("ATD_TASKS_DIR"):
            cfg.tasks_directory = os.environ["ATD_TASKS_DIR"]
        if not cfg.github_sync.token and os.environ.get("GITHUB_TOKEN"):
            cfg.github_sync.token = os.environ["GITHUB_TOKEN"]

        return cfg

    def save(self, project_root: str) -> None:
        """Save config to config.yaml."""
        config_dir = os.path.join(project_root, CONFIG_DIR)
        os.makedirs(config_dir, exist_ok=True)
        data: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
        }
        if self.description:
            data["description"] = self.description
        data["tasks_directory"] = self.tasks_directory
        data["structure"] = vars(self.structure).copy()
        data["naming_conventions"] = vars(self.naming_conventions).copy()
        data["default_assignee"] = self.default_assignee
        if self.github_sync.enabled or self.github_sync.repository:
            data["github_sync"] = self.github_sync.to_dict()

        with open(os.path.join(config_dir, CONFIG_YAML), "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def _merge_dataclass(target: Any, data: Any) -> Any:
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a mapping, got {type(data).__name__}")
    for key, value in data.items():
        if hasattr(target, key) and value:
            setattr(target, key, str(value))
    return target


@dataclass
class ProjectPaths:
    """Absolute paths for a project."""
    project_root: str
    config_dir: str
    tasks_root: str
    epics_dir: str
    issues_dir: str
    tasks_dir: str
    prs_dir: str
    projects_dir: str
    templates_dir: str

    @property
    def counters_path(self) -> str:
        return os.path.join(self.config_dir, COUNTERS_JSON)

    @property
    def sync_metadata_path(self) -> str:
        return os.path.join(self.config_dir, SYNC_METADATA_JSON)

    def type_directory(self, kind: str) -> str:
        return {
            TicketKind.PROJECT: self.projects_dir,
            TicketKind.EPIC: self.epics_dir,
            TicketKind.ISSUE: self.issues_dir,
            TicketKind.TASK: self.tasks_dir,
            TicketKind.PR: self.prs_dir,
        }[kind]

    def required_directories(self) -> list[str]:
        return [
            self.config_dir, self.tasks_root, self.projects_dir, self.epics_dir,
            self.issues_dir, self.tasks_dir, self.prs_dir, self.templates_dir,
        ]


def resolve_paths(project_root: str, config: ProjectConfig) -> ProjectPaths:
    """Resolve every directory of the unified layout to an absolute path."""
    root = os.path.abspath(project_root)
    tasks_root = os.path.join(root, config.tasks_directory)
    s = config.structure
    return ProjectPaths(
        project_root=root,
        config_dir=os.path.join(root, CONFIG_DIR),
        tasks_root=tasks_root,
        epics_dir=os.path.join(tasks_root, s.epics_dir),
        issues_dir=os.path.join(tasks_root, s.issues_dir),
        tasks_dir=os.path.join(tasks_root, s.tasks_dir),
        prs_dir=os.path.join(tasks_root, s.prs_dir),
        projects_dir=os.path.join(tasks_root, s.projects_dir),
        templates_dir=os.path.join(tasks_root, s.templates_dir),
    )


def find_project_root(start: str | None = None) -> str | None:
    """Walk up from start directory to find a directory holding .ai-trackdown/config.yaml.

    Returns the absolute project root, or None if not found.
    """
    if start is None:
        start = os.getcwd()
    current = os.path.abspath(start)
    while True:
        if os.path.isfile(os.path.join(current, CONFIG_DIR, CONFIG_YAML)):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


def get_actor() -> str:
    """Get the actor name recorded in transition metadata."""
    if os.environ.get("ATD_ACTOR"):
        return os.environ["ATD_ACTOR"]
    try:
        result = subprocess.run(
            ["git", "config", "user.email"],
            capture_output=True, text=True, timeout=5
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return os.environ.get("USER", "system")
