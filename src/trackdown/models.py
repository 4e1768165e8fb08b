"""Core data models for trackdown tickets.

Tickets are stored as Markdown documents with a YAML front-matter block.
The ticket kind is an explicit discriminant (``Ticket.kind``); the
front-matter still names the id after the kind (``epic_id``, ``issue_id``,
``task_id``, ``pr_id``, ``project_id``) for compatibility with existing
document trees.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from trackdown.errors import ParseError


# --- Legacy status constants ---

class ItemStatus:
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"

    _VALID = {PLANNING, ACTIVE, COMPLETED, ARCHIVED}

    @classmethod
    def is_valid(cls, s: str) -> bool:
        return s in cls._VALID


# --- Unified state constants ---

class UnifiedState:
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    READY_FOR_ENGINEERING = "ready_for_engineering"
    READY_FOR_QA = "ready_for_qa"
    READY_FOR_DEPLOYMENT = "ready_for_deployment"
    WONT_DO = "won_t_do"
    DONE = "done"

    _RESOLUTION = {READY_FOR_ENGINEERING, READY_FOR_QA, READY_FOR_DEPLOYMENT, WONT_DO, DONE}
    _VALID = {PLANNING, ACTIVE, COMPLETED, ARCHIVED} | _RESOLUTION

    ALL = (
        PLANNING, ACTIVE, COMPLETED, ARCHIVED, READY_FOR_ENGINEERING,
        READY_FOR_QA, READY_FOR_DEPLOYMENT, WONT_DO, DONE,
    )

    @classmethod
    def is_valid(cls, s: str) -> bool:
        return s in cls._VALID

    @classmethod
    def is_resolution_state(cls, s: str) -> bool:
        return s in cls._RESOLUTION


class Priority:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    _VALID = {LOW, MEDIUM, HIGH, CRITICAL}

    @classmethod
    def is_valid(cls, p: str) -> bool:
        return p in cls._VALID


class SyncStatus:
    LOCAL = "local"
    SYNCED = "synced"
    CONFLICT = "conflict"

    _VALID = {LOCAL, SYNCED, CONFLICT}

    @classmethod
    def is_valid(cls, s: str) -> bool:
        return s in cls._VALID


class PRStatus:
    DRAFT = "draft"
    OPEN = "open"
    REVIEW = "review"
    APPROVED = "approved"
    MERGED = "merged"
    CLOSED = "closed"

    _VALID = {DRAFT, OPEN, REVIEW, APPROVED, MERGED, CLOSED}

    @classmethod
    def is_valid(cls, s: str) -> bool:
        return s in cls._VALID


class TicketKind:
    PROJECT = "project"
    EPIC = "epic"
    ISSUE = "issue"
    TASK = "task"
    PR = "pr"

    # Scan order for the index; parents before children.
    ALL = (PROJECT, EPIC, ISSUE, TASK, PR)

    ID_FIELD = {
        PROJECT: "project_id",
        EPIC: "epic_id",
        ISSUE: "issue_id",
        TASK: "task_id",
        PR: "pr_id",
    }

    @classmethod
    def is_valid(cls, k: str) -> bool:
        return k in cls.ID_FIELD


# --- Helper: RFC3339 timestamp handling ---

def parse_timestamp(s: Any) -> datetime | None:
    """Parse an RFC3339 timestamp (or date/datetime value) to an aware datetime."""
    if s is None or s == "":
        return None
    if isinstance(s, datetime):
        return s if s.tzinfo else s.replace(tzinfo=timezone.utc)
    if isinstance(s, date):
        return datetime(s.year, s.month, s.day, tzinfo=timezone.utc)
    s = str(s).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        dt = None
    if dt is None:
        for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%d %H:%M:%S"):
            try:
                dt = datetime.strptime(s, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        raise ValueError(f"Cannot parse timestamp: {s}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: datetime | None) -> str | None:
    """Format datetime to RFC3339 string with a Z suffix for UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    s = dt.astimezone(timezone.utc).isoformat()
    if s.endswith("+00:00"):
        s = s[:-6] + "Z"
    return s


def now_utc() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def _as_list(value: Any, key: str, path: str) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    raise ParseError(f"{key} must be a list", path)


def _as_int(value: Any, key: str, path: str) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ParseError(f"{key} must be an integer (got {value!r})", path) from None


def _as_timestamp(value: Any, key: str, path: str) -> datetime | None:
    try:
        return parse_timestamp(value)
    except ValueError:
        raise ParseError(f"{key} is not a valid timestamp: {value!r}", path) from None


# --- Dataclasses ---

@dataclass
class StateMetadata:
    """Provenance of the most recent state transition."""

    transitioned_at: datetime = field(default_factory=now_utc)
    transitioned_by: str = ""
    previous_state: Optional[str] = None
    automation_eligible: bool = False
    automation_source: Optional[str] = None
    transition_reason: Optional[str] = None
    reviewer: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "transitioned_at": format_timestamp(self.transitioned_at),
            "transitioned_by": self.transitioned_by,
        }
        if self.previous_state:
            d["previous_state"] = self.previous_state
        d["automation_eligible"] = self.automation_eligible
        if self.automation_source:
            d["automation_source"] = self.automation_source
        if self.transition_reason:
            d["transition_reason"] = self.transition_reason
        if self.reviewer:
            d["reviewer"] = self.reviewer
        return d

    @classmethod
    def from_dict(cls, d: dict, path: str = "") -> StateMetadata:
        if not isinstance(d, dict):
            raise ParseError("state_metadata must be a mapping", path)
        return cls(
            transitioned_at=_as_timestamp(d.get("transitioned_at"), "state_metadata.transitioned_at", path)
            or now_utc(),
            transitioned_by=str(d.get("transitioned_by") or ""),
            previous_state=d.get("previous_state") or None,
            automation_eligible=bool(d.get("automation_eligible", False)),
            automation_source=d.get("automation_source") or None,
            transition_reason=d.get("transition_reason") or None,
            reviewer=d.get("reviewer") or None,
        )


# Keys handled explicitly; anything else in the front matter lands in Ticket.extra.
_KNOWN_KEYS = {
    "project_id", "epic_id", "issue_id", "task_id", "pr_id",
    "title", "description", "status", "state", "state_metadata", "priority",
    "assignee", "created_date", "updated_date", "estimated_tokens",
    "actual_tokens", "ai_context", "sync_status", "tags", "dependencies",
    "blocked_by", "blocks", "milestone", "pr_status", "github_id",
    "github_number", "github_url", "github_updated_at",
}


@dataclass
class Ticket:
    """A trackable work item of any kind.

    ``epic_id`` and ``issue_id`` are *parent* references; a ticket's own
    identifier is always ``id``.
    """

    kind: str = TicketKind.ISSUE
    id: str = ""
    title: str = ""
    description: str = ""

    # Workflow
    status: str = ItemStatus.PLANNING
    state: Optional[str] = None
    state_metadata: Optional[StateMetadata] = None
    priority: str = Priority.MEDIUM
    assignee: str = ""

    # Timestamps
    created_date: datetime = field(default_factory=now_utc)
    updated_date: datetime = field(default_factory=now_utc)

    # AI bookkeeping
    estimated_tokens: int = 0
    actual_tokens: int = 0
    ai_context: list[str] = field(default_factory=list)
    sync_status: str = SyncStatus.LOCAL

    tags: list[str] = field(default_factory=list)

    # Dependency graph (untyped, may cycle)
    dependencies: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)

    # Hierarchy
    epic_id: str = ""
    issue_id: str = ""

    milestone: str = ""
    pr_status: str = ""

    # Remote link
    github_id: Optional[int] = None
    github_number: Optional[int] = None
    github_url: str = ""
    github_updated_at: Optional[datetime] = None

    # Document
    content: str = ""
    file_path: str = ""
    revision: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def is_linked(self) -> bool:
        return self.github_number is not None

    def validate(self) -> str | None:
        """Validate ticket fields. Returns error message or None if valid."""
        if not TicketKind.is_valid(self.kind):
            return f"invalid kind: {self.kind}"
        if not self.id:
            return "id is required"
        if not self.title:
            return "title is required"
        if not ItemStatus.is_valid(self.status):
            return f"invalid status: {self.status}"
        if self.state is not None and not UnifiedState.is_valid(self.state):
            return f"invalid state: {self.state}"
        if self.state_metadata is not None and self.state is None:
            return "state_metadata requires state"
        if not Priority.is_valid(self.priority):
            return f"invalid priority: {self.priority}"
        if not SyncStatus.is_valid(self.sync_status):
            return f"invalid sync_status: {self.sync_status}"
        if self.pr_status and not PRStatus.is_valid(self.pr_status):
            return f"invalid pr_status: {self.pr_status}"
        if self.estimated_tokens < 0 or self.actual_tokens < 0:
            return "token counts cannot be negative"
        return None

    def to_frontmatter(self) -> dict[str, Any]:
        """Serialize to the front-matter mapping, omitting empty optional fields."""
        d: dict[str, Any] = {TicketKind.ID_FIELD[self.kind]: self.id}

        if self.kind in (TicketKind.ISSUE, TicketKind.TASK, TicketKind.PR):
            d["epic_id"] = self.epic_id
        if self.kind in (TicketKind.TASK, TicketKind.PR):
            d["issue_id"] = self.issue_id

        d["title"] = self.title
        d["description"] = self.description
        d["status"] = self.status
        if self.state is not None:
            d["state"] = self.state
        if self.state_metadata is not None:
            d["state_metadata"] = self.state_metadata.to_dict()
        if self.kind == TicketKind.PR and self.pr_status:
            d["pr_status"] = self.pr_status
        d["priority"] = self.priority
        d["assignee"] = self.assignee
        d["created_date"] = format_timestamp(self.created_date)
        d["updated_date"] = format_timestamp(self.updated_date)
        d["estimated_tokens"] = self.estimated_tokens
        d["actual_tokens"] = self.actual_tokens
        d["ai_context"] = list(self.ai_context)
        d["sync_status"] = self.sync_status

        if self.tags:
            d["tags"] = list(self.tags)
        if self.dependencies:
            d["dependencies"] = list(self.dependencies)
        if self.blocked_by:
            d["blocked_by"] = list(self.blocked_by)
        if self.blocks:
            d["blocks"] = list(self.blocks)
        if self.milestone:
            d["milestone"] = self.milestone

        if self.github_id is not None:
            d["github_id"] = self.github_id
        if self.github_number is not None:
            d["github_number"] = self.github_number
        if self.github_url:
            d["github_url"] = self.github_url
        if self.github_updated_at:
            d["github_updated_at"] = format_timestamp(self.github_updated_at)

        for key, value in self.extra.items():
            d.setdefault(key, value)
        return d

    @classmethod
    def from_frontmatter(cls, kind: str, data: dict[str, Any], content: str = "",
                         file_path: str = "") -> Ticket:
        """Build a ticket from a parsed front-matter mapping.

        Raises ParseError when the document cannot represent a valid ticket.
        """
        if not TicketKind.is_valid(kind):
            raise ParseError(f"unknown ticket kind: {kind}", file_path)
        id_field = TicketKind.ID_FIELD[kind]
        ticket_id = data.get(id_field)
        if not ticket_id or not isinstance(ticket_id, str):
            raise ParseError(f"missing {id_field}", file_path)

        t = cls(kind=kind, id=ticket_id, content=content, file_path=file_path)
        t.title = str(data.get("title") or "")
        t.description = str(data.get("description") or "")
        t.status = str(data.get("status") or ItemStatus.PLANNING)

        state = data.get("state")
        t.state = str(state) if state else None
        md = data.get("state_metadata")
        t.state_metadata = StateMetadata.from_dict(md, file_path) if md else None

        t.priority = str(data.get("priority") or Priority.MEDIUM)
        t.assignee = str(data.get("assignee") or "")
        t.created_date = _as_timestamp(data.get("created_date"), "created_date", file_path) or now_utc()
        t.updated_date = _as_timestamp(data.get("updated_date"), "updated_date", file_path) or t.created_date
        t.estimated_tokens = _as_int(data.get("estimated_tokens"), "estimated_tokens", file_path)
        t.actual_tokens = _as_int(data.get("actual_tokens"), "actual_tokens", file_path)
        t.ai_context = _as_list(data.get("ai_context"), "ai_context", file_path)
        t.sync_status = str(data.get("sync_status") or SyncStatus.LOCAL)
        t.tags = _as_list(data.get("tags"), "tags", file_path)
        t.dependencies = _as_list(data.get("dependencies"), "dependencies", file_path)
        t.blocked_by = _as_list(data.get("blocked_by"), "blocked_by", file_path)
        t.blocks = _as_list(data.get("blocks"), "blocks", file_path)

        if kind != TicketKind.EPIC:
            t.epic_id = str(data.get("epic_id") or "")
        if kind in (TicketKind.TASK, TicketKind.PR):
            t.issue_id = str(data.get("issue_id") or "")

        t.milestone = str(data.get("milestone") or "")
        t.pr_status = str(data.get("pr_status") or "")

        gh_id = data.get("github_id")
        t.github_id = _as_int(gh_id, "github_id", file_path) if gh_id is not None else None
        gh_number = data.get("github_number")
        t.github_number = _as_int(gh_number, "github_number", file_path) if gh_number is not None else None
        t.github_url = str(data.get("github_url") or "")
        t.github_updated_at = _as_timestamp(data.get("github_updated_at"), "github_updated_at", file_path)

        t.extra = {k: v for k, v in data.items() if k not in _KNOWN_KEYS}

        err = t.validate()
        if err:
            raise ParseError(err, file_path)
        return t


@dataclass
class EpicHierarchy:
    epic: Ticket
    issues: list[Ticket] = field(default_factory=list)
    tasks: list[Ticket] = field(default_factory=list)
    prs: list[Ticket] = field(default_factory=list)


@dataclass
class IssueHierarchy:
    issue: Ticket
    tasks: list[Ticket] = field(default_factory=list)
    prs: list[Ticket] = field(default_factory=list)
    epic: Optional[Ticket] = None


@dataclass
class TaskHierarchy:
    task: Ticket
    issue: Optional[Ticket] = None
    epic: Optional[Ticket] = None


@dataclass
class PRHierarchy:
    pr: Ticket
    issue: Optional[Ticket] = None
    epic: Optional[Ticket] = None


@dataclass
class RelatedItems:
    siblings: list[Ticket] = field(default_factory=list)
    dependencies: list[Ticket] = field(default_factory=list)
    dependents: list[Ticket] = field(default_factory=list)
    blocked_by: list[Ticket] = field(default_factory=list)
    blocks: list[Ticket] = field(default_factory=list)


@dataclass
class SearchFilters:
    """Filters for index searches. Unset filters are not applied."""
    status: str | list[str] | None = None
    state: str | list[str] | None = None
    priority: str | list[str] | None = None
    assignee: str | list[str] | None = None
    tags: str | list[str] | None = None
    kind: str | list[str] | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    updated_after: datetime | None = None
    updated_before: datetime | None = None
    text: str = ""
    ai_context_text: str = ""


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class IndexStats:
    projects: int = 0
    epics: int = 0
    issues: int = 0
    tasks: int = 0
    prs: int = 0
    parse_failures: int = 0
    last_rebuild: datetime | None = None
