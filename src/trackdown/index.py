"""Relationship index over the document set.

The index is rebuilt by a full scan of every kind directory. There is no file
watching and no expiry: callers invalidate it after writing, and the next
query rebuilds. A document that fails to parse is left out, logged, and
recorded in ``parse_failures``; it never aborts the scan.

Children lists are sorted by ``(created_date, id)`` so query results do not
depend on the order the filesystem returns entries in.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, Optional

from trackdown.errors import ParseError, PersistenceError
from trackdown.models import (
    EpicHierarchy,
    IndexStats,
    IssueHierarchy,
    ItemStatus,
    PRHierarchy,
    RelatedItems,
    SearchFilters,
    TaskHierarchy,
    Ticket,
    TicketKind,
    UnifiedState,
    ValidationResult,
    now_utc,
)
from trackdown.state import get_effective_state
from trackdown.store import DocumentStore

logger = logging.getLogger(__name__)

_KIND_ORDER = {kind: i for i, kind in enumerate(TicketKind.ALL)}

RECENT_ACTIVITY_DAYS = 7
RECENT_ACTIVITY_LIMIT = 10


def _child_key(t: Ticket):
    return (t.created_date, t.id)


def _as_set(value: str | list[str] | None) -> set[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return {value}
    return set(value)


@dataclass
class ProjectOverview:
    total_items: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)
    by_state: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)
    completion_rate: int = 0
    recent_activity: list[Ticket] = field(default_factory=list)


class RelationshipIndex:
    """In-memory view of the ticket hierarchy, built from a DocumentStore."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.parse_failures: list[tuple[str, str]] = []
        self.last_rebuild = None
        self._built = False
        self._items: dict[str, Ticket] = {}
        self._epic_issues: dict[str, list[str]] = {}
        self._epic_tasks: dict[str, list[str]] = {}
        self._epic_prs: dict[str, list[str]] = {}
        self._issue_tasks: dict[str, list[str]] = {}
        self._issue_prs: dict[str, list[str]] = {}
        self._dependents: dict[str, set[str]] = {}
        self._blocked_by: dict[str, set[str]] = {}
        self._blocks: dict[str, set[str]] = {}

    # --- Building ---

    def invalidate(self) -> None:
        """Mark the index stale; the next query rebuilds it."""
        self._built = False

    def _ensure(self) -> None:
        if not self._built:
            self.rebuild()

    def rebuild(self) -> None:
        """Scan every document and rebuild all maps."""
        items: dict[str, Ticket] = {}
        failures: list[tuple[str, str]] = []

        for kind in TicketKind.ALL:
            for path in self.store.iter_documents(kind):
                try:
                    ticket = self.store.read(path, kind)
                except (ParseError, PersistenceError) as e:
                    logger.warning("Cannot index %s: %s", path, e)
                    failures.append((path, getattr(e, "reason", str(e))))
                    continue
                if ticket.id in items:
                    msg = f"duplicate id {ticket.id} (already defined in {items[ticket.id].file_path})"
                    logger.warning("Cannot index %s: %s", path, msg)
                    failures.append((path, msg))
                    continue
                items[ticket.id] = ticket

        self._items = items
        self.parse_failures = failures
        self._build_maps()
        self.last_rebuild = now_utc()
        self._built = True
        logger.debug("Indexed %d items (%d failures)", len(items), len(failures))

    def _build_maps(self) -> None:
        epic_issues: dict[str, list[Ticket]] = defaultdict(list)
        epic_tasks: dict[str, list[Ticket]] = defaultdict(list)
        epic_prs: dict[str, list[Ticket]] = defaultdict(list)
        issue_tasks: dict[str, list[Ticket]] = defaultdict(list)
        issue_prs: dict[str, list[Ticket]] = defaultdict(list)
        dependents: dict[str, set[str]] = defaultdict(set)
        blocked_by: dict[str, set[str]] = defaultdict(set)
        blocks: dict[str, set[str]] = defaultdict(set)

        for t in self._items.values():
            if t.kind == TicketKind.ISSUE and t.epic_id:
                epic_issues[t.epic_id].append(t)
            elif t.kind in (TicketKind.TASK, TicketKind.PR):
                by_issue = issue_tasks if t.kind == TicketKind.TASK else issue_prs
                by_epic = epic_tasks if t.kind == TicketKind.TASK else epic_prs
                if t.issue_id:
                    by_issue[t.issue_id].append(t)
                epics = set()
                if t.epic_id:
                    epics.add(t.epic_id)
                parent = self._items.get(t.issue_id) if t.issue_id else None
                if parent is not None and parent.epic_id:
                    epics.add(parent.epic_id)
                for epic_id in epics:
                    by_epic[epic_id].append(t)

            for dep in t.dependencies:
                dependents[dep].add(t.id)
            for other in t.blocked_by:
                blocked_by[t.id].add(other)
                blocks[other].add(t.id)
            for other in t.blocks:
                blocks[t.id].add(other)
                blocked_by[other].add(t.id)

        def ids(m: dict[str, list[Ticket]]) -> dict[str, list[str]]:
            return {k: [t.id for t in sorted(v, key=_child_key)] for k, v in m.items()}

        self._epic_issues = ids(epic_issues)
        self._epic_tasks = ids(epic_tasks)
        self._epic_prs = ids(epic_prs)
        self._issue_tasks = ids(issue_tasks)
        self._issue_prs = ids(issue_prs)
        self._dependents = dict(dependents)
        self._blocked_by = dict(blocked_by)
        self._blocks = dict(blocks)

    # --- Lookups ---

    def _resolve(self, ids: Iterable[str]) -> list[Ticket]:
        return [self._items[i] for i in ids if i in self._items]

    def _sorted(self, ids: Iterable[str]) -> list[Ticket]:
        return sorted(self._resolve(ids), key=_child_key)

    def get(self, item_id: str) -> Ticket | None:
        self._ensure()
        return self._items.get(item_id)

    def all_items(self, kind: str | None = None) -> list[Ticket]:
        self._ensure()
        items = [t for t in self._items.values() if kind is None or t.kind == kind]
        return sorted(items, key=lambda t: (_KIND_ORDER[t.kind], t.created_date, t.id))

    def _get_kind(self, item_id: str, kind: str) -> Ticket | None:
        t = self.get(item_id)
        return t if t is not None and t.kind == kind else None

    def get_epic_hierarchy(self, epic_id: str) -> EpicHierarchy | None:
        epic = self._get_kind(epic_id, TicketKind.EPIC)
        if epic is None:
            return None
        return EpicHierarchy(
            epic=epic,
            issues=self._resolve(self._epic_issues.get(epic_id, [])),
            tasks=self._resolve(self._epic_tasks.get(epic_id, [])),
            prs=self._resolve(self._epic_prs.get(epic_id, [])),
        )

    def get_issue_hierarchy(self, issue_id: str) -> IssueHierarchy | None:
        issue = self._get_kind(issue_id, TicketKind.ISSUE)
        if issue is None:
            return None
        return IssueHierarchy(
            issue=issue,
            tasks=self._resolve(self._issue_tasks.get(issue_id, [])),
            prs=self._resolve(self._issue_prs.get(issue_id, [])),
            epic=self._get_kind(issue.epic_id, TicketKind.EPIC) if issue.epic_id else None,
        )

    def _issue_and_epic(self, t: Ticket) -> tuple[Optional[Ticket], Optional[Ticket]]:
        issue = self._get_kind(t.issue_id, TicketKind.ISSUE) if t.issue_id else None
        epic_id = t.epic_id or (issue.epic_id if issue is not None else "")
        epic = self._get_kind(epic_id, TicketKind.EPIC) if epic_id else None
        return issue, epic

    def get_task_hierarchy(self, task_id: str) -> TaskHierarchy | None:
        task = self._get_kind(task_id, TicketKind.TASK)
        if task is None:
            return None
        issue, epic = self._issue_and_epic(task)
        return TaskHierarchy(task=task, issue=issue, epic=epic)

    def get_pr_hierarchy(self, pr_id: str) -> PRHierarchy | None:
        pr = self._get_kind(pr_id, TicketKind.PR)
        if pr is None:
            return None
        issue, epic = self._issue_and_epic(pr)
        return PRHierarchy(pr=pr, issue=issue, epic=epic)

    def get_children(self, item_id: str) -> list[Ticket]:
        t = self.get(item_id)
        if t is None:
            return []
        if t.kind == TicketKind.EPIC:
            return self._resolve(self._epic_issues.get(item_id, []))
        if t.kind == TicketKind.ISSUE:
            return self._sorted(self._issue_tasks.get(item_id, []) + self._issue_prs.get(item_id, []))
        return []

    def get_parent(self, item_id: str) -> Ticket | None:
        t = self.get(item_id)
        if t is None:
            return None
        if t.kind == TicketKind.ISSUE:
            return self._items.get(t.epic_id) if t.epic_id else None
        if t.kind in (TicketKind.TASK, TicketKind.PR):
            issue, epic = self._issue_and_epic(t)
            return issue if issue is not None else epic
        return None

    # --- Search ---

    def search(self, filters: SearchFilters) -> list[Ticket]:
        """Tickets matching every filter that is set."""
        return [t for t in self.all_items() if _matches(t, filters)]

    def get_related_items(self, item_id: str) -> RelatedItems | None:
        """Neighbours of one ticket, or None if it is unknown.

        ``dependents`` reverses ``dependencies`` only. Tickets that name this
        one in ``blocked_by`` appear under ``blocks``, not ``dependents``.
        """
        t = self.get(item_id)
        if t is None:
            return None
        parent = self.get_parent(item_id)
        siblings = []
        if parent is not None:
            siblings = [c for c in self.get_children(parent.id) if c.id != item_id and c.kind == t.kind]
        return RelatedItems(
            siblings=siblings,
            dependencies=self._resolve(t.dependencies),
            dependents=self._sorted(self._dependents.get(item_id, ())),
            blocked_by=self._sorted(self._blocked_by.get(item_id, ())),
            blocks=self._sorted(self._blocks.get(item_id, ())),
        )

    # --- Integrity ---

    def _dependency_edges(self) -> dict[str, set[str]]:
        """Edges from each ticket to the tickets it waits on."""
        edges: dict[str, set[str]] = defaultdict(set)
        for t in self._items.values():
            edges[t.id].update(d for d in t.dependencies if d in self._items)
            edges[t.id].update(b for b in self._blocked_by.get(t.id, ()) if b in self._items)
        return edges

    def find_cycles(self) -> list[list[str]]:
        """Dependency cycles, each as a list of ids starting at its smallest id."""
        self._ensure()
        edges = self._dependency_edges()
        white, grey, black = 0, 1, 2
        color = {node: white for node in edges}
        seen: set[tuple[str, ...]] = set()
        cycles: list[list[str]] = []

        # Explicit stack of (node, remaining successors); chains can be deeper than the recursion limit.
        for root in sorted(edges):
            if color[root] != white:
                continue
            path = [root]
            color[root] = grey
            frames = [(root, iter(sorted(edges.get(root, ()))))]
            while frames:
                node, successors = frames[-1]
                nxt = next(successors, None)
                if nxt is None:
                    frames.pop()
                    path.pop()
                    color[node] = black
                    continue
                if color.get(nxt, white) == grey:
                    cycle = path[path.index(nxt):]
                    start = cycle.index(min(cycle))
                    canonical = tuple(cycle[start:] + cycle[:start])
                    if canonical not in seen:
                        seen.add(canonical)
                        cycles.append(list(canonical))
                elif color.get(nxt, white) == white:
                    color[nxt] = grey
                    path.append(nxt)
                    frames.append((nxt, iter(sorted(edges.get(nxt, ())))))
        return cycles

    def validate_relationships(self) -> ValidationResult:
        """Report broken references as warnings and dependency cycles as errors.

        Dangling parent references are tolerated: an orphaned issue or task
        stays indexed and queryable.
        """
        self._ensure()
        result = ValidationResult()
        for t in self.all_items():
            if t.epic_id and self._get_kind(t.epic_id, TicketKind.EPIC) is None:
                result.warnings.append(f"{t.id}: parent epic {t.epic_id} does not exist")
            if t.issue_id and self._get_kind(t.issue_id, TicketKind.ISSUE) is None:
                result.warnings.append(f"{t.id}: parent issue {t.issue_id} does not exist")
            if t.kind in (TicketKind.TASK, TicketKind.PR) and t.issue_id and t.epic_id:
                issue = self._items.get(t.issue_id)
                if issue is not None and issue.epic_id and issue.epic_id != t.epic_id:
                    result.warnings.append(
                        f"{t.id}: epic {t.epic_id} differs from epic {issue.epic_id} of issue {t.issue_id}"
                    )
            for field_name in ("dependencies", "blocked_by", "blocks"):
                for ref in getattr(t, field_name):
                    if ref not in self._items:
                        result.warnings.append(f"{t.id}: {field_name} references unknown item {ref}")
        for path, message in self.parse_failures:
            result.warnings.append(f"{path}: {message}")
        for cycle in self.find_cycles():
            result.errors.append("dependency cycle: " + " -> ".join(cycle + [cycle[0]]))
        result.valid = not result.errors
        return result

    # --- Summaries ---

    def stats(self) -> IndexStats:
        self._ensure()
        counts = defaultdict(int)
        for t in self._items.values():
            counts[t.kind] += 1
        return IndexStats(
            projects=counts[TicketKind.PROJECT],
            epics=counts[TicketKind.EPIC],
            issues=counts[TicketKind.ISSUE],
            tasks=counts[TicketKind.TASK],
            prs=counts[TicketKind.PR],
            parse_failures=len(self.parse_failures),
            last_rebuild=self.last_rebuild,
        )

    def project_overview(self) -> ProjectOverview:
        items = self.all_items()
        overview = ProjectOverview(total_items=len(items))
        completed = 0
        for t in items:
            overview.by_kind[t.kind] = overview.by_kind.get(t.kind, 0) + 1
            overview.by_status[t.status] = overview.by_status.get(t.status, 0) + 1
            state = get_effective_state(t)
            overview.by_state[state] = overview.by_state.get(state, 0) + 1
            overview.by_priority[t.priority] = overview.by_priority.get(t.priority, 0) + 1
            if t.status == ItemStatus.COMPLETED or state in (UnifiedState.DONE, UnifiedState.COMPLETED):
                completed += 1
        if items:
            overview.completion_rate = round(completed / len(items) * 100)
        cutoff = now_utc() - timedelta(days=RECENT_ACTIVITY_DAYS)
        recent = [t for t in items if t.updated_date >= cutoff]
        recent.sort(key=lambda t: t.updated_date, reverse=True)
        overview.recent_activity = recent[:RECENT_ACTIVITY_LIMIT]
        return overview


def _matches(t: Ticket, f: SearchFilters) -> bool:
    for value, wanted in (
        (t.status, _as_set(f.status)),
        (get_effective_state(t), _as_set(f.state)),
        (t.priority, _as_set(f.priority)),
        (t.assignee, _as_set(f.assignee)),
        (t.kind, _as_set(f.kind)),
    ):
        if wanted is not None and value not in wanted:
            return False

    tags = _as_set(f.tags)
    if tags is not None and not tags.intersection(t.tags):
        return False

    if f.created_after and t.created_date <= f.created_after:
        return False
    if f.created_before and t.created_date >= f.created_before:
        return False
    if f.updated_after and t.updated_date <= f.updated_after:
        return False
    if f.updated_before and t.updated_date >= f.updated_before:
        return False

    if f.text:
        needle = f.text.lower()
        haystack = "\n".join((t.title, t.description, t.content)).lower()
        if needle not in haystack:
            return False
    if f.ai_context_text:
        needle = f.ai_context_text.lower()
        if not any(needle in c.lower() for c in t.ai_context):
            return False
    return True
