"""Bidirectional synchronization between local issues and GitHub issues.

Only ``issue`` tickets take part. A local issue and a remote issue are linked
by ``github_number``. For each linked pair the engine decides whether either
side changed since the last completed sync:

- only the local side changed: push it;
- only the remote side changed: pull it;
- both changed (``has_conflict``): resolve by the configured policy.

The baseline for each pair is the ``github_updated_at`` recorded at its last
exchange: a side counts as changed only if its timestamp is newer, so an
issue the engine just wrote is not seen as a fresh edit on the next pass,
and a change a one-directional pass left alone is still pending on the next.
``last_pull`` only narrows the remote listing.

Authentication, rate-limit, missing-repository and network errors abort the
pass and are recorded in the sync metadata before being re-raised;
``last_sync`` is only advanced by a completed pass. Per-item failures are
collected and the pass continues.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from trackdown.config import ConflictPolicy, ProjectPaths, SyncConfig
from trackdown.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ParseError,
    PersistenceError,
    SyncError,
    ValidationError,
)
from trackdown.github import GitHubClient, RemoteIssue
from trackdown.id_gen import IdAllocator
from trackdown.index import RelationshipIndex
from trackdown.models import (
    ItemStatus,
    Priority,
    SyncStatus,
    Ticket,
    TicketKind,
    format_timestamp,
    now_utc,
    parse_timestamp,
)
from trackdown.store import DocumentStore

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

TRAILER_MARKER = "<!-- AI-Trackdown Metadata -->"
_TRAILER_RE = re.compile(re.escape(TRAILER_MARKER) + r"\s*```json\s*(.*?)```", re.DOTALL)

# Errors that affect one item only; anything else from the client aborts the pass.
ITEM_ERRORS = (ParseError, ValidationError, NotFoundError, PersistenceError, ConflictError)


class SyncHealth:
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class SyncAction:
    CREATE_REMOTE = "create_remote"
    UPDATE_REMOTE = "update_remote"
    CREATE_LOCAL = "create_local"
    UPDATE_LOCAL = "update_local"
    CONFLICT = "conflict"
    SKIP = "skip"


def has_conflict(local: Ticket, remote: RemoteIssue, last_sync: datetime | None) -> bool:
    """True iff both sides were edited after ``last_sync``.

    The engine passes the pair's own ``github_updated_at`` as the baseline.
    """
    baseline = last_sync or EPOCH
    remote_updated = remote.updated_at or EPOCH
    return local.updated_date > baseline and remote_updated > baseline


def status_to_remote_state(status: str) -> str:
    return "closed" if status in (ItemStatus.COMPLETED, ItemStatus.ARCHIVED) else "open"


def remote_state_to_status(state: str, current: str | None = None) -> str:
    """Map a remote open/closed state onto a legacy status.

    The mapping is lossy: ``closed`` cannot tell completed from archived, so a
    local status that already agrees with the remote state is kept.
    """
    if state == "closed":
        if current in (ItemStatus.COMPLETED, ItemStatus.ARCHIVED):
            return current
        return ItemStatus.COMPLETED
    if current in (ItemStatus.PLANNING, ItemStatus.ACTIVE):
        return current
    return ItemStatus.ACTIVE


def local_only_fields(ticket: Ticket) -> dict[str, Any]:
    """Fields GitHub has no place for; carried in the issue body trailer."""
    data: dict[str, Any] = {
        "issue_id": ticket.id,
        "epic_id": ticket.epic_id,
        "ai_context": list(ticket.ai_context),
        "estimated_tokens": ticket.estimated_tokens,
        "actual_tokens": ticket.actual_tokens,
    }
    if ticket.state:
        data["state"] = ticket.state
    return data


def embed_trailer(body: str, metadata: dict[str, Any]) -> str:
    text = strip_trailer(body)
    block = f"{TRAILER_MARKER}\n```json\n{json.dumps(metadata, indent=2)}\n```"
    return f"{text}\n\n{block}" if text else block


def strip_trailer(body: str) -> str:
    return _TRAILER_RE.sub("", body or "").strip()


def extract_trailer(body: str) -> dict[str, Any] | None:
    m = _TRAILER_RE.search(body or "")
    if not m:
        return None
    try:
        data = json.loads(m.group(1))
    except ValueError:
        logger.warning("Ignoring malformed metadata trailer")
        return None
    return data if isinstance(data, dict) else None


@dataclass
class SyncOperation:
    action: str
    item_id: str = ""
    github_number: Optional[int] = None
    message: str = ""


@dataclass
class SyncConflict:
    item_id: str
    github_number: int
    local_updated: datetime
    remote_updated: Optional[datetime]
    resolution: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "github_number": self.github_number,
            "local_updated": format_timestamp(self.local_updated),
            "remote_updated": format_timestamp(self.remote_updated),
            "resolution": self.resolution,
        }


@dataclass
class SyncFailure:
    item_id: str
    message: str


@dataclass
class SyncResult:
    success: bool = True
    operations: list[SyncOperation] = field(default_factory=list)
    pushed_count: int = 0
    pulled_count: int = 0
    skipped_count: int = 0
    conflict_count: int = 0
    conflicts: list[SyncConflict] = field(default_factory=list)
    failed: list[SyncFailure] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "pushed": self.pushed_count,
            "pulled": self.pulled_count,
            "skipped": self.skipped_count,
            "conflicts": self.conflict_count,
            "failed": len(self.failed),
        }


@dataclass
class SyncStatusReport:
    enabled: bool
    repository: str
    last_sync: Optional[datetime] = None
    pending_operations: int = 0
    conflicts: int = 0
    sync_health: str = SyncHealth.HEALTHY
    last_error: Optional[str] = None
    rate_limit_remaining: Optional[int] = None


class SyncMetadata:
    """Persistent sync bookkeeping in ``.ai-trackdown/sync-metadata.json``."""

    def __init__(self, path: str):
        self.path = path
        self.last_sync: datetime | None = None
        # Start of the last completed pass that pulled; bounds the remote listing.
        self.last_pull: datetime | None = None
        self.last_error: dict[str, str] | None = None
        self.last_result: dict[str, int] = {}
        self.pending_conflicts: list[dict[str, Any]] = []

    @classmethod
    def load(cls, path: str) -> SyncMetadata:
        meta = cls(path)
        if not os.path.exists(path):
            return meta
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            meta.last_sync = parse_timestamp(data.get("last_sync"))
            meta.last_pull = parse_timestamp(data.get("last_pull")) or meta.last_sync
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Cannot read sync metadata %s, starting fresh: %s", path, e)
            return meta
        meta.last_error = data.get("last_error")
        meta.last_result = data.get("last_result") or {}
        meta.pending_conflicts = data.get("pending_conflicts") or []
        return meta

    def save(self) -> None:
        data = {
            "last_sync": format_timestamp(self.last_sync),
            "last_pull": format_timestamp(self.last_pull),
            "last_error": self.last_error,
            "last_result": self.last_result,
            "pending_conflicts": self.pending_conflicts,
        }
        tmp_path = self.path + ".tmp"
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Cannot save sync metadata to {self.path}: {e}") from e


class SyncEngine:
    """Reconciles local issue documents with a GitHub repository."""

    def __init__(self, store: DocumentStore, index: RelationshipIndex,
                 client: GitHubClient | None, config: SyncConfig, paths: ProjectPaths,
                 allocator: IdAllocator | None = None,
                 clock: Callable[[], datetime] = now_utc):
        self.store = store
        self.index = index
        self.client = client
        self.config = config
        self.paths = paths
        self.allocator = allocator or IdAllocator(
            paths.counters_path, store.config.naming_conventions.prefixes()
        )
        self.clock = clock

    # --- Public operations ---

    def _require_client(self) -> GitHubClient:
        if self.client is None:
            raise ConfigurationError("GitHub sync needs a repository and token (set GITHUB_TOKEN)")
        return self.client

    def test_connection(self) -> bool:
        client = self._require_client()
        try:
            client.test_connection()
        except SyncError as e:
            self._record_error(e)
            logger.warning("GitHub connection test failed: %s", e)
            return False
        return True

    def push_local_changes(self) -> SyncResult:
        return self._run(push=True, pull=False)

    def pull_remote_changes(self) -> SyncResult:
        return self._run(push=False, pull=True)

    def bidirectional_sync(self) -> SyncResult:
        return self._run(push=True, pull=True)

    def get_sync_status(self) -> SyncStatusReport:
        meta = SyncMetadata.load(self.paths.sync_metadata_path)
        report = SyncStatusReport(
            enabled=self.config.enabled,
            repository=self.config.repository,
            last_sync=meta.last_sync,
            conflicts=len(meta.pending_conflicts),
        )
        for t in self.index.all_items(TicketKind.ISSUE):
            if not t.is_linked() or self._local_changed(t):
                report.pending_operations += 1

        if meta.last_error:
            report.sync_health = SyncHealth.FAILED
            report.last_error = meta.last_error.get("message")
            return report
        if not self.config.enabled:
            return report
        if self.client is None:
            report.sync_health = SyncHealth.FAILED
            report.last_error = "GitHub client not configured (check repository and GITHUB_TOKEN)"
            return report
        try:
            rate = self.client.get_rate_limit()
        except SyncError as e:
            report.sync_health = SyncHealth.FAILED
            report.last_error = str(e)
            return report
        report.rate_limit_remaining = rate.remaining
        if rate.remaining < self.config.degraded_threshold:
            report.sync_health = SyncHealth.DEGRADED
        return report

    # --- Pass ---

    def _run(self, push: bool, pull: bool) -> SyncResult:
        if not self.config.enabled:
            raise ConfigurationError("GitHub sync is not enabled in config.yaml")

        client = self._require_client()
        started = self.clock()
        meta = SyncMetadata.load(self.paths.sync_metadata_path)
        result = SyncResult()
        resolved: set[str] = set()

        try:
            self.index.rebuild()
            issues_dir = self.paths.type_directory(TicketKind.ISSUE)
            for path, message in self.index.parse_failures:
                if path.startswith(issues_dir + os.sep):
                    result.failed.append(SyncFailure(path, message))

            remote = {r.number: r for r in client.list_issues(state="all", since=meta.last_pull)}

            for ticket in self.index.all_items(TicketKind.ISSUE):
                r = remote.pop(ticket.github_number, None) if ticket.is_linked() else None
                try:
                    self._sync_pair(ticket, r, push, pull, result, resolved)
                except ITEM_ERRORS as e:
                    logger.warning("Sync of %s failed: %s", ticket.id, e)
                    result.failed.append(SyncFailure(ticket.id, str(e)))

            for r in sorted(remote.values(), key=lambda r: r.number):
                if not pull:
                    continue
                try:
                    self._create_local(r, result)
                except ITEM_ERRORS as e:
                    logger.warning("Import of GitHub issue #%d failed: %s", r.number, e)
                    result.failed.append(SyncFailure(f"#{r.number}", str(e)))
        except SyncError as e:
            self._record_error(e, meta)
            raise
        finally:
            self.index.invalidate()

        fresh = [c.to_dict() for c in result.conflicts if c.resolution == ConflictPolicy.MANUAL]
        settled = resolved | {c["item_id"] for c in fresh}
        meta.pending_conflicts = [
            c for c in meta.pending_conflicts if c.get("item_id") not in settled
        ] + fresh
        meta.last_sync = started
        if pull:
            meta.last_pull = started
        meta.last_error = None
        meta.last_result = result.summary()
        meta.save()

        result.success = not result.failed
        logger.info("Sync finished: %s", result.summary())
        return result

    def _sync_pair(self, t: Ticket, r: RemoteIssue | None, push: bool, pull: bool,
                   result: SyncResult, resolved: set[str]) -> None:
        if not t.is_linked():
            if push:
                self._create_remote(t, result)
            else:
                self._skip(t, result)
            return

        local_changed = self._local_changed(t)
        remote_changed = r is not None and self._remote_changed(t, r)

        if local_changed and remote_changed and has_conflict(t, r, t.github_updated_at):
            if self._resolve_conflict(t, r, push, pull, result):
                resolved.add(t.id)
        elif local_changed and push:
            self._update_remote(t, result)
            resolved.add(t.id)
        elif remote_changed and pull:
            self._update_local(t, r, result)
            resolved.add(t.id)
        else:
            self._skip(t, result)

    def _local_changed(self, t: Ticket) -> bool:
        return t.github_updated_at is None or t.updated_date > t.github_updated_at

    def _remote_changed(self, t: Ticket, r: RemoteIssue) -> bool:
        return t.github_updated_at is None or (r.updated_at or EPOCH) > t.github_updated_at

    # --- Conflicts ---

    def _resolve_conflict(self, t: Ticket, r: RemoteIssue, push: bool, pull: bool,
                          result: SyncResult) -> bool:
        """Apply the configured policy; returns True when the pair is back in sync.

        A winner that needs the direction this pass does not run is left for
        a later pass; both sides stay changed, so the conflict is found again.
        """
        policy = self.config.conflict_resolution
        if policy == ConflictPolicy.LOCAL_WINS:
            winner = "local"
        elif policy == ConflictPolicy.REMOTE_WINS:
            winner = "remote"
        elif policy == ConflictPolicy.MANUAL:
            winner = ConflictPolicy.MANUAL
        else:
            # Ties go to local.
            winner = "remote" if r.updated_at and r.updated_at > t.updated_date else "local"

        if (winner == "local" and not push) or (winner == "remote" and not pull):
            logger.info("Conflict on %s (#%d) left for a %s pass", t.id, r.number,
                        "push" if winner == "local" else "pull")
            self._skip(t, result)
            return False

        conflict = SyncConflict(t.id, r.number, t.updated_date, r.updated_at, winner)
        result.conflicts.append(conflict)
        result.conflict_count += 1
        result.operations.append(SyncOperation(SyncAction.CONFLICT, t.id, r.number, f"resolved: {winner}"))
        logger.info("Conflict on %s (#%d), resolution: %s", t.id, r.number, winner)

        if winner == "local":
            self._update_remote(t, result)
        elif winner == "remote":
            saved = self._update_local(t, r, result)
            trailer = local_only_fields(saved)
            if push and extract_trailer(r.body) != trailer:
                pushed = self.client.update_issue(r.number, body=embed_trailer(r.body, trailer))
                self._write_link(saved, pushed)
        else:
            # Both versions are acknowledged; the pair stays quiet until one side is edited again.
            seen = max(t.updated_date, r.updated_at or EPOCH)
            self.store.write(replace(t, sync_status=SyncStatus.CONFLICT, github_updated_at=seen))
            return False
        return True

    # --- Remote writes ---

    def _labels(self, t: Ticket) -> list[str] | None:
        return list(t.tags) if self.config.sync_labels else None

    def _assignees(self, t: Ticket) -> list[str] | None:
        if not self.config.sync_assignees:
            return None
        if not t.assignee or t.assignee == self.store.config.default_assignee:
            return []
        return [t.assignee]

    def _create_remote(self, t: Ticket, result: SyncResult) -> None:
        body = embed_trailer(t.content, local_only_fields(t))
        created = self.client.create_issue(
            t.title, body, labels=self._labels(t), assignees=self._assignees(t) or None,
        )
        if status_to_remote_state(t.status) == "closed":
            created = self.client.update_issue(created.number, state="closed")
        self._write_link(t, created)
        result.pushed_count += 1
        result.operations.append(SyncOperation(SyncAction.CREATE_REMOTE, t.id, created.number))
        logger.debug("Created GitHub issue #%d for %s", created.number, t.id)

    def _update_remote(self, t: Ticket, result: SyncResult) -> None:
        updated = self.client.update_issue(
            t.github_number,
            title=t.title,
            body=embed_trailer(t.content, local_only_fields(t)),
            state=status_to_remote_state(t.status),
            labels=self._labels(t),
            assignees=self._assignees(t),
        )
        self._write_link(t, updated)
        result.pushed_count += 1
        result.operations.append(SyncOperation(SyncAction.UPDATE_REMOTE, t.id, t.github_number))

    def _write_link(self, t: Ticket, r: RemoteIssue) -> Ticket:
        """Record the remote identity on the local document without touching updated_date."""
        linked = replace(
            t,
            github_id=r.id,
            github_number=r.number,
            github_url=r.html_url,
            github_updated_at=r.updated_at,
            sync_status=SyncStatus.SYNCED,
        )
        return self.store.write(linked)

    # --- Local writes ---

    def _apply_remote_fields(self, t: Ticket, r: RemoteIssue) -> Ticket:
        updated = replace(
            t,
            title=r.title or t.title,
            content=strip_trailer(r.body),
            status=remote_state_to_status(r.state, t.status),
            github_id=r.id,
            github_number=r.number,
            github_url=r.html_url,
            github_updated_at=r.updated_at,
            sync_status=SyncStatus.SYNCED,
            updated_date=r.updated_at or t.updated_date,
        )
        # An empty remote value clears the local one.
        if self.config.sync_labels:
            updated.tags = list(r.labels)
        if self.config.sync_assignees:
            updated.assignee = r.assignee or self.store.config.default_assignee
        if self.config.sync_milestones:
            updated.milestone = r.milestone
        return updated

    def _update_local(self, t: Ticket, r: RemoteIssue, result: SyncResult) -> Ticket:
        saved = self.store.write(self._apply_remote_fields(t, r))
        result.pulled_count += 1
        result.operations.append(SyncOperation(SyncAction.UPDATE_LOCAL, t.id, r.number))
        return saved

    def _create_local(self, r: RemoteIssue, result: SyncResult) -> Ticket:
        trailer = extract_trailer(r.body) or {}
        ticket = Ticket(
            kind=TicketKind.ISSUE,
            id=self.allocator.generate_id(TicketKind.ISSUE),
            title=r.title or f"GitHub issue #{r.number}",
            status=remote_state_to_status(r.state),
            priority=Priority.MEDIUM,
            assignee=self.store.config.default_assignee,
            created_date=r.created_at or self.clock(),
            epic_id=str(trailer.get("epic_id") or ""),
            ai_context=[str(c) for c in trailer.get("ai_context") or []],
            estimated_tokens=int(trailer.get("estimated_tokens") or 0),
            actual_tokens=int(trailer.get("actual_tokens") or 0),
        )
        ticket = self._apply_remote_fields(ticket, r)
        saved = self.store.write(ticket)
        result.pulled_count += 1
        result.operations.append(SyncOperation(SyncAction.CREATE_LOCAL, saved.id, r.number))
        logger.debug("Imported GitHub issue #%d as %s", r.number, saved.id)
        return saved

    def _skip(self, t: Ticket, result: SyncResult) -> None:
        result.skipped_count += 1
        result.operations.append(SyncOperation(SyncAction.SKIP, t.id, t.github_number))

    def _record_error(self, error: Exception, meta: SyncMetadata | None = None) -> None:
        meta = meta or SyncMetadata.load(self.paths.sync_metadata_path)
        meta.last_error = {
            "type": type(error).__name__,
            "message": str(error),
            "at": format_timestamp(self.clock()) or "",
        }
        meta.save()
