"""Workflow state engine.

Tickets carry a legacy four-value ``status`` and, once migrated, a unified
``state`` drawn from a nine-value vocabulary. Workflow decisions use the
effective state: ``state`` when present, otherwise ``status`` mapped through
LEGACY_STATUS_TO_STATE.

Transitions are checked against a static adjacency table. ``won_t_do`` is
reachable from every state. A role may add warnings to a legal transition
but never makes it illegal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, Union

from trackdown.errors import NotFoundError, TrackdownError, TransitionNotAllowedError, ValidationError
from trackdown.models import (
    ItemStatus,
    StateMetadata,
    Ticket,
    UnifiedState,
    ValidationResult,
    now_utc,
    parse_timestamp,
)

if TYPE_CHECKING:
    from trackdown.index import RelationshipIndex
    from trackdown.store import DocumentStore

logger = logging.getLogger(__name__)


TRANSITIONS: dict[str, tuple[str, ...]] = {
    UnifiedState.PLANNING: (UnifiedState.READY_FOR_ENGINEERING,),
    UnifiedState.ACTIVE: (UnifiedState.READY_FOR_ENGINEERING,),
    UnifiedState.READY_FOR_ENGINEERING: (UnifiedState.ACTIVE, UnifiedState.READY_FOR_QA),
    UnifiedState.READY_FOR_QA: (
        UnifiedState.ACTIVE,
        UnifiedState.READY_FOR_DEPLOYMENT,
        UnifiedState.READY_FOR_ENGINEERING,
    ),
    UnifiedState.READY_FOR_DEPLOYMENT: (UnifiedState.DONE, UnifiedState.READY_FOR_QA),
    UnifiedState.DONE: (UnifiedState.ARCHIVED,),
    UnifiedState.WONT_DO: (UnifiedState.ARCHIVED,),
    UnifiedState.COMPLETED: (),
    UnifiedState.ARCHIVED: (),
}

LEGACY_STATUS_TO_STATE = {
    ItemStatus.PLANNING: UnifiedState.PLANNING,
    ItemStatus.ACTIVE: UnifiedState.ACTIVE,
    ItemStatus.COMPLETED: UnifiedState.DONE,
    ItemStatus.ARCHIVED: UnifiedState.ARCHIVED,
}

STATE_TO_LEGACY_STATUS = {
    UnifiedState.PLANNING: ItemStatus.PLANNING,
    UnifiedState.ACTIVE: ItemStatus.ACTIVE,
    UnifiedState.READY_FOR_ENGINEERING: ItemStatus.ACTIVE,
    UnifiedState.READY_FOR_QA: ItemStatus.ACTIVE,
    UnifiedState.READY_FOR_DEPLOYMENT: ItemStatus.ACTIVE,
    UnifiedState.DONE: ItemStatus.COMPLETED,
    UnifiedState.COMPLETED: ItemStatus.COMPLETED,
    UnifiedState.WONT_DO: ItemStatus.ARCHIVED,
    UnifiedState.ARCHIVED: ItemStatus.ARCHIVED,
}

AUTOMATION_ROLE = "automation"

# Edges that need a human sign-off.
MANUAL_ONLY_EDGES = {
    (UnifiedState.READY_FOR_QA, UnifiedState.READY_FOR_DEPLOYMENT),
    (UnifiedState.READY_FOR_DEPLOYMENT, UnifiedState.DONE),
}

MIGRATION_REASON = "Legacy status migration"


def allowed_transitions(state: str) -> list[str]:
    """Target states reachable from ``state`` in one step."""
    targets = list(TRANSITIONS.get(state, ()))
    if state in TRANSITIONS and UnifiedState.WONT_DO not in targets:
        targets.append(UnifiedState.WONT_DO)
    return targets


def migrate_status_to_state(status: str) -> str:
    if status not in LEGACY_STATUS_TO_STATE:
        raise ValueError(f"unknown legacy status: {status}")
    return LEGACY_STATUS_TO_STATE[status]


def get_effective_state(ticket: Ticket) -> str:
    if ticket.state:
        return ticket.state
    return LEGACY_STATUS_TO_STATE.get(ticket.status, ticket.status)


def validate_transition(from_state: str, to_state: str, role: str | None = None) -> ValidationResult:
    result = ValidationResult()
    if not UnifiedState.is_valid(to_state):
        result.valid = False
        result.errors.append(f"Unknown target state: {to_state}")
        return result
    if not UnifiedState.is_valid(from_state):
        result.valid = False
        result.errors.append(f"Unknown current state: {from_state}")
        return result
    allowed = allowed_transitions(from_state)
    if to_state not in allowed:
        result.valid = False
        result.errors.append(str(TransitionNotAllowedError(from_state, to_state, allowed)))
        return result
    if role == AUTOMATION_ROLE and (from_state, to_state) in MANUAL_ONLY_EDGES:
        result.warnings.append(
            f"Transition '{from_state}' -> '{to_state}' normally requires manual approval"
        )
    return result


@dataclass
class TransitionResult:
    ticket: Ticket
    success: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def transition_state(ticket: Ticket, to_state: str, actor: str,
                     reason: str | None = None, reviewer: str | None = None,
                     role: str | None = None) -> TransitionResult:
    """Move a ticket to ``to_state``.

    Returns a new ticket on success; the input ticket is never modified. The
    legacy status is updated to stay coherent with the new state.
    """
    current = get_effective_state(ticket)
    validation = validate_transition(current, to_state, role)
    if not validation.valid:
        return TransitionResult(ticket, False, validation.errors, validation.warnings)

    now = now_utc()
    metadata = StateMetadata(
        transitioned_at=now,
        transitioned_by=actor,
        previous_state=current,
        automation_eligible=not validation.warnings,
        transition_reason=reason,
        reviewer=reviewer,
    )
    updated = replace(
        ticket,
        state=to_state,
        state_metadata=metadata,
        status=STATE_TO_LEGACY_STATUS[to_state],
        updated_date=now,
    )
    return TransitionResult(updated, True, [], validation.warnings)


def can_automate(ticket: Ticket, to_state: str) -> bool:
    validation = validate_transition(get_effective_state(ticket), to_state, AUTOMATION_ROLE)
    return validation.valid and not validation.warnings


def available_transitions(ticket: Ticket, role: str | None = None) -> list[str]:
    current = get_effective_state(ticket)
    return [s for s in allowed_transitions(current) if validate_transition(current, s, role).valid]


def validate_state_metadata(md: Union[StateMetadata, dict[str, Any]]) -> ValidationResult:
    """Check transition provenance, either parsed or as a raw front-matter mapping."""
    data = md.to_dict() if isinstance(md, StateMetadata) else md
    result = ValidationResult()
    if not isinstance(data, dict):
        return ValidationResult(False, ["state_metadata must be a mapping"])

    transitioned_at = data.get("transitioned_at")
    if not transitioned_at:
        result.errors.append("transitioned_at is required")
    elif not isinstance(transitioned_at, datetime):
        try:
            parse_timestamp(transitioned_at)
        except ValueError:
            result.errors.append(f"transitioned_at is not a valid timestamp: {transitioned_at}")

    if not data.get("transitioned_by"):
        result.errors.append("transitioned_by is required")

    previous = data.get("previous_state")
    if previous and not UnifiedState.is_valid(previous):
        result.errors.append(f"previous_state is not a valid state: {previous}")

    if data.get("automation_source") and not data.get("automation_eligible"):
        result.warnings.append("automation_source is set but automation_eligible is false")

    result.valid = not result.errors
    return result


# --- Migration ---

def needs_migration(ticket: Ticket) -> bool:
    return not ticket.state or ticket.state_metadata is None


@dataclass
class ItemMigration:
    ticket: Ticket
    success: bool
    changed: bool = False
    error: Optional[str] = None


def migrate_item(ticket: Ticket, actor: str = "system") -> ItemMigration:
    """Attach a unified state derived from the legacy status.

    Idempotent: an already-migrated ticket comes back unchanged.
    """
    if not needs_migration(ticket):
        return ItemMigration(ticket, True)
    try:
        new_state = migrate_status_to_state(ticket.status)
    except ValueError as e:
        return ItemMigration(ticket, False, error=str(e))
    metadata = StateMetadata(
        transitioned_at=now_utc(),
        transitioned_by=actor,
        previous_state=None,
        automation_eligible=False,
        transition_reason=MIGRATION_REASON,
    )
    return ItemMigration(replace(ticket, state=new_state, state_metadata=metadata), True, changed=True)


@dataclass
class MigrationLogEntry:
    item_id: str
    kind: str
    old_status: str
    new_state: str
    timestamp: datetime
    success: bool
    changed: bool = False
    error: Optional[str] = None


@dataclass
class MigrationResult:
    success: bool = True
    migrated_count: int = 0
    failed_count: int = 0
    errors: list[str] = field(default_factory=list)
    log: list[MigrationLogEntry] = field(default_factory=list)
    items: list[Ticket] = field(default_factory=list)

    def record_failure(self, item_id: str, kind: str, old_status: str, error: str) -> None:
        self.log.append(MigrationLogEntry(
            item_id=item_id, kind=kind, old_status=old_status, new_state=old_status,
            timestamp=now_utc(), success=False, error=error,
        ))
        self.failed_count += 1
        self.errors.append(f"{item_id}: {error}")
        self.success = False


def migrate_items(tickets: list[Ticket], actor: str = "system") -> MigrationResult:
    """Migrate a batch in memory. Failed items are returned unchanged."""
    result = MigrationResult()
    for ticket in tickets:
        outcome = migrate_item(ticket, actor)
        if not outcome.success:
            result.record_failure(ticket.id, ticket.kind, ticket.status, outcome.error or "unknown error")
            result.items.append(ticket)
            continue
        result.log.append(MigrationLogEntry(
            item_id=ticket.id,
            kind=ticket.kind,
            old_status=ticket.status,
            new_state=outcome.ticket.state or "",
            timestamp=now_utc(),
            success=True,
            changed=outcome.changed,
        ))
        result.items.append(outcome.ticket)
        if outcome.changed:
            result.migrated_count += 1
    return result


@dataclass
class MigrationPreviewEntry:
    item_id: str
    kind: str
    current_status: str
    target_state: str
    needs_migration: bool


@dataclass
class MigrationPreview:
    total_items: int = 0
    needs_migration: int = 0
    already_migrated: int = 0
    entries: list[MigrationPreviewEntry] = field(default_factory=list)


def preview_migration(tickets: list[Ticket]) -> MigrationPreview:
    """Count what a migration would do without touching anything."""
    preview = MigrationPreview(total_items=len(tickets))
    for ticket in tickets:
        pending = needs_migration(ticket)
        if pending:
            preview.needs_migration += 1
        else:
            preview.already_migrated += 1
        preview.entries.append(MigrationPreviewEntry(
            item_id=ticket.id,
            kind=ticket.kind,
            current_status=ticket.status,
            target_state=LEGACY_STATUS_TO_STATE.get(ticket.status, "") if pending else (ticket.state or ""),
            needs_migration=pending,
        ))
    return preview


def validate_migration(tickets: list[Ticket]) -> ValidationResult:
    """Check that every ticket carries a state with valid provenance."""
    result = ValidationResult()
    for ticket in tickets:
        if not ticket.state:
            result.errors.append(f"{ticket.id}: Missing state field")
        if ticket.state_metadata is None:
            result.errors.append(f"{ticket.id}: Missing state metadata")
        else:
            md_result = validate_state_metadata(ticket.state_metadata)
            result.errors.extend(f"{ticket.id}: {e}" for e in md_result.errors)
            result.warnings.extend(f"{ticket.id}: {w}" for w in md_result.warnings)
        if not ticket.status:
            result.warnings.append(f"{ticket.id}: Legacy status field missing")
    result.valid = not result.errors
    return result


class RollbackAction:
    REMOVE_STATE_FIELDS = "remove_state_fields"
    RESTORE_STATUS = "restore_status"
    NO_ACTION = "no_action"


@dataclass
class RollbackOperation:
    item_id: str
    action: str
    original_status: str


def create_rollback_plan(log: list[MigrationLogEntry]) -> list[RollbackOperation]:
    """Classify each logged item by what undoing the migration requires."""
    plan = []
    for entry in log:
        if not entry.success:
            action = RollbackAction.RESTORE_STATUS
        elif entry.changed:
            action = RollbackAction.REMOVE_STATE_FIELDS
        else:
            action = RollbackAction.NO_ACTION
        plan.append(RollbackOperation(entry.item_id, action, entry.old_status))
    return plan


class StateService:
    """Applies transitions and migrations to documents on disk."""

    def __init__(self, store: DocumentStore, index: RelationshipIndex):
        self.store = store
        self.index = index

    def resolve(self, item_id: str, to_state: str, actor: str,
                reason: str | None = None, reviewer: str | None = None,
                role: str | None = None) -> TransitionResult:
        """Transition a ticket and persist it.

        Raises NotFoundError for unknown ids and TransitionNotAllowedError
        when the table forbids the move.
        """
        ticket = self.index.get(item_id)
        if ticket is None:
            raise NotFoundError(item_id)

        result = transition_state(ticket, to_state, actor, reason, reviewer, role)
        if not result.success:
            current = get_effective_state(ticket)
            if UnifiedState.is_valid(to_state) and UnifiedState.is_valid(current):
                raise TransitionNotAllowedError(current, to_state, allowed_transitions(current))
            raise ValidationError("; ".join(result.errors))

        saved = self.store.write(result.ticket)
        self.index.invalidate()
        logger.info("%s: %s -> %s by %s", item_id, result.ticket.state_metadata.previous_state,
                    to_state, actor)
        result.ticket = saved
        return result

    def migrate_all(self, actor: str, dry_run: bool = False) -> MigrationResult:
        """Migrate every indexed ticket, writing each one that changed.

        Documents that failed to parse are reported as failures. A failed
        write is recorded and the batch continues.
        """
        tickets = self.index.all_items()
        result = migrate_items(tickets, actor)
        for path, message in self.index.parse_failures:
            result.record_failure(path, "", "", message)

        if dry_run:
            return result

        saved_items = []
        for entry, ticket in zip(result.log, result.items):
            if not entry.changed:
                saved_items.append(ticket)
                continue
            try:
                saved_items.append(self.store.write(ticket))
            except TrackdownError as e:
                logger.warning("Migration of %s failed: %s", entry.item_id, e)
                entry.success = False
                entry.changed = False
                entry.error = str(e)
                result.migrated_count -= 1
                result.failed_count += 1
                result.errors.append(f"{entry.item_id}: {e}")
                result.success = False
                saved_items.append(ticket)
        result.items = saved_items
        self.index.invalidate()
        return result
