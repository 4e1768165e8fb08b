"""atd create - create a new ticket."""

from __future__ import annotations

import click

from trackdown.cli import TrackdownContext, pass_ctx
from trackdown.errors import TrackdownError
from trackdown.models import (
    ItemStatus, Priority, PRStatus, StateMetadata, Ticket, TicketKind, UnifiedState, now_utc,
)
from trackdown.utils import ticket_to_dict


@click.command("create")
@click.argument("kind", type=click.Choice(list(TicketKind.ALL)))
@click.option("--title", "-t", required=True, help="Ticket title")
@click.option("--description", "-d", default="", help="Short description")
@click.option("--body", default="", help="Markdown body")
@click.option("--priority", "-p", default=Priority.MEDIUM,
              type=click.Choice([Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]),
              help="Priority")
@click.option("--assignee", "-a", default="", help="Assignee")
@click.option("--epic", "epic_id", default="", help="Parent epic ID")
@click.option("--issue", "issue_id", default="", help="Parent issue ID (tasks and PRs)")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--depends-on", "dependencies", multiple=True, help="Dependency ID (repeatable)")
@click.option("--estimated-tokens", default=0, type=click.IntRange(min=0), help="Token estimate")
@click.option("--pr-status", default=PRStatus.DRAFT,
              type=click.Choice([PRStatus.DRAFT, PRStatus.OPEN, PRStatus.REVIEW, PRStatus.APPROVED,
                                 PRStatus.MERGED, PRStatus.CLOSED]),
              help="PR status (PRs only)")
@click.option("--silent", is_flag=True, help="Only output the ticket ID")
@pass_ctx
def create(ctx: TrackdownContext, kind: str, title: str, description: str, body: str,
           priority: str, assignee: str, epic_id: str, issue_id: str,
           tags: tuple[str, ...], dependencies: tuple[str, ...], estimated_tokens: int,
           pr_status: str, silent: bool) -> None:
    """Create a new ticket of KIND."""
    ctx.ensure_initialized()
    assert ctx.store is not None and ctx.index is not None and ctx.config is not None

    if kind in (TicketKind.TASK, TicketKind.PR) and not issue_id:
        raise click.UsageError(f"--issue is required for a {kind}")
    if kind in (TicketKind.EPIC, TicketKind.PROJECT) and (epic_id or issue_id):
        raise click.UsageError(f"a {kind} has no parent")

    if issue_id:
        parent = ctx.index.get(issue_id)
        if parent is None:
            click.echo(f"Warning: parent issue {issue_id} does not exist", err=True)
        elif not epic_id:
            epic_id = parent.epic_id
    if epic_id and ctx.index.get(epic_id) is None:
        click.echo(f"Warning: parent epic {epic_id} does not exist", err=True)

    now = now_utc()
    try:
        ticket_id = ctx.allocator().generate_id(kind)
        ticket = Ticket(
            kind=kind,
            id=ticket_id,
            title=title,
            description=description,
            status=ItemStatus.PLANNING,
            state=UnifiedState.PLANNING,
            state_metadata=StateMetadata(
                transitioned_at=now,
                transitioned_by=ctx.actor,
                transition_reason="Created",
            ),
            priority=priority,
            assignee=assignee or ctx.config.default_assignee,
            created_date=now,
            updated_date=now,
            estimated_tokens=estimated_tokens,
            tags=list(tags),
            dependencies=list(dependencies),
            epic_id=epic_id,
            issue_id=issue_id,
            pr_status=pr_status if kind == TicketKind.PR else "",
            content=body,
        )
        ticket = ctx.store.write(ticket)
    except TrackdownError as e:
        ctx.fail(str(e))
    ctx.index.invalidate()

    if silent:
        click.echo(ticket.id)
    elif ctx.json_output:
        ctx.output(ticket_to_dict(ticket))
    else:
        click.echo(f"Created {kind} {ticket.id}: {ticket.title}")
        click.echo(f"  File: {ticket.file_path}")
