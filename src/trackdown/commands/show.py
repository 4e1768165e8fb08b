"""atd show - display ticket details."""

from __future__ import annotations

import click

from trackdown.cli import TrackdownContext, pass_ctx
from trackdown.state import available_transitions, get_effective_state
from trackdown.utils import format_ticket_row, format_time_ago, ticket_to_dict


@click.command("show")
@click.argument("item_id")
@pass_ctx
def show(ctx: TrackdownContext, item_id: str) -> None:
    """Show detailed view of a ticket."""
    ctx.ensure_initialized()
    assert ctx.index is not None

    ticket = ctx.index.get(item_id)
    if ticket is None:
        ctx.fail(f"item not found: {item_id}")

    parent = ctx.index.get_parent(item_id)
    children = ctx.index.get_children(item_id)
    related = ctx.index.get_related_items(item_id)

    if ctx.json_output:
        data = ticket_to_dict(ticket)
        data["content"] = ticket.content
        data["_parent"] = parent.id if parent else None
        data["_children"] = [c.id for c in children]
        data["_available_transitions"] = available_transitions(ticket)
        if related is not None:
            data["_dependents"] = [t.id for t in related.dependents]
            data["_blocked_by"] = [t.id for t in related.blocked_by]
        ctx.output(data)
        return

    click.echo(f"{'─' * 60}")
    click.echo(f"  {ticket.id}  ({ticket.kind})")
    click.echo(f"{'─' * 60}")
    click.echo(f"  Title:    {ticket.title}")
    click.echo(f"  State:    {get_effective_state(ticket)}")
    click.echo(f"  Status:   {ticket.status}")
    click.echo(f"  Priority: {ticket.priority}")
    if ticket.assignee:
        click.echo(f"  Assignee: {ticket.assignee}")
    click.echo(f"  Created:  {format_time_ago(ticket.created_date)}")
    click.echo(f"  Updated:  {format_time_ago(ticket.updated_date)}")

    md = ticket.state_metadata
    if md is not None:
        click.echo(f"  Moved by: {md.transitioned_by} ({format_time_ago(md.transitioned_at)})")
        if md.previous_state:
            click.echo(f"  From:     {md.previous_state}")
        if md.transition_reason:
            click.echo(f"  Reason:   {md.transition_reason}")

    if ticket.tags:
        click.echo(f"  Tags:     {', '.join(ticket.tags)}")
    if ticket.github_number is not None:
        click.echo(f"  GitHub:   #{ticket.github_number} ({ticket.sync_status})")
    if parent is not None:
        click.echo(f"  Parent:   {parent.id} {parent.title}")
    click.echo(f"  File:     {ticket.file_path}")

    if ticket.description:
        click.echo(f"\n{ticket.description}")
    if ticket.content:
        click.echo(f"\n{ticket.content}")

    if children:
        click.echo(f"\nChildren ({len(children)}):")
        for child in children:
            click.echo(f"  {format_ticket_row(child)}")

    if related is not None and related.blocked_by:
        click.echo(f"\nBlocked by ({len(related.blocked_by)}):")
        for t in related.blocked_by:
            click.echo(f"  {format_ticket_row(t)}")

    transitions = available_transitions(ticket)
    if transitions:
        click.echo(f"\nNext states: {', '.join(transitions)}")
