"""atd resolve - move a ticket to a new workflow state."""

from __future__ import annotations

import click

from trackdown.cli import TrackdownContext, pass_ctx
from trackdown.errors import TrackdownError
from trackdown.models import UnifiedState
from trackdown.state import StateService
from trackdown.utils import ticket_to_dict


@click.command("resolve")
@click.argument("item_id")
@click.argument("state", type=click.Choice(list(UnifiedState.ALL)))
@click.option("--reason", "-r", default=None, help="Why the transition happened")
@click.option("--reviewer", default=None, help="Who reviewed the change")
@click.option("--role", default=None, help="Role of the actor (e.g. automation)")
@pass_ctx
def resolve(ctx: TrackdownContext, item_id: str, state: str, reason: str | None,
            reviewer: str | None, role: str | None) -> None:
    """Transition ITEM_ID to STATE."""
    ctx.ensure_initialized()
    assert ctx.store is not None and ctx.index is not None

    service = StateService(ctx.store, ctx.index)
    try:
        result = service.resolve(item_id, state, ctx.actor, reason=reason, reviewer=reviewer, role=role)
    except TrackdownError as e:
        ctx.fail(str(e))

    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)

    if ctx.json_output:
        ctx.output(ticket_to_dict(result.ticket))
        return
    md = result.ticket.state_metadata
    previous = md.previous_state if md is not None else "?"
    if not ctx.quiet:
        click.echo(f"{item_id}: {previous} -> {state}")
