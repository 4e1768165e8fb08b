"""atd search - search tickets."""

from __future__ import annotations

import click

from trackdown.cli import TrackdownContext, pass_ctx
from trackdown.models import SearchFilters, TicketKind, now_utc
from trackdown.utils import format_ticket_row, parse_duration, ticket_to_dict


@click.command("search")
@click.argument("query", required=False, default="")
@click.option("--kind", "-k", multiple=True, type=click.Choice(list(TicketKind.ALL)), help="Filter by kind")
@click.option("--status", "-s", multiple=True, help="Filter by legacy status")
@click.option("--state", multiple=True, help="Filter by effective state")
@click.option("--priority", "-p", multiple=True, help="Filter by priority")
@click.option("--assignee", "-a", multiple=True, help="Filter by assignee")
@click.option("--tag", "tags", multiple=True, help="Filter by tag (any of)")
@click.option("--context", "ai_context", default="", help="Match text in ai_context")
@click.option("--updated-within", default="", help="Only tickets updated within a duration (e.g. 7d)")
@click.option("--limit", default=50, type=int, help="Max results (0 for all)")
@click.option("--long", "-L", "long_format", is_flag=True, help="Long format")
@pass_ctx
def search(ctx: TrackdownContext, query: str, kind: tuple[str, ...], status: tuple[str, ...],
           state: tuple[str, ...], priority: tuple[str, ...], assignee: tuple[str, ...],
           tags: tuple[str, ...], ai_context: str, updated_within: str, limit: int,
           long_format: bool) -> None:
    """Search tickets by text and filters."""
    ctx.ensure_initialized()
    assert ctx.index is not None

    f = SearchFilters(
        kind=list(kind) or None,
        status=list(status) or None,
        state=list(state) or None,
        priority=list(priority) or None,
        assignee=list(assignee) or None,
        tags=list(tags) or None,
        text=query,
        ai_context_text=ai_context,
    )
    if updated_within:
        window = parse_duration(updated_within)
        if window is None:
            raise click.BadParameter(f"invalid duration: {updated_within}", param_hint="--updated-within")
        f.updated_after = now_utc() - window

    results = ctx.index.search(f)
    if limit > 0:
        results = results[:limit]

    if ctx.json_output:
        ctx.output([ticket_to_dict(t) for t in results])
        return

    if not results:
        click.echo(f"No tickets matching '{query}'" if query else "No tickets found")
        return

    for t in results:
        click.echo(format_ticket_row(t, long_format=long_format))

    click.echo(f"\n{len(results)} result(s)")
