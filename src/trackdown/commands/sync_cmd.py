"""atd sync - synchronize issues with GitHub."""

from __future__ import annotations

import sys
from contextlib import contextmanager
from typing import Iterator

import click

from trackdown.cli import TrackdownContext, pass_ctx
from trackdown.errors import ConfigurationError, TrackdownError
from trackdown.github import GitHubClient
from trackdown.models import format_timestamp
from trackdown.sync import SyncEngine, SyncResult


@contextmanager
def _engine(ctx: TrackdownContext) -> Iterator[SyncEngine]:
    ctx.ensure_initialized()
    assert ctx.store is not None and ctx.index is not None
    assert ctx.config is not None and ctx.paths is not None
    try:
        client = GitHubClient(ctx.config.github_sync)
    except TrackdownError as e:
        ctx.fail(str(e))
    with client:
        yield SyncEngine(ctx.store, ctx.index, client, ctx.config.github_sync, ctx.paths,
                         allocator=ctx.allocator())


def _report(ctx: TrackdownContext, result: SyncResult) -> None:
    if ctx.json_output:
        ctx.output({
            "success": result.success,
            **result.summary(),
            "conflicts_detail": [c.to_dict() for c in result.conflicts],
            "failures": [{"item_id": f.item_id, "message": f.message} for f in result.failed],
        })
    else:
        if ctx.verbose:
            for op in result.operations:
                number = f"#{op.github_number}" if op.github_number is not None else ""
                click.echo(f"  {op.action:<14} {op.item_id:<10} {number} {op.message}".rstrip())
        for c in result.conflicts:
            click.echo(f"  conflict {c.item_id} (#{c.github_number}): {c.resolution}")
        for f in result.failed:
            click.echo(f"  FAILED {f.item_id}: {f.message}", err=True)
        if not ctx.quiet:
            click.echo(
                f"Pushed {result.pushed_count}, pulled {result.pulled_count}, "
                f"skipped {result.skipped_count}, conflicts {result.conflict_count}, "
                f"failed {len(result.failed)}"
            )
    if not result.success:
        sys.exit(1)


def _run(ctx: TrackdownContext, operation: str) -> None:
    with _engine(ctx) as engine:
        try:
            result = getattr(engine, operation)()
        except TrackdownError as e:
            ctx.fail(str(e))
    _report(ctx, result)


@click.group("sync")
def sync_cmd() -> None:
    """Synchronize issues with the configured GitHub repository."""


@sync_cmd.command("push")
@pass_ctx
def push(ctx: TrackdownContext) -> None:
    """Push local issue changes to GitHub."""
    _run(ctx, "push_local_changes")


@sync_cmd.command("pull")
@pass_ctx
def pull(ctx: TrackdownContext) -> None:
    """Pull GitHub issue changes into local documents."""
    _run(ctx, "pull_remote_changes")


@sync_cmd.command("bidirectional")
@pass_ctx
def bidirectional(ctx: TrackdownContext) -> None:
    """Push and pull in one pass, resolving conflicts by policy."""
    _run(ctx, "bidirectional_sync")


@sync_cmd.command("test")
@pass_ctx
def test_connection(ctx: TrackdownContext) -> None:
    """Check that the repository is reachable with the configured token."""
    with _engine(ctx) as engine:
        ok = engine.test_connection()
    if not ok:
        ctx.fail(f"cannot reach {engine.config.repository}")
    click.echo(f"Connected to {engine.config.repository}")


@sync_cmd.command("status")
@pass_ctx
def status(ctx: TrackdownContext) -> None:
    """Show sync health and pending work."""
    ctx.ensure_initialized()
    assert ctx.store is not None and ctx.index is not None
    assert ctx.config is not None and ctx.paths is not None
    try:
        client: GitHubClient | None = GitHubClient(ctx.config.github_sync)
    except ConfigurationError:
        # The local half of the report needs no connection.
        client = None
    engine = SyncEngine(ctx.store, ctx.index, client, ctx.config.github_sync, ctx.paths,
                        allocator=ctx.allocator())
    try:
        report = engine.get_sync_status()
    except TrackdownError as e:
        ctx.fail(str(e))
    finally:
        if client is not None:
            client.close()

    if ctx.json_output:
        ctx.output({
            "enabled": report.enabled,
            "repository": report.repository,
            "last_sync": format_timestamp(report.last_sync),
            "pending_operations": report.pending_operations,
            "conflicts": report.conflicts,
            "sync_health": report.sync_health,
            "last_error": report.last_error,
            "rate_limit_remaining": report.rate_limit_remaining,
        })
        return

    click.echo(f"  Repository: {report.repository or '-'}")
    click.echo(f"  Enabled:    {'yes' if report.enabled else 'no'}")
    click.echo(f"  Last sync:  {format_timestamp(report.last_sync) or 'never'}")
    click.echo(f"  Pending:    {report.pending_operations}")
    click.echo(f"  Conflicts:  {report.conflicts}")
    click.echo(f"  Health:     {report.sync_health}")
    if report.rate_limit_remaining is not None:
        click.echo(f"  Rate limit: {report.rate_limit_remaining} remaining")
    if report.last_error:
        click.echo(f"  Last error: {report.last_error}")
