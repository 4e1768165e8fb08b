"""atd migrate - migrate legacy status fields to unified state."""

from __future__ import annotations

import sys
from dataclasses import asdict

import click

from trackdown.cli import TrackdownContext, pass_ctx
from trackdown.errors import TrackdownError
from trackdown.state import StateService, create_rollback_plan, preview_migration


@click.command("migrate")
@click.option("--dry-run", is_flag=True, help="Preview without writing")
@click.option("--rollback-plan", is_flag=True, help="Print the rollback plan for this migration")
@pass_ctx
def migrate(ctx: TrackdownContext, dry_run: bool, rollback_plan: bool) -> None:
    """Add unified state to every ticket that only has a legacy status."""
    ctx.ensure_initialized()
    assert ctx.store is not None and ctx.index is not None

    if dry_run and not ctx.json_output:
        preview = preview_migration(ctx.index.all_items())
        click.echo(f"{preview.total_items} item(s): {preview.needs_migration} need migration, "
                   f"{preview.already_migrated} already migrated")
        for entry in preview.entries:
            if entry.needs_migration:
                click.echo(f"  {entry.item_id:<10} {entry.current_status} -> {entry.target_state}")

    service = StateService(ctx.store, ctx.index)
    try:
        result = service.migrate_all(ctx.actor, dry_run=dry_run)
    except TrackdownError as e:
        ctx.fail(str(e))

    if ctx.json_output:
        data = {
            "dry_run": dry_run,
            "success": result.success,
            "migrated_count": result.migrated_count,
            "failed_count": result.failed_count,
            "errors": result.errors,
            "log": [asdict(entry) for entry in result.log],
        }
        if rollback_plan:
            data["rollback_plan"] = [asdict(op) for op in create_rollback_plan(result.log)]
        ctx.output(data)
    else:
        for entry in result.log:
            if not entry.success:
                click.echo(f"  FAILED {entry.item_id}: {entry.error}", err=True)
            elif entry.changed and not ctx.quiet and not dry_run:
                click.echo(f"  {entry.item_id:<10} {entry.old_status} -> {entry.new_state}")
        if rollback_plan:
            click.echo("Rollback plan:")
            for op in create_rollback_plan(result.log):
                click.echo(f"  {op.item_id:<10} {op.action} (status: {op.original_status or '-'})")
        verb = "Would migrate" if dry_run else "Migrated"
        click.echo(f"{verb} {result.migrated_count} item(s), {result.failed_count} failed")

    if not result.success:
        sys.exit(1)
