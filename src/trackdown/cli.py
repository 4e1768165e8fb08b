"""Click CLI root and global flags for trackdown (atd)."""

from __future__ import annotations

import json
import logging
import sys
from typing import NoReturn

import click

from trackdown import __version__
from trackdown.config import ProjectConfig, ProjectPaths, find_project_root, get_actor, resolve_paths
from trackdown.errors import TrackdownError
from trackdown.id_gen import FileLock, IdAllocator
from trackdown.index import RelationshipIndex
from trackdown.store import DocumentStore


class TrackdownContext:
    """Shared context for all commands."""

    def __init__(self) -> None:
        self.root: str | None = None
        self.config: ProjectConfig | None = None
        self.paths: ProjectPaths | None = None
        self.store: DocumentStore | None = None
        self.index: RelationshipIndex | None = None
        self.actor: str = ""
        self.json_output: bool = False
        self.verbose: bool = False
        self.quiet: bool = False

    def ensure_initialized(self) -> None:
        """Locate the project and build the store and index, or exit with an error."""
        if self.store is not None:
            return
        root = find_project_root(self.root)
        if root is None:
            click.echo("Error: not in a trackdown project (no .ai-trackdown/config.yaml found)", err=True)
            click.echo("Run 'atd init' to create one", err=True)
            sys.exit(1)
        try:
            self.config = ProjectConfig.load(root)
        except TrackdownError as e:
            self.fail(str(e))
        self.root = root
        self.paths = resolve_paths(root, self.config)
        self.store = DocumentStore(self.paths, self.config)
        self.index = RelationshipIndex(self.store)
        if not self.actor:
            self.actor = get_actor()

    def allocator(self) -> IdAllocator:
        assert self.paths is not None and self.config is not None
        return IdAllocator(
            self.paths.counters_path,
            self.config.naming_conventions.prefixes(),
            lock=FileLock.for_counters(self.paths.counters_path),
        )

    def fail(self, message: str) -> NoReturn:
        click.echo(f"Error: {message}", err=True)
        sys.exit(1)

    def output(self, data: dict | list) -> None:
        """Output data as JSON."""
        click.echo(json.dumps(data, indent=2, default=str))


pass_ctx = click.make_pass_decorator(TrackdownContext, ensure=True)


@click.group(invoke_without_command=True)
@click.option("--root", envvar="ATD_ROOT", help="Project root (default: search upward from cwd)")
@click.option("--actor", envvar="ATD_ACTOR", help="Actor name recorded in transitions")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.version_option(__version__, prog_name="atd")
@click.pass_context
def cli(ctx: click.Context, root: str | None, actor: str | None,
        json_output: bool, verbose: bool, quiet: bool) -> None:
    """atd - AI trackdown, Markdown-native issue tracking"""
    tctx = ctx.ensure_object(TrackdownContext)
    tctx.verbose = verbose
    tctx.quiet = quiet
    tctx.json_output = json_output
    if root:
        tctx.root = root
    if actor:
        tctx.actor = actor
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# --- Register all commands ---

from trackdown.commands.init_cmd import init_cmd
from trackdown.commands.create import create
from trackdown.commands.show import show
from trackdown.commands.search import search
from trackdown.commands.resolve import resolve
from trackdown.commands.migrate import migrate
from trackdown.commands.sync_cmd import sync_cmd

cli.add_command(init_cmd, "init")
cli.add_command(create, "create")
cli.add_command(show, "show")
cli.add_command(search, "search")
cli.add_command(resolve, "resolve")
cli.add_command(migrate, "migrate")
cli.add_command(sync_cmd, "sync")


def main() -> None:
    cli(auto_envvar_prefix="ATD")
