"""atd init - initialize a new trackdown project."""

from __future__ import annotations

import os

import click

from trackdown.cli import TrackdownContext, pass_ctx
from trackdown.config import CONFIG_DIR, CONFIG_YAML, ProjectConfig, resolve_paths
from trackdown.id_gen import IdAllocator
from trackdown.store import DocumentStore


@click.command("init")
@click.option("--name", help="Project name (default: directory name)")
@click.option("--tasks-dir", default=None, help="Root directory for ticket documents")
@click.option("--repository", default="", help="GitHub repository (owner/repo) to sync with")
@pass_ctx
def init_cmd(ctx: TrackdownContext, name: str | None, tasks_dir: str | None, repository: str) -> None:
    """Initialize a new trackdown project in the current directory."""
    root = os.path.abspath(ctx.root or os.getcwd())
    config_path = os.path.join(root, CONFIG_DIR, CONFIG_YAML)

    if os.path.exists(config_path):
        click.echo(f"trackdown already initialized at {config_path}")
        return

    config = ProjectConfig(name=name or os.path.basename(root) or "trackdown")
    if tasks_dir:
        config.tasks_directory = tasks_dir
    if repository:
        config.github_sync.repository = repository
        config.github_sync.enabled = True
    config.save(root)

    paths = resolve_paths(root, config)
    DocumentStore(paths, config).ensure_layout()
    IdAllocator(paths.counters_path, config.naming_conventions.prefixes()).reset_counters()

    gitignore_path = os.path.join(paths.config_dir, ".gitignore")
    with open(gitignore_path, "w") as f:
        f.write("# trackdown local files (not shared via git)\n")
        f.write("counters.json.lock\n")
        f.write("sync-metadata.json\n")

    if ctx.json_output:
        ctx.output({"root": root, "config": config_path, "tasks_root": paths.tasks_root})
        return
    click.echo(f"Initialized trackdown in {root}")
    click.echo(f"  Tickets: {paths.tasks_root}")
    if repository:
        click.echo(f"  GitHub sync: {repository}")
