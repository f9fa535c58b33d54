"""Main Click CLI entry point for the ``memory-keeper`` command.

Entry point registered in pyproject.toml::

    [project.scripts]
    memory-keeper = "project_memory_keeper.cli.main:cli"

Usage examples::

    memory-keeper --version
    memory-keeper serve
    memory-keeper status --json-output
    memory-keeper show server
    memory-keeper checkpoints
    memory-keeper call save_update '{"content": "Deploy finished", "category": "deployment"}'
"""

from __future__ import annotations

import json
import sys
from typing import Optional

import click

from project_memory_keeper import __version__
from project_memory_keeper.config import KeeperConfig
from project_memory_keeper.service import ContextService
from project_memory_keeper.storage.context_manager import ContextManager


@click.group()
@click.version_option(version=__version__, prog_name="project-memory-keeper")
@click.option(
    "--project-root",
    type=click.Path(file_okay=False),
    default=None,
    help="Project root directory. Auto-detected if not set.",
)
@click.option(
    "--storage-path",
    type=click.Path(exists=False),
    default=None,
    envvar="MEMORY_KEEPER_STORAGE_PATH",
    help="Path to the memory-data storage directory. Derived from the project root if not set.",
)
@click.pass_context
def cli(ctx: click.Context, project_root: Optional[str], storage_path: Optional[str]) -> None:
    """Project Memory Keeper -- durable, checkpointed project context."""
    ctx.ensure_object(dict)
    ctx.obj["project_root"] = project_root
    ctx.obj["storage_path"] = storage_path


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the MCP server over stdio."""
    from project_memory_keeper.mcp.server import create_server

    server = create_server(config=_load_config(ctx))
    server.run(transport="stdio")


@cli.command()
@click.option(
    "--json-output",
    "output_json",
    is_flag=True,
    default=False,
    help="Output status as JSON instead of human-readable text.",
)
@click.pass_context
def status(ctx: click.Context, output_json: bool) -> None:
    """Show storage location, document counters and load health.

    Reads storage without writing to it, so it is safe to run next to a live
    server.  An unreadable context file is reported, not replaced.
    """
    result = _service(ctx, read_only=True).health_check()

    if output_json:
        click.echo(json.dumps(result, indent=2, default=str))
        return
    _exit_on_error(result)

    click.secho("Project Memory Keeper -- Status", fg="cyan", bold=True)
    click.secho("=" * 36, fg="cyan")
    click.echo(f"Version:  {result['server_version']}")
    click.echo(f"Project:  {result['project']} (channel {result['channel']})")
    colour = "green" if result["status"] == "healthy" else "yellow"
    click.secho(f"Status:   {result['status']}", fg=colour)
    click.echo()
    click.secho("Document", fg="blue", bold=True)
    click.secho("-" * 20, fg="blue")
    click.echo(f"  Updates:      {result['updates']}")
    click.echo(f"  Errors:       {result['errors']}")
    click.echo(f"  Checkpoints:  {result['indexed_checkpoints']} indexed")
    click.echo(f"  Last updated: {result['last_updated']}")
    if result["load_error"]:
        click.secho(f"  Load error:   {result['load_error']['error']}", fg="red")
    click.echo()
    click.secho("Storage", fg="magenta", bold=True)
    click.secho("-" * 20, fg="magenta")
    click.echo(f"  Path:             {result['storage_path']}")
    click.echo(f"  Accessible:       {'Yes' if result['storage_accessible'] else 'No'}")
    click.echo(f"  Backup files:     {result['backup_files']}")
    click.echo(f"  Checkpoint files: {result['checkpoint_files']}")


@cli.command()
@click.argument("category", default="all")
@click.pass_context
def show(ctx: click.Context, category: str) -> None:
    """Print the whole context (default) or one CATEGORY as JSON."""
    result = _service(ctx, read_only=True).get_context(category)
    _exit_on_error(result)
    data = result["data"]
    if isinstance(data, str):
        click.echo(data)
    else:
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@cli.command()
@click.option(
    "--json-output",
    "output_json",
    is_flag=True,
    default=False,
    help="Output the listing as JSON.",
)
@click.pass_context
def checkpoints(ctx: click.Context, output_json: bool) -> None:
    """List indexed checkpoints and snapshots that dropped out of the index."""
    result = _service(ctx, read_only=True).list_checkpoints()
    _exit_on_error(result)

    if output_json:
        click.echo(json.dumps(result, indent=2))
        return

    refs = result["checkpoints"]
    if not refs:
        click.secho("No checkpoints in the index.", fg="yellow")
    for ref in refs:
        click.echo(f"{ref['id']}  {ref['timestamp'][:19]}  {ref['description']}")
    unindexed = result["unindexed_ids"]
    if unindexed:
        click.echo()
        click.echo(f"{len(unindexed)} older snapshot(s) on disk, not in the index:")
        for cid in unindexed:
            click.echo(f"  {cid}")


@cli.command()
@click.argument("operation")
@click.argument("arguments", required=False, default="{}")
@click.pass_context
def call(ctx: click.Context, operation: str, arguments: str) -> None:
    """Run OPERATION with ARGUMENTS given as a JSON object and print the result."""
    try:
        args = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="ARGUMENTS")
    if not isinstance(args, dict):
        raise click.BadParameter("must be a JSON object", param_hint="ARGUMENTS")

    result = _service(ctx).dispatch(operation, args)
    click.echo(json.dumps(result, indent=2, ensure_ascii=False))
    if result.get("error"):
        sys.exit(1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_config(ctx: click.Context) -> KeeperConfig:
    config = KeeperConfig.load(project_root=ctx.obj.get("project_root"))
    storage_path = ctx.obj.get("storage_path")
    if storage_path:
        config = KeeperConfig.model_validate({**config.to_dict(), "storage_path": storage_path})
    return config


def _service(ctx: click.Context, read_only: bool = False) -> ContextService:
    manager = ContextManager.from_config(_load_config(ctx), read_only=read_only)
    return ContextService(manager)


def _exit_on_error(result: dict) -> None:
    if result.get("error"):
        click.secho("ERROR: " + result.get("message", "Unknown error"), fg="red", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
