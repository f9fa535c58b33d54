"""Click CLI commands for developer-facing context management.

Provides the ``memory-keeper`` CLI entry point with subcommands:
- ``memory-keeper serve``       -- Run the MCP server over stdio.
- ``memory-keeper status``      -- Show storage location and document counters.
- ``memory-keeper show``        -- Print the whole context or one category.
- ``memory-keeper checkpoints`` -- List the checkpoint index and snapshot files.
- ``memory-keeper call``        -- Run one operation with JSON arguments.
"""

from project_memory_keeper.cli.main import call, checkpoints, cli, serve, show, status

__all__ = ["call", "checkpoints", "cli", "serve", "show", "status"]
