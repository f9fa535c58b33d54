"""FastMCP server for Project Memory Keeper.

Sets up the FastMCP server instance, builds the :class:`ContextManager` and
:class:`ContextService` from configuration and registers one tool per
service operation.  Tools close over the service instance they were
registered with, so several servers (e.g. in tests) never share state.

Typical usage as an MCP server entry point::

    # Via the registered entry point (pyproject.toml):
    # [project.entry-points."mcp.servers"]
    # project-memory-keeper = "project_memory_keeper.mcp:create_server"

    # Or programmatically:
    from project_memory_keeper.mcp.server import create_server
    server = create_server()
    server.run(transport="stdio")
"""

from __future__ import annotations

import logging
from typing import Optional

from fastmcp import FastMCP

from project_memory_keeper import __version__
from project_memory_keeper.config import KeeperConfig
from project_memory_keeper.service import ContextService
from project_memory_keeper.storage.context_manager import ContextManager

logger = logging.getLogger(__name__)

SERVER_NAME = "project-memory-keeper"

# Module-level references to the most recently created server, for callers
# (CLI, health tooling) that need them after creation.  Tools never read these.
_server_instance: Optional[FastMCP] = None
_service: Optional[ContextService] = None
_config: Optional[KeeperConfig] = None


def create_server(
    project_root: Optional[str] = None,
    config_path: Optional[str] = None,
    config: Optional[KeeperConfig] = None,
) -> FastMCP:
    """Create and configure the FastMCP server instance.

    1. Loads configuration (unless *config* is given).
    2. Loads or seeds the context document via :class:`ContextManager`.
    3. Instantiates the FastMCP server and registers the tools.

    Parameters
    ----------
    project_root:
        Explicit project root path.  When None, the project root is
        auto-detected by walking up from the current directory.
    config_path:
        Explicit config file path.
    config:
        A ready configuration object; takes precedence over the other two.
    """
    global _server_instance, _service, _config

    cfg = config or KeeperConfig.load(project_root=project_root, config_path=config_path)
    cfg.configure_logging()

    logger.info("Initializing Project Memory Keeper MCP server v%s", __version__)
    logger.info("Storage path: %s", cfg.storage_path)
    logger.info("Project: %s (channel %s)", cfg.project_name, cfg.channel)

    service = ContextService(ContextManager.from_config(cfg))

    server = FastMCP(
        name=SERVER_NAME,
        instructions=(
            "Project Memory Keeper stores durable notes about an evolving "
            "project. Use save_update to record progress, errors and "
            "decisions, get_context to read them back, update_server to "
            "record deployment server details and create_checkpoint before "
            "risky changes."
        ),
        version=__version__,
    )
    _register_tools(server, service)

    _server_instance, _service, _config = server, service, cfg
    logger.info("FastMCP server created. Tools: %s", ", ".join(service.operations))
    return server


def get_server() -> FastMCP:
    """Return the existing server instance, creating it if necessary."""
    if _server_instance is None:
        return create_server()
    return _server_instance


def get_service() -> ContextService:
    """Return the service of the most recently created server.

    Raises
    ------
    RuntimeError
        If no server has been created yet.
    """
    if _service is None:
        raise RuntimeError("Server has not been initialized. Call create_server() first.")
    return _service


def get_config() -> KeeperConfig:
    """Return the configuration of the most recently created server.

    Raises
    ------
    RuntimeError
        If no server has been created yet.
    """
    if _config is None:
        raise RuntimeError("Server has not been initialized. Call create_server() first.")
    return _config


def reset_server() -> None:
    """Forget the module-level server references (primarily for testing)."""
    global _server_instance, _service, _config
    _server_instance = None
    _service = None
    _config = None
    logger.debug("Server references reset.")


# ---------------------------------------------------------------------------
# Tool registration
# ---------------------------------------------------------------------------


def _register_tools(server: FastMCP, service: ContextService) -> None:
    """Register every context operation as an MCP tool bound to *service*."""

    @server.tool()
    def save_update(content: str = "", category: str = "", priority: str = "") -> dict:
        """Save an important project update to persistent memory.

        The entry is added to the front of the update log (the 100 most
        recent entries are kept) and the whole context is persisted with a
        timestamped backup.

        Args:
            content: The update to save.  Required.
            category: One of "server", "architecture", "progress", "error",
                "deployment", "agent", "general".  Defaults to "general".
                "server" updates are also recorded as the server's
                last_update; "error" updates are also added to the error log.
            priority: One of "critical", "high", "medium", "low".  Defaults
                to "medium".

        Returns:
            The saved entry's id, category, priority, content and timestamp,
            or an error result.
        """
        return service.save_update(content, category, priority)

    @server.tool()
    def get_context(category: str = "all") -> dict:
        """Retrieve project context from persistent memory.

        Args:
            category: "all" for the complete context, or a top-level key
                such as "server", "architecture", "phases", "updates",
                "errors", "checkpoints", "agents", "critical_metrics",
                "deployment_status".  Unknown keys return a not-found
                placeholder instead of an error.

        Returns:
            A dictionary with the category, a found flag and the data.
        """
        return service.get_context(category)

    @server.tool()
    def update_server(ip: str = "", status: str = "", environment: str = "") -> dict:
        """Update server information including the IP address.

        Fields not given keep their previous values except status and
        environment, which default to "active" and "production".

        Args:
            ip: Server IP address.  Required.
            status: One of "active", "maintenance", "down".
            environment: One of "production", "staging", "development".

        Returns:
            The merged server record, or an error result.
        """
        return service.update_server(ip, status, environment)

    @server.tool()
    def create_checkpoint(description: str = "") -> dict:
        """Create a checkpoint: a full, immutable snapshot of the current context.

        The checkpoint index keeps the 20 most recent references; older
        snapshots stay retrievable with get_checkpoint.

        Args:
            description: What this checkpoint captures.  Required.

        Returns:
            The checkpoint id, description and timestamp, or an error result.
        """
        return service.create_checkpoint(description)

    @server.tool()
    def get_checkpoint(checkpoint_id: str = "") -> dict:
        """Retrieve a checkpoint snapshot by id.

        Args:
            checkpoint_id: The id returned by create_checkpoint.  Required.

        Returns:
            The checkpoint metadata and the context as it was at creation.
        """
        return service.get_checkpoint(checkpoint_id)

    @server.tool()
    def list_checkpoints() -> dict:
        """List the checkpoint index and the ids of all persisted snapshots."""
        return service.list_checkpoints()

    @server.tool()
    def restore_checkpoint(checkpoint_id: str = "") -> dict:
        """Restore the context content saved in a checkpoint.

        The checkpoint index itself is kept, and the restore is recorded as
        an update entry.

        Args:
            checkpoint_id: The id of the checkpoint to restore.  Required.
        """
        return service.restore_checkpoint(checkpoint_id)

    @server.tool()
    def health_check() -> dict:
        """Check the health and status of the Project Memory Keeper server.

        Returns the server version, storage location, document counters and
        whether the context had to be re-seeded after a failed load.
        """
        return service.health_check()
