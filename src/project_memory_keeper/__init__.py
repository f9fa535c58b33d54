"""Project Memory Keeper - Persistent, checkpointed project context for MCP agents."""

__version__ = "0.1.0"

from project_memory_keeper.config import KeeperConfig

__all__ = ["KeeperConfig", "__version__"]
