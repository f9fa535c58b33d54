"""File-based storage for the context document, its backups and checkpoints."""

from project_memory_keeper.storage.context_manager import ContextManager
from project_memory_keeper.storage.snapshots import SnapshotManager
from project_memory_keeper.storage.store import ContextStore

__all__ = ["ContextManager", "ContextStore", "SnapshotManager"]
