"""Pydantic data models for the context document, its log entries and checkpoints."""

from project_memory_keeper.models.context import (
    CheckpointRef,
    CheckpointSnapshot,
    ContextDocument,
    ErrorEntry,
    LoadError,
    Priority,
    ServerEnvironment,
    ServerInfo,
    ServerStatus,
    UpdateCategory,
    UpdateEntry,
)

__all__ = [
    "CheckpointRef",
    "CheckpointSnapshot",
    "ContextDocument",
    "ErrorEntry",
    "LoadError",
    "Priority",
    "ServerEnvironment",
    "ServerInfo",
    "ServerStatus",
    "UpdateCategory",
    "UpdateEntry",
]
