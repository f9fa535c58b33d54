"""ContextService -- the operation surface of the context store.

Validates raw operation arguments, calls the :class:`ContextManager` and
turns every outcome into a JSON-compatible result dict.  No operation
raises: failures come back as ``{"error": True, "operation", "error_type",
"message", "timestamp"}`` so the transport layer can relay them as error
results and keep serving.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from project_memory_keeper import __version__
from project_memory_keeper.exceptions import (
    ContextValidationError,
    MemoryKeeperError,
    UnknownOperationError,
)
from project_memory_keeper.models.context import (
    Priority,
    ServerEnvironment,
    ServerStatus,
    UpdateCategory,
)
from project_memory_keeper.storage.context_manager import ALL_CATEGORIES, ContextManager

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def not_found_placeholder(category: str) -> str:
    return f"No data found for category: {category}"


class ContextService:
    """Validating, never-raising facade over a :class:`ContextManager`.

    Parameters
    ----------
    manager:
        The manager owning the live context document.
    """

    def __init__(self, manager: ContextManager) -> None:
        self._manager = manager
        self._operations: dict[str, Callable[..., dict]] = {
            "save_update": self.save_update,
            "get_context": self.get_context,
            "update_server": self.update_server,
            "create_checkpoint": self.create_checkpoint,
            "get_checkpoint": self.get_checkpoint,
            "list_checkpoints": self.list_checkpoints,
            "restore_checkpoint": self.restore_checkpoint,
            "health_check": self.health_check,
        }

    @property
    def manager(self) -> ContextManager:
        return self._manager

    @property
    def operations(self) -> list[str]:
        return sorted(self._operations)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def save_update(
        self,
        content: Optional[str] = None,
        category: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> dict:
        """Append an update entry to the context document."""

        def run() -> dict:
            text = _require_text(content, "content")
            cat = _choice(UpdateCategory, category, "category", UpdateCategory.GENERAL)
            prio = _choice(Priority, priority, "priority", Priority.MEDIUM)
            entry = self._manager.save_update(text, cat, prio)
            return {
                "id": entry.id,
                "category": entry.category.value,
                "priority": entry.priority.value,
                "content": entry.content,
                "timestamp": entry.timestamp.isoformat(),
                "total_updates": len(self._manager.document.updates),
                "message": (
                    f"Memory saved: {entry.category.value} update "
                    f"({entry.priority.value} priority)"
                ),
            }

        return self._run("save_update", run)

    def get_context(self, category: Optional[Any] = None) -> dict:
        """Read the whole document or one category.  Unknown categories are not errors."""

        def run() -> dict:
            name = str(category).strip() if category is not None else ""
            name = name or ALL_CATEGORIES
            found, value = self._manager.get_context(name)
            return {
                "category": name,
                "found": found,
                "data": value if found else not_found_placeholder(name),
            }

        return self._run("get_context", run)

    def update_server(
        self,
        ip: Optional[str] = None,
        status: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> dict:
        """Merge server details into the context document."""

        def run() -> dict:
            address = _require_text(ip, "ip")
            st = _choice(ServerStatus, status, "status", ServerStatus.ACTIVE)
            env = _choice(
                ServerEnvironment, environment, "environment", ServerEnvironment.PRODUCTION
            )
            server = self._manager.update_server(address, st, env)
            return {
                "server": server.model_dump(mode="json"),
                "message": f"Server updated: {server.ip} ({st.value}, {env.value})",
            }

        return self._run("update_server", run)

    def create_checkpoint(self, description: Optional[str] = None) -> dict:
        """Snapshot the whole context document under a new checkpoint id."""

        def run() -> dict:
            text = _require_text(description, "description")
            snapshot = self._manager.create_checkpoint(text)
            return {
                "id": snapshot.id,
                "description": snapshot.description,
                "timestamp": snapshot.timestamp.isoformat(),
                "indexed_checkpoints": len(self._manager.document.checkpoints),
                "message": f"Checkpoint created: {snapshot.id}",
            }

        return self._run("create_checkpoint", run)

    def get_checkpoint(self, checkpoint_id: Optional[str] = None) -> dict:
        """Return a checkpoint snapshot, including ones evicted from the index."""

        def run() -> dict:
            cid = _require_text(checkpoint_id, "checkpoint_id")
            snapshot = self._manager.get_checkpoint(cid)
            indexed = any(ref.id == snapshot.id for ref in self._manager.document.checkpoints)
            return {
                "id": snapshot.id,
                "description": snapshot.description,
                "timestamp": snapshot.timestamp.isoformat(),
                "indexed": indexed,
                "context": snapshot.context.to_json_dict(),
            }

        return self._run("get_checkpoint", run)

    def list_checkpoints(self) -> dict:
        """List the checkpoint index and every persisted snapshot id."""

        def run() -> dict:
            refs, persisted = self._manager.list_checkpoints()
            indexed_ids = {ref.id for ref in refs}
            return {
                "checkpoints": [ref.model_dump(mode="json") for ref in refs],
                "persisted_ids": persisted,
                "unindexed_ids": [cid for cid in persisted if cid not in indexed_ids],
            }

        return self._run("list_checkpoints", run)

    def restore_checkpoint(self, checkpoint_id: Optional[str] = None) -> dict:
        """Replace the document content with a checkpoint's content."""

        def run() -> dict:
            cid = _require_text(checkpoint_id, "checkpoint_id")
            snapshot = self._manager.restore_checkpoint(cid)
            return {
                "id": snapshot.id,
                "description": snapshot.description,
                "checkpoint_timestamp": snapshot.timestamp.isoformat(),
                "restored_at": self._manager.document.updated.isoformat(),
                "message": f"Restored checkpoint {snapshot.id}",
            }

        return self._run("restore_checkpoint", run)

    def health_check(self) -> dict:
        """Report version, storage location and document counters."""

        def run() -> dict:
            manager = self._manager
            document = manager.document
            storage_accessible = manager.store.storage_root.is_dir()
            degraded = not storage_accessible or document.load_error is not None
            return {
                "server_version": __version__,
                "status": "degraded" if degraded else "healthy",
                "project": document.project,
                "channel": document.channel,
                "storage_path": str(manager.store.storage_root),
                "storage_accessible": storage_accessible,
                "updates": len(document.updates),
                "errors": len(document.errors),
                "indexed_checkpoints": len(document.checkpoints),
                "checkpoint_files": manager.checkpoint_file_count(),
                "backup_files": manager.backup_count(),
                "load_error": (
                    document.load_error.model_dump(mode="json") if document.load_error else None
                ),
                "last_updated": document.updated.isoformat(),
            }

        return self._run("health_check", run)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, operation: str, arguments: Optional[dict[str, Any]] = None) -> dict:
        """Call an operation by name with a dict of arguments."""
        handler = self._operations.get(operation)
        if handler is None:
            exc = UnknownOperationError(
                f"Unknown operation '{operation}'. Known: {', '.join(self.operations)}"
            )
            logger.warning("%s", exc)
            return _error_result(operation, exc)
        try:
            return handler(**(arguments or {}))
        except TypeError as exc:
            # Unexpected argument names; handler bodies never raise.
            return _error_result(operation, ContextValidationError(str(exc)))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run(self, operation: str, body: Callable[[], dict]) -> dict:
        try:
            result = body()
        except MemoryKeeperError as exc:
            logger.warning("%s failed: %s", operation, exc)
            return _error_result(operation, exc)
        except Exception as exc:
            logger.exception("Unexpected failure in %s", operation)
            return _error_result(operation, exc)
        return {"error": False, "operation": operation, **result}


def _error_result(operation: str, exc: Exception) -> dict:
    return {
        "error": True,
        "operation": operation,
        "error_type": getattr(exc, "error_type", "InternalError"),
        "message": f"Error executing {operation}: {exc}",
        "timestamp": _now_iso(),
    }


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ContextValidationError(f"'{field}' is required and must be a non-empty string.")
    return value


def _choice(enum_cls: type[E], value: Optional[str], field: str, default: E) -> E:
    """Map *value* onto *enum_cls*.  Absent values take *default*; others must match."""
    if value is None or value == "":
        return default
    try:
        return enum_cls(value)
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ContextValidationError(
            f"Invalid {field} '{value}'. Must be one of: {valid}"
        ) from None
