"""ContextManager -- owner of the live context document.

Bridges the :class:`ContextDocument` (in-memory model), the
:class:`ContextStore` (canonical file) and the :class:`SnapshotManager`
(backups and checkpoints) behind one API.  Every mutation runs as a single
unit of work under a lock::

    validate -> mutate in memory -> write canonical -> write backup -> return

If either write fails the in-memory document is rolled back to its state
before the operation and :class:`PersistenceError` propagates, so what
``get_context`` reports always matches what was persisted.

Typical usage::

    manager = ContextManager(ContextStore("/path/to/memory-data"), project="acme")
    manager.save_update("Deploy finished", UpdateCategory.DEPLOYMENT, Priority.CRITICAL)
    found, server = manager.get_context("server")
    snapshot = manager.create_checkpoint("before migration")

Read-only methods never trigger writes.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from project_memory_keeper.config import KeeperConfig
from project_memory_keeper.exceptions import CorruptContextError, PersistenceError
from project_memory_keeper.models.context import (
    CheckpointRef,
    CheckpointSnapshot,
    ContextDocument,
    Priority,
    ServerEnvironment,
    ServerInfo,
    ServerStatus,
    UpdateCategory,
    UpdateEntry,
)
from project_memory_keeper.storage.snapshots import SnapshotManager
from project_memory_keeper.storage.store import ContextStore

logger = logging.getLogger(__name__)

ALL_CATEGORIES = "all"


class ContextManager:
    """Load-or-initialize, mutate and persist the single context document.

    The manager owns the canonical ``ContextDocument`` instance.  All
    operations are serialized through one re-entrant lock, so two mutations
    never interleave even when the MCP runtime calls tools from worker
    threads.  Only one process may point at a given storage directory.

    Parameters
    ----------
    store:
        Blob store holding the canonical document, backups and checkpoints.
    project:
        Project identifier used when a new document is seeded.
    channel:
        Namespace tag used when a new document is seeded.
    server_ip:
        Server address used when a new document is seeded.
    max_updates, max_checkpoints, max_errors:
        Retention bounds for the update log, checkpoint index and error log.
        ``max_errors=None`` keeps every error entry.
    recover_from_backup:
        Try the newest readable backup before seeding when the canonical
        document is unreadable.
    read_only:
        Never write to storage.  A missing or unreadable canonical document
        is replaced in memory only, and every mutation raises
        :class:`PersistenceError`.
    """

    def __init__(
        self,
        store: ContextStore,
        project: str,
        channel: str = "default",
        server_ip: str = "",
        max_updates: int = 100,
        max_checkpoints: int = 20,
        max_errors: Optional[int] = None,
        recover_from_backup: bool = False,
        read_only: bool = False,
    ) -> None:
        self._store = store
        self._snapshots = SnapshotManager(store)
        self._project = project
        self._channel = channel
        self._server_ip = server_ip
        self._max_updates = max_updates
        self._max_checkpoints = max_checkpoints
        self._max_errors = max_errors
        self._recover_from_backup = recover_from_backup
        self._read_only = read_only
        self._lock = threading.RLock()
        self._document = self.load()

    @classmethod
    def from_config(cls, config: KeeperConfig, read_only: bool = False) -> "ContextManager":
        """Build a manager for the storage directory and bounds in *config*."""
        return cls(
            ContextStore(config.storage_path),
            project=config.project_name,
            channel=config.channel,
            server_ip=config.server_ip,
            max_updates=config.max_updates,
            max_checkpoints=config.max_checkpoints,
            max_errors=config.max_errors,
            recover_from_backup=config.recover_from_backup,
            read_only=read_only,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def store(self) -> ContextStore:
        return self._store

    @property
    def snapshots(self) -> SnapshotManager:
        return self._snapshots

    @property
    def document(self) -> ContextDocument:
        """The live document.  Mutate it only through manager methods."""
        return self._document

    @property
    def max_updates(self) -> int:
        return self._max_updates

    @property
    def max_checkpoints(self) -> int:
        return self._max_checkpoints

    @property
    def max_errors(self) -> Optional[int]:
        return self._max_errors

    # ------------------------------------------------------------------
    # Load / persist
    # ------------------------------------------------------------------

    def load(self) -> ContextDocument:
        """Load the canonical document, or seed and persist a new one.

        An unreadable canonical document never aborts startup: it is moved
        aside and replaced by the newest readable backup (when enabled) or by
        a fresh seed document carrying a ``load_error`` marker.
        """
        with self._lock:
            try:
                document = self._store.load_context()
            except CorruptContextError as exc:
                logger.warning("Context document is unreadable: %s", exc, exc_info=True)
                if not self._read_only:
                    self._store.quarantine_context(_file_stamp())
                document = self._recover(str(exc))
            else:
                if document is not None:
                    logger.info(
                        "Loaded context for project %s (%d updates, %d checkpoints).",
                        document.project,
                        len(document.updates),
                        len(document.checkpoints),
                    )
                    self._document = document
                    return document
                document = self._seed()
                logger.info("No context document found. Seeded a new one for %s.", self._project)

            self._document = document
            if self._read_only:
                return document
            try:
                self._persist()
            except PersistenceError:
                logger.error("Could not persist the initial context document.", exc_info=True)
            return document

    def persist(self) -> None:
        """Write the current document to its canonical file and a new backup.

        Raises
        ------
        PersistenceError
            If either write fails.  No backup is written when the canonical
            write fails.
        """
        with self._lock:
            self._persist()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def save_update(
        self,
        content: str,
        category: UpdateCategory = UpdateCategory.GENERAL,
        priority: Priority = Priority.MEDIUM,
    ) -> UpdateEntry:
        """Record an update entry and persist the document."""
        with self._transaction():
            entry = self._document.add_update(
                content, category, priority, limit=self._max_updates
            )
            self._document.trim_errors(self._max_errors)
        logger.info(
            "Saved %s update (%s priority). Updates retained: %d.",
            entry.category.value,
            entry.priority.value,
            len(self._document.updates),
        )
        return entry

    def get_context(self, category: str = ALL_CATEGORIES) -> tuple[bool, Any]:
        """Return ``(found, value)`` for *category*, or the whole document for ``"all"``."""
        with self._lock:
            if not category or category == ALL_CATEGORIES:
                return True, self._document.to_json_dict()
            found, value = self._document.get_category(category)
        logger.debug("Read category %s (found=%s).", category, found)
        return found, value

    def update_server(
        self,
        ip: str,
        status: ServerStatus = ServerStatus.ACTIVE,
        environment: ServerEnvironment = ServerEnvironment.PRODUCTION,
    ) -> ServerInfo:
        """Merge new server details into the document and persist it."""
        with self._transaction():
            server = self._document.merge_server(
                ip=ip,
                status=status,
                environment=environment,
                updated=datetime.now(timezone.utc),
            )
        logger.info("Server updated: %s (%s, %s).", ip, status.value, environment.value)
        return server

    def create_checkpoint(self, description: str) -> CheckpointSnapshot:
        """Snapshot the whole document and add it to the checkpoint index.

        The snapshot file is written before the index changes; if the
        document persist then fails, the index change is rolled back but
        the snapshot file stays (snapshot files are never removed).
        """
        with self._lock:
            self._check_writable()
            snapshot = self._snapshots.take_checkpoint(self._document, description)
            with self._transaction():
                self._document.add_checkpoint_ref(
                    snapshot.to_ref(), limit=self._max_checkpoints
                )
        logger.info(
            "Checkpoint %s created. Index holds %d references.",
            snapshot.id,
            len(self._document.checkpoints),
        )
        return snapshot

    def get_checkpoint(self, checkpoint_id: str) -> CheckpointSnapshot:
        """Load a checkpoint snapshot by id, indexed or not."""
        return self._snapshots.load_checkpoint(checkpoint_id)

    def list_checkpoints(self) -> tuple[list[CheckpointRef], list[str]]:
        """Return the index references and the ids of every persisted snapshot."""
        with self._lock:
            refs = list(self._document.checkpoints)
        return refs, self._snapshots.list_checkpoint_ids()

    def restore_checkpoint(self, checkpoint_id: str) -> CheckpointSnapshot:
        """Replace the document content with a checkpoint's content.

        The project identity, ``created`` timestamp and the live checkpoint
        index are kept; a ``general`` update recording the restore is added.
        """
        snapshot = self._snapshots.load_checkpoint(checkpoint_id)
        with self._transaction():
            current = self._document
            restored = snapshot.context.model_copy(deep=True)
            restored.project = current.project
            restored.created = current.created
            restored.updated = current.updated
            restored.checkpoints = list(current.checkpoints)
            restored.load_error = None
            restored.add_update(
                f"Restored checkpoint {snapshot.id}: {snapshot.description}",
                UpdateCategory.GENERAL,
                Priority.HIGH,
                limit=self._max_updates,
            )
            self._document = restored
        logger.info("Restored checkpoint %s.", snapshot.id)
        return snapshot

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def backup_count(self) -> int:
        return len(self._snapshots.list_backups())

    def checkpoint_file_count(self) -> int:
        return len(self._snapshots.list_checkpoint_ids())

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Run a mutation and persist it, rolling back on any failure."""
        with self._lock:
            previous = self._document.model_copy(deep=True)
            try:
                yield
                self._persist(previous)
            except BaseException:
                self._document = previous
                raise

    def _check_writable(self) -> None:
        if self._read_only:
            raise PersistenceError("Context store was opened read-only.")

    def _persist(self, previous: Optional[ContextDocument] = None) -> None:
        self._check_writable()
        self._document.touch()
        self._store.save_context(self._document)
        try:
            self._snapshots.write_backup(self._document)
        except PersistenceError:
            # The canonical file is already ahead of the rolled-back memory.
            if previous is not None:
                try:
                    self._store.save_context(previous)
                except PersistenceError:
                    logger.error(
                        "Could not restore canonical document after a failed backup.",
                        exc_info=True,
                    )
            raise

    def _seed(self, load_error: Optional[str] = None) -> ContextDocument:
        return ContextDocument.seed(
            project=self._project,
            channel=self._channel,
            server_ip=self._server_ip,
            load_error=load_error,
        )

    def _recover(self, reason: str) -> ContextDocument:
        if self._recover_from_backup:
            recovered = self._snapshots.latest_readable_backup()
            if recovered is not None:
                name, document = recovered
                logger.warning("Recovered context document from backup %s.", name)
                return document
        logger.warning("Falling back to a fresh seed document.")
        return self._seed(load_error=f"Failed to load context: {reason}")


def _file_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
