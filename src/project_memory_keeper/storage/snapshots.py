"""SnapshotManager -- immutable full-document copies: backups and checkpoints.

Backups are written automatically after every mutation; checkpoints are
written on explicit request and carry a description.  Both are full copies
of the context document and neither is ever overwritten or deleted by this
package.  The document's checkpoint index is maintained by the
:class:`~project_memory_keeper.storage.context_manager.ContextManager`; this
module only owns the files.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from project_memory_keeper.exceptions import CheckpointNotFoundError, CorruptContextError
from project_memory_keeper.models.context import CheckpointSnapshot, ContextDocument
from project_memory_keeper.storage.store import (
    BACKUPS_SUBDIR,
    BLOB_EXTENSION,
    CHECKPOINTS_SUBDIR,
    ContextStore,
)

logger = logging.getLogger(__name__)

BACKUP_FILE_PREFIX = "context-backup-"
CHECKPOINT_FILE_PREFIX = "checkpoint-"


def backup_name(now: Optional[datetime] = None) -> str:
    """Return a unique backup file name.

    The timestamp part sorts chronologically; the random suffix keeps two
    backups taken within the same microsecond apart.
    """
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return f"{BACKUP_FILE_PREFIX}{stamp}-{uuid4().hex[:8]}{BLOB_EXTENSION}"


class SnapshotManager:
    """Writes and reads backup and checkpoint copies of the context document.

    Parameters
    ----------
    store:
        The blob store the copies are written to.
    """

    def __init__(self, store: ContextStore) -> None:
        self._store = store

    @property
    def store(self) -> ContextStore:
        return self._store

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def write_backup(self, document: ContextDocument) -> str:
        """Write a new timestamped backup of *document* and return its name.

        Raises
        ------
        PersistenceError
            If the backup could not be written.
        """
        name = backup_name()
        self._store.write_blob(
            f"{BACKUPS_SUBDIR}/{name}", document.to_json_dict(), overwrite=False
        )
        logger.info("Wrote backup %s", name)
        return name

    def list_backups(self) -> list[str]:
        """Return backup file names, oldest first."""
        return self._store.list_blobs(BACKUPS_SUBDIR, prefix=BACKUP_FILE_PREFIX)

    def load_backup(self, name: str) -> ContextDocument:
        """Load the backup called *name*.

        Raises
        ------
        CorruptContextError
            If the backup is missing or unreadable.
        """
        path = self._store.blob_path(f"{BACKUPS_SUBDIR}/{self._store.sanitise_name(name)}")
        if not path.is_file():
            raise CorruptContextError(f"Backup {name} does not exist")
        return self._store.load_document(path)

    def latest_readable_backup(self) -> Optional[tuple[str, ContextDocument]]:
        """Return ``(name, document)`` for the newest backup that loads cleanly."""
        for name in reversed(self.list_backups()):
            try:
                return name, self.load_backup(name)
            except CorruptContextError:
                logger.warning("Skipping unreadable backup %s", name, exc_info=True)
        return None

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def take_checkpoint(self, document: ContextDocument, description: str) -> CheckpointSnapshot:
        """Persist a deep copy of *document* as a new checkpoint snapshot.

        The snapshot holds a value copy, so later mutations of *document*
        never leak into it.

        Raises
        ------
        PersistenceError
            If the snapshot could not be written.
        """
        snapshot = CheckpointSnapshot(
            description=description,
            context=document.model_copy(deep=True),
        )
        self._store.write_blob(
            self._checkpoint_key(snapshot.id), snapshot.to_json_dict(), overwrite=False
        )
        logger.info("Wrote checkpoint %s (%s)", snapshot.id, description)
        return snapshot

    def load_checkpoint(self, checkpoint_id: str) -> CheckpointSnapshot:
        """Load a checkpoint snapshot by id.

        Works for every snapshot ever written, including those whose
        reference has been evicted from the document's index.

        Raises
        ------
        CheckpointNotFoundError
            If no snapshot exists for *checkpoint_id*.
        CorruptContextError
            If the snapshot exists but cannot be parsed.
        """
        key = self._checkpoint_key(checkpoint_id)
        data = self._store.read_blob(key)
        if data is None:
            raise CheckpointNotFoundError(f"No checkpoint found with id {checkpoint_id}")
        try:
            return CheckpointSnapshot.from_json_dict(data)
        except ValueError as exc:
            raise CorruptContextError(f"Invalid checkpoint {checkpoint_id}: {exc}") from exc

    def checkpoint_exists(self, checkpoint_id: str) -> bool:
        return self._store.blob_exists(self._checkpoint_key(checkpoint_id))

    def list_checkpoint_ids(self) -> list[str]:
        """Return the ids of every persisted checkpoint snapshot."""
        return [
            name[len(CHECKPOINT_FILE_PREFIX): -len(BLOB_EXTENSION)]
            for name in self._store.list_blobs(CHECKPOINTS_SUBDIR, prefix=CHECKPOINT_FILE_PREFIX)
        ]

    def _checkpoint_key(self, checkpoint_id: str) -> str:
        sanitised = self._store.sanitise_name(checkpoint_id)
        return f"{CHECKPOINTS_SUBDIR}/{CHECKPOINT_FILE_PREFIX}{sanitised}{BLOB_EXTENSION}"
