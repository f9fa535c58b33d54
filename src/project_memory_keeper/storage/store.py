"""ContextStore -- file-based blob store for the context document and its copies.

Handles all file I/O for the ``memory-data/`` tree.  Blobs are JSON objects
addressed by a key of the form ``<area>/<name>.json``.  Every write is atomic
(write-to-temp + fsync + rename) so a crash mid-write never leaves a truncated
file, and the directory tree is created automatically on first use.

Layout::

    <storage_root>/
        context/project-context.json      canonical document
        backups/context-backup-*.json     one full copy per mutation
        checkpoints/checkpoint-<id>.json  one snapshot per checkpoint request

Typical usage::

    store = ContextStore("/path/to/project/memory-data")

    store.save_context(document)
    document = store.load_context()           # None when absent

    store.write_blob("backups/context-backup-x.json", data)
    data = store.read_blob("backups/context-backup-x.json")
    names = store.list_blobs("backups", prefix="context-backup-")
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from project_memory_keeper.exceptions import CorruptContextError, PersistenceError
from project_memory_keeper.models.context import ContextDocument

logger = logging.getLogger(__name__)

# Areas (subdirectories) within the storage root.
CONTEXT_SUBDIR = "context"
BACKUPS_SUBDIR = "backups"
CHECKPOINTS_SUBDIR = "checkpoints"

# File name of the canonical context document.
CONTEXT_FILE = "project-context.json"

BLOB_EXTENSION = ".json"


class ContextStore:
    """File-based blob store for the context document.

    Parameters
    ----------
    storage_path:
        Absolute or relative path to the storage directory.
    """

    def __init__(self, storage_path: str) -> None:
        self._root = Path(storage_path).resolve()
        self._context_path = self._root / CONTEXT_SUBDIR / CONTEXT_FILE
        self._ensure_directories()

    # ------------------------------------------------------------------
    # Public API -- canonical document
    # ------------------------------------------------------------------

    def save_context(self, document: ContextDocument) -> Path:
        """Atomically write the canonical context document.

        Raises
        ------
        PersistenceError
            If the file could not be written.
        """
        self._atomic_write(self._context_path, document.to_json_dict())
        logger.info("Saved context document to %s", self._context_path)
        return self._context_path

    def load_context(self) -> Optional[ContextDocument]:
        """Load the canonical context document.

        Returns
        -------
        ContextDocument or None
            The document, or *None* when no canonical file exists yet.

        Raises
        ------
        CorruptContextError
            If the file exists but cannot be read or validated.
        """
        if not self.context_exists():
            return None
        return self.load_document(self._context_path)

    def context_exists(self) -> bool:
        """Check whether the canonical document exists on disk."""
        return self._context_path.is_file()

    def quarantine_context(self, suffix: str) -> Optional[Path]:
        """Move the canonical file aside as ``project-context.corrupt-<suffix>.json``.

        Returns the new path, or *None* when there was nothing to move.
        """
        if not self.context_exists():
            return None
        target = self._context_path.with_name(
            f"{self._context_path.stem}.corrupt-{suffix}{BLOB_EXTENSION}"
        )
        try:
            os.replace(self._context_path, target)
        except OSError:
            logger.warning("Could not move corrupt %s aside.", self._context_path, exc_info=True)
            return None
        logger.warning("Moved unreadable context document to %s", target)
        return target

    def load_document(self, path: Path) -> ContextDocument:
        """Read and validate a context document stored at *path*."""
        data = self._read_json(path)
        try:
            return ContextDocument.from_json_dict(data)
        except ValidationError as exc:
            raise CorruptContextError(f"Invalid context document in {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Public API -- blob primitives
    # ------------------------------------------------------------------

    def write_blob(self, key: str, data: dict, overwrite: bool = True) -> Path:
        """Atomically write *data* under *key*.

        With ``overwrite=False`` an existing blob is never replaced and a
        :class:`PersistenceError` is raised instead.
        """
        path = self.blob_path(key)
        if not overwrite and path.exists():
            raise PersistenceError(f"Refusing to overwrite existing blob {key}")
        self._atomic_write(path, data)
        logger.debug("Wrote blob %s", key)
        return path

    def read_blob(self, key: str) -> Optional[dict]:
        """Read the blob stored under *key*, or *None* when it does not exist.

        Raises
        ------
        CorruptContextError
            If the blob exists but is not valid JSON.
        """
        path = self.blob_path(key)
        if not path.is_file():
            return None
        return self._read_json(path)

    def blob_exists(self, key: str) -> bool:
        return self.blob_path(key).is_file()

    def list_blobs(self, area: str, prefix: str = "") -> list[str]:
        """Return the sorted file names in *area* matching *prefix*."""
        directory = self._root / area
        if not directory.is_dir():
            return []
        return sorted(
            entry.name
            for entry in directory.iterdir()
            if entry.is_file()
            and entry.name.startswith(prefix)
            and entry.name.endswith(BLOB_EXTENSION)
        )

    def blob_path(self, key: str) -> Path:
        """Return the file path for *key*, rejecting keys that escape the root."""
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise PersistenceError(f"Blob key {key!r} escapes the storage root")
        return path

    # ------------------------------------------------------------------
    # Public API -- introspection
    # ------------------------------------------------------------------

    @property
    def storage_root(self) -> Path:
        """The resolved root directory used for storage."""
        return self._root

    @property
    def context_path(self) -> Path:
        """The canonical context document path."""
        return self._context_path

    @staticmethod
    def sanitise_name(name: str) -> str:
        """Sanitise an identifier for safe use as a filename component.

        Replaces characters that are problematic on common file systems
        (``/``, ``\\``, ``:``, ``*``, ``?``, ``"``, ``<``, ``>``, ``|``)
        with hyphens and strips leading/trailing whitespace.
        """
        sanitised = name.strip()
        for ch in r'/\:*?"<>|':
            sanitised = sanitised.replace(ch, "-")
        return sanitised

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _ensure_directories(self) -> None:
        for area in (CONTEXT_SUBDIR, BACKUPS_SUBDIR, CHECKPOINTS_SUBDIR):
            (self._root / area).mkdir(parents=True, exist_ok=True)

    def _atomic_write(self, target: Path, data: dict) -> None:
        """Write *data* as formatted JSON to *target* atomically.

        The temp file is created in the same directory as *target* so the
        final rename is atomic on POSIX.  On any failure the temp file is
        removed and the original target is left untouched.

        Raises
        ------
        PersistenceError
            Wrapping the underlying ``OSError`` or serialization error.
        """
        fd = None
        tmp_path: Optional[str] = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(target.parent),
                prefix=".tmp_",
                suffix=BLOB_EXTENSION,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fd = None  # os.fdopen takes ownership of the fd
                json.dump(data, fp, indent=2, ensure_ascii=False)
                fp.write("\n")
                fp.flush()
                os.fsync(fp.fileno())

            os.replace(tmp_path, str(target))
            tmp_path = None
        except (OSError, TypeError, ValueError) as exc:
            self._cleanup(fd, tmp_path)
            raise PersistenceError(f"Failed to write {target}: {exc}") from exc
        except BaseException:
            self._cleanup(fd, tmp_path)
            raise

    @staticmethod
    def _cleanup(fd: Optional[int], tmp_path: Optional[str]) -> None:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                logger.debug("Temp file %s already gone.", tmp_path)

    @staticmethod
    def _read_json(path: Path) -> dict:
        """Read and parse a JSON object from *path*.

        Raises
        ------
        CorruptContextError
            On unreadable files, malformed JSON or a non-object payload.
        """
        try:
            with open(path, "r", encoding="utf-8") as fp:
                data = json.load(fp)
        except ValueError as exc:
            # JSONDecodeError and UnicodeDecodeError
            raise CorruptContextError(f"Corrupt JSON in {path}: {exc}") from exc
        except OSError as exc:
            raise CorruptContextError(f"Could not read {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise CorruptContextError(f"{path} does not contain a JSON object")
        return data
