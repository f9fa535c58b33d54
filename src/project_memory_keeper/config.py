"""Configuration and settings module for Project Memory Keeper.

Provides the :class:`KeeperConfig` class which centralises all configuration
for the context store.  Configuration is resolved in priority order:

1. **Environment variables** (highest priority) -- ``MEMORY_KEEPER_*``
2. **Config file** -- ``<project_root>/memory-data/config.json``
3. **Defaults** (lowest priority) -- built-in values

Typical usage::

    config = KeeperConfig.load()                          # auto-detect project root
    config = KeeperConfig.load("/path/to/project")        # explicit project root
    config = KeeperConfig(storage_path="/custom/path")    # programmatic construction

    print(config.storage_path)   # resolved absolute path to memory-data/
    print(config.max_updates)    # 100  (or overridden value)
    print(config.channel)        # "default"  (or overridden value)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Default storage directory name, placed at the project root.
DEFAULT_STORAGE_DIR_NAME = "memory-data"

# Config file name inside the storage directory.
CONFIG_FILE_NAME = "config.json"

# Environment variable prefix.  Every config key can be overridden by setting
# ``MEMORY_KEEPER_<UPPER_KEY>``.  For example, ``MEMORY_KEEPER_CHANNEL=ops``.
ENV_PREFIX = "MEMORY_KEEPER_"

DEFAULT_CHANNEL = "default"
DEFAULT_SERVER_IP = "127.0.0.1"

# Sentinel files used to detect a project root directory.  The search walks
# upward from the current working directory until one of these is found.
PROJECT_ROOT_MARKERS = (
    ".git",
    "pyproject.toml",
    "setup.py",
    "setup.cfg",
    "package.json",
    DEFAULT_STORAGE_DIR_NAME,
)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

# ---------------------------------------------------------------------------
# Configuration model
# ---------------------------------------------------------------------------


class KeeperConfig(BaseModel):
    """Centralised configuration for the context store.

    Attributes
    ----------
    storage_path:
        Absolute path to the storage directory.  When not set explicitly, it
        is derived from the detected project root + :data:`DEFAULT_STORAGE_DIR_NAME`.
    project_name:
        Identifier written into a freshly seeded context document.  Defaults
        to the name of the project root directory.
    channel:
        Logical namespace tag recorded alongside the project identifier.
    server_ip:
        Server address used when seeding the ``server`` record.
    max_updates:
        Number of most recent update entries kept in the document.
    max_checkpoints:
        Number of checkpoint references kept in the document index.  The
        snapshot files themselves are never removed.
    max_errors:
        Optional bound for the error log.  *None* keeps every entry.
    recover_from_backup:
        When the canonical document is unreadable at startup, try the newest
        readable backup before falling back to a fresh seed document.
    log_level:
        Python logging level name.
    project_root:
        The detected or configured project root path.
    """

    storage_path: Optional[str] = Field(
        default=None,
        description="Absolute path to the memory-data/ storage directory.",
    )
    project_name: Optional[str] = Field(
        default=None,
        description="Project identifier for new context documents.",
    )
    channel: str = Field(
        default=DEFAULT_CHANNEL,
        min_length=1,
        description="Logical channel/namespace tag.",
    )
    server_ip: str = Field(
        default=DEFAULT_SERVER_IP,
        min_length=1,
        description="Server IP written into the seed document.",
    )
    max_updates: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Max update entries retained in the context document.",
    )
    max_checkpoints: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Max checkpoint references retained in the index.",
    )
    max_errors: Optional[int] = Field(
        default=None,
        ge=1,
        description="Max error entries retained; None keeps all of them.",
    )
    recover_from_backup: bool = Field(
        default=False,
        description="Recover a corrupt canonical document from the newest backup.",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL.",
    )
    project_root: Optional[str] = Field(
        default=None,
        description="Detected or configured project root path.",
    )

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def resolve_paths(self) -> "KeeperConfig":
        """Resolve ``storage_path``, ``project_root`` and ``project_name``."""
        if self.project_root is not None:
            self.project_root = str(Path(self.project_root).resolve())
        else:
            detected = _detect_project_root()
            self.project_root = str(detected if detected is not None else Path.cwd())

        if self.storage_path is not None:
            self.storage_path = str(Path(self.storage_path).resolve())
        else:
            self.storage_path = str(Path(self.project_root) / DEFAULT_STORAGE_DIR_NAME)

        if not self.project_name:
            self.project_name = Path(self.project_root).name or "project"

        return self

    @model_validator(mode="after")
    def validate_log_level(self) -> "KeeperConfig":
        """Normalise and validate the log level string."""
        normalised = self.log_level.upper().strip()
        if normalised not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log_level '{self.log_level}'. "
                f"Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}."
            )
        self.log_level = normalised
        return self

    # ------------------------------------------------------------------
    # Factory: load from file + environment
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        project_root: Optional[str] = None,
        config_path: Optional[str] = None,
    ) -> "KeeperConfig":
        """Load configuration with full resolution: env -> file -> defaults.

        Parameters
        ----------
        project_root:
            Explicit project root.  When *None*, auto-detection is used.
        config_path:
            Explicit path to a ``config.json`` file.  When *None*, the
            config file is looked up at
            ``<project_root>/memory-data/config.json``.
        """
        if project_root is not None:
            resolved_root = str(Path(project_root).resolve())
        else:
            detected = _detect_project_root()
            resolved_root = str(detected if detected is not None else Path.cwd())

        file_values = _load_config_file(resolved_root, config_path)
        env_values = _load_env_overrides()

        merged: dict = {}
        merged.update(file_values)
        merged.update(env_values)
        merged["project_root"] = resolved_root

        return cls.model_validate(merged)

    # ------------------------------------------------------------------
    # Utility
    # ------------------------------------------------------------------

    def configure_logging(self) -> None:
        """Apply the configured log level to the ``project_memory_keeper`` logger.

        Log output goes to stderr; stdout belongs to the MCP stdio transport.
        Calling this more than once does not add duplicate handlers.
        """
        pkg_logger = logging.getLogger("project_memory_keeper")
        pkg_logger.setLevel(self.log_level)

        if not pkg_logger.handlers:
            handler = logging.StreamHandler()
            handler.setLevel(self.log_level)
            formatter = logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
            handler.setFormatter(formatter)
            pkg_logger.addHandler(handler)

    def to_dict(self) -> dict:
        """Return all configuration values as a plain dictionary."""
        return self.model_dump()


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _detect_project_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """Walk upward from *start_path* to find the project root.

    Returns the first directory containing one of
    :data:`PROJECT_ROOT_MARKERS`, or *None* when the filesystem root is
    reached without a match.
    """
    current = (start_path or Path.cwd()).resolve()

    max_depth = 50
    for _ in range(max_depth):
        for marker in PROJECT_ROOT_MARKERS:
            if (current / marker).exists():
                return current

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def _load_config_file(
    project_root: str,
    config_path: Optional[str] = None,
) -> dict:
    """Read a ``config.json`` file and return its contents as a dict.

    Returns an empty dict if the file does not exist or is malformed.
    """
    if config_path is not None:
        path = Path(config_path).resolve()
    else:
        path = Path(project_root) / DEFAULT_STORAGE_DIR_NAME / CONFIG_FILE_NAME

    if not path.is_file():
        logger.debug("No config file at %s. Using defaults.", path)
        return {}

    try:
        with open(path, "r", encoding="utf-8") as fp:
            data = json.load(fp)
    except json.JSONDecodeError:
        logger.warning(
            "Config file %s contains invalid JSON. Ignoring.",
            path,
            exc_info=True,
        )
        return {}
    except OSError:
        logger.warning(
            "Could not read config file %s. Ignoring.",
            path,
            exc_info=True,
        )
        return {}

    if not isinstance(data, dict):
        logger.warning("Config file %s does not contain a JSON object. Ignoring.", path)
        return {}
    logger.info("Loaded configuration from %s", path)
    return data


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def _load_env_overrides() -> dict:
    """Read ``MEMORY_KEEPER_*`` environment variables and return overrides.

    Supported variables:

    - ``MEMORY_KEEPER_STORAGE_PATH``
    - ``MEMORY_KEEPER_PROJECT_NAME``
    - ``MEMORY_KEEPER_CHANNEL``
    - ``MEMORY_KEEPER_SERVER_IP``
    - ``MEMORY_KEEPER_MAX_UPDATES`` (integer)
    - ``MEMORY_KEEPER_MAX_CHECKPOINTS`` (integer)
    - ``MEMORY_KEEPER_MAX_ERRORS`` (integer)
    - ``MEMORY_KEEPER_RECOVER_FROM_BACKUP`` (``true``/``false``)
    - ``MEMORY_KEEPER_LOG_LEVEL``

    Malformed integers are logged and ignored.
    """
    overrides: dict = {}

    _str_keys = {
        "STORAGE_PATH": "storage_path",
        "PROJECT_NAME": "project_name",
        "CHANNEL": "channel",
        "SERVER_IP": "server_ip",
        "LOG_LEVEL": "log_level",
    }
    for env_key, field_name in _str_keys.items():
        val = os.environ.get(f"{ENV_PREFIX}{env_key}")
        if val is not None:
            overrides[field_name] = val

    _int_keys = {
        "MAX_UPDATES": "max_updates",
        "MAX_CHECKPOINTS": "max_checkpoints",
        "MAX_ERRORS": "max_errors",
    }
    for env_key, field_name in _int_keys.items():
        val = os.environ.get(f"{ENV_PREFIX}{env_key}")
        if val is not None:
            try:
                overrides[field_name] = int(val)
            except ValueError:
                logger.warning(
                    "Invalid %s%s value: %r. Must be an integer. Ignoring.",
                    ENV_PREFIX, env_key, val,
                )

    recover = os.environ.get(f"{ENV_PREFIX}RECOVER_FROM_BACKUP")
    if recover is not None:
        overrides["recover_from_backup"] = _parse_bool(recover)

    if overrides:
        logger.info(
            "Environment overrides applied: %s",
            ", ".join(overrides.keys()),
        )

    return overrides
