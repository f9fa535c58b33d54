"""ContextDocument model -- the single mutable record holding all project state.

A ContextDocument aggregates the server record, the free-form category
records (architecture, phases, metrics, deployment, agents), the bounded
update log, the error log and the bounded checkpoint index.  It is the unit
of persistence: every backup and every checkpoint snapshot is a full copy of
one ContextDocument.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class UpdateCategory(str, Enum):
    """Tag classifying an update entry."""

    SERVER = "server"
    ARCHITECTURE = "architecture"
    PROGRESS = "progress"
    ERROR = "error"
    DEPLOYMENT = "deployment"
    AGENT = "agent"
    GENERAL = "general"


class Priority(str, Enum):
    """Priority level of an update entry."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ServerStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    DOWN = "down"


class ServerEnvironment(str, Enum):
    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"


# Seed values for a brand new document.  Plain data; nothing in the store
# depends on their shape.
SEED_ARCHITECTURE: dict[str, Any] = {
    "pattern": "unspecified",
    "backend": "unspecified",
    "frontend": "unspecified",
    "database": "unspecified",
}
SEED_PHASES: dict[str, Any] = {
    "discovery": "pending",
    "infrastructure": "pending",
    "development": "pending",
    "testing": "pending",
    "deployment": "pending",
}
SEED_CRITICAL_METRICS: dict[str, Any] = {
    "total_errors": 0,
}
SEED_DEPLOYMENT_STATUS: dict[str, Any] = {
    "server_ready": False,
    "tests_pending": True,
}


class ServerInfo(BaseModel):
    """Deployment server record.  Every field is last-writer-wins.

    ``last_update`` is also read from the camelCase ``lastUpdate`` key, and
    unrecognised server keys are kept as extra fields so they survive the
    next persist.
    """

    model_config = ConfigDict(extra="allow")

    ip: str = Field(default="", description="Server address; no format validation.")
    status: ServerStatus = Field(default=ServerStatus.ACTIVE)
    environment: ServerEnvironment = Field(default=ServerEnvironment.PRODUCTION)
    updated: datetime = Field(
        default_factory=_utcnow,
        description="When the server record was last changed (UTC).",
    )
    last_update: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("last_update", "lastUpdate"),
        description="Content of the most recent update saved in the 'server' category.",
    )


class UpdateEntry(BaseModel):
    """One entry of the update log.  Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    content: str = Field(..., min_length=1)
    category: UpdateCategory = Field(default=UpdateCategory.GENERAL)
    priority: Priority = Field(default=Priority.MEDIUM)
    timestamp: datetime = Field(default_factory=_utcnow)


class ErrorEntry(BaseModel):
    """One entry of the error log, mirrored from an ``error`` category update."""

    model_config = ConfigDict(frozen=True)

    content: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=_utcnow)


class CheckpointRef(BaseModel):
    """Back-reference to a persisted checkpoint snapshot.

    The index only points at snapshots; it is never authoritative for their
    content and evicting a reference never deletes the snapshot file.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    timestamp: datetime


class LoadError(BaseModel):
    """Marker attached to a seed document created after a failed load."""

    error: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ContextDocument(BaseModel):
    """The single structured record holding all project state.

    Unknown top-level keys found in a persisted document are moved into
    ``extensions`` on load, so documents written by newer versions survive
    a round-trip through this model.
    """

    project: str = Field(..., min_length=1, description="Project identifier.")
    channel: str = Field(default="default", description="Logical namespace tag.")
    server: ServerInfo = Field(default_factory=ServerInfo)
    architecture: dict[str, Any] = Field(default_factory=dict)
    phases: dict[str, Any] = Field(default_factory=dict)
    current_focus: str = Field(default="")
    critical_metrics: dict[str, Any] = Field(default_factory=dict)
    deployment_status: dict[str, Any] = Field(default_factory=dict)
    agents: dict[str, Any] = Field(default_factory=dict)
    updates: list[UpdateEntry] = Field(
        default_factory=list,
        description="Update log, newest first.",
    )
    errors: list[ErrorEntry] = Field(
        default_factory=list,
        description="Error log, newest first.",
    )
    checkpoints: list[CheckpointRef] = Field(
        default_factory=list,
        description="Checkpoint index, newest first.",
    )
    extensions: dict[str, Any] = Field(
        default_factory=dict,
        description="Forward-compatible storage for unknown top-level keys.",
    )
    load_error: Optional[LoadError] = Field(
        default=None,
        description="Set when this document replaced an unreadable persisted copy.",
    )
    created: datetime = Field(default_factory=_utcnow)
    updated: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="before")
    @classmethod
    def collect_extensions(cls, data: Any) -> Any:
        """Move unknown top-level keys into ``extensions``."""
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        unknown = {k: v for k, v in data.items() if k not in known}
        if not unknown:
            return data
        data = {k: v for k, v in data.items() if k in known}
        extensions = dict(data.get("extensions") or {})
        for key, value in unknown.items():
            extensions.setdefault(key, value)
        data["extensions"] = extensions
        return data

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def seed(
        cls,
        project: str,
        channel: str = "default",
        server_ip: str = "",
        load_error: Optional[str] = None,
    ) -> "ContextDocument":
        """Build a fresh document from the built-in seed template."""
        now = _utcnow()
        return cls(
            project=project,
            channel=channel,
            server=ServerInfo(ip=server_ip, updated=now),
            architecture=dict(SEED_ARCHITECTURE),
            phases=dict(SEED_PHASES),
            critical_metrics=dict(SEED_CRITICAL_METRICS),
            deployment_status=dict(SEED_DEPLOYMENT_STATUS),
            load_error=LoadError(error=load_error, timestamp=now) if load_error else None,
            created=now,
            updated=now,
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_update(
        self,
        content: str,
        category: UpdateCategory = UpdateCategory.GENERAL,
        priority: Priority = Priority.MEDIUM,
        limit: int = 100,
    ) -> UpdateEntry:
        """Prepend an update entry and evict from the tail beyond *limit*.

        ``server`` updates are mirrored into ``server.last_update`` and
        ``error`` updates into the error log.
        """
        entry = UpdateEntry(content=content, category=category, priority=priority)
        self.updates.insert(0, entry)
        del self.updates[limit:]

        if entry.category == UpdateCategory.SERVER:
            self.merge_server(last_update=content)
        elif entry.category == UpdateCategory.ERROR:
            self.errors.insert(0, ErrorEntry(content=content, timestamp=entry.timestamp))
        return entry

    def trim_errors(self, limit: Optional[int]) -> None:
        if limit is not None:
            del self.errors[limit:]

    def merge_server(self, **fields: Any) -> ServerInfo:
        """Merge *fields* into the server record, keeping unspecified fields."""
        merged = self.server.model_dump()
        merged.update(fields)
        self.server = ServerInfo.model_validate(merged)
        return self.server

    def add_checkpoint_ref(self, ref: CheckpointRef, limit: int = 20) -> None:
        """Prepend a checkpoint reference and drop references beyond *limit*."""
        self.checkpoints.insert(0, ref)
        del self.checkpoints[limit:]

    def touch(self, now: Optional[datetime] = None) -> datetime:
        """Refresh ``updated``.  The timestamp never moves backwards."""
        now = now or _utcnow()
        if now > self.updated:
            self.updated = now
        return self.updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_category(self, name: str) -> tuple[bool, Any]:
        """Look up a top-level key or extension key.

        Returns ``(found, value)`` with JSON-compatible values.
        """
        data = self.to_json_dict()
        if name in data and name != "extensions":
            value = data[name]
        else:
            value = data["extensions"].get(name)
        return (value is not None and value != "", value)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_json_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_json_dict(cls, data: dict) -> "ContextDocument":
        """Deserialize from a JSON-compatible dictionary."""
        return cls.model_validate(data)


class CheckpointSnapshot(BaseModel):
    """Named, immutable full copy of a ContextDocument."""

    id: str = Field(default_factory=_new_id)
    description: str = Field(..., min_length=1)
    context: ContextDocument
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_ref(self) -> CheckpointRef:
        return CheckpointRef(id=self.id, description=self.description, timestamp=self.timestamp)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_json_dict(cls, data: dict) -> "CheckpointSnapshot":
        return cls.model_validate(data)
