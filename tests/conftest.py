"""Shared fixtures for the Project Memory Keeper test suite."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import pytest

from project_memory_keeper.config import ENV_PREFIX
from project_memory_keeper.exceptions import PersistenceError
from project_memory_keeper.models.context import ContextDocument
from project_memory_keeper.storage.context_manager import ContextManager
from project_memory_keeper.storage.store import ContextStore


class FailingStore(ContextStore):
    """ContextStore whose writes can be switched to fail.

    ``fail_context`` breaks the canonical document write; ``fail_areas``
    breaks blob writes whose key starts with one of the given areas.
    """

    def __init__(self, storage_path: str) -> None:
        self.fail_context = False
        self.fail_areas: tuple[str, ...] = ()
        self.context_writes = 0
        super().__init__(storage_path)

    def save_context(self, document: ContextDocument) -> Path:
        if self.fail_context:
            raise PersistenceError("simulated canonical write failure")
        self.context_writes += 1
        return super().save_context(document)

    def write_blob(self, key: str, data: dict, overwrite: bool = True) -> Path:
        if any(key.startswith(area + "/") for area in self.fail_areas):
            raise PersistenceError(f"simulated write failure for {key}")
        return super().write_blob(key, data, overwrite=overwrite)


@pytest.fixture(autouse=True)
def clean_env():
    """Remove all MEMORY_KEEPER_* env vars before and after each test."""
    saved = {k: os.environ.pop(k) for k in list(os.environ) if k.startswith(ENV_PREFIX)}
    yield
    for k in list(os.environ):
        if k.startswith(ENV_PREFIX):
            del os.environ[k]
    os.environ.update(saved)


@pytest.fixture()
def storage_path(tmp_path: Path) -> str:
    return str(tmp_path / "memory-data")


@pytest.fixture()
def store(storage_path: str) -> ContextStore:
    return ContextStore(storage_path)


@pytest.fixture()
def failing_store(storage_path: str) -> FailingStore:
    return FailingStore(storage_path)


def make_manager(store: ContextStore, max_errors: Optional[int] = None, **kwargs) -> ContextManager:
    return ContextManager(
        store,
        project="acme-portal",
        channel="ops",
        server_ip="10.0.0.1",
        max_errors=max_errors,
        **kwargs,
    )


@pytest.fixture()
def manager(store: ContextStore) -> ContextManager:
    return make_manager(store)


@pytest.fixture()
def manager_factory():
    """Return a callable building a ContextManager over a given store."""
    return make_manager
