"""Tests for ContextManager -- load-or-initialize, bounded mutation and persistence.

All tests use real files in temporary directories.  Write failures are
simulated with the ``FailingStore`` subclass from conftest.
"""

import json
import threading
from datetime import timedelta

import pytest

from project_memory_keeper.config import KeeperConfig
from project_memory_keeper.exceptions import CheckpointNotFoundError, PersistenceError
from project_memory_keeper.models.context import (
    ContextDocument,
    Priority,
    ServerEnvironment,
    ServerStatus,
    UpdateCategory,
)
from project_memory_keeper.storage.context_manager import ContextManager
from project_memory_keeper.storage.store import CONTEXT_SUBDIR, ContextStore


class TestLoad:
    def test_first_run_seeds_and_persists(self, store: ContextStore, manager_factory) -> None:
        manager = manager_factory(store)
        assert store.context_exists()
        assert manager.document.project == "acme-portal"
        assert manager.document.channel == "ops"
        assert manager.document.server.ip == "10.0.0.1"
        assert manager.backup_count() == 1

    def test_reloads_existing_document(self, store: ContextStore, manager_factory) -> None:
        first = manager_factory(store)
        first.save_update("remember me", UpdateCategory.PROGRESS)
        second = ContextManager(store, project="ignored")
        assert second.document.project == "acme-portal"
        assert second.document.updates[0].content == "remember me"

    def test_reload_does_not_write(self, store: ContextStore, manager_factory) -> None:
        manager_factory(store)
        backups = manager_factory(store).backup_count()
        assert backups == 1

    def test_corrupt_document_falls_back_to_seed(
        self, store: ContextStore, manager_factory
    ) -> None:
        manager_factory(store).save_update("lost")
        store.context_path.write_text("{not json", encoding="utf-8")

        manager = manager_factory(store)

        assert manager.document.updates == []
        assert manager.document.load_error is not None
        assert "Failed to load context" in manager.document.load_error.error
        quarantined = list((store.storage_root / CONTEXT_SUBDIR).glob("*.corrupt-*.json"))
        assert len(quarantined) == 1
        assert quarantined[0].read_text(encoding="utf-8") == "{not json"
        # The seed replacing the corrupt file is persisted.
        assert store.load_context().load_error is not None

    def test_corrupt_document_recovers_from_backup(
        self, store: ContextStore, manager_factory
    ) -> None:
        manager_factory(store).save_update("keep me", UpdateCategory.DEPLOYMENT)
        store.context_path.write_text("garbage", encoding="utf-8")

        manager = manager_factory(store, recover_from_backup=True)

        assert manager.document.load_error is None
        assert manager.document.updates[0].content == "keep me"

    def test_recovery_without_backups_seeds(self, store: ContextStore, manager_factory) -> None:
        store.context_path.write_text("garbage", encoding="utf-8")
        manager = manager_factory(store, recover_from_backup=True)
        assert manager.document.load_error is not None

    def test_unwritable_seed_does_not_block_startup(
        self, failing_store, manager_factory
    ) -> None:
        failing_store.fail_context = True
        manager = manager_factory(failing_store)
        assert manager.document.project == "acme-portal"
        assert not failing_store.context_exists()

    def test_from_config(self, tmp_path) -> None:
        config = KeeperConfig(
            project_root=str(tmp_path),
            project_name="from-config",
            max_updates=3,
            max_checkpoints=2,
        )
        manager = ContextManager.from_config(config)
        assert manager.document.project == "from-config"
        assert manager.max_updates == 3
        assert manager.max_checkpoints == 2
        assert manager.store.storage_root == tmp_path.resolve() / "memory-data"


class TestSaveUpdate:
    def test_prepends_and_persists(self, manager: ContextManager, store: ContextStore) -> None:
        entry = manager.save_update("x", UpdateCategory.PROGRESS, Priority.HIGH)
        assert manager.document.updates[0] == entry
        on_disk = store.load_context()
        assert on_disk.updates[0].content == "x"
        assert on_disk.updates[0].priority == Priority.HIGH

    def test_one_backup_per_save(self, manager: ContextManager) -> None:
        before = manager.backup_count()
        manager.save_update("a")
        manager.save_update("b")
        assert manager.backup_count() == before + 2

    def test_bounded_to_100_most_recent(self, manager: ContextManager) -> None:
        for i in range(105):
            manager.save_update(f"u{i}")
            assert len(manager.document.updates) <= 100
        contents = [u.content for u in manager.document.updates]
        assert contents == [f"u{i}" for i in range(104, 4, -1)]

    def test_custom_bound(self, store: ContextStore, manager_factory) -> None:
        manager = manager_factory(store, max_updates=3)
        for i in range(5):
            manager.save_update(f"u{i}")
        assert [u.content for u in manager.document.updates] == ["u4", "u3", "u2"]

    def test_server_category_merges_last_update(self, manager: ContextManager) -> None:
        manager.save_update("nginx restarted", UpdateCategory.SERVER)
        assert manager.document.server.last_update == "nginx restarted"
        assert manager.document.server.ip == "10.0.0.1"

    def test_error_category_unbounded_by_default(self, manager: ContextManager) -> None:
        for i in range(3):
            manager.save_update(f"e{i}", UpdateCategory.ERROR)
        assert [e.content for e in manager.document.errors] == ["e2", "e1", "e0"]

    def test_error_bound_when_configured(self, store: ContextStore, manager_factory) -> None:
        manager = manager_factory(store, max_errors=2)
        for i in range(4):
            manager.save_update(f"e{i}", UpdateCategory.ERROR)
        assert [e.content for e in manager.document.errors] == ["e3", "e2"]

    def test_updated_timestamp_advances(self, manager: ContextManager) -> None:
        before = manager.document.updated
        manager.save_update("tick")
        assert manager.document.updated >= before


class TestPersistenceFailure:
    def test_canonical_failure_rolls_back(self, failing_store, manager_factory) -> None:
        manager = manager_factory(failing_store)
        manager.save_update("kept")
        updated_before = manager.document.updated
        backups_before = manager.backup_count()

        failing_store.fail_context = True
        with pytest.raises(PersistenceError):
            manager.save_update("dropped")

        assert [u.content for u in manager.document.updates] == ["kept"]
        assert manager.document.updated == updated_before
        assert manager.backup_count() == backups_before

    def test_backup_failure_rolls_back_memory_and_canonical(
        self, failing_store, manager_factory
    ) -> None:
        manager = manager_factory(failing_store)
        manager.save_update("kept")

        failing_store.fail_areas = ("backups",)
        with pytest.raises(PersistenceError):
            manager.save_update("dropped")

        assert [u.content for u in manager.document.updates] == ["kept"]
        assert [u.content for u in failing_store.load_context().updates] == ["kept"]

    def test_next_save_after_failure_succeeds(self, failing_store, manager_factory) -> None:
        manager = manager_factory(failing_store)
        failing_store.fail_context = True
        with pytest.raises(PersistenceError):
            manager.update_server("1.1.1.1")
        failing_store.fail_context = False
        server = manager.update_server("1.1.1.1")
        assert server.ip == "1.1.1.1"


class TestGetContext:
    def test_all(self, manager: ContextManager) -> None:
        found, data = manager.get_context("all")
        assert found is True
        assert data["project"] == "acme-portal"

    def test_empty_means_all(self, manager: ContextManager) -> None:
        assert manager.get_context("") == manager.get_context("all")

    def test_named(self, manager: ContextManager) -> None:
        found, data = manager.get_context("architecture")
        assert found is True
        assert isinstance(data, dict)

    def test_unknown(self, manager: ContextManager) -> None:
        assert manager.get_context("no-such-thing") == (False, None)

    def test_read_does_not_write(self, manager: ContextManager) -> None:
        before = manager.backup_count()
        manager.get_context("all")
        manager.get_context("server")
        assert manager.backup_count() == before

    def test_returned_data_is_detached(self, manager: ContextManager) -> None:
        _, data = manager.get_context("phases")
        data["discovery"] = "tampered"
        assert manager.document.phases["discovery"] == "pending"


class TestUpdateServer:
    def test_merge_semantics(self, manager: ContextManager) -> None:
        manager.update_server("1.2.3.4", environment=ServerEnvironment.STAGING)
        manager.save_update("note", UpdateCategory.SERVER)
        server = manager.update_server(
            "1.2.3.4", ServerStatus.MAINTENANCE, ServerEnvironment.STAGING
        )
        assert server.status == ServerStatus.MAINTENANCE
        assert server.environment == ServerEnvironment.STAGING
        assert server.last_update == "note"

    def test_sets_updated(self, manager: ContextManager) -> None:
        before = manager.document.server.updated
        server = manager.update_server("5.6.7.8")
        assert server.updated >= before

    def test_persisted(self, manager: ContextManager, store: ContextStore) -> None:
        manager.update_server("9.9.9.9", ServerStatus.DOWN)
        assert store.load_context().server.status == ServerStatus.DOWN


class TestCheckpoints:
    def test_create_indexes_and_persists(
        self, manager: ContextManager, store: ContextStore
    ) -> None:
        snapshot = manager.create_checkpoint("before release")
        assert manager.document.checkpoints[0].id == snapshot.id
        assert store.load_context().checkpoints[0].id == snapshot.id

    def test_index_bounded_but_files_kept(self, manager: ContextManager) -> None:
        ids = []
        for i in range(22):
            ids.append(manager.create_checkpoint(f"c{i}").id)
            assert len(manager.document.checkpoints) <= 20
        assert [c.id for c in manager.document.checkpoints] == list(reversed(ids))[:20]
        for cid in ids:
            assert manager.get_checkpoint(cid).id == cid
        assert manager.checkpoint_file_count() == 22

    def test_isolation_from_later_mutations(self, manager: ContextManager) -> None:
        manager.save_update("before")
        snapshot = manager.create_checkpoint("snap")
        manager.save_update("after")
        manager.update_server("4.4.4.4")

        loaded = manager.get_checkpoint(snapshot.id)
        assert [u.content for u in loaded.context.updates] == ["before"]
        assert loaded.context.server.ip == "10.0.0.1"

    def test_snapshot_failure_leaves_index(self, failing_store, manager_factory) -> None:
        manager = manager_factory(failing_store)
        failing_store.fail_areas = ("checkpoints",)
        with pytest.raises(PersistenceError):
            manager.create_checkpoint("nope")
        assert manager.document.checkpoints == []

    def test_persist_failure_keeps_snapshot_file(self, failing_store, manager_factory) -> None:
        manager = manager_factory(failing_store)
        failing_store.fail_areas = ("backups",)
        with pytest.raises(PersistenceError):
            manager.create_checkpoint("orphan")
        assert manager.document.checkpoints == []
        assert manager.checkpoint_file_count() == 1

    def test_list(self, store: ContextStore, manager_factory) -> None:
        manager = manager_factory(store, max_checkpoints=1)
        old = manager.create_checkpoint("old")
        new = manager.create_checkpoint("new")
        refs, persisted = manager.list_checkpoints()
        assert [r.id for r in refs] == [new.id]
        assert set(persisted) == {old.id, new.id}

    def test_get_unknown(self, manager: ContextManager) -> None:
        with pytest.raises(CheckpointNotFoundError):
            manager.get_checkpoint("missing")


class TestRestoreCheckpoint:
    def test_restores_content_and_keeps_index(self, manager: ContextManager) -> None:
        manager.save_update("v1")
        snapshot = manager.create_checkpoint("v1 state")
        manager.save_update("v2")
        manager.update_server("8.8.8.8")
        later = manager.create_checkpoint("v2 state")

        manager.restore_checkpoint(snapshot.id)

        doc = manager.document
        assert doc.updates[0].content.startswith(f"Restored checkpoint {snapshot.id}")
        assert [u.content for u in doc.updates[1:]] == ["v1"]
        assert doc.server.ip == "10.0.0.1"
        assert [c.id for c in doc.checkpoints] == [later.id, snapshot.id]

    def test_updated_stays_monotonic(self, manager: ContextManager) -> None:
        snapshot = manager.create_checkpoint("old")
        manager.save_update("newer")
        before = manager.document.updated
        manager.restore_checkpoint(snapshot.id)
        assert manager.document.updated >= before

    def test_restore_failure_rolls_back(self, failing_store, manager_factory) -> None:
        manager = manager_factory(failing_store)
        snapshot = manager.create_checkpoint("base")
        manager.save_update("current")

        failing_store.fail_context = True
        with pytest.raises(PersistenceError):
            manager.restore_checkpoint(snapshot.id)
        assert manager.document.updates[0].content == "current"

    def test_unknown_checkpoint(self, manager: ContextManager) -> None:
        with pytest.raises(CheckpointNotFoundError):
            manager.restore_checkpoint("missing")


class TestPersist:
    def test_explicit_persist_writes_canonical_and_backup(
        self, manager: ContextManager, store: ContextStore
    ) -> None:
        before = manager.backup_count()
        manager.persist()
        assert manager.backup_count() == before + 1
        data = json.loads(store.context_path.read_text(encoding="utf-8"))
        assert data["project"] == "acme-portal"

    def test_updated_not_moved_backwards_by_clock(self, manager: ContextManager) -> None:
        future = manager.document.updated + timedelta(days=1)
        manager.document.touch(future)
        manager.save_update("clock skew")
        assert manager.document.updated == future


class TestConcurrency:
    def test_parallel_saves_are_all_recorded(self, manager: ContextManager) -> None:
        def worker(n: int) -> None:
            for i in range(10):
                manager.save_update(f"t{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        contents = {entry.content for entry in manager.document.updates}
        assert len(contents) == 50
        reloaded = ContextStore(str(manager.store.storage_root)).load_context()
        assert len(reloaded.updates) == 50


class TestCamelCaseDocument:
    @pytest.fixture()
    def legacy_file(self, store: ContextStore) -> ContextStore:
        document = {
            "project": "acme-portal",
            "server": {
                "ip": "10.0.0.9",
                "updated": "2025-06-01T10:00:00.000Z",
                "environment": "staging",
                "status": "active",
                "lastUpdate": "nginx restarted",
            },
            "architecture": {"backend": "PHP 8.1+"},
            "phases": {"discovery": "completed"},
            "current_focus": "Final error resolution",
            "critical_metrics": {"total_errors": 498},
            "deployment_status": {"server_ready": True},
            "agents": {"security_auditor": "active"},
            "updates": [
                {
                    "id": "6f1c0c1e-0000-4000-8000-000000000001",
                    "content": "nginx restarted",
                    "category": "server",
                    "priority": "high",
                    "timestamp": "2025-06-01T10:00:00.000Z",
                }
            ],
            "created": "2025-05-01T09:00:00.000Z",
            "updated": "2025-06-01T10:00:00.000Z",
        }
        store.context_path.write_text(json.dumps(document), encoding="utf-8")
        return store

    def test_last_update_loaded(self, legacy_file: ContextStore, manager_factory) -> None:
        manager = manager_factory(legacy_file)
        found, server = manager.get_context("server")
        assert found is True
        assert server["last_update"] == "nginx restarted"
        assert server["environment"] == "staging"
        assert manager.document.load_error is None

    def test_last_update_survives_persist(
        self, legacy_file: ContextStore, manager_factory
    ) -> None:
        manager = manager_factory(legacy_file)
        manager.save_update("tests green", UpdateCategory.PROGRESS)
        on_disk = json.loads(legacy_file.context_path.read_text(encoding="utf-8"))
        assert on_disk["server"]["last_update"] == "nginx restarted"
        assert on_disk["updates"][1]["content"] == "nginx restarted"


class TestReadOnly:
    def test_missing_document_not_written(self, store: ContextStore, manager_factory) -> None:
        manager = manager_factory(store, read_only=True)
        assert manager.document.project == "acme-portal"
        assert not store.context_exists()
        assert manager.backup_count() == 0

    def test_corrupt_document_left_in_place(self, store: ContextStore, manager_factory) -> None:
        store.context_path.write_text("{not json", encoding="utf-8")
        manager = manager_factory(store, read_only=True)
        assert manager.document.load_error is not None
        assert store.context_path.read_text(encoding="utf-8") == "{not json"
        assert list((store.storage_root / CONTEXT_SUBDIR).glob("*.corrupt-*.json")) == []

    def test_mutations_rejected(self, store: ContextStore, manager_factory) -> None:
        manager = manager_factory(store, read_only=True)
        with pytest.raises(PersistenceError, match="read-only"):
            manager.save_update("nope")
        with pytest.raises(PersistenceError, match="read-only"):
            manager.create_checkpoint("nope")
        assert manager.document.updates == []
        assert manager.checkpoint_file_count() == 0

    def test_reads_existing_document(self, store: ContextStore, manager_factory) -> None:
        manager_factory(store).save_update("visible")
        reader = manager_factory(store, read_only=True)
        assert reader.get_context("updates")[1][0]["content"] == "visible"
