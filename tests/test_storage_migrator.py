"""Tests for storage engine detection and the MMAPv1 to WiredTiger migration."""
import pytest

from mongo_upgrade.components.storage_migrator import (
    ConfigEngineProbe,
    DataDirEngineProbe,
    LiveEngineProbe,
    StorageEngine,
    StorageMigrator,
    normalize_engine,
)
from mongo_upgrade.utils.config_store import ConfigStore
from mongo_upgrade.utils.errors import BackupError, ServerStopError, StorageMigrationError

LEGACY_CONF = """storage:
  dbPath: /var/lib/mongodb
  engine: mmapv1
  mmapv1:
    smallFiles: true
net:
  port: 27017
"""


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "mongodb"
    path.mkdir()
    (path / "app.ns").write_text("")
    (path / "app.0").write_text("legacy data")
    return path


@pytest.fixture
def legacy_store(tmp_path):
    path = tmp_path / "legacy.conf"
    path.write_text(LEGACY_CONF)
    return ConfigStore(str(path))


@pytest.fixture
def migrator(admin, legacy_store, controller, backups, data_dir, permissions):
    admin.engine = "mmapv1"
    admin.version = "4.0.28"
    return StorageMigrator(
        [LiveEngineProbe(admin), ConfigEngineProbe(legacy_store), DataDirEngineProbe(str(data_dir))],
        legacy_store, controller, backups,
        data_dir=str(data_dir), permissions=permissions,
    )


class TestNormalize:

    @pytest.mark.parametrize("name", ["wiredTiger", "wiredtiger", "WiredTiger"])
    def test_modern_spellings(self, name):
        assert normalize_engine(name) is StorageEngine.MODERN

    @pytest.mark.parametrize("name", ["mmapv1", "MMAPv1", "MMAPV1"])
    def test_legacy_spellings(self, name):
        assert normalize_engine(name) is StorageEngine.LEGACY

    def test_unknown_names(self):
        assert normalize_engine("inMemory") is None
        assert normalize_engine(None) is None


class TestDetectEngine:

    def test_live_server_wins(self, admin, migrator):
        admin.engine = "wiredTiger"
        assert migrator.detect_engine() is StorageEngine.MODERN

    def test_config_directive_when_server_down(self, admin, migrator, legacy_store):
        admin.running = False
        legacy_store.set("storage.engine", "WiredTiger")
        assert migrator.detect_engine() is StorageEngine.MODERN

    def test_data_dir_signature(self, tmp_path):
        modern = tmp_path / "modern"
        modern.mkdir()
        (modern / "WiredTiger.wt").write_text("")
        assert DataDirEngineProbe(str(modern)).read() == "wiredTiger"

    def test_defaults_to_legacy(self, tmp_path, controller, backups):
        store = ConfigStore(str(tmp_path / "missing.conf"))
        migrator = StorageMigrator([ConfigEngineProbe(store), DataDirEngineProbe(str(tmp_path / "nothing"))],
                                   store, controller, backups, data_dir=str(tmp_path / "nothing"))
        assert migrator.detect_engine() is StorageEngine.LEGACY


class TestMigrateIfNeeded:

    def test_noop_when_already_modern(self, admin, migrator, controller, backups):
        admin.engine = "wiredTiger"

        assert migrator.migrate_if_needed() is False
        assert controller.events == []
        assert backups.restored == []

    def test_migrates_legacy_data(self, migrator, controller, backups, data_dir, legacy_store):
        handle = backups.snapshot("4.0.28", "mmapv1")

        assert migrator.migrate_if_needed() is True

        set_aside = data_dir.parent / "mongodb-mmapv1-backup"
        assert (set_aside / "app.0").read_text() == "legacy data"
        assert data_dir.is_dir()
        assert list(data_dir.iterdir()) == []
        assert controller.events == ["stop", "start"]
        assert backups.restored == [handle.path]

        legacy_store.load()
        assert legacy_store.get("storage.engine") == "wiredTiger"
        assert legacy_store.is_active("storage.mmapv1") is False
        assert "  # mmapv1:" in legacy_store.lines

    def test_taken_set_aside_name_gets_timestamp(self, migrator, backups, data_dir):
        backups.snapshot("4.0.28", "mmapv1")
        (data_dir.parent / "mongodb-mmapv1-backup").mkdir()

        migrator.migrate_if_needed()

        set_asides = sorted(p.name for p in data_dir.parent.iterdir() if p.name.startswith("mongodb-mmapv1-backup-"))
        assert len(set_asides) == 1
        assert (data_dir.parent / set_asides[0] / "app.ns").exists()

    def test_missing_backup_is_fatal_before_stopping(self, migrator, controller, data_dir):
        with pytest.raises(BackupError):
            migrator.migrate_if_needed()

        assert controller.events == []
        assert (data_dir / "app.0").exists()

    def test_second_call_is_noop(self, admin, migrator, backups, controller):
        backups.snapshot("4.0.28", "mmapv1")
        migrator.migrate_if_needed()
        admin.engine = "wiredTiger"

        assert migrator.migrate_if_needed() is False
        assert controller.events == ["stop", "start"]

    def test_missing_data_dir_is_fatal_before_stopping(self, admin, legacy_store, controller, backups,
                                                       permissions, tmp_path):
        """Should not rewrite mongod.conf when the data directory is not where it is expected."""
        admin.engine = "mmapv1"
        backups.snapshot("4.0.28", "mmapv1")
        missing = tmp_path / "elsewhere"
        migrator = StorageMigrator([LiveEngineProbe(admin)], legacy_store, controller, backups,
                                   data_dir=str(missing), permissions=permissions)

        with pytest.raises(StorageMigrationError):
            migrator.migrate_if_needed()

        assert controller.events == []
        assert not missing.exists()
        legacy_store.load()
        assert legacy_store.get("storage.engine") == "mmapv1"

    def test_server_that_keeps_running_is_fatal(self, migrator, controller, backups, data_dir, monkeypatch):
        backups.snapshot("4.0.28", "mmapv1")
        monkeypatch.setattr(controller, "stop", lambda: False)

        with pytest.raises(ServerStopError):
            migrator.migrate_if_needed()

        assert (data_dir / "app.0").read_text() == "legacy data"
        assert backups.restored == []
