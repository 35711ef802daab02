"""Tests for the comment-preserving mongod.conf store."""
import pytest

from mongo_upgrade.utils.config_store import ConfigStore


class TestRead:

    def test_get_nested_value(self, config_store):
        assert config_store.get("storage.dbPath") == "/var/lib/mongodb"
        assert config_store.get("net.port") == 27017

    def test_get_missing_returns_default(self, config_store):
        assert config_store.get("replication.replSetName") is None
        assert config_store.get("replication.replSetName", "rs0") == "rs0"

    def test_is_active(self, config_store):
        assert config_store.is_active("storage.journal") is True
        assert config_store.is_active("storage.mmapv1") is False

    def test_missing_file_is_empty(self, tmp_path):
        store = ConfigStore(str(tmp_path / "nope.conf"))
        assert store.exists is False
        assert store.get("net.port") is None


class TestSet:

    def test_replaces_value_and_keeps_comment(self, config_store):
        config_store.set("net.port", 39877)
        assert "  port: 39877  # default" in config_store.lines
        assert config_store.get("net.port") == 39877

    def test_adds_key_to_existing_block(self, config_store):
        config_store.set("storage.directoryPerDB", True)
        assert config_store.get("storage.directoryPerDB") is True
        assert config_store.get("storage.dbPath") == "/var/lib/mongodb"

    def test_creates_missing_block(self, tmp_path):
        path = tmp_path / "mongod.conf"
        path.write_text("net:\n  port: 27017\n")
        store = ConfigStore(str(path))

        store.set("security.authorization", "disabled")
        store.save()

        assert path.read_text() == "net:\n  port: 27017\nsecurity:\n  authorization: disabled\n"

    def test_quotes_values_that_need_it(self, config_store):
        config_store.set("systemLog.path", "/var/log/mongodb/mongod log.txt")
        assert config_store.get("systemLog.path") == "/var/log/mongodb/mongod log.txt"

    def test_refuses_to_overwrite_block(self, config_store):
        with pytest.raises(ValueError):
            config_store.set("storage.journal", False)


class TestToggle:

    def test_disabling_comments_out_block(self, config_store):
        assert config_store.toggle("storage.journal", False) is True

        assert "  # journal:" in config_store.lines
        assert "    # enabled: true" in config_store.lines
        assert config_store.is_active("storage.journal") is False
        assert config_store.get("storage.engine") == "wiredTiger"

    def test_disabling_missing_key_changes_nothing(self, config_store):
        before = list(config_store.lines)
        assert config_store.toggle("storage.mmapv1", False) is False
        assert config_store.lines == before

    def test_enabling_restores_commented_block(self, config_store):
        before = list(config_store.lines)
        config_store.toggle("storage.journal", False)

        assert config_store.toggle("storage.journal", True) is True
        assert config_store.lines == before
        assert config_store.get("storage.journal.enabled") is True

    def test_nothing_is_deleted(self, config_store, mongod_conf):
        config_store.toggle("security.authorization", False)
        config_store.save()

        text = mongod_conf.read_text()
        assert "# authorization: enabled" in text
        assert len(text.splitlines()) == len(config_store.lines)


class TestCopies:

    def test_copy_and_restore(self, config_store, mongod_conf, tmp_path):
        original = mongod_conf.read_text()
        aside = config_store.copy_to(str(tmp_path / "mongod.conf.with-auth"))
        config_store.set("security.authorization", "disabled")
        config_store.save()

        config_store.restore_from(aside)

        assert mongod_conf.read_text() == original
        assert config_store.get("security.authorization") == "enabled"
