"""Tests for the upgrade orchestrator and its configuration helpers."""
import pytest

from mongo_upgrade import index as orchestrator_module
from mongo_upgrade.index import (
    UpgradeOrchestrator,
    detect_host_variant,
    load_upgrade_config,
)
from mongo_upgrade.utils.config_store import ConfigStore
from mongo_upgrade.utils.errors import (
    InstallError,
    ServerStopError,
    ServerUnreachableError,
    UnsupportedPlatformError,
    VersionUndeterminedError,
)

from conftest import FakeBackups, FakeClock, FakeController, FakeInstaller


@pytest.fixture
def upgrade_config(tmp_path):
    config = load_upgrade_config()
    config["paths"]["data_dir"] = str(tmp_path / "data")
    config["paths"]["log_dir"] = str(tmp_path / "log")
    config["paths"]["backup_dir"] = str(tmp_path / "backup")
    return config


@pytest.fixture(autouse=True)
def no_system_limits(monkeypatch):
    monkeypatch.setattr(orchestrator_module, "configure_system_limits", lambda **kwargs: [])


@pytest.fixture
def orchestrator(upgrade_config, admin, config_store, version_probe, tmp_path):
    return UpgradeOrchestrator(
        upgrade_config,
        clock=FakeClock(),
        config_store=config_store,
        admin=admin,
        version_probe=version_probe,
        controller=FakeController(admin),
        installer=FakeInstaller(admin),
        backups=FakeBackups(tmp_path / "backup"),
        host_variant="ubuntu2004",
    )


class TestRun:

    def test_already_final_only_verifies(self, orchestrator, admin):
        """Should run zero steps and install nothing when already on 7.0."""
        admin.version, admin.fcv = "7.0.14", "7.0"

        report = orchestrator.run()

        assert report.steps_executed == []
        assert report.final_version == "7.0.14"
        assert orchestrator.installer.installed == []
        assert orchestrator.backups.snapshots == 0
        assert "stop" not in orchestrator.controller.events

    def test_single_hop_to_final(self, orchestrator, admin, config_store, mongod_conf):
        """Should take one backup, upgrade 6.0 to 7.0 and restore authentication."""
        admin.version, admin.fcv = "6.0.14", "6.0"

        report = orchestrator.run()

        assert report.starting_version == "6.0.14"
        assert report.steps_executed == ["7.0.14"]
        assert report.final_version == "7.0.14"
        assert report.storage_engine == "wiredTiger"
        assert report.port == 27017
        assert report.backup_path.endswith("mongodb-backup-20240101-000000")
        assert orchestrator.backups.snapshots == 1
        assert orchestrator.installer.installed == [("7.0.14", "ubuntu2004")]
        assert orchestrator.installer.shell_installed is True
        assert admin.fcv == "7.0"

        saved_with_auth = (mongod_conf.parent / "mongod.conf.with-auth").read_text()
        assert "authorization: enabled" in saved_with_auth
        config_store.load()
        assert config_store.get("security.authorization") == "enabled"
        assert config_store.is_active("storage.journal") is False
        assert orchestrator.auth_disabled is False

    def test_auth_left_alone_when_not_enabled(self, orchestrator, admin, config_store, mongod_conf):
        """Should not write a .with-auth copy for servers without authorization."""
        admin.version, admin.fcv = "6.0.14", "6.0"
        config_store.set("security.authorization", "disabled")
        config_store.save()

        orchestrator.run()

        assert not (mongod_conf.parent / "mongod.conf.with-auth").exists()
        config_store.load()
        assert config_store.get("security.authorization") == "disabled"

    def test_unknown_version_is_fatal(self, orchestrator, admin):
        """Should refuse to plan when no channel reports a version."""
        admin.running = False
        admin.version = None

        with pytest.raises(VersionUndeterminedError):
            orchestrator.run()

    def test_install_failure_keeps_backup(self, orchestrator, admin):
        """Should propagate the install error with the backup still recorded."""
        admin.version, admin.fcv = "6.0.14", "6.0"
        orchestrator.installer.fail = True

        with pytest.raises(InstallError):
            orchestrator.run()

        assert orchestrator.backups.current() is not None
        assert orchestrator.auth_disabled is True

    def test_misaligned_starting_fcv_is_corrected(self, orchestrator, admin):
        """Should raise a lagging FCV before the first hop."""
        admin.version, admin.fcv = "6.0.14", "5.0"

        orchestrator.run()

        assert [c["setFeatureCompatibilityVersion"] for c in admin.set_fcv_commands()][0] == "6.0"


class TestCheck:

    def test_reports_plan(self, orchestrator, admin):
        admin.version = "6.0.14"

        plan = orchestrator.check()

        assert plan.target_versions == ("7.0.14",)
        assert orchestrator.controller.events == []

    def test_nothing_to_do(self, orchestrator, admin):
        admin.version = "7.0.14"
        assert orchestrator.check() is None


class TestHostVariant:

    def test_reads_os_release(self, tmp_path):
        os_release = tmp_path / "os-release"
        os_release.write_text('NAME="Ubuntu"\nVERSION_ID="22.04"\nID=ubuntu\n')

        variant = detect_host_variant({"os_release": str(os_release),
                                       "variants": {"20.04": "ubuntu2004", "22.04": "ubuntu2204"}})

        assert variant == "ubuntu2204"

    def test_override_wins(self, tmp_path):
        assert detect_host_variant({"variant": "ubuntu1804", "os_release": str(tmp_path / "missing")}) == "ubuntu1804"

    def test_unknown_release_is_fatal(self, tmp_path):
        os_release = tmp_path / "os-release"
        os_release.write_text('VERSION_ID="24.04"\n')

        with pytest.raises(UnsupportedPlatformError):
            detect_host_variant({"os_release": str(os_release), "variants": {"22.04": "ubuntu2204"}})

    def test_missing_os_release_is_fatal(self, tmp_path):
        with pytest.raises(UnsupportedPlatformError):
            detect_host_variant({"os_release": str(tmp_path / "missing"), "variants": {}})


class TestLoadConfig:

    def test_packaged_defaults(self):
        config = load_upgrade_config()

        assert config["mongodb"]["port"] == 27017
        assert config["timing"]["health_polls"] == 30
        assert config["paths"]["mongod_config"] == "/etc/mongod.conf"

    def test_yaml_overrides_merge_deeply(self, tmp_path):
        operator_file = tmp_path / "upgrade.yml"
        operator_file.write_text("config:\n  mongodb:\n    port: 39877\n  timing:\n    health_polls: 5\n")

        config = load_upgrade_config(str(operator_file))

        assert config["mongodb"]["port"] == 39877
        assert config["mongodb"]["host"] == "127.0.0.1"
        assert config["timing"]["health_polls"] == 5
        assert config["timing"]["start_attempts"] == 3

    def test_unwrapped_overrides(self, tmp_path):
        operator_file = tmp_path / "upgrade.json"
        operator_file.write_text('{"paths": {"backup_dir": "/srv/backup"}}')

        assert load_upgrade_config(str(operator_file))["paths"]["backup_dir"] == "/srv/backup"

    def test_non_mapping_is_rejected(self, tmp_path):
        operator_file = tmp_path / "upgrade.yml"
        operator_file.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            load_upgrade_config(str(operator_file))


class TestDataDirectory:

    def test_uses_db_path_from_mongod_conf(self, orchestrator, config_store, tmp_path):
        """Should migrate the directory mongod actually uses, not the packaged default."""
        custom = tmp_path / "srv" / "mongo"
        config_store.set("storage.dbPath", str(custom))
        config_store.save()

        orchestrator._build()

        assert orchestrator.data_dir == str(custom)
        assert orchestrator.migrator.data_dir == str(custom)

    def test_falls_back_to_packaged_path(self, upgrade_config, admin, version_probe, tmp_path):
        conf = tmp_path / "minimal.conf"
        conf.write_text("net:\n  port: 27017\n")
        orchestrator = UpgradeOrchestrator(upgrade_config, config_store=ConfigStore(str(conf)), admin=admin,
                                           version_probe=version_probe, controller=FakeController(admin),
                                           installer=FakeInstaller(admin), backups=FakeBackups(tmp_path / "b"),
                                           host_variant="ubuntu2004")

        orchestrator._build()

        assert orchestrator.data_dir == str(tmp_path / "data")


class TestAuthWarning:

    def test_failed_verification_reports_disabled_auth(self, orchestrator, admin, monkeypatch, caplog):
        """Should name the .with-auth copy when verification fails after auth was disabled."""
        admin.version, admin.fcv = "6.0.14", "6.0"

        def unreachable():
            raise ServerUnreachableError("MongoDB did not become reachable")

        monkeypatch.setattr(orchestrator, "verify", unreachable)

        with pytest.raises(ServerUnreachableError):
            orchestrator.run()

        assert orchestrator.auth_disabled is True
        assert "Authentication is still disabled" in caplog.text
        assert "mongod.conf.with-auth" in caplog.text

    def test_auth_restart_that_cannot_stop_is_fatal(self, orchestrator, admin, monkeypatch):
        admin.version, admin.fcv = "6.0.14", "6.0"
        monkeypatch.setattr(orchestrator.controller, "stop", lambda: False)

        with pytest.raises(ServerStopError):
            orchestrator.run()

        assert orchestrator.installer.installed == []
