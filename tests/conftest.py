"""Shared fakes and fixtures for the MongoDB upgrade tests."""
import subprocess
from pathlib import Path

import pytest

from mongo_upgrade.components.admin_client import AdminClient
from mongo_upgrade.components.installer import Installer
from mongo_upgrade.components.process_controller import HealthStatus, ProcessController
from mongo_upgrade.components.version_probe import LiveVersionChannel, VersionChannel, VersionProbe
from mongo_upgrade.utils.config_store import ConfigStore
from mongo_upgrade.utils.errors import AdminUnavailableError, InstallError
from mongo_upgrade.utils.index import Clock
from mongo_upgrade.utils.permissions import PermissionManager
from mongo_upgrade.utils.state_manager import BackupHandle

CONFIRM_ERRMSG = (
    "Once you have upgraded to 7.0, you will not be able to downgrade FCV and binary version "
    "without support assistance. Please re-run this command with 'confirm: true' to acknowledge "
    "this and continue with the FCV upgrade."
)

MONGOD_CONF = """# mongod.conf
storage:
  dbPath: /var/lib/mongodb
  journal:
    enabled: true
  engine: wiredTiger

net:
  port: 27017  # default
  bindIp: 127.0.0.1

security:
  authorization: enabled
"""


class FakeAdmin(AdminClient):
    """In-memory mongod answering the handful of commands the upgrade uses."""

    name = "fake"

    def __init__(self, version="4.2.25", fcv="4.2", engine="wiredTiger", running=True):
        self.version = version
        self.fcv = fcv
        self.engine = engine
        self.running = running
        self.require_confirm = False
        self.ignore_set = False
        self.ignore_shutdown = False
        self.databases = {"admin": (1, 1), "app": (3, 42)}
        self.commands = []

    def _check(self):
        if not self.running:
            raise AdminUnavailableError("fake: connection refused")

    def command(self, document, database="admin"):
        self._check()
        self.commands.append(dict(document))
        name = next(iter(document))
        if name == "ping":
            return {"ok": 1}
        if name == "buildInfo":
            return {"version": self.version, "ok": 1}
        if name == "getParameter":
            if self.fcv is None:
                return {"ok": 0, "errmsg": "no option found to get"}
            return {"featureCompatibilityVersion": {"version": self.fcv}, "ok": 1}
        if name == "setFeatureCompatibilityVersion":
            if self.require_confirm and not document.get("confirm"):
                return {"ok": 0, "errmsg": CONFIRM_ERRMSG, "code": 7369100}
            if not self.ignore_set:
                self.fcv = document[name]
            return {"ok": 1}
        if name == "serverStatus":
            return {"storageEngine": {"name": self.engine}, "ok": 1}
        if name == "listDatabases":
            return {"databases": [{"name": n} for n in self.databases], "ok": 1}
        if name == "dbStats":
            collections, objects = self.databases[database]
            return {"db": database, "collections": collections, "objects": objects, "ok": 1}
        if name == "shutdown":
            if not self.ignore_shutdown:
                self.running = False
            raise AdminUnavailableError("fake: connection closed")
        return {"ok": 0, "errmsg": f"no such command: '{name}'"}

    def find_one(self, database, collection, query):
        self._check()
        if (database, collection) == ("admin", "system.version") and self.fcv:
            return {"_id": "featureCompatibilityVersion", "version": self.fcv}
        return None

    def set_fcv_commands(self):
        return [c for c in self.commands if "setFeatureCompatibilityVersion" in c]


class InstalledBinaryChannel(VersionChannel):
    """Stands in for `mongod --version`: answers even while the server is down."""

    name = "binary"

    def __init__(self, admin):
        self.admin = admin

    def read(self):
        return self.admin.version


class FakeClock(Clock):
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def monotonic(self):
        return self.now


class FakeController(ProcessController):
    def __init__(self, admin, healthy=True):
        self.admin = admin
        self.healthy = healthy
        self.events = []

    def is_running(self):
        return self.admin.running

    def start(self):
        self.events.append("start")
        if self.admin.running:
            return HealthStatus(healthy=True)
        if self.healthy:
            self.admin.running = True
            return HealthStatus(healthy=True, start_attempts=1, health_polls=1)
        return HealthStatus(healthy=False, start_attempts=3, health_polls=30)

    def stop(self):
        self.events.append("stop")
        self.admin.running = False
        return True


class FakeInstaller(Installer):
    def __init__(self, admin=None, fail=False):
        self.admin = admin
        self.fail = fail
        self.installed = []
        self.shell_installed = False

    def install(self, target_version, platform_variant):
        if self.fail:
            raise InstallError(f"Failed to download MongoDB {target_version}: 404 Not Found")
        self.installed.append((str(target_version), platform_variant))
        if self.admin is not None:
            self.admin.version = str(target_version)

    def install_shell(self):
        self.shell_installed = True
        return True

    def ensure_runtime_libraries(self):
        return []


class FakeBackups:
    def __init__(self, backup_dir):
        self.backup_dir = Path(backup_dir)
        self.handle = None
        self.snapshots = 0
        self.restored = []

    def snapshot(self, source_version, storage_engine="unknown"):
        if self.handle is None:
            path = self.backup_dir / "mongodb-backup-20240101-000000"
            path.mkdir(parents=True)
            (path / "info.json").write_text("{}")
            self.handle = BackupHandle(path=str(path), timestamp=1704067200,
                                       source_version=source_version, port=27017,
                                       storage_engine=storage_engine)
            self.snapshots += 1
        return self.handle

    def current(self):
        return self.handle

    def restore(self, handle):
        self.restored.append(handle.path)
        return True


class FakePermissions(PermissionManager):
    """Creates directories without chown/chmod."""

    def __init__(self):
        super().__init__("mongodb")
        self.calls = []

    def ensure_directory(self, path, owner, group, mode=0o755):
        Path(path).mkdir(parents=True, exist_ok=True)
        self.calls.append(("ensure_directory", path))
        return True

    def restore_service_permissions(self, user, group, data_dir, log_dir):
        self.calls.append(("restore_service_permissions", data_dir))
        return True


def completed(cmd, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def admin():
    return FakeAdmin()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(admin):
    return FakeController(admin)


@pytest.fixture
def installer(admin):
    return FakeInstaller(admin)


@pytest.fixture
def backups(tmp_path):
    return FakeBackups(tmp_path / "backup")


@pytest.fixture
def permissions():
    return FakePermissions()


@pytest.fixture
def version_probe(admin):
    return VersionProbe([LiveVersionChannel(admin), InstalledBinaryChannel(admin)])


@pytest.fixture
def mongod_conf(tmp_path):
    path = tmp_path / "mongod.conf"
    path.write_text(MONGOD_CONF)
    return path


@pytest.fixture
def config_store(mongod_conf):
    return ConfigStore(str(mongod_conf))
