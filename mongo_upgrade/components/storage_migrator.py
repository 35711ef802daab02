"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Storage Migrator Component

MMAPv1 was removed in 4.2, so a 4.0 server still on MMAPv1 has to be moved to
WiredTiger before the next hop. There is no in-place conversion: the data is
dumped (the run backup), the old data directory is set aside, mongod starts
on an empty WiredTiger directory and the dump is restored into it.

The old data directory is renamed, never deleted.
"""

import os
import time
from enum import Enum
from pathlib import Path
from typing import List, Optional

from ..utils.config_store import ConfigStore
from ..utils.errors import (
    AdminUnavailableError,
    BackupError,
    ServerStopError,
    ServerUnreachableError,
    StorageMigrationError,
)
from ..utils.index import log_message
from ..utils.permissions import PermissionManager
from ..utils.state_manager import StateManager
from .admin_client import AdminClient
from .process_controller import ProcessController


class StorageEngine(Enum):
    MODERN = "wiredTiger"
    LEGACY = "mmapv1"


def normalize_engine(name: Optional[str]) -> Optional[StorageEngine]:
    """Map any spelling of an engine name (WiredTiger, MMAPV1, ...) to the enum."""
    if not name:
        return None
    lowered = str(name).strip().lower()
    for engine in StorageEngine:
        if engine.value.lower() == lowered:
            return engine
    return None


class EngineProbe:
    name = "engine"

    def read(self) -> Optional[str]:
        raise NotImplementedError


class LiveEngineProbe(EngineProbe):
    name = "serverStatus"

    def __init__(self, admin: AdminClient):
        self.admin = admin

    def read(self) -> Optional[str]:
        try:
            reply = self.admin.command({"serverStatus": 1})
        except AdminUnavailableError:
            return None
        return (reply.get("storageEngine") or {}).get("name")


class ConfigEngineProbe(EngineProbe):
    name = "mongod.conf"

    def __init__(self, config_store: ConfigStore):
        self.config_store = config_store

    def read(self) -> Optional[str]:
        return self.config_store.get("storage.engine")


class DataDirEngineProbe(EngineProbe):
    name = "data directory"

    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    def read(self) -> Optional[str]:
        try:
            names = os.listdir(self.data_dir)
        except OSError:
            return None
        if any(name.startswith("WiredTiger") for name in names):
            return StorageEngine.MODERN.value
        if any(name.endswith(".ns") for name in names):
            return StorageEngine.LEGACY.value
        return None


class StorageMigrator:
    """Detects the storage engine and migrates MMAPv1 data to WiredTiger."""

    def __init__(self, probes: List[EngineProbe], config_store: ConfigStore,
                 controller: ProcessController, backups: StateManager,
                 data_dir: str = "/var/lib/mongodb", user: str = "mongodb", group: str = "mongodb",
                 permissions: Optional[PermissionManager] = None):
        self.probes = probes
        self.config_store = config_store
        self.controller = controller
        self.backups = backups
        self.data_dir = data_dir
        self.user = user
        self.group = group
        self.permissions = permissions or PermissionManager("mongodb")

    def detect_engine(self) -> StorageEngine:
        """First probe with a recognizable answer wins; legacy when nobody knows."""
        for probe in self.probes:
            raw = probe.read()
            engine = normalize_engine(raw)
            if engine is not None:
                log_message(f"Storage engine {engine.value} (from {probe.name})")
                return engine
            if raw:
                log_message(f"Unrecognized storage engine name {raw!r} from {probe.name}", "WARNING")
        log_message("Storage engine could not be detected, assuming mmapv1", "WARNING")
        return StorageEngine.LEGACY

    def _set_aside_path(self) -> Path:
        target = Path(f"{self.data_dir}-mmapv1-backup")
        if target.exists():
            target = Path(f"{self.data_dir}-mmapv1-backup-{time.strftime('%Y%m%d-%H%M%S')}")
        return target

    def migrate_if_needed(self) -> bool:
        """
        Move a legacy-engine deployment to WiredTiger.

        Returns:
            bool: True if a migration ran, False if the engine was already modern

        Raises:
            BackupError: If no backup exists or the restore fails
            StorageMigrationError: If the data directory to set aside does not exist
            ServerStopError: If mongod keeps running
            ServerUnreachableError: If mongod does not come back on WiredTiger
        """
        if self.detect_engine() is StorageEngine.MODERN:
            log_message("✓ Already using WiredTiger storage engine")
            return False

        log_message("=" * 80)
        log_message("MIGRATING STORAGE ENGINE: MMAPv1 → WiredTiger")
        log_message("=" * 80)

        handle = self.backups.current()
        if handle is None:
            raise BackupError("No backup found, refusing to migrate the storage engine")
        log_message(f"[BACKUP] Using backup {handle.path} for the migration")

        if not os.path.isdir(self.data_dir):
            raise StorageMigrationError(f"Data directory {self.data_dir} does not exist, nothing to set aside")

        if not self.controller.stop():
            raise ServerStopError("MongoDB did not stop, refusing to move the data directory")

        set_aside = self._set_aside_path()
        try:
            os.rename(self.data_dir, set_aside)
        except OSError as e:
            raise StorageMigrationError(f"Failed to move {self.data_dir} to {set_aside}: {e}") from e
        log_message(f"Moved MMAPv1 data directory to {set_aside}")
        self.permissions.ensure_directory(self.data_dir, self.user, self.group)

        self.config_store.toggle("storage.mmapv1", False)
        self.config_store.set("storage.engine", StorageEngine.MODERN.value)
        self.config_store.save()
        log_message("Configured mongod.conf for the WiredTiger storage engine")

        health = self.controller.start()
        if not health.healthy:
            raise ServerUnreachableError(
                f"MongoDB did not start on WiredTiger after {health.start_attempts} attempts "
                f"and {health.health_polls} health checks")

        self.backups.restore(handle)
        log_message("✓ Storage engine migration to WiredTiger completed")
        return True
