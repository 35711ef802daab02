#!/usr/bin/env python3
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
State Manager for the MongoDB upgrade

Single-backup-per-run state management. A run takes exactly one logical dump
of the server before the first destructive action; the dump is never
overwritten or removed, and its location is recorded in a pointer file so
later steps (storage migration) and the final report can find it.

Key Features:
- One mongodump per run, timestamped directory
- info.json metadata written beside the dump
- Pointer file naming the run's backup
- Restore with mongorestore into a running instance

Usage:
    from mongo_upgrade.utils import StateManager

    state_manager = StateManager("/backup", port=27017)

    # Create the run's backup
    handle = state_manager.snapshot("3.6.10", storage_engine="mmapv1")

    # Restore it later
    state_manager.restore(state_manager.current())
"""

import json
import os
import subprocess
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import BackupError
from .index import log_message


@dataclass
class BackupHandle:
    """Information about the run's backup."""
    path: str
    timestamp: int
    source_version: str
    port: int
    storage_engine: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupHandle':
        return cls(**data)


class StateManager:
    """
    Creates and restores the single pre-upgrade backup.

    Creating a second backup in the same run is refused; the first one stays
    the reference for every later step.
    """

    def __init__(self, backup_dir: str = "/backup", port: int = 27017,
                 pointer_file: Optional[str] = None,
                 dump_binary: str = "mongodump", restore_binary: str = "mongorestore",
                 timeout: int = 7200):
        self.backup_root = Path(backup_dir)
        self.port = port
        self.pointer_file = Path(pointer_file) if pointer_file else self.backup_root / "last_backup"
        self.dump_binary = dump_binary
        self.restore_binary = restore_binary
        self.timeout = timeout
        self._run_backup: Optional[BackupHandle] = None

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        log_message(f"Running: {' '.join(cmd)}", "DEBUG")
        return subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)

    def _write_info(self, handle: BackupHandle) -> None:
        info_file = Path(handle.path) / "info.json"
        with open(info_file, 'w') as f:
            json.dump(handle.to_dict(), f, indent=2)

    def _write_pointer(self, handle: BackupHandle) -> None:
        self.pointer_file.parent.mkdir(parents=True, exist_ok=True)
        self.pointer_file.write_text(handle.path + "\n")

    def snapshot(self, source_version: str, storage_engine: str = "unknown") -> BackupHandle:
        """
        Dump the running server into a new timestamped backup directory.

        Args:
            source_version: Server version being backed up
            storage_engine: Engine reported at backup time, for the info file

        Returns:
            BackupHandle: The run's backup

        Raises:
            BackupError: If the dump fails
        """
        if self._run_backup is not None:
            log_message(f"[BACKUP] Run backup already exists at {self._run_backup.path}, not creating another")
            return self._run_backup

        timestamp = int(time.time())
        stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(timestamp))
        backup_path = self.backup_root / f"mongodb-backup-{stamp}"
        suffix = 1
        while backup_path.exists():
            backup_path = self.backup_root / f"mongodb-backup-{stamp}-{suffix}"
            suffix += 1

        log_message(f"[BACKUP] Creating backup of MongoDB {source_version} in {backup_path}")
        backup_path.mkdir(parents=True)

        try:
            result = self._run([self.dump_binary, "--port", str(self.port), "--out", str(backup_path)])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BackupError(f"mongodump could not run: {e}") from e
        if result.returncode != 0:
            raise BackupError(f"mongodump failed: {result.stderr.strip()}")

        handle = BackupHandle(
            path=str(backup_path),
            timestamp=timestamp,
            source_version=str(source_version),
            port=self.port,
            storage_engine=storage_engine,
        )
        self._write_info(handle)
        self._write_pointer(handle)
        self._run_backup = handle
        log_message(f"[BACKUP] ✓ Backup created: {backup_path}")
        return handle

    def current(self) -> Optional[BackupHandle]:
        """The backup referenced by the pointer file, if it still exists."""
        if self._run_backup is not None:
            return self._run_backup
        if not self.pointer_file.exists():
            return None
        backup_path = Path(self.pointer_file.read_text().strip())
        if not backup_path.is_dir():
            log_message(f"[BACKUP] Pointer names a missing backup: {backup_path}", "WARNING")
            return None
        info_file = backup_path / "info.json"
        try:
            with open(info_file, 'r') as f:
                return BackupHandle.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            log_message(f"[BACKUP] Could not read {info_file}: {e}", "WARNING")
            return BackupHandle(path=str(backup_path), timestamp=int(os.path.getmtime(backup_path)),
                                source_version="unknown", port=self.port)

    def restore(self, handle: BackupHandle) -> bool:
        """
        Restore a backup into the running server.

        Raises:
            BackupError: If the backup is missing or mongorestore fails
        """
        backup_path = Path(handle.path)
        if not backup_path.is_dir():
            raise BackupError(f"Backup not found: {backup_path}")

        log_message(f"[BACKUP] Restoring {backup_path} into port {self.port}")
        try:
            result = self._run([self.restore_binary, "--port", str(self.port), str(backup_path)])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BackupError(f"mongorestore could not run: {e}") from e
        if result.returncode != 0:
            raise BackupError(f"mongorestore failed: {result.stderr.strip()}")

        log_message("[BACKUP] ✓ Restore completed")
        return True
