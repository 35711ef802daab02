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
Process Controller Component

Starts and stops mongod directly (mongod --config ... --fork) so that each
freshly installed binary is the one that runs. Every wait is a bounded poll
against the injected clock; the controller reports health, and the caller
decides whether an unhealthy start is fatal.
"""

import glob
import os
import subprocess
from dataclasses import dataclass
from typing import Optional

from ..utils.errors import AdminUnavailableError
from ..utils.index import Clock, log_message
from ..utils.permissions import PermissionManager
from .admin_client import AdminClient


@dataclass
class HealthStatus:
    """Outcome of a start request."""
    healthy: bool
    start_attempts: int = 0
    health_polls: int = 0


class ProcessController:
    """Narrow contract the step executor drives."""

    start_attempts = 3
    health_polls = 30

    def start(self) -> HealthStatus:
        raise NotImplementedError

    def stop(self) -> bool:
        raise NotImplementedError

    def is_running(self) -> bool:
        raise NotImplementedError


class MongodProcessController(ProcessController):
    """Forks mongod from the configured binary and config file."""

    def __init__(self, admin: AdminClient, config_path: str = "/etc/mongod.conf",
                 clock: Optional[Clock] = None, mongod_binary: str = "/usr/bin/mongod",
                 start_attempts: int = 3, start_retry_delay: float = 5.0,
                 health_polls: int = 30, health_poll_interval: float = 3.0,
                 stop_polls: int = 10, stop_poll_interval: float = 1.0,
                 data_dir: str = "/var/lib/mongodb", log_dir: str = "/var/log/mongodb",
                 user: str = "mongodb", group: str = "mongodb",
                 permissions: Optional[PermissionManager] = None):
        self.admin = admin
        self.config_path = config_path
        self.clock = clock or Clock()
        self.mongod_binary = mongod_binary
        self.start_attempts = start_attempts
        self.start_retry_delay = start_retry_delay
        self.health_polls = health_polls
        self.health_poll_interval = health_poll_interval
        self.stop_polls = stop_polls
        self.stop_poll_interval = stop_poll_interval
        self.data_dir = data_dir
        self.log_dir = log_dir
        self.user = user
        self.group = group
        self.permissions = permissions or PermissionManager("mongodb")

    def is_running(self) -> bool:
        return self.admin.ping()

    def _clear_stale_files(self) -> None:
        """Remove lock and socket files a dead mongod leaves behind."""
        stale = [os.path.join(self.data_dir, "mongod.lock")] + glob.glob("/tmp/mongodb-*.sock")
        for path in stale:
            try:
                if os.path.exists(path):
                    os.remove(path)
                    log_message(f"Removed stale {path}", "DEBUG")
            except OSError as e:
                log_message(f"Could not remove {path}: {e}", "WARNING")

    def stop(self) -> bool:
        """Graceful shutdown, bounded wait, then pkill. No-op when already stopped."""
        if not self.is_running():
            log_message("MongoDB already stopped")
            self._clear_stale_files()
            return True

        log_message("Stopping MongoDB")
        try:
            self.admin.command({"shutdown": 1})
        except AdminUnavailableError:
            # The connection drops as the server goes down
            pass

        for _ in range(self.stop_polls):
            self.clock.sleep(self.stop_poll_interval)
            if not self.is_running():
                break
        else:
            log_message("Graceful shutdown timed out, sending SIGTERM to mongod", "WARNING")
            subprocess.run(["pkill", "-x", "mongod"], capture_output=True, text=True)
            self.clock.sleep(self.stop_poll_interval * 3)

        stopped = not self.is_running()
        if stopped:
            self._clear_stale_files()
            log_message("✓ MongoDB stopped")
        else:
            log_message("MongoDB is still answering after stop", "WARNING")
        return stopped

    def start(self) -> HealthStatus:
        """
        Fork mongod with bounded start attempts, then poll for readiness.

        Returns:
            HealthStatus: healthy=False once every attempt and poll is used up
        """
        if self.is_running():
            log_message("MongoDB already running")
            return HealthStatus(healthy=True)

        log_message(f"Starting MongoDB with {self.config_path}")
        self.permissions.restore_service_permissions(self.user, self.group, self.data_dir, self.log_dir)
        self._clear_stale_files()

        attempts = 0
        while attempts < self.start_attempts:
            attempts += 1
            log_message(f"Start attempt {attempts}/{self.start_attempts}...")
            try:
                result = subprocess.run(
                    [self.mongod_binary, "--config", self.config_path, "--fork"],
                    capture_output=True, text=True, timeout=300)
                forked = result.returncode == 0
                detail = result.stderr.strip() or result.stdout.strip()
            except (OSError, subprocess.TimeoutExpired) as e:
                forked = False
                detail = str(e)
            if forked:
                break
            log_message(f"Start attempt {attempts} failed: {detail}", "WARNING")
            if attempts < self.start_attempts:
                self.clock.sleep(self.start_retry_delay)

        polls = 0
        while polls < self.health_polls:
            polls += 1
            if self.is_running():
                log_message("✓ MongoDB started successfully")
                return HealthStatus(healthy=True, start_attempts=attempts, health_polls=polls)
            log_message(f"Waiting for MongoDB... ({polls}/{self.health_polls})")
            self.clock.sleep(self.health_poll_interval)

        log_message("MongoDB failed to start", "ERROR")
        return HealthStatus(healthy=False, start_attempts=attempts, health_polls=polls)
