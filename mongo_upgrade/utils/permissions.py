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
Permission Management Utilities

Ownership and mode handling for the mongod data and log directories, plus the
system limit files mongod wants (open files, processes). Failures here are
never fatal on their own: a wrong owner shows up as a failed start, which the
process controller classifies.
"""

import os
import resource
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Union

from .index import log_message

LIMITS_TEMPLATE = """# MongoDB system limits
{user} soft nofile {nofile}
{user} hard nofile {nofile}
{user} soft nproc {nproc}
{user} hard nproc {nproc}
root soft nofile {nofile}
root hard nofile {nofile}
"""

SYSTEMD_OVERRIDE_TEMPLATE = """[Service]
LimitNOFILE={nofile}
LimitNPROC={nproc}
"""


@dataclass
class PermissionTarget:
    """Represents a file or directory with its desired permissions."""
    path: str
    owner: str
    group: str
    mode: Union[str, int]  # Can be octal string like "755" or int like 0o755
    recursive: bool = False

    def __post_init__(self):
        """Convert mode to integer if it's a string."""
        if isinstance(self.mode, str):
            self.mode = int(self.mode[2:] if self.mode.startswith('0o') else self.mode, 8)


class PermissionManager:
    """Manages file and directory permissions for the mongod service."""

    def __init__(self, service_name: str = "mongodb"):
        self.service_name = service_name

    def set_permissions(self, targets: List[PermissionTarget]) -> bool:
        """
        Set permissions for multiple targets.

        Args:
            targets: List of PermissionTarget objects

        Returns:
            bool: True if all permissions were set successfully, False otherwise
        """
        if not targets:
            log_message("No permission targets specified", "WARNING")
            return True

        failed = [target.path for target in targets if not self._set_single_permission(target)]
        if failed:
            log_message(f"Failed to set permissions for: {', '.join(failed)}", "WARNING")
            return False
        return True

    def _set_single_permission(self, target: PermissionTarget) -> bool:
        if not os.path.exists(target.path):
            log_message(f"Skipping {target.path} - does not exist", "DEBUG")
            return True
        if not self._run(["chown"] + (["-R"] if target.recursive else []) +
                         [f"{target.owner}:{target.group}", target.path]):
            return False
        if not self._run(["chmod", oct(target.mode)[2:], target.path]):
            return False
        log_message(f"✓ Set permissions for {target.path} ({target.owner}:{target.group} {oct(target.mode)})", "DEBUG")
        return True

    def _run(self, cmd: List[str]) -> bool:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            log_message(f"{cmd[0]} failed to run: {e}", "ERROR")
            return False
        if result.returncode != 0:
            log_message(f"{' '.join(cmd)} failed: {result.stderr.strip()}", "ERROR")
            return False
        return True

    def ensure_directory(self, path: str, owner: str, group: str, mode: int = 0o755) -> bool:
        """Create a directory if needed and give it to owner:group."""
        Path(path).mkdir(parents=True, exist_ok=True)
        return self.set_permissions([PermissionTarget(path=path, owner=owner, group=group, mode=mode)])

    def restore_service_permissions(self, user: str, group: str, data_dir: str, log_dir: str) -> bool:
        """Give the data and log directories back to the service account."""
        return self.set_permissions([
            PermissionTarget(path=data_dir, owner=user, group=group, mode=0o755, recursive=True),
            PermissionTarget(path=log_dir, owner=user, group=group, mode=0o755, recursive=True),
        ])


def configure_system_limits(user: str = "mongodb", nofile: int = 64000, nproc: int = 64000,
                            limits_file: str = "/etc/security/limits.d/99-mongodb-nproc.conf",
                            systemd_override: str = "/etc/systemd/system/mongod.service.d/override.conf") -> List[str]:
    """
    Write limits.d and systemd override files and raise this session's limits.

    Returns:
        List[str]: Warnings; empty when everything applied
    """
    warnings = []
    log_message("Fixing system limits for MongoDB performance...")

    try:
        Path(limits_file).parent.mkdir(parents=True, exist_ok=True)
        Path(limits_file).write_text(LIMITS_TEMPLATE.format(user=user, nofile=nofile, nproc=nproc))
    except OSError as e:
        warnings.append(f"Could not write {limits_file}: {e}")

    try:
        systemctl = subprocess.run(["systemctl", "--version"], capture_output=True, text=True)
    except OSError:
        systemctl = None
    if systemctl is not None and systemctl.returncode == 0:
        try:
            Path(systemd_override).parent.mkdir(parents=True, exist_ok=True)
            Path(systemd_override).write_text(SYSTEMD_OVERRIDE_TEMPLATE.format(nofile=nofile, nproc=nproc))
            subprocess.run(["systemctl", "daemon-reload"], capture_output=True, text=True)
        except OSError as e:
            warnings.append(f"Could not write systemd override: {e}")

    for limit, wanted in ((resource.RLIMIT_NOFILE, nofile), (resource.RLIMIT_NPROC, nproc)):
        try:
            soft, hard = resource.getrlimit(limit)
            if hard == resource.RLIM_INFINITY or hard >= wanted:
                resource.setrlimit(limit, (wanted, hard))
            else:
                resource.setrlimit(limit, (wanted, wanted))
        except (ValueError, OSError) as e:
            log_message(f"Could not raise session limit {limit} to {wanted}: {e}", "DEBUG")

    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    log_message(f"Current file descriptor limits - Soft: {soft}, Hard: {hard}")
    if soft != resource.RLIM_INFINITY and soft < nofile:
        warnings.append("File descriptor limits may not be fully applied (will take effect after service restart)")

    for warning in warnings:
        log_message(warning, "WARNING")
    if not warnings:
        log_message("✓ System limits configured for MongoDB")
    return warnings
