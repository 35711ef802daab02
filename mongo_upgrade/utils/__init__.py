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
Utilities for the MongoDB upgrade orchestrator.

This module provides the shared helpers used by the upgrade components.
"""

from .index import log_message, Version, compare_versions, should_skip, Clock
from .config_store import ConfigStore
from .state_manager import StateManager, BackupHandle
from .permissions import PermissionManager, PermissionTarget, configure_system_limits
from .errors import (
    UpgradeError,
    FatalUpgradeError,
    UnsupportedVersionError,
    VersionUndeterminedError,
    UnsupportedPlatformError,
    InstallError,
    ServerUnreachableError,
    ServerStopError,
    StorageMigrationError,
    BackupError,
    DeprecatedDirectiveError,
    AdminUnavailableError,
)

__all__ = [
    'log_message',
    'Version',
    'compare_versions',
    'should_skip',
    'Clock',
    'ConfigStore',
    'StateManager',
    'BackupHandle',
    'PermissionManager',
    'PermissionTarget',
    'configure_system_limits',
    'UpgradeError',
    'FatalUpgradeError',
    'UnsupportedVersionError',
    'VersionUndeterminedError',
    'UnsupportedPlatformError',
    'InstallError',
    'ServerUnreachableError',
    'ServerStopError',
    'StorageMigrationError',
    'BackupError',
    'DeprecatedDirectiveError',
    'AdminUnavailableError',
]
