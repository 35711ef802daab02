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
Upgrade error taxonomy.

Fatal errors abort the whole run and carry a short label that the CLI prints
in front of the message. Anything recoverable is logged as a warning by the
component that saw it and never raised.
"""


class UpgradeError(Exception):
    """Base exception for upgrade failures."""
    pass


class FatalUpgradeError(UpgradeError):
    """An error that aborts the run with a non-zero exit."""
    label = "UpgradeFailed"


class UnsupportedVersionError(FatalUpgradeError):
    """Starting version has no entry in the upgrade path table."""
    label = "UnsupportedVersion"


class VersionUndeterminedError(FatalUpgradeError):
    """No probe channel could report the installed version."""
    label = "VersionUndetermined"


class UnsupportedPlatformError(FatalUpgradeError):
    """Host OS release has no matching MongoDB binary variant."""
    label = "UnsupportedPlatform"


class InstallError(FatalUpgradeError):
    """Download, extraction or copy of server binaries failed."""
    label = "InstallFailed"


class ServerUnreachableError(FatalUpgradeError):
    """The server never answered after exhausting start attempts and polls."""
    label = "ServerUnreachable"


class ServerStopError(FatalUpgradeError):
    """mongod kept running after shutdown, the stop polls and pkill."""
    label = "ServerStopFailed"


class StorageMigrationError(FatalUpgradeError):
    """The legacy data directory could not be set aside."""
    label = "StorageMigrationFailed"


class BackupError(FatalUpgradeError):
    """Dump, restore or backup lookup failed."""
    label = "BackupFailed"


class DeprecatedDirectiveError(FatalUpgradeError):
    """A directive the target binary rejects could not be neutralized."""
    label = "DeprecatedDirective"


class AdminUnavailableError(UpgradeError):
    """The admin channel could not reach the server."""
    pass
