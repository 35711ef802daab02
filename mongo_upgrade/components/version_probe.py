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
Version Probe Component

Multi-method version detection:
- Live query against the running server (buildInfo)
- Installed binary metadata (mongod --version)

The first channel whose answer is a strict N.N.N version wins.
"""

import re
import subprocess
from typing import List, Optional

from packaging import version as packaging_version

from ..utils.errors import AdminUnavailableError
from ..utils.index import Version, log_message
from .admin_client import AdminClient

_VERSION_LINE = re.compile(r"db version v?(\S+)")


class VersionChannel:
    """One way of asking what version is installed."""

    name = "channel"

    def read(self) -> Optional[str]:
        raise NotImplementedError


class LiveVersionChannel(VersionChannel):
    name = "live"

    def __init__(self, admin: AdminClient):
        self.admin = admin

    def read(self) -> Optional[str]:
        try:
            reply = self.admin.command({"buildInfo": 1})
        except AdminUnavailableError as e:
            log_message(f"Live version query unavailable: {e}", "DEBUG")
            return None
        version = reply.get("version")
        return str(version) if version else None


class BinaryVersionChannel(VersionChannel):
    name = "binary"

    def __init__(self, mongod_binary: str = "mongod"):
        self.mongod_binary = mongod_binary

    def read(self) -> Optional[str]:
        try:
            result = subprocess.run([self.mongod_binary, "--version"], capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            log_message(f"Failed to run {self.mongod_binary} --version: {e}", "DEBUG")
            return None
        # Output format: "db version vX.Y.Z"
        match = _VERSION_LINE.search(result.stdout)
        if not match:
            return None
        try:
            parsed = packaging_version.Version(match.group(1))
        except packaging_version.InvalidVersion:
            log_message(f"Unparseable mongod version {match.group(1)!r}", "DEBUG")
            return None
        if parsed.is_prerelease or len(parsed.release) != 3:
            log_message(f"Ignoring non-release mongod build {match.group(1)}", "DEBUG")
            return None
        return parsed.base_version


class VersionProbe:
    """Layered installed/running version detection. Never raises."""

    def __init__(self, channels: List[VersionChannel]):
        self.channels = channels

    def probe(self) -> Optional[Version]:
        """
        Returns:
            Version of the first channel with a strict N.N.N answer, or None
        """
        for channel in self.channels:
            try:
                raw = channel.read()
            except Exception as e:
                log_message(f"Version channel {channel.name} failed: {e}", "WARNING")
                continue
            version = Version.parse(raw) if raw else None
            if version is not None:
                log_message(f"Detected MongoDB {version} via {channel.name} channel", "DEBUG")
                return version
            if raw:
                log_message(f"Ignoring non-conforming version {raw!r} from {channel.name} channel", "DEBUG")
        return None
