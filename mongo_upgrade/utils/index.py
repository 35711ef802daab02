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

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional, Union

LOGGER_NAME = "mongo_upgrade"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Strict N.N.N, non-negative integers only
VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


def log_message(message, level="INFO"):
    """
    Log a message through the upgrade logger.
    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    logging.getLogger(LOGGER_NAME).log(_LEVELS.get(level.upper(), logging.INFO), message)


@dataclass(frozen=True, order=True)
class Version:
    """A MongoDB server version, ordered numerically by component."""
    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, text: str) -> Optional["Version"]:
        """
        Parse a strict three-part version string.

        Args:
            text: Candidate string such as "4.2.25"

        Returns:
            Version or None when the text is not exactly N.N.N
        """
        if text is None:
            return None
        match = VERSION_PATTERN.match(str(text).strip())
        if not match:
            return None
        return cls(*(int(part) for part in match.groups()))

    @property
    def release(self) -> str:
        """The major.minor release string, which is also the matching FCV."""
        return f"{self.major}.{self.minor}"

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


VersionLike = Union[Version, str]


def _coerce(value: VersionLike) -> Version:
    if isinstance(value, Version):
        return value
    parsed = Version.parse(value)
    if parsed is None:
        raise ValueError(f"Not a three-part version: {value!r}")
    return parsed


def compare_versions(version1: VersionLike, version2: VersionLike) -> int:
    """
    Compare two server versions.

    Args:
        version1: First version (e.g., "4.0.28")
        version2: Second version (e.g., "4.2.0")

    Returns:
        int: -1 if version1 < version2, 0 if equal, 1 if version1 > version2
    """
    left = _coerce(version1)
    right = _coerce(version2)
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def should_skip(current: VersionLike, target: VersionLike) -> bool:
    """True when the current version is already at or above the target."""
    return compare_versions(current, target) >= 0


class Clock:
    """Time source for every bounded wait in the upgrade."""

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()
