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
Upgrade Planner Component

Maps the detected starting release to the fixed list of hops that ends at
7.0.14. MongoDB only supports upgrading one major release at a time, so the
table never skips a release.

UPGRADE PATH: 3.2 → 3.4 → 3.6 → 4.0 → 4.2 → 4.4 → 5.0 → 6.0 → 7.0
STORAGE: MMAPv1 → WiredTiger migration at the 4.0.28 step
"""

from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

from ..utils.errors import UnsupportedVersionError
from ..utils.index import Version, log_message, should_skip

# Resolved to the running host's build at planning time
HOST_VARIANT = "host"

FINAL_TARGET = Version(7, 0, 14)
FINAL_THRESHOLD = Version(7, 0, 0)
STORAGE_BOUNDARY = Version(4, 0, 28)

# Directives a binary at or above the key version refuses to start with
REMOVED_DIRECTIVES: Dict[Version, Tuple[str, ...]] = {
    Version(7, 0, 0): ("storage.journal",),
}

PATH_TABLE: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "3.2": (
        ("3.4.24", "ubuntu1604"),
        ("3.6.23", "ubuntu1604"),
        ("4.0.28", "ubuntu1804"),
        ("4.2.25", "ubuntu1804"),
        ("4.4.29", HOST_VARIANT),
        ("5.0.24", "ubuntu2004"),
        ("6.0.14", "ubuntu2004"),
        ("7.0.14", HOST_VARIANT),
    ),
    "3.4": (
        ("3.6.23", "ubuntu1604"),
        ("4.0.28", "ubuntu1604"),
        ("4.2.25", "ubuntu1804"),
        ("4.4.29", HOST_VARIANT),
        ("5.0.24", "ubuntu2004"),
        ("6.0.14", "ubuntu2004"),
        ("7.0.14", HOST_VARIANT),
    ),
    "3.6": (
        ("4.0.28", "ubuntu1604"),
        ("4.2.25", "ubuntu1804"),
        ("4.4.29", HOST_VARIANT),
        ("5.0.24", "ubuntu2004"),
        ("6.0.14", "ubuntu2004"),
        ("7.0.14", HOST_VARIANT),
    ),
    "4.0": (
        ("4.0.28", "ubuntu1804"),
        ("4.2.25", "ubuntu1804"),
        ("4.4.29", HOST_VARIANT),
        ("5.0.24", "ubuntu2004"),
        ("6.0.14", "ubuntu2004"),
        ("7.0.14", HOST_VARIANT),
    ),
    "4.2": (
        ("4.4.29", "ubuntu1804"),
        ("5.0.24", "ubuntu2004"),
        ("6.0.14", "ubuntu2004"),
        ("7.0.14", HOST_VARIANT),
    ),
    "4.4": (
        ("5.0.24", "ubuntu2004"),
        ("6.0.14", "ubuntu2004"),
        ("7.0.14", HOST_VARIANT),
    ),
    "5.0": (
        ("6.0.14", "ubuntu2004"),
        ("7.0.14", HOST_VARIANT),
    ),
    "6.0": (
        ("7.0.14", HOST_VARIANT),
    ),
}


@dataclass(frozen=True)
class UpgradeStep:
    """One hop to the next release."""
    target_version: Version
    target_fcv: str
    binary_variant: str
    removed_directives: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.target_version} (FCV {self.target_fcv}, {self.binary_variant})"


@dataclass(frozen=True)
class UpgradePlan:
    """Ordered, immutable hop list computed once per run."""
    starting_version: Version
    steps: Tuple[UpgradeStep, ...]
    storage_boundary: Optional[Version] = None

    def __post_init__(self):
        for earlier, later in zip(self.steps, self.steps[1:]):
            if later.target_version <= earlier.target_version:
                raise ValueError(f"Plan is not strictly increasing at {later.target_version}")
        for step in self.steps:
            if step.target_fcv != step.target_version.release:
                raise ValueError(f"Step {step.target_version} has mismatched FCV {step.target_fcv}")

    def __iter__(self) -> Iterator[UpgradeStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def is_storage_boundary(self, step: UpgradeStep) -> bool:
        return self.storage_boundary is not None and step.target_version == self.storage_boundary

    @property
    def target_versions(self) -> Tuple[str, ...]:
        return tuple(str(step.target_version) for step in self.steps)


def removed_directives_for(target: Version) -> Tuple[str, ...]:
    directives = []
    for since, names in sorted(REMOVED_DIRECTIVES.items()):
        if target >= since:
            directives.extend(names)
    return tuple(directives)


class UpgradePlanner:
    """Builds the deterministic upgrade plan from the fixed path table."""

    def __init__(self, host_variant: str = "ubuntu2004",
                 path_table: Optional[Dict[str, Tuple[Tuple[str, str], ...]]] = None,
                 final_threshold: Version = FINAL_THRESHOLD,
                 storage_boundary: Version = STORAGE_BOUNDARY):
        self.host_variant = host_variant
        self.path_table = path_table if path_table is not None else PATH_TABLE
        self.final_threshold = final_threshold
        self.storage_boundary = storage_boundary

    def is_complete(self, current: Version) -> bool:
        """Global short-circuit: nothing to do at or above the final threshold."""
        return should_skip(current, self.final_threshold)

    def plan(self, current: Version) -> UpgradePlan:
        """
        Build the ordered step list for a starting version.

        Args:
            current: Detected starting version

        Returns:
            UpgradePlan: Steps from the next release through the final target

        Raises:
            UnsupportedVersionError: If the starting release is not in the table
        """
        entries = self.path_table.get(current.release)
        if entries is None:
            supported = ", ".join(sorted(self.path_table, key=lambda r: tuple(int(p) for p in r.split("."))))
            raise UnsupportedVersionError(
                f"Unsupported starting version: {current} (supported releases: {supported})")

        steps = []
        for target_text, variant in entries:
            target = Version.parse(target_text)
            steps.append(UpgradeStep(
                target_version=target,
                target_fcv=target.release,
                binary_variant=self.host_variant if variant == HOST_VARIANT else variant,
                removed_directives=removed_directives_for(target),
            ))

        boundary = self.storage_boundary if any(
            step.target_version == self.storage_boundary for step in steps) else None
        plan = UpgradePlan(starting_version=current, steps=tuple(steps), storage_boundary=boundary)
        log_message(f"Upgrade plan from {current}: {' → '.join(plan.target_versions)}")
        if boundary is not None:
            log_message(f"Storage engine check scheduled at the {boundary} step")
        return plan
