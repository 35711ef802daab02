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
MongoDB in-place upgrade orchestrator.

Run with `mongo-upgrade` or `python -m mongo_upgrade.index`.
"""

from .utils import Version, should_skip, compare_versions, FatalUpgradeError
from .components import UpgradePlanner, UpgradePlan, UpgradeStep, StepExecutor, FCVReconciler, StorageMigrator

__all__ = [
    'Version',
    'should_skip',
    'compare_versions',
    'FatalUpgradeError',
    'UpgradePlanner',
    'UpgradePlan',
    'UpgradeStep',
    'StepExecutor',
    'FCVReconciler',
    'StorageMigrator',
]
