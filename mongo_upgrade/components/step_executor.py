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
Step Executor Component

Runs one upgrade hop at a time:

    Idle → Stopped → Installing → [StorageMigrating] → Started → FCVSet → Done

Every step starts from a freshly probed version, so re-running after a failure
picks up where the previous run stopped. Fatal errors propagate; FCV problems
are collected as warnings for the final verification pass.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..utils.config_store import ConfigStore
from ..utils.errors import DeprecatedDirectiveError, ServerStopError, ServerUnreachableError
from ..utils.index import log_message, should_skip
from .fcv_reconciler import FCVReconciler, ReconcileResult
from .installer import Installer
from .process_controller import ProcessController
from .storage_migrator import StorageMigrator
from .upgrade_planner import UpgradePlan, UpgradeStep
from .version_probe import VersionProbe


class StepState(Enum):
    IDLE = "idle"
    STOPPED = "stopped"
    INSTALLING = "installing"
    STORAGE_MIGRATING = "storage_migrating"
    STARTED = "started"
    FCV_SET = "fcv_set"
    DONE = "done"


@dataclass
class StepOutcome:
    step: UpgradeStep
    skipped: bool = False
    migrated: bool = False
    fcv_result: Optional[ReconcileResult] = None
    states: List[StepState] = field(default_factory=lambda: [StepState.IDLE])
    warnings: List[str] = field(default_factory=list)

    @property
    def state(self) -> StepState:
        return self.states[-1]


class StepExecutor:
    """Drives each UpgradeStep through its state machine."""

    def __init__(self, version_probe: VersionProbe, controller: ProcessController, installer: Installer,
                 config_store: ConfigStore, storage_migrator: StorageMigrator, fcv_reconciler: FCVReconciler):
        self.version_probe = version_probe
        self.controller = controller
        self.installer = installer
        self.config_store = config_store
        self.storage_migrator = storage_migrator
        self.fcv_reconciler = fcv_reconciler

    def _neutralize_directives(self, step: UpgradeStep) -> None:
        """Comment out directives the target binary refuses to start with."""
        for directive in step.removed_directives:
            if not self.config_store.is_active(directive):
                continue
            log_message(f"Disabling {directive} in {self.config_store.path} (not supported by {step.target_version})")
            self.config_store.toggle(directive, False)
            self.config_store.save()
            self.config_store.load()
            if self.config_store.is_active(directive):
                raise DeprecatedDirectiveError(
                    f"{directive} is still active in {self.config_store.path}; "
                    f"MongoDB {step.target_version} will not start with it")
            log_message(f"✓ {directive} disabled")

    def _start(self, step: UpgradeStep) -> None:
        health = self.controller.start()
        if not health.healthy:
            raise ServerUnreachableError(
                f"MongoDB {step.target_version} did not become reachable after "
                f"{health.start_attempts} start attempts and {health.health_polls} health checks")

    def execute_step(self, step: UpgradeStep, plan: UpgradePlan) -> StepOutcome:
        """
        Run one hop.

        Raises:
            ServerStopError, InstallError, DeprecatedDirectiveError, ServerUnreachableError,
            BackupError, StorageMigrationError:
            All fatal; the run's backup is left in place
        """
        outcome = StepOutcome(step=step)
        boundary = plan.is_storage_boundary(step)

        current = self.version_probe.probe()
        if current is not None and should_skip(current, step.target_version):
            log_message(f"MongoDB {current} already at or above {step.target_version}, skipping")
            outcome.skipped = True
            if boundary:
                # An earlier run may have stopped between install and migration
                outcome.migrated = self.storage_migrator.migrate_if_needed()
                if outcome.migrated:
                    outcome.states.append(StepState.STORAGE_MIGRATING)
            outcome.states.append(StepState.DONE)
            return outcome

        log_message("=" * 80)
        log_message(f"UPGRADING TO MongoDB {step}")
        log_message("=" * 80)

        if not self.controller.stop():
            raise ServerStopError(
                f"MongoDB did not stop, refusing to install {step.target_version} over a running server")
        outcome.states.append(StepState.STOPPED)

        outcome.states.append(StepState.INSTALLING)
        self.installer.install(step.target_version, step.binary_variant)
        self._neutralize_directives(step)

        if boundary:
            outcome.states.append(StepState.STORAGE_MIGRATING)
            outcome.migrated = self.storage_migrator.migrate_if_needed()

        self._start(step)
        outcome.states.append(StepState.STARTED)

        outcome.fcv_result = self.fcv_reconciler.reconcile(step.target_fcv)
        if outcome.fcv_result is ReconcileResult.UNVERIFIABLE:
            outcome.warnings.append(
                f"FCV after upgrading to {step.target_version} could not be confirmed as {step.target_fcv}")
        outcome.states.append(StepState.FCV_SET)

        outcome.states.append(StepState.DONE)
        log_message(f"✓ Upgrade to {step.target_version} completed")
        return outcome

    def execute(self, plan: UpgradePlan) -> List[StepOutcome]:
        """Run every step in order; the first fatal error stops the run."""
        outcomes = []
        for index, step in enumerate(plan, start=1):
            log_message(f"Step {index}/{len(plan)}: {step.target_version}")
            outcomes.append(self.execute_step(step, plan))
        return outcomes
