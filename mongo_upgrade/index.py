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
MongoDB Upgrade Orchestrator

Upgrades a single mongod in place from 3.2+ to 7.0.14 one release at a time:

    3.2 → 3.4 → 3.6 → 4.0 → 4.2 → 4.4 → 5.0 → 6.0 → 7.0

with the MMAPv1 → WiredTiger migration at the 4.0.28 step. One backup is taken
before the first destructive action and kept whatever happens afterwards.
"""

import argparse
import copy
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .components import (
    BinaryVersionChannel,
    ConfigEngineProbe,
    DataDirEngineProbe,
    FCVReconciler,
    InferredFCVProbe,
    LiveEngineProbe,
    LiveVersionChannel,
    MongodProcessController,
    ParameterFCVProbe,
    ReconcileResult,
    StepExecutor,
    StorageMigrator,
    SystemVersionFCVProbe,
    TarballInstaller,
    UpgradePlan,
    UpgradePlanner,
    VersionProbe,
    create_admin_client,
)
from .components.upgrade_planner import FINAL_TARGET
from .utils import (
    AdminUnavailableError,
    Clock,
    ConfigStore,
    FatalUpgradeError,
    PermissionManager,
    ServerStopError,
    ServerUnreachableError,
    StateManager,
    UnsupportedPlatformError,
    VersionUndeterminedError,
    configure_system_limits,
    log_message,
)

DEFAULT_RUN_LOG = "/var/log/mongodb-upgrade.log"
CONFIRMATION_WORD = "UPGRADE"

FALLBACK_CONFIG = {
    "metadata": {
        "schema_version": "1.0.0",
        "module_name": "mongo_upgrade",
        "final_version": str(FINAL_TARGET),
    },
    "config": {
        "mongodb": {
            "host": "127.0.0.1",
            "port": 27017,
            "mongod_binary": "/usr/bin/mongod",
            "server_selection_timeout_ms": 5000,
            "shell_timeout": 60,
        },
        "paths": {
            "mongod_config": "/etc/mongod.conf",
            "data_dir": "/var/lib/mongodb",
            "log_dir": "/var/log/mongodb",
            "bin_dir": "/usr/bin",
            "work_dir": "/tmp/mongodb-upgrade",
            "backup_dir": "/backup",
            "backup_pointer": "/backup/last_backup",
            "run_log": DEFAULT_RUN_LOG,
        },
        "service": {"user": "mongodb", "group": "mongodb"},
        "timing": {
            "start_attempts": 3,
            "start_retry_delay": 5,
            "health_polls": 30,
            "health_poll_interval": 3,
            "stop_polls": 10,
            "stop_poll_interval": 1,
            "fcv_settle_delay": 3,
            "backup_timeout": 7200,
            "download_timeout": 300,
        },
        "downloads": {
            "base_url": "https://fastdl.mongodb.org/linux",
            "shell_url": "https://downloads.mongodb.com/compass/mongosh-{version}-linux-x64.tgz",
            "shell_version": "2.1.5",
        },
        "limits": {"nofile": 64000, "nproc": 64000},
        "platform": {
            "variant": None,
            "os_release": "/etc/os-release",
            "variants": {"18.04": "ubuntu1804", "20.04": "ubuntu2004", "22.04": "ubuntu2204"},
        },
        "packages": {"commands": []},
    },
}


def setup_upgrade_logging(log_file: Optional[str] = DEFAULT_RUN_LOG):
    """
    Log to stdout and append to the run log file.

    The file handler keeps DEBUG detail (raw FCV replies, commands run); the
    console shows INFO and above.
    """
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(unified_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)

    file_error = None
    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(unified_format)
            root_logger.addHandler(file_handler)
        except OSError as e:
            file_error = e

    # pymongo logs every server selection attempt at DEBUG
    logging.getLogger("pymongo").setLevel(logging.ERROR)

    log_message("=" * 80)
    log_message("MONGODB UPGRADE SESSION STARTED")
    log_message(f"Command: {' '.join(sys.argv)}")
    log_message(f"Working Directory: {os.getcwd()}")
    log_message(f"Python Version: {sys.version}")
    log_message("=" * 80)
    if file_error is not None:
        log_message(f"Could not open run log {log_file}: {file_error}", "WARNING")


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_upgrade_config(operator_file: Optional[str] = None) -> dict:
    """
    Load the packaged index.json and merge an operator file over its config section.

    Args:
        operator_file: Optional JSON or YAML file shaped like the "config" section

    Returns:
        dict: The merged "config" section
    """
    try:
        config_path = os.path.join(os.path.dirname(__file__), "index.json")
        with open(config_path, 'r') as f:
            module_config = json.load(f)
    except (OSError, ValueError) as e:
        log_message(f"Failed to load module config: {e}", "WARNING")
        module_config = FALLBACK_CONFIG

    config = _deep_merge(FALLBACK_CONFIG["config"], module_config.get("config", {}))
    if operator_file:
        with open(operator_file, 'r') as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            raise ValueError(f"{operator_file} must contain a mapping")
        config = _deep_merge(config, overrides.get("config", overrides))
    return config


def detect_host_variant(platform_config: Dict[str, Any]) -> str:
    """
    Map the host's Ubuntu release to a MongoDB binary variant.

    Raises:
        UnsupportedPlatformError: If the release has no known variant
    """
    override = platform_config.get("variant")
    if override:
        log_message(f"Using configured binary variant: {override}")
        return override

    os_release = platform_config.get("os_release", "/etc/os-release")
    fields = {}
    try:
        with open(os_release, 'r') as f:
            for line in f:
                key, sep, value = line.strip().partition("=")
                if sep:
                    fields[key] = value.strip().strip('"')
    except OSError as e:
        raise UnsupportedPlatformError(f"Cannot read {os_release}: {e}") from e

    release = fields.get("VERSION_ID", "unknown")
    variants = platform_config.get("variants", {})
    if release not in variants:
        supported = ", ".join(sorted(variants))
        raise UnsupportedPlatformError(f"Unsupported Ubuntu version: {release}. Supported: {supported}")
    log_message(f"Ubuntu {release} detected, using {variants[release]} binaries where the path allows")
    return variants[release]


@dataclass
class RunReport:
    """Summary of a finished run."""
    starting_version: str
    final_version: str
    storage_engine: str
    port: int
    backup_path: Optional[str] = None
    steps_executed: List[str] = field(default_factory=list)
    steps_skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UpgradeOrchestrator:
    """
    Wires the upgrade components together from configuration and runs the
    whole upgrade. Collaborators can be passed in to replace the real ones.
    """

    def __init__(self, config: dict, port: Optional[int] = None, clock: Optional[Clock] = None,
                 config_store=None, admin=None, version_probe=None, controller=None,
                 installer=None, backups=None, host_variant: Optional[str] = None):
        self.config = config
        self.port_override = port
        self.clock = clock or Clock()
        self.config_store = config_store
        self.admin = admin
        self.version_probe = version_probe
        self.controller = controller
        self.installer = installer
        self.backups = backups
        self.host_variant = host_variant
        self.auth_disabled = False
        self._built = False

    def _resolve_port(self) -> int:
        if self.port_override:
            return int(self.port_override)
        configured = self.config_store.get("net.port")
        if configured:
            log_message(f"Detected MongoDB port: {configured}")
            return int(configured)
        return int(self.config["mongodb"].get("port", 27017))

    def _resolve_data_dir(self) -> str:
        configured = self.config_store.get("storage.dbPath")
        if configured:
            log_message(f"Detected MongoDB data directory: {configured}")
            return str(configured)
        return self.config["paths"]["data_dir"]

    def _build(self) -> None:
        if self._built:
            return
        mongodb = self.config["mongodb"]
        paths = self.config["paths"]
        service = self.config["service"]
        timing = self.config["timing"]
        downloads = self.config["downloads"]

        if self.config_store is None:
            self.config_store = ConfigStore(paths["mongod_config"])
        self.port = self._resolve_port()
        self.data_dir = self._resolve_data_dir()
        if self.host_variant is None:
            self.host_variant = detect_host_variant(self.config.get("platform", {}))

        if self.admin is None:
            self.admin = create_admin_client(mongodb.get("host", "127.0.0.1"), self.port,
                                             timeout_ms=mongodb.get("server_selection_timeout_ms", 5000),
                                             shell_timeout=mongodb.get("shell_timeout", 60))
        if self.version_probe is None:
            self.version_probe = VersionProbe([
                LiveVersionChannel(self.admin),
                BinaryVersionChannel(mongodb.get("mongod_binary", "/usr/bin/mongod")),
            ])
        permissions = PermissionManager("mongodb")
        if self.controller is None:
            self.controller = MongodProcessController(
                self.admin,
                config_path=str(self.config_store.path),
                clock=self.clock,
                mongod_binary=mongodb.get("mongod_binary", "/usr/bin/mongod"),
                start_attempts=timing["start_attempts"],
                start_retry_delay=timing["start_retry_delay"],
                health_polls=timing["health_polls"],
                health_poll_interval=timing["health_poll_interval"],
                stop_polls=timing["stop_polls"],
                stop_poll_interval=timing["stop_poll_interval"],
                data_dir=self.data_dir,
                log_dir=paths["log_dir"],
                user=service["user"],
                group=service["group"],
                permissions=permissions,
            )
        if self.installer is None:
            self.installer = TarballInstaller(
                base_url=downloads["base_url"],
                bin_dir=paths["bin_dir"],
                work_dir=paths["work_dir"],
                timeout=timing["download_timeout"],
                shell_url=downloads["shell_url"],
                shell_version=downloads["shell_version"],
                package_commands=self.config.get("packages", {}).get("commands", []),
            )
        if self.backups is None:
            self.backups = StateManager(backup_dir=paths["backup_dir"], port=self.port,
                                        pointer_file=paths.get("backup_pointer"),
                                        timeout=timing["backup_timeout"])

        self.planner = UpgradePlanner(host_variant=self.host_variant)
        self.fcv = FCVReconciler(
            self.admin,
            [ParameterFCVProbe(self.admin), SystemVersionFCVProbe(self.admin), InferredFCVProbe(self.version_probe)],
            clock=self.clock,
            settle_delay=timing["fcv_settle_delay"],
        )
        self.migrator = StorageMigrator(
            [LiveEngineProbe(self.admin), ConfigEngineProbe(self.config_store), DataDirEngineProbe(self.data_dir)],
            self.config_store, self.controller, self.backups,
            data_dir=self.data_dir, user=service["user"], group=service["group"],
            permissions=permissions,
        )
        self.executor = StepExecutor(self.version_probe, self.controller, self.installer,
                                     self.config_store, self.migrator, self.fcv)
        self._built = True

    def _stop(self) -> None:
        if not self.controller.stop():
            raise ServerStopError("MongoDB did not stop, the edited mongod.conf would not take effect")

    def _ensure_running(self) -> None:
        health = self.controller.start()
        if not health.healthy:
            raise ServerUnreachableError(
                f"MongoDB did not become reachable after {health.start_attempts} start attempts "
                f"and {health.health_polls} health checks")

    def _probe_starting_version(self):
        current = self.version_probe.probe()
        if current is None:
            raise VersionUndeterminedError("Cannot determine MongoDB version")
        return current

    def _disable_auth(self) -> None:
        store = self.config_store
        if str(store.get("security.authorization", "")).lower() != "enabled":
            log_message("Authentication not enabled in mongod.conf, leaving security settings alone")
            return
        log_message("Disabling authentication for upgrade")
        store.copy_to(f"{store.path}.with-auth")
        store.set("security.authorization", "disabled")
        store.save()
        self.auth_disabled = True
        self._stop()
        self._ensure_running()

    def _enable_auth(self) -> None:
        log_message("Re-enabling authentication")
        self._stop()
        self.config_store.load()
        self.config_store.set("security.authorization", "enabled")
        self.config_store.save()
        self.auth_disabled = False
        self._ensure_running()
        log_message("✓ Authentication re-enabled")

    def _reconcile_current(self, version, when: str) -> List[str]:
        expected = self.fcv.expected_fcv_for(version)
        if self.fcv.reconcile(expected) is ReconcileResult.UNVERIFIABLE:
            return [f"FCV {when} could not be confirmed as {expected}"]
        return []

    def _log_data_integrity(self) -> List[str]:
        log_message("Testing data integrity...")
        try:
            databases = self.admin.command({"listDatabases": 1}).get("databases", [])
            for database in databases:
                stats = self.admin.command({"dbStats": 1}, database=database["name"])
                log_message(f"Database: {database['name']}, Collections: {stats.get('collections', '?')}, "
                            f"Documents: {stats.get('objects', '?')}")
        except AdminUnavailableError as e:
            return [f"Data integrity check could not run: {e}"]
        return []

    def verify(self):
        """
        Final verification pass: make sure the server is up, report what it
        runs, and reconcile FCV one more time.

        Returns:
            tuple: (version or None, storage engine name, warnings)
        """
        log_message("=" * 80)
        log_message("VERIFYING INSTALLATION")
        log_message("=" * 80)
        warnings = []
        if not self.controller.is_running():
            self._ensure_running()

        version = self.version_probe.probe()
        engine = self.migrator.detect_engine().value
        log_message(f"MongoDB Server Version: {version or 'unknown'}")
        log_message(f"Storage Engine: {engine}")

        if version is not None:
            log_message("Verifying Feature Compatibility Version...")
            warnings += self._reconcile_current(version, "at final verification")
        else:
            warnings.append("Installed version unreadable at final verification")
        warnings += self._log_data_integrity()
        log_message("✓ Installation verification completed")
        return version, engine, warnings

    def check(self) -> Optional[UpgradePlan]:
        """Report the detected version and the plan without changing anything."""
        self._build()
        current = self._probe_starting_version()
        log_message(f"Installed MongoDB version: {current}")
        if self.planner.is_complete(current):
            log_message(f"✓ Already at MongoDB {self.planner.final_threshold.release}+, nothing to upgrade")
            return None
        plan = self.planner.plan(current)
        log_message(f"Storage engine: {self.migrator.detect_engine().value}")
        for index, step in enumerate(plan, start=1):
            marker = " (storage engine migration)" if plan.is_storage_boundary(step) else ""
            log_message(f"  {index}. {step}{marker}")
        return plan

    def run(self) -> RunReport:
        """
        Run the full upgrade.

        Raises:
            FatalUpgradeError: Any fatal failure; the backup is left in place
        """
        self._build()
        log_message("=" * 80)
        log_message(f"MONGODB UPGRADE: 3.2+ → {FINAL_TARGET}")
        log_message("=" * 80)
        warnings = []

        limits = self.config.get("limits", {})
        warnings += configure_system_limits(user=self.config["service"]["user"], **limits)
        warnings += self.installer.ensure_runtime_libraries()

        starting = self._probe_starting_version()
        log_message(f"Starting upgrade from MongoDB {starting}")

        if self.controller.is_running():
            log_message("Checking current FCV alignment with MongoDB version...")
            warnings += self._reconcile_current(starting, f"for starting version {starting}")
        else:
            log_message("MongoDB not running, FCV will be checked after it starts")

        outcomes = []
        plan = None
        if self.planner.is_complete(starting):
            log_message(f"✓ Already at MongoDB {self.planner.final_threshold.release}+, verifying only")
        else:
            plan = self.planner.plan(starting)

        try:
            if plan is not None:
                self._disable_auth()
                self._ensure_running()
                engine = self.migrator.detect_engine()
                self.backups.snapshot(str(starting), engine.value)
                warnings += self._reconcile_current(starting, f"before upgrading from {starting}")
                outcomes = self.executor.execute(plan)
                for outcome in outcomes:
                    warnings += outcome.warnings
                if not self.installer.install_shell():
                    warnings.append("mongosh could not be installed")

            final_version, engine, verify_warnings = self.verify()
            warnings += verify_warnings

            if self.auth_disabled:
                self._enable_auth()
        except FatalUpgradeError:
            if self.auth_disabled:
                log_message(f"Authentication is still disabled; the original config is at "
                            f"{self.config_store.path}.with-auth", "WARNING")
            raise

        handle = self.backups.current()
        report = RunReport(
            starting_version=str(starting),
            final_version=str(final_version) if final_version else "unknown",
            storage_engine=engine,
            port=self.port,
            backup_path=handle.path if handle else None,
            steps_executed=[str(o.step.target_version) for o in outcomes if not o.skipped],
            steps_skipped=[str(o.step.target_version) for o in outcomes if o.skipped],
            warnings=warnings,
        )
        log_report(report)
        return report


def log_report(report: RunReport) -> None:
    log_message("=" * 80)
    log_message("MONGODB UPGRADE COMPLETED!")
    log_message("=" * 80)
    log_message(f"Upgraded from: {report.starting_version}")
    log_message(f"Final version: {report.final_version}")
    log_message(f"Storage engine: {report.storage_engine}")
    log_message(f"Port: {report.port}")
    log_message(f"Backup: {report.backup_path or 'Not found'}")
    if report.steps_executed:
        log_message(f"Steps executed: {', '.join(report.steps_executed)}")
    if report.steps_skipped:
        log_message(f"Steps skipped (already done): {', '.join(report.steps_skipped)}")
    for warning in report.warnings:
        log_message(f"Warning: {warning}", "WARNING")


def confirm_upgrade(prompt=None) -> bool:
    """Single confirmation gate before anything destructive happens."""
    prompt = prompt or input
    print("This will upgrade MongoDB in place, one release at a time, up to "
          f"{FINAL_TARGET}. A backup is taken first.")
    try:
        answer = prompt(f"Type {CONFIRMATION_WORD} to continue: ")
    except EOFError:
        return False
    return answer.strip() == CONFIRMATION_WORD


def main(argv=None):
    """
    Main entry point for the MongoDB upgrade.
    Exit codes: 0 success, help or declined; 1 fatal error; 130 interrupted.
    """
    parser = argparse.ArgumentParser(description=f"MongoDB Upgrade Orchestrator (3.2+ → {FINAL_TARGET})")
    parser.add_argument("--config", metavar="FILE",
                        help="JSON or YAML file merged over the packaged defaults")
    parser.add_argument("--mongod-config", metavar="FILE",
                        help="Path to mongod.conf (default: /etc/mongod.conf)")
    parser.add_argument("--port", type=int,
                        help="MongoDB port (default: net.port from mongod.conf)")
    parser.add_argument("--check-only", action="store_true",
                        help="Show the detected version and upgrade plan without changing anything")
    parser.add_argument("--yes", action="store_true",
                        help=f"Skip the {CONFIRMATION_WORD} confirmation prompt")

    args = parser.parse_args(argv)

    try:
        config = load_upgrade_config(args.config)
        setup_upgrade_logging(config["paths"].get("run_log", DEFAULT_RUN_LOG))
        if args.mongod_config:
            config["paths"]["mongod_config"] = args.mongod_config

        orchestrator = UpgradeOrchestrator(config, port=args.port)

        if args.check_only:
            log_message("Check-only mode: detecting version and plan without applying...")
            orchestrator.check()
            sys.exit(0)

        if os.geteuid() != 0:
            log_message("This script must be run as root", "ERROR")
            sys.exit(1)

        if not args.yes and not confirm_upgrade():
            log_message("Upgrade cancelled by user")
            sys.exit(0)

        orchestrator.run()
        log_message("Upgrade completed successfully!")
        sys.exit(0)

    except FatalUpgradeError as e:
        log_message(f"FATAL [{e.label}]: {e}", "ERROR")
        sys.exit(1)
    except KeyboardInterrupt:
        log_message("Upgrade interrupted by user", "WARNING")
        sys.exit(130)
    except Exception as e:
        log_message(f"Unhandled error in upgrade process: {e}", "ERROR")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
