"""
HOMESERVER MongoDB Upgrade Components
Copyright (C) 2024 HOMESERVER LLC

Component-based MongoDB upgrade system: probing, planning, per-step execution,
FCV reconciliation and storage engine migration.
"""

from .admin_client import AdminClient, PyMongoAdmin, ShellAdmin, LayeredAdmin, create_admin_client
from .version_probe import VersionProbe, LiveVersionChannel, BinaryVersionChannel
from .upgrade_planner import UpgradePlanner, UpgradePlan, UpgradeStep
from .fcv_reconciler import (
    FCVReconciler,
    ReconcileResult,
    ParameterFCVProbe,
    SystemVersionFCVProbe,
    InferredFCVProbe,
)
from .storage_migrator import (
    StorageMigrator,
    StorageEngine,
    LiveEngineProbe,
    ConfigEngineProbe,
    DataDirEngineProbe,
)
from .process_controller import ProcessController, MongodProcessController, HealthStatus
from .installer import Installer, TarballInstaller
from .step_executor import StepExecutor, StepOutcome, StepState

__all__ = [
    'AdminClient',
    'PyMongoAdmin',
    'ShellAdmin',
    'LayeredAdmin',
    'create_admin_client',
    'VersionProbe',
    'LiveVersionChannel',
    'BinaryVersionChannel',
    'UpgradePlanner',
    'UpgradePlan',
    'UpgradeStep',
    'FCVReconciler',
    'ReconcileResult',
    'ParameterFCVProbe',
    'SystemVersionFCVProbe',
    'InferredFCVProbe',
    'StorageMigrator',
    'StorageEngine',
    'LiveEngineProbe',
    'ConfigEngineProbe',
    'DataDirEngineProbe',
    'ProcessController',
    'MongodProcessController',
    'HealthStatus',
    'Installer',
    'TarballInstaller',
    'StepExecutor',
    'StepOutcome',
    'StepState',
]
