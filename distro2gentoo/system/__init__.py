"""Host package managers, target init systems and the target configurator."""

from .configurator import ConfigurationPlan, TargetConfigurator, plan_configuration
from .init_systems import InitSystem, OpenRC, Systemd, init_system_for
from .package_managers import PackageManager, detect_package_manager


__all__ = [
    "ConfigurationPlan",
    "TargetConfigurator",
    "plan_configuration",
    "InitSystem",
    "OpenRC",
    "Systemd",
    "init_system_for",
    "PackageManager",
    "detect_package_manager",
]
