"""Target System Configurator.

Writes the staged root's configuration from what the translators found on
the host, then installs packages and enables services inside the staged
root. Every command runs through ``StagedRoot.run`` (chroot with a clean
environment); nothing is assembled into a shell string.

Files written (paths inside the staged root):
    /etc/portage/make.conf                      GRUB_PLATFORMS, GENTOO_MIRRORS
    /etc/portage/package.use/distro2gentoo      optional subsystems
    /etc/dracut.conf.d/10-distro2gentoo.conf    crypt / lvm / btrfs modules
    /etc/kernel/cmdline                         translated kernel options
    /etc/default/grub                           GRUB_CMDLINE_LINUX
    /etc/fstab                                  host entries + live mounts
    /etc/shadow                                 root password
    /etc/ssh/sshd_config                        root login over ssh
    network files                               depending on the init system
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

from distro2gentoo.boot.cmdline import set_grub_cmdline
from distro2gentoo.domain import (
    Diagnostic,
    EfiPartition,
    MountEntry,
    Severity,
    StorageTopology,
    TranslationResult,
)
from distro2gentoo.logging import LoggerFactory
from distro2gentoo.network.topology import NetworkTranslation
from distro2gentoo.storage.commands import run_checked_command
from distro2gentoo.storage.exceptions import CommandError
from distro2gentoo.storage.fstab import merge_live_mounts, parse_fstab, render_fstab
from distro2gentoo.storage.staging import StagedRoot

from .init_systems import InitSystem


log = LoggerFactory.for_system()

MAKE_CONF = "/etc/portage/make.conf"
PACKAGE_USE = "/etc/portage/package.use/distro2gentoo"
DRACUT_CONF = "/etc/dracut.conf.d/10-distro2gentoo.conf"
KERNEL_CMDLINE = "/etc/kernel/cmdline"
GRUB_DEFAULTS = "/etc/default/grub"
SSHD_CONFIG = "/etc/ssh/sshd_config"

GRUB_PLATFORMS = {"amd64": "efi-64 pc", "arm64": "efi-64"}

SSHD_OPTIONS = {
    "PermitRootLogin": "yes",
    "PasswordAuthentication": "yes",
    "AuthorizedKeysFile": ".ssh/authorized_keys",
}

_LOCKED_PREFIXES = ("*", "!")


# ==============================================================================
# File editing helpers
# ==============================================================================


def set_config_var(text: str, key: str, value: str) -> str:
    """Set ``KEY="value"`` in a shell-style config file, replacing any previous one."""
    line = f'{key}="{value}"'
    pattern = re.compile(rf"^\s*{re.escape(key)}=")
    lines = text.splitlines()
    for index, existing in enumerate(lines):
        if pattern.match(existing):
            lines[index] = line
            break
    else:
        lines.append(line)
    return "\n".join(lines) + "\n"


def set_sshd_options(text: str, options: dict[str, str]) -> str:
    """Set sshd_config keywords, uncommenting the stock line when present."""
    lines = text.splitlines()
    for key, value in options.items():
        pattern = re.compile(rf"^\s*#?\s*{re.escape(key)}\s", re.IGNORECASE)
        for index, existing in enumerate(lines):
            if pattern.match(existing + " "):
                lines[index] = f"{key} {value}"
                break
        else:
            lines.append(f"{key} {value}")
    return "\n".join(lines) + "\n"


def parse_shadow_root(text: str) -> Optional[tuple[str, str]]:
    """``(hash, last change day)`` of root, or None when root is locked."""
    for line in text.splitlines():
        fields = line.split(":")
        if fields[0] != "root" or len(fields) < 3:
            continue
        password_hash = fields[1]
        if not password_hash or password_hash.startswith(_LOCKED_PREFIXES):
            return None
        return password_hash, fields[2]
    return None


def update_shadow_root(text: str, password_hash: str, last_change: str) -> str:
    lines = text.splitlines()
    for index, line in enumerate(lines):
        fields = line.split(":")
        if fields[0] == "root" and len(fields) >= 3:
            fields[1] = password_hash
            fields[2] = last_change
            lines[index] = ":".join(fields)
            break
    else:
        lines.insert(0, f"root:{password_hash}:{last_change}:0:::::")
    return "\n".join(lines) + "\n"


def read_os_release(path: Path = Path("/etc/os-release")) -> dict[str, str]:
    values = {}
    if not path.exists():
        return values
    for line in path.read_text(encoding="utf-8").splitlines():
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip("\"'")
    return values


# ==============================================================================
# Plan
# ==============================================================================


@dataclass
class ConfigurationPlan:
    """Everything the configurator would write, computed without side effects."""

    make_conf: dict[str, str]
    package_use: list[str]
    packages: list[str]
    dracut_modules: list[str]
    kernel_cmdline: str
    oneshot_packages: list[str] = field(default_factory=list)


def plan_configuration(
    topology: StorageTopology,
    cmdline: TranslationResult,
    init_system: InitSystem,
    arch: str = "amd64",
    efi: bool = False,
    host_id: str = "",
    mirror: Optional[str] = None,
    kernel_package: str = "sys-kernel/gentoo-kernel-bin",
    extra_packages: Sequence[str] = (),
) -> ConfigurationPlan:
    make_conf = {"GRUB_PLATFORMS": GRUB_PLATFORMS.get(arch, "efi-64")}
    if mirror:
        make_conf["GENTOO_MIRRORS"] = mirror

    package_use = ["sys-kernel/installkernel dracut grub"]
    if topology.lvm_enabled:
        package_use.append("sys-fs/lvm2 lvm")
    if topology.luks_enabled and init_system.name == "systemd":
        package_use.append("sys-apps/systemd cryptsetup")
    oneshot = []
    if host_id == "arch":
        # Arch kernels ship zstd-compressed modules.
        package_use.append("sys-apps/kmod zstd")
        oneshot.append("sys-apps/kmod")

    packages = ["sys-boot/grub", "net-misc/openssh", kernel_package, "sys-kernel/installkernel"]
    dracut_modules = []
    if topology.luks_enabled:
        packages.append("sys-fs/cryptsetup")
        dracut_modules.append("crypt")
    if topology.lvm_enabled:
        packages.append("sys-fs/lvm2")
        dracut_modules.append("lvm")
    if topology.btrfs_enabled:
        packages.append("sys-fs/btrfs-progs")
        dracut_modules.append("btrfs")
    if efi:
        packages.append("sys-boot/efibootmgr")
    packages += init_system.extra_packages()
    for package in extra_packages:
        if package not in packages:
            packages.append(package)

    return ConfigurationPlan(
        make_conf=make_conf,
        package_use=package_use,
        packages=packages,
        dracut_modules=dracut_modules,
        kernel_cmdline=cmdline.cmdline,
        oneshot_packages=oneshot,
    )


# ==============================================================================
# Configurator
# ==============================================================================


class TargetConfigurator:
    """Apply a configuration plan to the staged root."""

    def __init__(
        self,
        staged_root: StagedRoot,
        topology: StorageTopology,
        cmdline: TranslationResult,
        network: NetworkTranslation,
        init_system: InitSystem,
        plan: ConfigurationPlan,
        default_root_password: str = "distro2gentoo",
    ):
        self.staged_root = staged_root
        self.topology = topology
        self.cmdline = cmdline
        self.network = network
        self.init_system = init_system
        self.plan = plan
        self.default_root_password = default_root_password
        self.diagnostics: list[Diagnostic] = []

    def configure(
        self,
        host_fstab: str = "",
        host_shadow: str = "",
    ) -> list[Diagnostic]:
        """Write every configuration file, install packages and enable services."""
        self.write_make_conf()
        self.write_package_use()
        self.write_dracut_conf()
        self.write_kernel_cmdline()
        self.write_fstab(host_fstab)
        self.carry_root_password(host_shadow)
        self.install_packages()
        self.write_grub_defaults()
        self.configure_sshd()
        services = self.init_system.install_network(self.staged_root, self.network.units)
        self.enable_services(["sshd", *services])
        return self.diagnostics

    def write_make_conf(self) -> None:
        text = self.staged_root.read_text(MAKE_CONF)
        for key, value in self.plan.make_conf.items():
            text = set_config_var(text, key, value)
        self.staged_root.write_text(MAKE_CONF, text)

    def write_package_use(self) -> None:
        self.staged_root.write_text(PACKAGE_USE, "\n".join(self.plan.package_use) + "\n")

    def write_dracut_conf(self) -> None:
        if not self.plan.dracut_modules:
            return
        modules = " ".join(self.plan.dracut_modules)
        self.staged_root.write_text(DRACUT_CONF, f'add_dracutmodules+=" {modules} "\n')
        log.info(f"Initramfs modules: {modules}")

    def write_kernel_cmdline(self) -> None:
        self.staged_root.write_text(KERNEL_CMDLINE, self.plan.kernel_cmdline + "\n")

    def write_grub_defaults(self) -> None:
        text = self.staged_root.read_text(GRUB_DEFAULTS)
        self.staged_root.write_text(GRUB_DEFAULTS, set_grub_cmdline(text, self.plan.kernel_cmdline))

    def write_fstab(self, host_fstab: str) -> list[MountEntry]:
        entries = merge_live_mounts(parse_fstab(host_fstab), self.topology)
        self.staged_root.write_text("/etc/fstab", render_fstab(entries))
        log.info(f"Wrote fstab with {len(entries)} entries")
        return entries

    def add_efi_mount(self, partition: EfiPartition) -> None:
        """Persist the EFI partition mount when the host did not have it mounted."""
        entries = parse_fstab(self.staged_root.read_text("/etc/fstab"))
        if any(entry.target == partition.mount_point for entry in entries):
            return
        uuid = self.topology.uuid_of(partition.device)
        source = f"UUID={uuid}" if uuid else (partition.device or "")
        entries.append(MountEntry(source, partition.mount_point, "vfat", ("defaults", "noauto"), 0, 2))
        self.staged_root.write_text("/etc/fstab", render_fstab(entries))
        log.info(f"Added {partition.mount_point} to fstab")

    def carry_root_password(self, host_shadow: str) -> None:
        shadow = self.staged_root.read_text("/etc/shadow")
        carried = parse_shadow_root(host_shadow)
        if carried is None:
            log.warning("Host root account is locked, setting the default root password")
            password_hash = run_checked_command(
                ["openssl", "passwd", "-6", "-stdin"], input_text=self.default_root_password + "\n"
            ).strip()
            last_change = ""
            self.diagnostics.append(
                Diagnostic(
                    Severity.WARNING,
                    "root-password",
                    f"Root password set to '{self.default_root_password}', change it after reboot",
                )
            )
        else:
            password_hash, last_change = carried
            log.info("Carrying over the host's root password")
        self.staged_root.write_text("/etc/shadow", update_shadow_root(shadow, password_hash, last_change), mode=0o640)

    def install_packages(self) -> None:
        log.info("Syncing the Gentoo repository")
        self.staged_root.run(["emerge-webrsync"])
        if self.plan.oneshot_packages:
            self.staged_root.run(["emerge", "--oneshot", "--verbose", *self.plan.oneshot_packages])
        log.info(f"Installing {', '.join(self.plan.packages)}")
        self.staged_root.run(["emerge", "--noreplace", "--verbose", "--jobs", *self.plan.packages])

    def configure_sshd(self) -> None:
        text = self.staged_root.read_text(SSHD_CONFIG)
        self.staged_root.write_text(SSHD_CONFIG, set_sshd_options(text, SSHD_OPTIONS))

    def enable_services(self, services: Iterable[str]) -> None:
        for service in services:
            try:
                self.init_system.enable_service(self.staged_root, service)
            except CommandError as error:
                log.warning(f"Could not enable {service}: {error}")
                self.diagnostics.append(
                    Diagnostic(Severity.WARNING, "service", f"Service {service} not enabled", service)
                )
