"""The ordered migration pipeline.

Stages run strictly one after another, each inside ``operation_context``
so its start, duration and failure are logged:

    preconditions -> prerequisites -> topology -> translation
    -> release -> unpack -> chroot -> configuration -> bootloader
    -> swap -> cleanup -> finalize

Everything before ``swap`` only touches the staged root or memory and can
be aborted and re-run. ``swap`` is the point of no return.
``--dry-run`` stops after ``translation``.
"""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from distro2gentoo.boot.bootloader import BootloaderInstaller, is_efi_host
from distro2gentoo.boot.cmdline import read_host_cmdline, translate_cmdline
from distro2gentoo.config import settings
from distro2gentoo.domain import Diagnostic, Severity, StorageTopology, TranslationResult
from distro2gentoo.logging import LoggerFactory, operation_context
from distro2gentoo.network.topology import NetworkTranslation, discover_network
from distro2gentoo.services import release as release_service
from distro2gentoo.storage.commands import missing_commands, require_commands, run_command
from distro2gentoo.storage.exceptions import (
    PreconditionError,
    ReleaseError,
    UnmountFailedError,
)
from distro2gentoo.storage.mount import is_mountpoint_active
from distro2gentoo.storage.staging import StagedRoot, staging_path
from distro2gentoo.storage.swap import RootSwap, SwapReport, data_mountpoints, discover_btrfs_exclusions
from distro2gentoo.storage.topology import analyze, get_block_devices, get_mount_table
from distro2gentoo.system.configurator import (
    ConfigurationPlan,
    TargetConfigurator,
    plan_configuration,
    read_os_release,
)
from distro2gentoo.system.init_systems import INIT_SYSTEMS, InitSystem, init_system_for
from distro2gentoo.system.package_managers import REQUIRED_TOOLS, detect_package_manager


log = LoggerFactory.for_system()

# uname machine -> Gentoo architecture
ARCHITECTURES = {"x86_64": "amd64", "aarch64": "arm64"}

# (prompt, choices, default index) -> chosen index
Selector = Callable[[str, Sequence[str], int], int]

FINAL_NOTES = (
    "Users and groups of the old system were not carried over; /home was kept.",
    "sshd is enabled and accepts root logins with a password.",
    "Run '. /etc/profile' in every open shell to pick up the new environment.",
    "The old init system is gone: reboot with "
    "'echo 1 > /proc/sys/kernel/sysrq; echo b > /proc/sysrq-trigger'.",
)


@dataclass
class MigrationOptions:
    dry_run: bool = False
    assume_yes: bool = False
    mirror: Optional[str] = None
    stage3_flavour: Optional[str] = None


@dataclass
class MigrationSummary:
    dry_run: bool = False
    diagnostics: list[Diagnostic] = field(default_factory=list)
    unparsed_options: list[str] = field(default_factory=list)
    plan: Optional[ConfigurationPlan] = None
    network: Optional[NetworkTranslation] = None
    swap: Optional[SwapReport] = None
    notes: list[str] = field(default_factory=list)

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity is not Severity.INFO]


def host_arch(machine: Optional[str] = None) -> str:
    machine = machine or platform.machine()
    arch = ARCHITECTURES.get(machine)
    if arch is None:
        raise PreconditionError("architecture", f"{machine} is not supported")
    return arch


def init_system_for_flavour(flavour: str) -> InitSystem:
    return INIT_SYSTEMS["systemd" if "systemd" in flavour else "openrc"]()


def render_plan(summary: MigrationSummary) -> str:
    """What a real run would write, for ``--dry-run``."""
    lines = []
    plan = summary.plan
    if plan is not None:
        lines.append(f"Kernel command line: {plan.kernel_cmdline}")
        for key, value in plan.make_conf.items():
            lines.append(f'make.conf: {key}="{value}"')
        for entry in plan.package_use:
            lines.append(f"package.use: {entry}")
        if plan.dracut_modules:
            lines.append(f"dracut modules: {' '.join(plan.dracut_modules)}")
        lines.append(f"packages: {' '.join(plan.packages)}")
    if summary.network is not None:
        for unit in summary.network.units:
            lines += ["", f"# {unit.interface} (systemd-networkd)", unit.networkd.rstrip()]
            lines += [f"# {unit.interface} (netifrc)", unit.netifrc.rstrip()]
    return "\n".join(lines) + "\n"


class Migration:
    """Convert the running system to Gentoo."""

    def __init__(
        self,
        options: MigrationOptions,
        selector: Optional[Selector] = None,
        staging_parent: str | os.PathLike = "/",
    ):
        self.options = options
        self.selector = selector
        self.staging_parent = Path(staging_parent)
        self.summary = MigrationSummary(dry_run=options.dry_run)
        self.arch = ""
        self.efi = False
        self.topology = StorageTopology()
        self.block_devices: list[dict[str, Any]] = []
        self.cmdline: Optional[TranslationResult] = None
        self.network: Optional[NetworkTranslation] = None
        self.staged_root: Optional[StagedRoot] = None

    @property
    def flavour(self) -> str:
        return self.options.stage3_flavour or settings.get_setting("stage3_flavour", "openrc")

    def run(self) -> MigrationSummary:
        with operation_context("preconditions"):
            self.check_preconditions()
        with operation_context("prerequisites"):
            self.install_prerequisites()
        with operation_context("topology"):
            self.discover_topology()
        with operation_context("translation"):
            self.translate()

        if self.options.dry_run:
            self.summary.plan = plan_configuration(
                self.topology,
                self.cmdline,
                init_system_for_flavour(self.flavour),
                arch=self.arch,
                efi=self.efi,
                host_id=read_os_release().get("ID", ""),
                mirror=self.options.mirror or settings.get_setting("mirror"),
                kernel_package=settings.get_setting("kernel_package"),
                extra_packages=settings.get_list("extra_packages"),
            )
            self.summarize()
            return self.summary

        with operation_context("release"):
            tarball = self.fetch_release()
        built = False
        try:
            efi_mount = self.build_staged_root(tarball)
            built = True
        finally:
            if not built:
                # The host is untouched; leave the tree for inspection, not its mounts.
                self.staged_root.unmount_all()
        with operation_context("swap"):
            self.swap(efi_mount)
        with operation_context("cleanup"):
            self.cleanup()
        with operation_context("finalize"):
            self.finalize()
        self.summarize()
        return self.summary

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def build_staged_root(self, tarball: Path) -> Optional[str]:
        """Unpack, configure and make the staged root bootable.

        Returns:
            The EFI mount point used, if any
        """
        with operation_context("unpack", tarball=str(tarball)):
            self.staged_root.create()
            self.staged_root.unpack(tarball)
        with operation_context("chroot"):
            self.staged_root.prepare_chroot(boot_mounted=self.boot_mounted)
            self.staged_root.copy_host_files()
        with operation_context("configuration"):
            configurator = self.configure()
        with operation_context("bootloader"):
            report = BootloaderInstaller(
                self.staged_root,
                self.topology,
                self.block_devices,
                efi=self.efi,
                arch=self.arch,
                bootloader_id=settings.get_setting("bootloader_id", "Gentoo"),
            ).install()
            self.summary.diagnostics.extend(report.diagnostics)
            if report.efi_partition is None:
                return None
            if not report.efi_partition.host_mounted:
                configurator.add_efi_mount(report.efi_partition)
            return report.efi_partition.mount_point

    def check_preconditions(self) -> None:
        if os.geteuid() != 0:
            raise PreconditionError("privileges", "must be run as the root user")
        self.arch = host_arch()
        self.efi = is_efi_host()
        self.staged_root = StagedRoot(staging_path(self.arch, self.staging_parent))
        if self.staged_root.exists():
            raise PreconditionError(
                "staging", f"{self.staged_root.path} already exists, remove it or check a previous run"
            )
        log.info(f"Host: arch={self.arch} firmware={'UEFI' if self.efi else 'BIOS'}")

    def required_tools(self) -> list[str]:
        tools = list(REQUIRED_TOOLS)
        if self.efi:
            tools.append("efibootmgr")
        return tools

    def install_prerequisites(self) -> None:
        tools = self.required_tools()
        if self.options.dry_run:
            missing = missing_commands(tools)
            if missing:
                log.warning(f"A real run would install: {', '.join(missing)}")
            return
        manager = detect_package_manager()
        if manager is None:
            require_commands(tools)
            return
        manager.ensure_tools(tools)

    def discover_topology(self) -> None:
        self.block_devices = get_block_devices()
        self.topology = analyze(get_mount_table(), self.block_devices)
        if self.topology.btrfs_enabled and not self.options.dry_run:
            manager = detect_package_manager()
            if manager is not None:
                manager.ensure_tools(["btrfs"])

    @property
    def boot_mounted(self) -> bool:
        return self.topology.mount_for("/boot") is not None

    def translate(self) -> None:
        running = Path("/proc/cmdline").read_text(encoding="utf-8") if Path("/proc/cmdline").exists() else ""
        self.network = discover_network(keep_legacy_names="net.ifnames=0" in running.split())
        self.cmdline = translate_cmdline(
            read_host_cmdline(), self.topology, extra_options=self.network.kernel_options
        )
        self.summary.network = self.network
        self.summary.diagnostics.extend(self.network.diagnostics)
        self.summary.diagnostics.extend(self.cmdline.diagnostics)
        self.summary.unparsed_options = list(self.cmdline.unparsed)

    def choose(self, prompt: str, choices: Sequence[str], default: int) -> int:
        if self.selector is None or self.options.assume_yes or not choices:
            return default
        return self.selector(prompt, choices, default)

    def select_mirror(self) -> str:
        mirror = self.options.mirror or settings.get_setting("mirror")
        if mirror:
            return mirror
        fallback = settings.get_setting("fallback_mirror")
        country = release_service.detect_country()
        try:
            mirrors = release_service.fetch_mirrors(country)
        except ReleaseError as error:
            log.warning(f"Mirror list unavailable, using {fallback}: {error}")
            return fallback
        chosen = release_service.choose_mirror(mirrors, fallback)
        if chosen in mirrors:
            return mirrors[self.choose("Mirror", mirrors, mirrors.index(chosen))]
        return chosen

    def fetch_release(self) -> Path:
        mirror = self.select_mirror()
        self.options.mirror = mirror
        log.info(f"Using mirror {mirror}")
        releases = release_service.fetch_stage3_list(mirror, self.arch)
        chosen = release_service.choose_stage3(releases, self.arch, self.flavour)
        if chosen is None:
            raise ReleaseError(f"No stage3-{self.arch}-{self.flavour} release on {mirror}")
        names = [release.name for release in releases]
        chosen = releases[self.choose("Stage3", names, releases.index(chosen))]
        log.info(f"Using {chosen.name}")

        directory = Path(settings.get_setting("download_dir", "/"))
        tarball, digests, signature = release_service.download_release(chosen, directory)
        release_service.verify_release(
            tarball,
            digests,
            signature,
            keyserver=settings.get_setting("keyserver"),
            release_key=settings.get_setting("release_key"),
        )
        return tarball

    def configure(self) -> TargetConfigurator:
        init_system = init_system_for(self.staged_root)
        plan = plan_configuration(
            self.topology,
            self.cmdline,
            init_system,
            arch=self.arch,
            efi=self.efi,
            host_id=read_os_release().get("ID", ""),
            mirror=self.options.mirror,
            kernel_package=settings.get_setting("kernel_package"),
            extra_packages=settings.get_list("extra_packages"),
        )
        self.summary.plan = plan
        configurator = TargetConfigurator(
            self.staged_root,
            self.topology,
            self.cmdline,
            self.network,
            init_system,
            plan,
            default_root_password=settings.get_setting("default_root_password"),
        )
        self.summary.diagnostics.extend(
            configurator.configure(
                host_fstab=_read_optional(Path("/etc/fstab")),
                host_shadow=_read_optional(Path("/etc/shadow")),
            )
        )
        return configurator

    def swap(self, efi_mount: Optional[str]) -> None:
        extra = list(data_mountpoints(self.topology))
        extra += discover_btrfs_exclusions(self.topology)
        if efi_mount and is_mountpoint_active(efi_mount):
            extra.append(efi_mount)
        extra.append(str(Path(settings.SETTINGS_PATH).parent))
        swap = RootSwap(
            self.staged_root.path,
            extra_preserved=extra,
            boot_mounted=self.boot_mounted,
        )
        self.summary.swap = swap.execute()

    def cleanup(self) -> None:
        if not self.summary.swap.succeeded:
            log.error(
                f"Copy failures ({', '.join(self.summary.swap.copy_failures)}); "
                f"keeping {self.staged_root.path} for manual recovery"
            )
            self.summary.diagnostics.append(
                Diagnostic(Severity.ERROR, "swap-copy", f"Staged root kept at {self.staged_root.path}")
            )
            return
        self.staged_root.unmount_all()
        try:
            self.staged_root.remove()
        except UnmountFailedError as error:
            log.warning(f"{error}; remove {self.staged_root.path} after reboot")
            self.summary.diagnostics.append(
                Diagnostic(Severity.WARNING, "staging-left", str(error))
            )

    def finalize(self) -> None:
        result = run_command(["grub-mkconfig", "-o", "/boot/grub/grub.cfg"], check=False)
        if result.returncode != 0:
            self.summary.diagnostics.append(
                Diagnostic(
                    Severity.ERROR,
                    "grub-mkconfig",
                    "grub-mkconfig failed, run it again before rebooting",
                )
            )
        run_command(["sync"], check=False)

    def summarize(self) -> None:
        summary = self.summary
        for diagnostic in summary.warnings:
            if diagnostic.severity is Severity.ERROR:
                log.error(str(diagnostic))
            else:
                log.warning(str(diagnostic))
        if summary.unparsed_options:
            log.warning(
                "Kernel options passed through without translation, check them: "
                + " ".join(summary.unparsed_options)
            )
        if not summary.dry_run:
            summary.notes = list(FINAL_NOTES)
            for note in summary.notes:
                log.info(note)


def _read_optional(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as error:
        log.warning(f"Cannot read {path}: {error}")
        return ""
