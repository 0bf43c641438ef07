"""Kernel command-line translation into the dracut dialect.

The host's options (from its grub defaults, or /proc/cmdline) are
deduplicated, rewritten token by token, completed with what the storage
topology requires, and sorted so the output is deterministic. Translating
the output again yields the same set of options.

Rules, first match wins:

    quiet, splash, splash=*, rhgb     stripped
    root=                             first occurrence kept, later ones dropped
    dolvm, rd.lvm.vg=                 dropped; rd.lvm.lv= is derived instead
    rd.lvm.lv=                        kept, normalised to <vg>/<lv>
    crypt_root=UUID=<uuid>            rd.luks.uuid=<uuid>
    [rd.]luks=, [rd.]luks.crypttab=   yes/no/numeric -> rd.luks[.crypttab]=1/0/n
    [rd.]luks.uuid=[luks-]<uuid>      rd.luks.uuid=<uuid>
    [rd.]luks.name=<uuid>=<name>      rd.luks.uuid=<uuid>, name remembered
    [rd.]luks.key=                    rd.luks.key=<key>[:<keydev>][:<luksdev>]
    anything else                     kept verbatim and reported as unparsed

Malformed values are kept verbatim and reported as unparsed; nothing is
ever guessed and nothing the translator does not understand disappears.
"""

from __future__ import annotations

import re
import shlex
from pathlib import Path
from typing import Iterable, Optional

from distro2gentoo.domain import (
    BootOption,
    Diagnostic,
    LayerKind,
    Severity,
    StorageTopology,
    TranslationResult,
)
from distro2gentoo.logging import LoggerFactory
from distro2gentoo.storage.topology import split_dm_name


log = LoggerFactory.for_boot()

UUID_PATTERN = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
_UUID_RE = re.compile(rf"^{UUID_PATTERN}$")
_LUKS_KEY_BY_UUID_RE = re.compile(rf"^(?:UUID=)?(?:luks-)?(?P<uuid>{UUID_PATTERN})=(?P<rest>.+)$")
_GRUB_CMDLINE_RE = re.compile(r"^\s*(GRUB_CMDLINE_LINUX(?:_DEFAULT)?)=(.*)$")

COSMETIC_FLAGS = frozenset({"quiet", "splash", "rhgb"})

# Understood and valid as-is in the target environment.
PASSTHROUGH_KEYS = frozenset({"ro", "rw", "rootflags", "rootfstype", "net.ifnames"})

# Not part of the kernel's own options: added by the bootloader.
BOOTLOADER_KEYS = frozenset({"BOOT_IMAGE", "initrd"})


def parse_uuid(value: Optional[str]) -> Optional[str]:
    """Return the UUID in ``value`` (``luks-`` prefix allowed) or None."""
    if not value:
        return None
    if value.startswith("luks-"):
        value = value[len("luks-"):]
    return value if _UUID_RE.match(value) else None


def normalize_switch(value: Optional[str]) -> Optional[str]:
    """yes/no/numeric switch to the numeric form dracut expects."""
    if value is None:
        return None
    if value == "yes":
        return "1"
    if value == "no":
        return "0"
    if value.isdigit():
        return value
    return None


def parse_luks_key(value: Optional[str]) -> Optional[str]:
    """Re-encode a LUKS key specification as ``key[:keydev][:luksdev]``.

    Accepts ``key[:keydev][:luksdev]`` and ``<uuid>=key[:keydev]``.
    """
    if not value:
        return None
    match = _LUKS_KEY_BY_UUID_RE.match(value)
    if match:
        key, _, keydev = match.group("rest").partition(":")
        luksdev = match.group("uuid")
    else:
        parts = value.split(":")
        if len(parts) > 3:
            return None
        key = parts[0]
        keydev = parts[1] if len(parts) > 1 else ""
        luksdev = parts[2] if len(parts) > 2 else ""
    if not key:
        return None
    if luksdev:
        return f"{key}:{keydev}:{luksdev}"
    if keydev:
        return f"{key}:{keydev}"
    return key


def _normalize_lv(value: str) -> Optional[str]:
    if value.startswith("/dev/mapper/"):
        split = split_dm_name(value)
        return f"{split[0]}/{split[1]}" if split else None
    if value.startswith("/dev/"):
        value = value[len("/dev/"):]
    vg, sep, lv = value.partition("/")
    if not sep or not vg or not lv or "/" in lv:
        return None
    return value


def _dedupe(tokens: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered = []
    for token in tokens:
        if token not in seen:
            seen.add(token)
            ordered.append(token)
    return ordered


class _Translation:
    """State of one translation call."""

    def __init__(self, topology: StorageTopology):
        self.topology = topology
        self.options: list[str] = []
        self.unparsed: list[str] = []
        self.dropped: list[str] = []
        self.diagnostics: list[Diagnostic] = []
        self.root_token: Optional[str] = None
        self.explicit_lvs: list[str] = []
        self.mapper_names: dict[str, str] = {}

    def note(self, severity: Severity, code: str, message: str, token: str | None = None) -> None:
        diagnostic = Diagnostic(severity, code, message, token)
        self.diagnostics.append(diagnostic)
        if severity is Severity.INFO:
            log.debug(str(diagnostic))
        elif severity is Severity.WARNING:
            log.warning(str(diagnostic))
        else:
            log.error(str(diagnostic))

    def keep_unparsed(self, token: str, reason: str) -> None:
        self.options.append(token)
        self.unparsed.append(token)
        self.note(Severity.WARNING, "unparsed", reason, token)

    def luks_uuids(self) -> set[str]:
        return {value.lower() for value in self._values("rd.luks.uuid")}

    def _values(self, key: str) -> list[str]:
        prefix = f"{key}="
        return [opt[len(prefix):] for opt in self.options if opt.startswith(prefix)]

    # --------------------------------------------------------------------------
    # Per-token rules
    # --------------------------------------------------------------------------

    def feed(self, token: str) -> None:
        option = BootOption.parse(token)
        key, value = option.key, option.value

        if token in COSMETIC_FLAGS or key == "splash":
            self.note(Severity.INFO, "cosmetic", "Boot splash option stripped", token)
        elif key == "root" and value is not None:
            self._root(token)
        elif (key == "dolvm" and value is None) or key == "rd.lvm.vg":
            self.note(
                Severity.INFO,
                "lvm-derived",
                "LVM activation is derived from the storage topology",
                token,
            )
        elif key == "rd.lvm.lv":
            lv = _normalize_lv(value or "")
            if lv is None:
                self.keep_unparsed(token, "Malformed logical volume")
            else:
                self.explicit_lvs.append(lv)
                self.options.append(f"rd.lvm.lv={lv}")
        elif key == "crypt_root":
            uuid = parse_uuid(value[len("UUID="):]) if value and value.startswith("UUID=") else None
            if uuid is None:
                self.keep_unparsed(token, "crypt_root= is not a UUID reference")
            else:
                self.options.append(f"rd.luks.uuid={uuid}")
        elif key in ("luks", "rd.luks"):
            self._switch(token, "rd.luks", value)
        elif key in ("luks.crypttab", "rd.luks.crypttab"):
            self._switch(token, "rd.luks.crypttab", value)
        elif key in ("luks.uuid", "rd.luks.uuid"):
            uuid = parse_uuid(value)
            if uuid is None:
                self.keep_unparsed(token, "Malformed LUKS UUID")
            else:
                self.options.append(f"rd.luks.uuid={uuid}")
        elif key in ("luks.name", "rd.luks.name"):
            self._luks_name(token, value)
        elif key in ("luks.key", "rd.luks.key"):
            key_spec = parse_luks_key(value)
            if key_spec is None:
                self.keep_unparsed(token, "Malformed LUKS key specification")
            else:
                self.options.append(f"rd.luks.key={key_spec}")
        elif key in BOOTLOADER_KEYS:
            self.note(Severity.INFO, "bootloader", "Bootloader-provided option skipped", token)
        elif key in PASSTHROUGH_KEYS:
            self.options.append(token)
        else:
            self.keep_unparsed(token, "Unrecognized option passed through")

    def _root(self, token: str) -> None:
        if self.root_token is None:
            self.root_token = token
            self.options.append(token)
            return
        self.dropped.append(token)
        self.note(
            Severity.WARNING,
            "duplicate-root",
            f"Keeping {self.root_token}, dropping conflicting root option",
            token,
        )

    def _switch(self, token: str, target_key: str, value: Optional[str]) -> None:
        normalized = normalize_switch(value)
        if normalized is None:
            self.keep_unparsed(token, f"{target_key}= expects yes, no or a number")
        else:
            self.options.append(f"{target_key}={normalized}")

    def _luks_name(self, token: str, value: Optional[str]) -> None:
        uuid_part, sep, name = (value or "").partition("=")
        uuid = parse_uuid(uuid_part)
        if uuid is None:
            self.keep_unparsed(token, "Malformed LUKS UUID")
            return
        self.options.append(f"rd.luks.uuid={uuid}")
        if sep and name:
            self.mapper_names[name] = uuid
            self.note(
                Severity.WARNING,
                "luks-name-stripped",
                f"Named LUKS mapping '{name}' is not supported, using the UUID only",
                token,
            )

    # --------------------------------------------------------------------------
    # Topology-derived options
    # --------------------------------------------------------------------------

    def synthesize_lvm(self) -> None:
        present = set(self.explicit_lvs)
        for layer in self.topology.system_layers(LayerKind.LVM):
            lv_spec = layer.lv_spec
            if lv_spec is None:
                self.note(
                    Severity.ERROR,
                    "lvm-unresolved",
                    f"Cannot resolve volume group of {layer.device or 'logical volume'} "
                    f"backing {layer.mount_point}",
                )
                continue
            if lv_spec in present:
                continue
            present.add(lv_spec)
            self.options.append(f"rd.lvm.lv={lv_spec}")
            self.note(Severity.INFO, "lvm-added", f"Activating {lv_spec} for {layer.mount_point}")

    def synthesize_luks(self) -> None:
        present = self.luks_uuids()
        for layer in self.topology.system_layers(LayerKind.LUKS):
            uuid = self.topology.uuid_of(layer.parent_device)
            if uuid is None:
                self.note(
                    Severity.ERROR,
                    "luks-unresolved",
                    f"No UUID for the device under LUKS mapping {layer.mapper_name}",
                )
                continue
            if uuid.lower() in present:
                continue
            present.add(uuid.lower())
            self.options.append(f"rd.luks.uuid={uuid}")
            self.note(Severity.INFO, "luks-added", f"Unlocking {layer.mapper_name} for {layer.mount_point}")

    def synthesize_rootflags(self) -> None:
        root = self.topology.root_subvolume
        if root is None or not root.subvolume or root.subvolume == "/":
            return
        if self._values("rootflags"):
            return
        self.options.append(f"rootflags=subvol={root.subvolume}")
        self.note(Severity.INFO, "btrfs-rootflags", f"Root lives in subvolume {root.subvolume}")

    def resolve_root_mapper(self) -> None:
        if self.root_token is None or not self.mapper_names:
            return
        value = self.root_token.partition("=")[2]
        if not value.startswith("/dev/mapper/"):
            return
        name = value[len("/dev/mapper/"):]
        if name not in self.mapper_names:
            return
        fs_uuid = self.topology.uuid_of(value)
        if fs_uuid is None:
            self.note(
                Severity.WARNING,
                "root-mapper-unresolved",
                f"root= uses LUKS mapper name '{name}' whose filesystem UUID is unknown",
                self.root_token,
            )
            return
        replacement = f"root=UUID={fs_uuid}"
        self.options = [replacement if opt == self.root_token else opt for opt in self.options]
        self.note(Severity.INFO, "root-rewritten", f"root= now references {replacement}", self.root_token)
        self.root_token = replacement

    def result(self) -> TranslationResult:
        return TranslationResult(
            options=tuple(sorted(_dedupe(self.options))),
            unparsed=tuple(_dedupe(self.unparsed)),
            dropped=tuple(self.dropped),
            diagnostics=tuple(self.diagnostics),
        )


def translate_cmdline(
    raw: Iterable[str],
    topology: StorageTopology | None = None,
    extra_options: Iterable[str] = (),
) -> TranslationResult:
    """Translate host kernel options into the target's dracut dialect.

    Args:
        raw: Command-line strings, each possibly holding several options
        topology: Storage topology used to derive LVM/LUKS/btrfs options
        extra_options: Options required by other translators
            (e.g. ``net.ifnames=0``)

    Returns:
        TranslationResult with sorted options, unparsed tokens, dropped
        root= tokens and diagnostics
    """
    tokens: list[str] = []
    for chunk in raw:
        tokens.extend(chunk.split())
    tokens.extend(extra_options)

    translation = _Translation(topology or StorageTopology())
    for token in _dedupe(tokens):
        translation.feed(token)
    translation.synthesize_lvm()
    translation.synthesize_luks()
    translation.synthesize_rootflags()
    translation.resolve_root_mapper()
    result = translation.result()
    log.info(f"Translated kernel command line: {result.cmdline}")
    if result.unparsed:
        log.warning(f"Unparsed kernel options kept verbatim: {' '.join(result.unparsed)}")
    return result


# ==============================================================================
# Host command line and grub defaults
# ==============================================================================


def parse_grub_defaults(text: str) -> list[str]:
    """Values of GRUB_CMDLINE_LINUX and GRUB_CMDLINE_LINUX_DEFAULT."""
    values = []
    for line in text.splitlines():
        match = _GRUB_CMDLINE_RE.match(line)
        if not match:
            continue
        try:
            words = shlex.split(match.group(2), comments=True)
        except ValueError:
            log.warning(f"Cannot parse {match.group(1)} in grub defaults")
            continue
        value = " ".join(words).strip()
        if value:
            values.append(value)
    return values


def read_host_cmdline(
    grub_defaults: Path = Path("/etc/default/grub"),
    kernel_cmdline: Path = Path("/etc/kernel/cmdline"),
    proc_cmdline: Path = Path("/proc/cmdline"),
) -> list[str]:
    """Kernel options configured on the host, falling back to the running ones."""
    if grub_defaults.exists():
        values = parse_grub_defaults(grub_defaults.read_text(encoding="utf-8"))
        if values:
            log.debug(f"Kernel options from {grub_defaults}: {values}")
            return values
    if kernel_cmdline.exists():
        value = kernel_cmdline.read_text(encoding="utf-8").strip()
        if value:
            return [value]
    if proc_cmdline.exists():
        tokens = proc_cmdline.read_text(encoding="utf-8").split()
        return [" ".join(t for t in tokens if BootOption.parse(t).key not in BOOTLOADER_KEYS)]
    return []


def set_grub_cmdline(text: str, cmdline: str) -> str:
    """Replace (or append) GRUB_CMDLINE_LINUX in a grub defaults file."""
    line = f'GRUB_CMDLINE_LINUX="{cmdline}"'
    lines = text.splitlines()
    replaced = False
    for index, existing in enumerate(lines):
        if re.match(r"^\s*#?\s*GRUB_CMDLINE_LINUX=", existing):
            if not replaced:
                lines[index] = line
                replaced = True
            else:
                lines[index] = f"#{existing}"
    if not replaced:
        lines.append(line)
    return "\n".join(lines) + "\n"
