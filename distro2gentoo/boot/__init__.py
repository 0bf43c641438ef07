"""Boot configuration: kernel command line translation and bootloader installation."""

from .bootloader import BootloaderInstaller, BootloaderReport, find_efi_partition, is_efi_host
from .cmdline import read_host_cmdline, set_grub_cmdline, translate_cmdline


__all__ = [
    "BootloaderInstaller",
    "BootloaderReport",
    "find_efi_partition",
    "is_efi_host",
    "read_host_cmdline",
    "set_grub_cmdline",
    "translate_cmdline",
]
