"""
Tests for distro2gentoo.storage.swap module.

This test suite covers:
- The swap itself on a scratch root with real rm/cp
- Preserved paths, including nested ones
- Toolchain pinning through the staged root's dynamic loader
- Btrfs subvolume exclusions and data mount points
"""

import subprocess

import pytest

from distro2gentoo.domain import StorageTopology
from distro2gentoo.storage.exceptions import RootSwapError
from distro2gentoo.storage.swap import (
    RootSwap,
    SwapToolchain,
    btrfs_exclusions,
    data_mountpoints,
    discover_btrfs_exclusions,
    parse_subvolume_paths,
    pin_toolchain,
    resolve_inside,
)
from distro2gentoo.storage.topology import analyze


def write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def host_root(tmp_path):
    """A scratch host root with old system files, a home and a staged root."""
    root = tmp_path / "host"
    write(root / "etc" / "hostname", "debian\n")
    write(root / "etc" / "apt" / "sources.list", "deb http://deb.debian.org/debian stable main\n")
    write(root / "usr" / "bin" / "apt", "binary")
    write(root / "var" / "lib" / "dpkg" / "status", "Package: base-files\n")
    write(root / "home" / "alice" / "notes.txt", "keep me\n")
    write(root / "home" / "alice" / ".bashrc", "export PS1='$ '\n")
    write(root / "boot" / "vmlinuz-6.1.0", "old kernel")
    (root / "proc").mkdir()

    staged = root / "root.d2g.amd64"
    write(staged / "etc" / "hostname", "gentoo\n")
    write(staged / "etc" / "portage" / "make.conf", 'GRUB_PLATFORMS="efi-64 pc"\n')
    write(staged / "usr" / "bin" / "emerge", "portage")
    write(staged / "var" / "db" / "repos" / "gentoo" / "metadata", "")
    write(staged / "boot" / "grub" / "grub.cfg", "menuentry 'Gentoo' {}\n")
    return root


def snapshot(directory):
    return {
        str(path.relative_to(directory)): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }


class TestRootSwap:
    """Tests for RootSwap.execute() on a scratch root."""

    def test_preserves_home_and_replaces_system_files(self, host_root):
        """Test that /home is byte-identical and /etc/hostname comes from the staged root."""
        home_before = snapshot(host_root / "home")
        swap = RootSwap(
            host_root / "root.d2g.amd64",
            root=host_root,
            preserved=("boot", "home", "proc"),
            toolchain=SwapToolchain.host(),
        )

        report = swap.execute()

        assert report.succeeded
        assert snapshot(host_root / "home") == home_before
        assert (host_root / "etc" / "hostname").read_text() == "gentoo\n"
        assert (host_root / "usr" / "bin" / "emerge").exists()
        assert not (host_root / "usr" / "bin" / "apt").exists()
        assert not (host_root / "etc" / "apt").exists()
        assert not (host_root / "var" / "lib" / "dpkg").exists()

    def test_staged_root_and_boot_kept(self, host_root):
        swap = RootSwap(
            host_root / "root.d2g.amd64",
            root=host_root,
            preserved=("boot", "home", "proc"),
            toolchain=SwapToolchain.host(),
        )

        swap.execute()

        assert (host_root / "root.d2g.amd64" / "etc" / "hostname").exists()
        assert (host_root / "boot" / "vmlinuz-6.1.0").read_text() == "old kernel"
        assert (host_root / "boot" / "grub" / "grub.cfg").exists()

    def test_new_kernel_copied_into_unmounted_boot(self, host_root):
        """Test that the staged kernel and initramfs reach /boot when it is not its own mount."""
        staged_boot = host_root / "root.d2g.amd64" / "boot"
        write(staged_boot / "vmlinuz-6.6.30-gentoo-dist", "new kernel")
        write(staged_boot / "initramfs-6.6.30-gentoo-dist.img", "initramfs")
        write(staged_boot / "System.map-6.6.30-gentoo-dist", "symbols")
        swap = RootSwap(
            host_root / "root.d2g.amd64",
            root=host_root,
            preserved=("boot", "home", "proc"),
            boot_mounted=False,
            toolchain=SwapToolchain.host(),
        )

        assert swap.execute().succeeded
        assert (host_root / "boot" / "vmlinuz-6.6.30-gentoo-dist").read_text() == "new kernel"
        assert (host_root / "boot" / "initramfs-6.6.30-gentoo-dist.img").exists()
        assert (host_root / "boot" / "System.map-6.6.30-gentoo-dist").exists()
        assert (host_root / "boot" / "vmlinuz-6.1.0").read_text() == "old kernel"

    def test_mount_below_staged_boot_not_copied(self, host_root, mocker):
        write(host_root / "root.d2g.amd64" / "boot" / "efi" / "EFI" / "Gentoo" / "grubx64.efi", "")
        mocker.patch("pathlib.Path.is_mount", autospec=True, side_effect=lambda path: path.name == "efi")
        swap = RootSwap(host_root / "root.d2g.amd64", root=host_root, preserved=("boot", "home", "proc"))

        sources = [source.name for source, _ in swap.copy_sources()]

        assert "grub" in sources
        assert "efi" not in sources

    def test_nothing_under_boot_copied_when_boot_is_mounted(self, host_root):
        swap = RootSwap(
            host_root / "root.d2g.amd64",
            root=host_root,
            preserved=("boot", "home", "proc"),
            boot_mounted=True,
            toolchain=SwapToolchain.host(),
        )

        destinations = [destination for _, destination in swap.copy_sources()]

        assert host_root / "boot" not in destinations

    def test_deletion_targets(self, host_root):
        swap = RootSwap(host_root / "root.d2g.amd64", root=host_root, preserved=("boot", "home", "proc"))

        targets = {path.name for path in swap.deletion_targets()}

        assert targets == {"etc", "usr", "var"}

    def test_nested_preserved_path(self, host_root):
        """Test that a preserved path below a deleted directory survives."""
        write(host_root / "mnt" / "data" / "photos" / "a.jpg", "jpeg")
        write(host_root / "mnt" / "scratch" / "tmp.txt", "tmp")
        swap = RootSwap(
            host_root / "root.d2g.amd64",
            root=host_root,
            preserved=("boot", "home", "proc"),
            extra_preserved=["/mnt/data"],
            toolchain=SwapToolchain.host(),
        )

        targets = swap.deletion_targets()
        swap.execute()

        assert host_root / "mnt" not in targets
        assert host_root / "mnt" / "scratch" in targets
        assert (host_root / "mnt" / "data" / "photos" / "a.jpg").read_text() == "jpeg"
        assert not (host_root / "mnt" / "scratch").exists()

    def test_copy_failure_reported(self, host_root, mocker):
        """Test that a failed copy is recorded and the swap is not reported as succeeded."""

        def fake_run(cmd, *args, **kwargs):
            if cmd[0] == "cp" and cmd[2].endswith("usr"):
                return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="No space left on device")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        mocker.patch("subprocess.run", side_effect=fake_run)
        swap = RootSwap(
            host_root / "root.d2g.amd64",
            root=host_root,
            preserved=("boot", "home", "proc"),
            toolchain=SwapToolchain.host(),
        )

        report = swap.execute()

        assert report.succeeded is False
        assert report.copy_failures == [str(host_root / "root.d2g.amd64" / "usr")]
        assert str(host_root / "root.d2g.amd64" / "etc") in report.copied

    def test_delete_failures_tolerated(self, host_root, mocker):
        def fake_run(cmd, *args, **kwargs):
            if cmd[0] == "rm":
                return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Device or resource busy")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        mocker.patch("subprocess.run", side_effect=fake_run)
        swap = RootSwap(
            host_root / "root.d2g.amd64",
            root=host_root,
            preserved=("boot", "home", "proc"),
            toolchain=SwapToolchain.host(),
        )

        report = swap.execute()

        assert len(report.delete_failures) == 3
        assert report.succeeded is True

    def test_commands_use_one_file_system(self, host_root, capture_subprocess_calls):
        swap = RootSwap(
            host_root / "root.d2g.amd64",
            root=host_root,
            preserved=("boot", "home", "proc"),
            toolchain=SwapToolchain.host(),
        )

        swap.execute()

        removals = [cmd for cmd in capture_subprocess_calls if cmd[0] == "rm"]
        assert removals
        assert all(cmd[1:3] == ["-rf", "--one-file-system"] for cmd in removals)
        copies = [cmd for cmd in capture_subprocess_calls if cmd[0] == "cp"]
        assert all(cmd[1] == "-a" and cmd[3].endswith("/") for cmd in copies)


class TestToolchain:
    """Tests for pin_toolchain() and SwapToolchain."""

    @pytest.fixture
    def stage(self, tmp_path):
        stage = tmp_path / "root.d2g.amd64"
        write(stage / "lib64" / "ld-2.38.so", "loader")
        (stage / "lib64" / "ld-linux-x86-64.so.2").symlink_to("/lib64/ld-2.38.so")
        (stage / "usr" / "lib64").mkdir(parents=True)
        write(stage / "bin" / "cp", "cp")
        write(stage / "bin" / "rm", "rm")
        return stage

    def test_pins_loader_inside_staged_root(self, stage):
        """Test that an absolute loader symlink is resolved inside the staged root."""
        toolchain = pin_toolchain(stage)

        assert toolchain.loader == str(stage / "lib64" / "ld-2.38.so")
        assert toolchain.library_path == f"{stage / 'lib64'}:{stage / 'usr' / 'lib64'}"
        assert toolchain.bin_dirs == (str(stage / "bin"),)

    def test_command_goes_through_loader(self, stage):
        toolchain = pin_toolchain(stage)

        command = toolchain.command("cp", "-a", "/src", "/dst/")

        assert command == [
            str(stage / "lib64" / "ld-2.38.so"),
            "--library-path",
            toolchain.library_path,
            str(stage / "bin" / "cp"),
            "-a",
            "/src",
            "/dst/",
        ]

    def test_missing_program(self, stage):
        toolchain = pin_toolchain(stage)

        with pytest.raises(RootSwapError):
            toolchain.command("tar", "xf")

    def test_no_loader(self, tmp_path):
        write(tmp_path / "bin" / "cp", "cp")

        with pytest.raises(RootSwapError, match="no dynamic loader"):
            pin_toolchain(tmp_path)

    def test_no_core_tools(self, stage):
        (stage / "bin" / "rm").unlink()

        with pytest.raises(RootSwapError, match="cp and rm"):
            pin_toolchain(stage)

    def test_host_toolchain(self):
        assert SwapToolchain.host().command("rm", "-rf", "/x") == ["rm", "-rf", "/x"]

    def test_resolve_inside_relative_link(self, stage):
        (stage / "lib64" / "ld-rel.so").symlink_to("ld-2.38.so")

        assert resolve_inside(stage, stage / "lib64" / "ld-rel.so") == stage / "lib64" / "ld-2.38.so"

    def test_resolve_inside_loop(self, tmp_path):
        (tmp_path / "a").symlink_to("b")
        (tmp_path / "b").symlink_to("a")

        with pytest.raises(RootSwapError, match="too many symlinks"):
            resolve_inside(tmp_path, tmp_path / "a")


class TestBtrfsExclusions:
    """Tests for subvolumes that must survive the swap."""

    def test_parse_subvolume_paths(self):
        text = "ID 256 gen 10 top level 5 path @\nID 258 gen 12 top level 256 path @/.snapshots/1/snapshot\n"

        assert parse_subvolume_paths(text) == ["@", "@/.snapshots/1/snapshot"]
        assert parse_subvolume_paths("ID 5 (FS_TREE)\n") == []

    def test_readonly_and_default_subvolumes(self, btrfs_mounts, btrfs_block_devices):
        topology = analyze(btrfs_mounts, btrfs_block_devices)

        excluded = btrfs_exclusions(
            topology,
            readonly_subvolumes=["@home", "@/.snapshots/1/snapshot", "@other"],
            default_subvolume="@/.snapshots/2/snapshot",
        )

        assert excluded == ["/home", "/.snapshots/1/snapshot", "/.snapshots/2/snapshot"]

    def test_default_equal_to_root_not_excluded(self, btrfs_mounts, btrfs_block_devices):
        topology = analyze(btrfs_mounts, btrfs_block_devices)

        assert btrfs_exclusions(topology, [], "@") == []

    def test_root_at_top_level(self, make_mount):
        topology = analyze([make_mount("/dev/sda2", "/", "btrfs", "subvol=/")], [])

        assert btrfs_exclusions(topology, ["snapshots/daily"], None) == ["/snapshots/daily"]

    def test_discover_without_btrfs_root(self, mock_subprocess_success):
        assert discover_btrfs_exclusions(StorageTopology()) == []
        mock_subprocess_success.assert_not_called()

    def test_discover_runs_btrfs(self, mocker, btrfs_mounts, btrfs_block_devices):
        topology = analyze(btrfs_mounts, btrfs_block_devices)

        def fake_run(cmd, *args, **kwargs):
            if "get-default" in cmd:
                return subprocess.CompletedProcess(cmd, 0, stdout="ID 256 gen 10 top level 5 path @\n", stderr="")
            return subprocess.CompletedProcess(
                cmd, 0, stdout="ID 300 gen 40 top level 256 path @/.snapshots/5/snapshot\n", stderr=""
            )

        mocker.patch("subprocess.run", side_effect=fake_run)

        assert discover_btrfs_exclusions(topology) == ["/.snapshots/5/snapshot"]

    def test_discover_tolerates_btrfs_failure(self, mock_subprocess_failure, btrfs_mounts, btrfs_block_devices):
        topology = analyze(btrfs_mounts, btrfs_block_devices)

        assert discover_btrfs_exclusions(topology) == []


class TestDataMountpoints:
    """Tests for data_mountpoints()."""

    def test_only_non_system_mounts(self, make_mount):
        topology = StorageTopology(
            mounts=(
                make_mount("/dev/sda2", "/", "ext4"),
                make_mount("/dev/sda3", "/home", "ext4"),
                make_mount("/dev/sda1", "/boot/efi", "vfat"),
                make_mount("/dev/sdb1", "/mnt/data", "xfs"),
                make_mount("/dev/sda4", "/var", "ext4"),
                make_mount("/dev/sda5", "/usr", "ext4"),
                make_mount("/dev/sda6", "/lib64", "ext4"),
                make_mount("/dev/sdb1", "/mnt/data", "xfs"),
            )
        )

        assert data_mountpoints(topology) == ["/home", "/boot/efi", "/mnt/data"]
