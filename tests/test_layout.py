"""Tests for device initialization (storage/layout.py)."""

from contextlib import contextmanager

import pytest

from znx.storage import layout
from znx.storage.command_runners import CommandFailure, CommandResult
from znx.storage.exceptions import FormatOperationError


@pytest.fixture
def commands(mocker):
    """Record every command run by the layout module; all succeed."""
    calls = []

    def run(command, **kwargs):
        calls.append(list(command))
        return CommandResult(tuple(command), 0)

    mocker.patch("znx.storage.layout.run_command", side_effect=run)
    return calls


@pytest.fixture
def fake_sessions(tmp_path, mocker):
    """Replace MountSession with directories under tmp_path, keyed by label."""
    opened = []

    @contextmanager
    def session(device_path, label, *, partition=None):
        root = tmp_path / "mounts" / label
        root.mkdir(parents=True, exist_ok=True)
        opened.append((device_path, label, partition))
        yield root

    mocker.patch("znx.storage.layout.MountSession", side_effect=session)
    return opened


@pytest.fixture
def assets(tmp_path):
    root = tmp_path / "assets"
    (root / "boot" / "grub").mkdir(parents=True)
    (root / "boot" / "grub" / "grub.cfg").write_text("menuentry\n")
    (root / "efi" / "boot").mkdir(parents=True)
    (root / "efi" / "boot" / "bootx64.efi").write_bytes(b"MZ")
    return root


class TestPartitioning:
    """Tests for wipe and GPT creation."""

    def test_wipe(self, commands):
        layout.wipe_device("/dev/sdb")
        assert commands == [
            ["wipefs", "-af", "/dev/sdb"],
            ["sgdisk", "--zap-all", "/dev/sdb"],
        ]

    def test_create_partitions(self, commands, mocker):
        mocker.patch("znx.storage.layout.settle_partitions")
        mocker.patch("znx.storage.layout.wait_for_partition", return_value=True)

        nodes = layout.create_partitions("/dev/nvme0n1", boot_size_mib=132)

        assert nodes == ("/dev/nvme0n1p1", "/dev/nvme0n1p2")
        assert commands == [
            ["sgdisk", "-n", "1:0:+132M", "-t", "1:ef00", "-c", "1:ZNX_BOOT", "/dev/nvme0n1"],
            ["sgdisk", "-n", "2:0:0", "-t", "2:8300", "-c", "2:ZNX_DATA", "/dev/nvme0n1"],
        ]

    def test_missing_partition_node(self, commands, mocker):
        mocker.patch("znx.storage.layout.settle_partitions")
        mocker.patch("znx.storage.layout.wait_for_partition", return_value=False)

        with pytest.raises(FormatOperationError, match="did not appear"):
            layout.create_partitions("/dev/sdb")

    def test_failed_step_aborts(self, mocker):
        calls = []

        def run(command, **kwargs):
            calls.append(list(command))
            return CommandResult(
                tuple(command), 2, stderr="Problem opening /dev/sdb", failure=CommandFailure.EXIT_STATUS
            )

        mocker.patch("znx.storage.layout.run_command", side_effect=run)

        with pytest.raises(FormatOperationError, match="Problem opening") as exc_info:
            layout.wipe_device("/dev/sdb")

        assert exc_info.value.device == "/dev/sdb"
        assert len(calls) == 1


class TestFormatting:
    """Tests for mkfs invocations."""

    def test_format_default(self, commands):
        layout.format_partitions("/dev/sdb1", "/dev/sdb2", "btrfs")
        assert commands == [
            ["mkfs.vfat", "-F", "32", "-n", "ZNX_BOOT", "/dev/sdb1"],
            ["mkfs.btrfs", "-f", "-L", "ZNX_DATA", "/dev/sdb2"],
        ]

    def test_format_ext4(self, commands):
        layout.format_partitions("/dev/sdb1", "/dev/sdb2", "ext4")
        assert commands[1] == ["mkfs.ext4", "-F", "-L", "ZNX_DATA", "/dev/sdb2"]

    def test_unsupported_filesystem(self, commands):
        with pytest.raises(FormatOperationError, match="Unsupported"):
            layout.format_partitions("/dev/sdb1", "/dev/sdb2", "ntfs")
        assert commands == []


class TestPopulate:
    """Tests for boot and data partition population."""

    def test_populate_boot_copies_assets(self, fake_sessions, assets, tmp_path):
        layout.populate_boot("/dev/sdb", "/dev/sdb1", assets)

        boot = tmp_path / "mounts" / "ZNX_BOOT"
        assert (boot / "boot" / "grub" / "grub.cfg").read_text() == "menuentry\n"
        assert (boot / "efi" / "boot" / "bootx64.efi").read_bytes() == b"MZ"
        assert fake_sessions == [("/dev/sdb", "ZNX_BOOT", "/dev/sdb1")]

    def test_populate_boot_missing_bundle(self, fake_sessions, tmp_path):
        with pytest.raises(FormatOperationError, match="Asset bundle not found"):
            layout.populate_boot("/dev/sdb", "/dev/sdb1", tmp_path / "nothing")

    def test_populate_boot_without_bootloader_warns(self, fake_sessions, assets, loguru_records):
        (assets / "efi" / "boot" / "bootx64.efi").unlink()

        layout.populate_boot("/dev/sdb", "/dev/sdb1", assets)

        assert any(
            r["level"].name == "WARNING"
            and "bootx64.efi" in r["message"]
            and "ZNX_ASSETS_DIR" in r["message"]
            for r in loguru_records
        )

    def test_packaged_assets_include_menu_builder(self):
        from znx.config import settings

        grub_cfg = settings.PACKAGED_ASSETS_DIR / "boot" / "grub" / "grub.cfg"
        assert "boot_images" in grub_cfg.read_text()

    def test_populate_data_creates_skeleton(self, fake_sessions, tmp_path):
        layout.populate_data("/dev/sdb", "/dev/sdb2")

        data = tmp_path / "mounts" / "ZNX_DATA"
        assert (data / "data" / "etc").is_dir()
        assert (data / "data" / "home").is_dir()
        assert (data / "boot_images").is_dir()

    def test_reset_data_keeps_images(self, tmp_path):
        root = tmp_path / "data-partition"
        (root / "data" / "home" / "user").mkdir(parents=True)
        (root / "data" / "home" / "user" / "file").write_text("x")
        (root / "boot_images" / "a" / "x").mkdir(parents=True)

        layout.reset_data(root)

        assert (root / "data" / "etc").is_dir()
        assert list((root / "data" / "home").iterdir()) == []
        assert (root / "boot_images" / "a" / "x").is_dir()


class TestInitialize:
    """Tests for the full init sequence."""

    def test_initialize_runs_every_step(self, commands, fake_sessions, assets, mocker):
        mocker.patch("znx.storage.layout.settle_partitions")
        mocker.patch("znx.storage.layout.wait_for_partition", return_value=True)

        nodes = layout.initialize("/dev/sdb", assets_dir=assets)

        assert nodes == ("/dev/sdb1", "/dev/sdb2")
        assert [c[0] for c in commands] == [
            "wipefs", "sgdisk", "sgdisk", "sgdisk", "mkfs.vfat", "mkfs.btrfs",
        ]
        assert [label for _, label, _ in fake_sessions] == ["ZNX_BOOT", "ZNX_DATA"]
