"""Two-partition device layout used by znx.

Partitioning:
    - Wipes every existing signature (wipefs) and both GPT copies (sgdisk)
    - Partition 1: 132 MiB, type EF00 "EFI System", name ZNX_BOOT, FAT32
    - Partition 2: rest of the device, type 8300 "Linux filesystem",
      name ZNX_DATA, btrfs

Population:
    - Boot partition: the asset bundle (``efi/boot/<bootloader>``,
      ``boot/grub/grub.cfg``, ``boot/grub/themes/...``) copied verbatim
    - Data partition: ``data/etc``, ``data/home`` and an empty ``boot_images/``

Failure Semantics:
    Every step is fatal and aborts the remaining ones. A partially initialized
    device is left as it is; running ``init`` again starts from scratch since
    the wipe is unconditional.

Example:
    >>> from znx.storage.layout import initialize
    >>> initialize("/dev/sdb")
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from znx.config import settings
from znx.domain import BOOT_LABEL, DATA_LABEL
from znx.logging import LoggerFactory
from znx.storage.command_runners import CommandResult, run_command
from znx.storage.devices import partition_path, settle_partitions, wait_for_partition
from znx.storage.exceptions import FormatOperationError
from znx.storage.image_store import IMAGES_DIRNAME
from znx.storage.mount import MountSession


log = LoggerFactory.for_device()

EFI_SYSTEM_TYPE = "ef00"
LINUX_FILESYSTEM_TYPE = "8300"

BOOTLOADER_BINARY = Path("efi") / "boot" / "bootx64.efi"
DATA_SKELETON = (Path("data") / "etc", Path("data") / "home")

_MKFS_COMMANDS = {
    "btrfs": lambda node, label: ["mkfs.btrfs", "-f", "-L", label, node],
    "ext4": lambda node, label: ["mkfs.ext4", "-F", "-L", label, node],
    "xfs": lambda node, label: ["mkfs.xfs", "-f", "-L", label, node],
}


def _step(result: CommandResult, device_path: str, what: str) -> None:
    if not result.ok:
        log.error(f"{what} failed on {device_path}: {result.message}")
        raise FormatOperationError(f"{what} failed: {result.message}", device=device_path)


def wipe_device(device_path: str) -> None:
    _step(run_command(["wipefs", "-af", device_path]), device_path, "Wiping signatures")
    _step(run_command(["sgdisk", "--zap-all", device_path]), device_path, "Clearing partition table")


def create_partitions(device_path: str, boot_size_mib: Optional[int] = None) -> tuple[str, str]:
    """Write the GPT and return the (boot, data) partition nodes."""
    if boot_size_mib is None:
        boot_size_mib = settings.get_int(
            "boot_partition_size_mib", settings.DEFAULT_BOOT_PARTITION_SIZE_MIB
        )
    log.debug(f"Creating GPT on {device_path} (boot {boot_size_mib} MiB)")
    _step(
        run_command(
            [
                "sgdisk",
                "-n", f"1:0:+{boot_size_mib}M",
                "-t", f"1:{EFI_SYSTEM_TYPE}",
                "-c", f"1:{BOOT_LABEL}",
                device_path,
            ]
        ),
        device_path,
        "Creating boot partition",
    )
    _step(
        run_command(
            [
                "sgdisk",
                "-n", "2:0:0",
                "-t", f"2:{LINUX_FILESYSTEM_TYPE}",
                "-c", f"2:{DATA_LABEL}",
                device_path,
            ]
        ),
        device_path,
        "Creating data partition",
    )

    settle_partitions(device_path)

    timeout = settings.get_float("partition_wait_seconds", 5.0)
    nodes = (partition_path(device_path, 1), partition_path(device_path, 2))
    for node in nodes:
        if not wait_for_partition(node, timeout_seconds=timeout):
            raise FormatOperationError(
                f"Partition node {node} did not appear after creation", device=device_path
            )
    return nodes


def format_partitions(boot_node: str, data_node: str, data_filesystem: Optional[str] = None) -> None:
    data_filesystem = (data_filesystem or settings.get_setting("data_filesystem", "btrfs")).lower()
    mkfs = _MKFS_COMMANDS.get(data_filesystem)
    if mkfs is None:
        raise FormatOperationError(f"Unsupported data filesystem: {data_filesystem}")

    _step(
        run_command(["mkfs.vfat", "-F", "32", "-n", BOOT_LABEL, boot_node]),
        boot_node,
        "Formatting boot partition",
    )
    _step(run_command(mkfs(data_node, DATA_LABEL)), data_node, "Formatting data partition")


def copy_assets(source: Path, target: Path) -> None:
    # FAT has no permission bits, so only contents are copied
    for entry in sorted(source.rglob("*")):
        destination = target / entry.relative_to(source)
        if entry.is_dir():
            destination.mkdir(parents=True, exist_ok=True)
        else:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(entry, destination)


def populate_boot(device_path: str, boot_node: str, assets_dir: Optional[Path] = None) -> None:
    """Copy the bootloader asset bundle onto the boot partition."""
    assets_dir = Path(assets_dir) if assets_dir else settings.get_assets_dir()
    if not assets_dir.is_dir():
        raise FormatOperationError(f"Asset bundle not found: {assets_dir}", device=device_path)
    if not (assets_dir / BOOTLOADER_BINARY).is_file():
        log.warning(
            f"Asset bundle {assets_dir} has no {BOOTLOADER_BINARY}; "
            f"the device will not boot until one is installed (see ZNX_ASSETS_DIR)"
        )

    with MountSession(device_path, BOOT_LABEL, partition=boot_node) as boot_root:
        try:
            copy_assets(assets_dir, boot_root)
        except OSError as error:
            raise FormatOperationError(
                f"Copying boot assets failed: {error}", device=device_path
            ) from error
    log.debug(f"Boot assets from {assets_dir} installed on {boot_node}")


def populate_data(device_path: str, data_node: str) -> None:
    with MountSession(device_path, DATA_LABEL, partition=data_node) as data_root:
        try:
            for skeleton in DATA_SKELETON:
                (data_root / skeleton).mkdir(parents=True, exist_ok=True)
            (data_root / IMAGES_DIRNAME).mkdir(exist_ok=True)
        except OSError as error:
            raise FormatOperationError(
                f"Creating data skeleton failed: {error}", device=device_path
            ) from error


def reset_data(data_root: Path) -> None:
    """Empty the opaque ``data/`` area and recreate its skeleton."""
    data_dir = data_root / "data"
    if data_dir.exists():
        shutil.rmtree(data_dir)
    for skeleton in DATA_SKELETON:
        (data_root / skeleton).mkdir(parents=True, exist_ok=True)


def initialize(device_path: str, assets_dir: Optional[Path] = None) -> tuple[str, str]:
    """Partition, format and populate a device.

    The caller is responsible for validating the target first
    (``znx.storage.validation.validate_target_device``).

    Returns:
        The (boot, data) partition nodes

    Raises:
        FormatOperationError: If any step fails
        MountError: If a freshly formatted partition cannot be mounted
    """
    log.info(f"Initializing {device_path}")
    wipe_device(device_path)
    boot_node, data_node = create_partitions(device_path)
    format_partitions(boot_node, data_node)
    populate_boot(device_path, boot_node, assets_dir)
    populate_data(device_path, data_node)
    log.info(f"Initialized {device_path}: {BOOT_LABEL}={boot_node} {DATA_LABEL}={data_node}")
    return boot_node, data_node
