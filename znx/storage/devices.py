"""Block device discovery using lsblk.

Device Detection:
    lsblk with JSON output is queried for a single device path and its
    children. The result is converted to a ``BlockDevice`` domain object:
    - Device name and type (disk, part, loop)
    - Mountpoint of the device and of each partition
    - Filesystem label and GPT partition name of each partition

Operations:
    - is_block_device(): stat-based block special file check
    - get_block_device(): lsblk query for one device path
    - list_partitions(): partitions of a device
    - partition_path(): node name of the Nth partition
    - settle_partitions(): ask the kernel/udev to re-read a partition table
    - wait_for_partition(): poll for a partition node to appear

Example:
    >>> from znx.storage.devices import get_block_device
    >>> device = get_block_device("/dev/sdb")
    >>> [p.label for p in device.partitions]
    ['ZNX_BOOT', 'ZNX_DATA']
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import stat
import time
from pathlib import Path

from znx.domain import BlockDevice, Partition
from znx.logging import LoggerFactory
from znx.storage.command_runners import run_command
from znx.storage.exceptions import DeviceNotFoundError, DeviceValidationError


log = LoggerFactory.for_device()

LSBLK_COLUMNS = "NAME,TYPE,MOUNTPOINT,FSTYPE,LABEL,PARTLABEL"


def is_block_device(device_path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(device_path).st_mode)
    except OSError:
        return False


def get_block_device(device_path: str) -> BlockDevice:
    """Query lsblk for one device and its partitions.

    Raises:
        DeviceNotFoundError: If lsblk does not know the device
        DeviceValidationError: If lsblk output cannot be parsed
    """
    result = run_command(["lsblk", "-J", "-o", LSBLK_COLUMNS, device_path])
    if not result.ok:
        log.debug(f"lsblk failed for {device_path}: {result.message}")
        raise DeviceNotFoundError(device_path)
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as error:
        raise DeviceValidationError(device_path, f"unreadable lsblk output: {error}") from error
    devices = data.get("blockdevices") or []
    if not devices:
        raise DeviceNotFoundError(device_path)
    return BlockDevice.from_lsblk_dict(devices[0])


def list_partitions(device_path: str) -> list[Partition]:
    return list(get_block_device(device_path).partitions)


def partition_path(device_path: str, number: int) -> str:
    """Return the node of partition ``number`` (sda -> sda1, nvme0n1 -> nvme0n1p1)."""
    suffix = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def settle_partitions(device_path: str) -> None:
    """Best-effort notification of partition table changes."""
    for cmd in (
        ["sync"],
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if shutil.which(cmd[0]):
            with contextlib.suppress(OSError):
                run_command(cmd)


def wait_for_partition(node: str, timeout_seconds: float = 5.0, interval: float = 0.5) -> bool:
    """Poll until a partition node exists; return False on timeout."""
    deadline = time.monotonic() + timeout_seconds
    while True:
        if Path(node).exists():
            log.debug(f"Partition node found: {node}")
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)
