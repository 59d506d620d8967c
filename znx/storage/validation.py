"""Safety validation for commands that touch a target device.

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, so a failed check always stops the
command before anything is mutated.

Example:
    from znx.storage.validation import validate_target_device

    device = validate_target_device("/dev/sdb")
    # Safe to partition or mount
"""

from __future__ import annotations

import os

import psutil

from znx.domain import BlockDevice
from znx.storage.devices import get_block_device, is_block_device
from znx.storage.exceptions import (
    DeviceBusyError,
    DeviceNotFoundError,
    DeviceValidationError,
    PrivilegeError,
)


def validate_root(command: str) -> None:
    """Raise PrivilegeError unless running with euid 0."""
    if os.geteuid() != 0:
        raise PrivilegeError(command)


def validate_block_device(device_path: str) -> None:
    if not device_path or not os.path.exists(device_path):
        raise DeviceNotFoundError(device_path or "(empty path)")
    if not is_block_device(device_path):
        raise DeviceValidationError(device_path, "not a block device")


def validate_not_partition(device: BlockDevice) -> None:
    if device.is_partition:
        raise DeviceValidationError(
            device.device_path, "is a partition, expected a whole device"
        )


def active_mounts(device: BlockDevice) -> list[str]:
    """Mountpoints of the device and its partitions that are currently active.

    lsblk only reports the first mountpoint of a node; the kernel mount table
    (via psutil) catches bind mounts and mounts made after lsblk ran.
    """
    nodes = {device.device_path}
    nodes.update(part.device_path for part in device.partitions)
    found = list(device.mountpoints)
    for entry in psutil.disk_partitions(all=True):
        if entry.device in nodes and entry.mountpoint not in found:
            found.append(entry.mountpoint)
    return found


def validate_device_unmounted(device: BlockDevice) -> None:
    """Raise DeviceBusyError if the device or any partition is mounted."""
    mountpoints = active_mounts(device)
    if mountpoints:
        raise DeviceBusyError(device.device_path, mountpoints)


def validate_target_device(device_path: str) -> BlockDevice:
    """Perform every check required before znx touches a device.

    Args:
        device_path: Device node (e.g., /dev/sdb)

    Returns:
        The lsblk view of the device

    Raises:
        Various UsageError subclasses if validation fails
    """
    # 1. Check the node exists and is a block device
    validate_block_device(device_path)

    # 2. Must be a whole device, not one of its partitions
    device = get_block_device(device_path)
    validate_not_partition(device)

    # 3. Nothing on it may be mounted
    validate_device_unmounted(device)
    return device
