"""Custom exceptions for znx operations.

This module defines a hierarchy of exceptions so that the command line can map
each failure to the right exit status and message without inspecting strings.

Exception Hierarchy:
    ZnxError (base)
        ├── UsageError                      (exit 2, nothing was touched)
        │   ├── InvalidIdentifierError
        │   ├── PrivilegeError
        │   ├── DeviceNotFoundError
        │   ├── DeviceValidationError
        │   └── DeviceBusyError
        ├── PreconditionError               (exit 3, read-only checks failed)
        │   ├── DeviceNotManagedError
        │   ├── ImageAlreadyDeployedError
        │   ├── ImageNotDeployedError
        │   ├── NoBackupError
        │   ├── InconsistentImageError
        │   └── OrphanedBackupError
        ├── OperationError                  (exit 1, failed mid-transition)
        │   ├── ArtifactIOError
        │   ├── FormatOperationError
        │   ├── MountError
        │   │   └── UnmountFailedError
        │   ├── TransferError
        │   │   ├── FetchError
        │   │   └── DeltaSyncError
        │   ├── MalformedArtifactError
        │   └── UnsupportedUpdatePointerError
        └── OperationInterruptedError       (exit 128 + signal number)

Usage:
    from znx.storage.exceptions import NoBackupError

    if backup is None:
        raise NoBackupError(image_id)
"""

from __future__ import annotations

from typing import Sequence


class ZnxError(Exception):
    """Base exception for all znx operations."""

    exit_code = 1


# ==============================================================================
# Usage errors
# ==============================================================================


class UsageError(ZnxError):
    """The invocation itself is wrong; no mutation was attempted."""

    exit_code = 2


class InvalidIdentifierError(UsageError):
    """Image identifier does not match the vendor/name grammar."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(
            f"Invalid image identifier '{identifier}': expected VENDOR/NAME "
            f"using only letters, digits, '_' and '-'"
        )


class PrivilegeError(UsageError):
    """Command requires super-user privileges."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"'{command}' must be run as root")


class DeviceNotFoundError(UsageError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceValidationError(UsageError):
    """Device failed validation checks."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Device validation failed for {device_name}: {reason}")


class DeviceBusyError(UsageError):
    """Device or one of its partitions is currently mounted."""

    def __init__(self, device_name: str, mountpoints: Sequence[str] = ()):
        self.device_name = device_name
        self.mountpoints = list(mountpoints)
        msg = f"Device {device_name} is mounted"
        if self.mountpoints:
            msg += f" at {', '.join(self.mountpoints)}"
        super().__init__(msg)


# ==============================================================================
# Precondition errors
# ==============================================================================


class PreconditionError(ZnxError):
    """Device or image is not in the state the command requires."""

    exit_code = 3


class DeviceNotManagedError(PreconditionError):
    """Device has no ZNX_DATA partition."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(
            f"Device {device_name} is not managed by znx (no ZNX_DATA partition). "
            f"Run 'znx init {device_name}' first"
        )


class ImageAlreadyDeployedError(PreconditionError):
    def __init__(self, image_id: object):
        self.image_id = str(image_id)
        super().__init__(f"Image {self.image_id} is already deployed")


class ImageNotDeployedError(PreconditionError):
    def __init__(self, image_id: object):
        self.image_id = str(image_id)
        super().__init__(f"Image {self.image_id} is not deployed")


class NoBackupError(PreconditionError):
    """Rollback or clean requested but the image has no backup artifact."""

    def __init__(self, image_id: object):
        self.image_id = str(image_id)
        super().__init__(f"Image {self.image_id} has no backup to roll back or clean")


class InconsistentImageError(PreconditionError):
    """Image directory holds more than one artifact for a single role."""

    def __init__(self, image_id: object, role: str, candidates: Sequence[str]):
        self.image_id = str(image_id)
        self.role = role
        self.candidates = list(candidates)
        super().__init__(
            f"Image {self.image_id} has {len(self.candidates)} {role} artifacts "
            f"({', '.join(self.candidates)}); expected at most one"
        )


class OrphanedBackupError(PreconditionError):
    """Image directory holds a backup artifact but no primary."""

    def __init__(self, image_id: object, backup_name: str):
        self.image_id = str(image_id)
        self.backup_name = backup_name
        super().__init__(
            f"Image {self.image_id} has a backup ({backup_name}) but no primary; "
            "remove the image or restore the backup by hand"
        )


# ==============================================================================
# Operation failures
# ==============================================================================


class OperationError(ZnxError):
    """An external step failed while a transition was in progress."""

    exit_code = 1


class ArtifactIOError(OperationError):
    """Reading, renaming or deleting a file on the data partition failed."""

    def __init__(self, path: object, action: str, error: OSError):
        self.path = str(path)
        self.action = action
        self.reason = error.strerror or str(error)
        super().__init__(f"{action.capitalize()} {self.path} failed: {self.reason}")


class FormatOperationError(OperationError):
    """Generic partitioning/format failure."""

    def __init__(self, message: str, device: str = None):
        self.device = device
        super().__init__(message)


class MountError(OperationError):
    """Base exception for mount-related errors."""


class UnmountFailedError(MountError):
    """Failed to unmount a partition."""

    def __init__(self, device_name: str, mountpoints: list[str]):
        self.device_name = device_name
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(
            f"Failed to unmount {device_name}. " f"Active mountpoints: {mounts_str}"
        )


class TransferError(OperationError):
    """Base exception for fetch and delta-sync failures."""

    def __init__(self, message: str, url: str = None):
        self.url = url
        super().__init__(message)


class FetchError(TransferError):
    """Plain bulk download failed."""


class DeltaSyncError(TransferError):
    """zsync failed to produce or refresh the artifact."""


class MalformedArtifactError(OperationError):
    """Primary artifact cannot carry an update pointer."""

    def __init__(self, path: object, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Malformed artifact {self.path}: {reason}")


class UnsupportedUpdatePointerError(OperationError):
    """Update pointer names a transport other than zsync."""

    def __init__(self, value: str, transport: str):
        self.value = value
        self.transport = transport
        super().__init__(
            f"Unsupported update transport '{transport}' in update pointer '{value}'"
        )


# ==============================================================================
# Interruption
# ==============================================================================


class OperationInterruptedError(ZnxError):
    """The process received a termination signal mid-operation."""

    def __init__(self, signum: int, signal_name: str = ""):
        self.signum = signum
        self.signal_name = signal_name or f"signal {signum}"
        self.exit_code = 128 + signum
        super().__init__(f"Interrupted by {self.signal_name}")
