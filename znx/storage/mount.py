"""Scoped mounting of znx partitions.

Module Purpose:
    Every znx command that reads or writes the device works on a private
    scratch mount of one partition. ``MountSession`` owns that mount for
    exactly one command: it creates the scratch directory, mounts the
    partition, and on every exit path (normal return, exception, SIGINT,
    SIGTERM, SIGHUP) unmounts it and removes the directory.

Cleanup Discipline:
    - Signals are turned into ``OperationInterruptedError`` while the session
      is active, so ``with`` blocks unwind normally.
    - During release the same signals are ignored; a second Ctrl-C cannot
      abort the unmount half way.
    - Unmount is retried while the directory is still a mount point, then a
      lazy unmount is attempted.
    - The scratch directory is removed with ``os.rmdir`` and only once it is
      no longer a mount point, so device contents can never be deleted by
      cleanup.

Functions:
    - is_mounted(): Check whether a path is a mount point
    - make_scratch_dir(): Create a private mount directory
    - mount_partition(): Mount a partition node on a directory
    - unmount_with_retry(): Unmount with retries and lazy fallback

Example:
    >>> with MountSession("/dev/sdb") as root:
    ...     print(sorted(p.name for p in root.iterdir()))
    ['boot_images', 'data']
"""

from __future__ import annotations

import os
import signal
import tempfile
import threading
import time
from pathlib import Path
from typing import Optional, Union

from znx.config import settings
from znx.domain import DATA_LABEL
from znx.logging import LoggerFactory
from znx.storage.command_runners import run_command
from znx.storage.devices import list_partitions
from znx.storage.exceptions import (
    DeviceNotManagedError,
    MountError,
    OperationInterruptedError,
    UnmountFailedError,
)


log = LoggerFactory.for_device()

HANDLED_SIGNALS = tuple(
    sig
    for sig in (
        getattr(signal, "SIGINT", None),
        getattr(signal, "SIGTERM", None),
        getattr(signal, "SIGHUP", None),
    )
    if sig is not None
)

SCRATCH_PREFIX = "znx-"


def is_mounted(path: Union[str, Path]) -> bool:
    return os.path.ismount(str(path))


def make_scratch_dir() -> Path:
    return Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX))


def remove_scratch_dir(path: Path) -> None:
    if is_mounted(path):
        raise MountError(f"Refusing to remove {path}: still mounted")
    try:
        os.rmdir(path)
    except FileNotFoundError:
        pass
    except OSError as error:
        log.warning(f"Could not remove scratch directory {path}: {error}")


def mount_partition(partition: str, mountpoint: Union[str, Path]) -> None:
    """Mount a partition node on an existing directory.

    Args:
        partition: Device node (e.g., '/dev/sda2')
        mountpoint: Target directory

    Raises:
        ValueError: If the partition path is invalid
        MountError: If the mount command fails
    """
    if not isinstance(partition, str) or not partition.startswith("/dev/"):
        raise ValueError(f"Invalid partition path: {partition}")

    result = run_command(["mount", partition, str(mountpoint)])
    if not result.ok:
        raise MountError(f"Failed to mount {partition} on {mountpoint}: {result.message}")
    log.debug(f"Mounted {partition} on {mountpoint}")


def unmount_with_retry(
    mountpoint: Union[str, Path],
    attempts: Optional[int] = None,
    retry_delay: Optional[float] = None,
) -> bool:
    """Unmount while the path is still mounted, then fall back to a lazy unmount.

    Returns:
        True once the path is no longer a mount point
    """
    if attempts is None:
        attempts = settings.get_int("unmount_attempts", settings.DEFAULT_UNMOUNT_ATTEMPTS)
    if retry_delay is None:
        retry_delay = settings.get_float(
            "unmount_retry_delay", settings.DEFAULT_UNMOUNT_RETRY_DELAY
        )
    mountpoint = str(mountpoint)

    run_command(["sync"])

    for attempt in range(1, max(1, attempts) + 1):
        if not is_mounted(mountpoint):
            return True
        log.debug(f"Unmount attempt {attempt}/{attempts} for {mountpoint}")
        result = run_command(["umount", mountpoint])
        if result.ok and not is_mounted(mountpoint):
            log.debug(f"Unmounted {mountpoint}")
            return True
        log.debug(f"Failed to unmount {mountpoint}: {result.message}")
        if attempt < attempts:
            time.sleep(retry_delay)

    if not is_mounted(mountpoint):
        return True

    log.warning(f"Normal unmount of {mountpoint} failed, attempting lazy unmount")
    run_command(["umount", "-l", mountpoint])
    return not is_mounted(mountpoint)


def _raise_interrupt(signum, frame):
    raise OperationInterruptedError(signum, signal.Signals(signum).name)


class MountSession:
    """Mount one partition of a device for the duration of a ``with`` block.

    By default the device is scanned for the partition labeled ZNX_DATA; pass
    ``partition`` to mount a known node instead (used while initializing).
    """

    def __init__(
        self,
        device_path: str,
        label: str = DATA_LABEL,
        *,
        partition: Optional[str] = None,
        unmount_attempts: Optional[int] = None,
        unmount_retry_delay: Optional[float] = None,
    ):
        self.device_path = device_path
        self.label = label
        self.partition = partition
        self.unmount_attempts = unmount_attempts
        self.unmount_retry_delay = unmount_retry_delay
        self.mount_point: Optional[Path] = None
        self._previous_handlers: dict[int, object] = {}
        self._released = False

    def __enter__(self) -> Path:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release(propagating=exc_type is not None)
        return False

    def acquire(self) -> Path:
        """Mount the partition and return the mount point.

        Raises:
            DeviceNotManagedError: If no partition carries the label
            MountError: If mounting fails
        """
        acquired = False
        self._install_signal_handlers()
        try:
            self.mount_point = make_scratch_dir()
            node = self.partition or self._find_partition()
            if node is not None:
                mount_partition(node, self.mount_point)
            if not is_mounted(self.mount_point):
                raise DeviceNotManagedError(self.device_path)
            acquired = True
        finally:
            if not acquired:
                self.release(propagating=True)
        log.info(f"Mounted {self.label} of {self.device_path} on {self.mount_point}")
        return self.mount_point

    def release(self, propagating: bool = False) -> None:
        """Unmount and remove the scratch directory; safe to call twice.

        Args:
            propagating: An exception is already unwinding; unmount failures
                are logged instead of replacing it
        """
        if self._released:
            return
        self._released = True
        self._ignore_signals()
        try:
            mount_point = self.mount_point
            if mount_point is None:
                return
            if is_mounted(mount_point) and not unmount_with_retry(
                mount_point, self.unmount_attempts, self.unmount_retry_delay
            ):
                error = UnmountFailedError(self.device_path, [str(mount_point)])
                if propagating:
                    log.error(str(error))
                    return
                raise error
            remove_scratch_dir(mount_point)
            log.debug(f"Released {mount_point}")
        finally:
            self._restore_signal_handlers()

    def _find_partition(self) -> Optional[str]:
        for partition in list_partitions(self.device_path):
            if partition.has_label(self.label):
                log.debug(f"Found {self.label} at {partition.device_path}")
                return partition.device_path
        log.debug(f"No {self.label} partition on {self.device_path}")
        return None

    def _install_signal_handlers(self) -> None:
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in HANDLED_SIGNALS:
            previous = signal.signal(sig, _raise_interrupt)
            # None means the handler was installed outside Python
            self._previous_handlers[sig] = signal.SIG_DFL if previous is None else previous

    def _ignore_signals(self) -> None:
        for sig in self._previous_handlers:
            signal.signal(sig, signal.SIG_IGN)

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()
