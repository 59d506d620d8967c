"""Domain model for znx devices and images.

Type-safe objects replacing the raw lsblk dicts and path strings that would
otherwise flow between the storage layer and the lifecycle engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


BOOT_LABEL = "ZNX_BOOT"
DATA_LABEL = "ZNX_DATA"

PRIMARY_SUFFIX = ".iso"
BACKUP_SUFFIX = ".zs-old"


# ==============================================================================
# Block Device Domain
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """A partition of a block device as reported by lsblk."""

    name: str  # e.g., "sda2"
    label: str | None = None  # filesystem label
    partlabel: str | None = None  # GPT partition name
    fstype: str | None = None
    mountpoint: str | None = None

    @property
    def device_path(self) -> str:
        """Device node path (e.g., /dev/sda2)."""
        return f"/dev/{self.name}"

    def has_label(self, label: str) -> bool:
        """Match by filesystem label or GPT partition name."""
        return label in (self.label, self.partlabel)

    @classmethod
    def from_lsblk_dict(cls, entry: dict[str, Any]) -> Partition:
        return cls(
            name=entry["name"],
            label=_clean(entry.get("label")),
            partlabel=_clean(entry.get("partlabel")),
            fstype=_clean(entry.get("fstype")),
            mountpoint=_clean(entry.get("mountpoint")),
        )


@dataclass(frozen=True)
class BlockDevice:
    """A whole disk or a partition node with its children."""

    name: str
    type: str  # "disk", "part", "loop", ...
    mountpoint: str | None = None
    partitions: tuple[Partition, ...] = field(default_factory=tuple)

    @property
    def device_path(self) -> str:
        return f"/dev/{self.name}"

    @property
    def is_partition(self) -> bool:
        return self.type == "part"

    @property
    def mountpoints(self) -> list[str]:
        """Every active mountpoint of the device and its partitions."""
        found = [self.mountpoint] if self.mountpoint else []
        found.extend(part.mountpoint for part in self.partitions if part.mountpoint)
        return found

    def find_partition(self, label: str) -> Partition | None:
        for partition in self.partitions:
            if partition.has_label(label):
                return partition
        return None

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> BlockDevice:
        """Convert an lsblk JSON entry to a BlockDevice.

        Nested children (e.g. partitions inside a loop device) are flattened;
        only entries of type "part" become partitions.

        Raises:
            KeyError: If the required "name" key is missing
        """
        partitions: list[Partition] = []
        stack = list(device.get("children") or [])
        while stack:
            child = stack.pop(0)
            if child.get("type") == "part":
                partitions.append(Partition.from_lsblk_dict(child))
            stack.extend(child.get("children") or [])
        return cls(
            name=device["name"],
            type=device.get("type") or "disk",
            mountpoint=_clean(device.get("mountpoint")),
            partitions=tuple(partitions),
        )


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ==============================================================================
# Image Domain
# ==============================================================================


@dataclass(frozen=True, order=True)
class ImageId:
    """A vendor/name image identifier.

    Construct through ``znx.storage.image_store.validate_identifier`` so the
    grammar is enforced; the dataclass itself does no checking.
    """

    vendor: str
    name: str

    def __str__(self) -> str:
        return f"{self.vendor}/{self.name}"

    @property
    def relative_path(self) -> Path:
        return Path(self.vendor) / self.name


class ImageState(Enum):
    """Lifecycle state of an image on the device."""

    UNDEPLOYED = "undeployed"
    DEPLOYED = "deployed"  # primary only
    UPDATED = "updated"  # primary + backup


@dataclass(frozen=True)
class ImageStatus:
    """Snapshot of an image directory."""

    image_id: ImageId
    state: ImageState
    primary: Path | None = None
    backup: Path | None = None
    size_bytes: int | None = None
    update_url: str | None = None

    @property
    def has_backup(self) -> bool:
        return self.backup is not None
