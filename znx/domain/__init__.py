"""Domain models for znx devices and images."""

from __future__ import annotations

from .models import (
    BACKUP_SUFFIX,
    BOOT_LABEL,
    DATA_LABEL,
    PRIMARY_SUFFIX,
    BlockDevice,
    ImageId,
    ImageState,
    ImageStatus,
    Partition,
)


__all__ = [
    "BACKUP_SUFFIX",
    "BOOT_LABEL",
    "DATA_LABEL",
    "PRIMARY_SUFFIX",
    "BlockDevice",
    "ImageId",
    "ImageState",
    "ImageStatus",
    "Partition",
]
