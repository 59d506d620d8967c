"""On-disk image convention under ``boot_images/``.

Each image lives in ``boot_images/<vendor>/<name>/`` and holds at most one
primary artifact (``*.iso``) and at most one backup artifact (``*.zs-old``).
Lookups list the directory and require a unique match per role; they never
settle for "the first match".
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Iterator, Optional

from znx.domain import (
    BACKUP_SUFFIX,
    PRIMARY_SUFFIX,
    ImageId,
    ImageState,
    ImageStatus,
)
from znx.logging import LoggerFactory
from znx.storage.exceptions import (
    ArtifactIOError,
    ImageAlreadyDeployedError,
    ImageNotDeployedError,
    InconsistentImageError,
    InvalidIdentifierError,
)


log = LoggerFactory.for_lifecycle()

IMAGES_DIRNAME = "boot_images"

_COMPONENT = r"[A-Za-z0-9_-]+"
IDENTIFIER_PATTERN = re.compile(rf"({_COMPONENT})/({_COMPONENT})")
COMPONENT_PATTERN = re.compile(_COMPONENT)


def validate_identifier(identifier: str) -> ImageId:
    """Parse a ``vendor/name`` identifier.

    Raises:
        InvalidIdentifierError: If the text does not fully match the grammar
    """
    match = IDENTIFIER_PATTERN.fullmatch(identifier or "")
    if not match:
        raise InvalidIdentifierError(identifier)
    return ImageId(vendor=match.group(1), name=match.group(2))


def _is_valid_component(name: str) -> bool:
    return COMPONENT_PATTERN.fullmatch(name) is not None


class ImageListing:
    """Lazy, restartable view over the images of a store."""

    def __init__(self, store: ImageStore):
        self._store = store

    def __iter__(self) -> Iterator[ImageId]:
        return self._store.iter_images()


class ImageStore:
    """Images under a ``boot_images`` root directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    @classmethod
    def on_mount(cls, mount_point: Path) -> ImageStore:
        return cls(Path(mount_point) / IMAGES_DIRNAME)

    def image_dir(self, image_id: ImageId) -> Path:
        return self.root / image_id.relative_path

    def exists(self, image_id: ImageId) -> bool:
        return self.image_dir(image_id).is_dir()

    def create(self, image_id: ImageId) -> Path:
        """Create the empty image directory.

        Raises:
            ImageAlreadyDeployedError: If the directory already exists
            ArtifactIOError: If the directory cannot be created
        """
        path = self.image_dir(image_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise ArtifactIOError(path.parent, "creating", error) from error
        try:
            path.mkdir()
        except FileExistsError as error:
            raise ImageAlreadyDeployedError(image_id) from error
        except OSError as error:
            raise ArtifactIOError(path, "creating", error) from error
        log.debug(f"Created image directory {path}")
        return path

    def discard(self, image_id: ImageId) -> None:
        """Delete the image directory, and its vendor directory once empty."""
        path = self.image_dir(image_id)
        if path.exists():
            try:
                shutil.rmtree(path)
            except OSError as error:
                raise ArtifactIOError(path, "deleting", error) from error
            log.debug(f"Deleted image directory {path}")
        vendor_dir = path.parent
        try:
            vendor_dir.rmdir()
        except OSError:
            # not empty or already gone
            pass

    def _artifacts(self, image_id: ImageId, suffix: str, role: str) -> Optional[Path]:
        path = self.image_dir(image_id)
        try:
            matches = sorted(
                entry
                for entry in path.iterdir()
                if entry.is_file() and entry.name.endswith(suffix)
            )
        except OSError as error:
            raise ArtifactIOError(path, "listing", error) from error
        if len(matches) > 1:
            raise InconsistentImageError(image_id, role, [m.name for m in matches])
        return matches[0] if matches else None

    def primary_path(self, image_id: ImageId) -> Path:
        """Return the unique primary artifact.

        Raises:
            ImageNotDeployedError: If the directory or the primary is absent
            InconsistentImageError: If several primaries exist
        """
        if not self.exists(image_id):
            raise ImageNotDeployedError(image_id)
        primary = self._artifacts(image_id, PRIMARY_SUFFIX, "primary")
        if primary is None:
            raise ImageNotDeployedError(image_id)
        return primary

    def backup_path(self, image_id: ImageId) -> Optional[Path]:
        """Return the unique backup artifact, or None when there is none.

        Raises:
            ImageNotDeployedError: If the directory or the primary is absent
            InconsistentImageError: If several backups exist
        """
        self.primary_path(image_id)
        return self._artifacts(image_id, BACKUP_SUFFIX, "backup")

    def orphaned_backup(self, image_id: ImageId) -> Optional[Path]:
        """Return the backup of an image directory that has lost its primary.

        Raises:
            InconsistentImageError: If several backups exist
        """
        if not self.exists(image_id):
            return None
        if self._artifacts(image_id, PRIMARY_SUFFIX, "primary") is not None:
            return None
        return self._artifacts(image_id, BACKUP_SUFFIX, "backup")

    def state(self, image_id: ImageId) -> ImageState:
        try:
            backup = self.backup_path(image_id)
        except ImageNotDeployedError:
            return ImageState.UNDEPLOYED
        return ImageState.UPDATED if backup is not None else ImageState.DEPLOYED

    def status(self, image_id: ImageId) -> ImageStatus:
        if self.state(image_id) is ImageState.UNDEPLOYED:
            return ImageStatus(image_id=image_id, state=ImageState.UNDEPLOYED)
        primary = self.primary_path(image_id)
        backup = self.backup_path(image_id)
        try:
            size_bytes = primary.stat().st_size
        except OSError:
            size_bytes = None
        return ImageStatus(
            image_id=image_id,
            state=ImageState.UPDATED if backup else ImageState.DEPLOYED,
            primary=primary,
            backup=backup,
            size_bytes=size_bytes,
        )

    def iter_images(self) -> Iterator[ImageId]:
        """Yield every deployed image, sorted by vendor then name.

        Directories whose names break the identifier grammar, and image
        directories without a primary artifact, are skipped.
        """
        if not self.root.is_dir():
            return
        for vendor_dir in sorted(self.root.iterdir()):
            if not vendor_dir.is_dir() or not _is_valid_component(vendor_dir.name):
                continue
            for name_dir in sorted(vendor_dir.iterdir()):
                if not name_dir.is_dir() or not _is_valid_component(name_dir.name):
                    continue
                image_id = ImageId(vendor=vendor_dir.name, name=name_dir.name)
                try:
                    self.primary_path(image_id)
                except ImageNotDeployedError:
                    log.debug(f"Skipping incomplete image directory {name_dir}")
                    continue
                except InconsistentImageError as error:
                    # still an image; lookups on it will fail loudly
                    log.warning(str(error))
                yield image_id

    def list(self) -> ImageListing:
        return ImageListing(self)
