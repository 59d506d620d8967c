"""Image lifecycle state machine.

States and transitions of one image on a mounted data partition::

    UNDEPLOYED --deploy--> DEPLOYED --update--> UPDATED
                              ^                   |
                              +--rollback/clean---+

    remove: any existing image directory --> UNDEPLOYED

Each transition checks its precondition read-only first, then mutates. Only
``deploy`` compensates on failure (the new image directory is removed); a
failed ``update`` leaves whatever zsync left behind.

Example:
    >>> store = ImageStore.on_mount(mount_point)
    >>> engine = LifecycleEngine(store, Transfer())
    >>> engine.deploy(validate_identifier("nitrux/rolling"), "/srv/nitrux.iso")
"""

from __future__ import annotations

import dataclasses
import shutil
from pathlib import Path
from typing import Optional

from znx.domain import BACKUP_SUFFIX, PRIMARY_SUFFIX, ImageId, ImageState, ImageStatus
from znx.logging import EventLogger, LoggerFactory, operation_context
from znx.services.transfer import Transfer, is_delta_descriptor
from znx.storage.exceptions import (
    ArtifactIOError,
    FetchError,
    ImageAlreadyDeployedError,
    ImageNotDeployedError,
    InconsistentImageError,
    MalformedArtifactError,
    NoBackupError,
    OrphanedBackupError,
    UnsupportedUpdatePointerError,
)
from znx.storage.image_store import ImageListing, ImageStore
from znx.storage.update_pointer import read_update_pointer


log = LoggerFactory.for_lifecycle()


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except OSError as error:
        raise ArtifactIOError(path, "deleting", error) from error


class LifecycleEngine:
    """Drive deploy / update / rollback / clean / remove on one image store."""

    def __init__(self, store: ImageStore, transfer: Optional[Transfer] = None):
        self.store = store
        self.transfer = transfer or Transfer()

    # ------------------------------------------------------------------
    # deploy
    # ------------------------------------------------------------------

    def deploy(self, image_id: ImageId, source: str) -> Path:
        """Install an image from a local file, a zsync descriptor or a URL.

        Returns:
            Path of the primary artifact

        Raises:
            ImageAlreadyDeployedError: If the image already has a primary
            TransferError: If the artifact could not be obtained
            MalformedArtifactError: If the source produced no ``*.iso`` file
        """
        with operation_context("deploy", image=str(image_id), origin=source) as op_log:
            self._discard_incomplete(image_id, op_log)
            directory = self.store.create(image_id)

            completed = False
            try:
                self._obtain(source, directory)
                primary = self._verify_primary(image_id, source)
                completed = True
            finally:
                if not completed:
                    op_log.warning(f"Deploy of {image_id} failed, removing {directory}")
                    self.store.discard(image_id)

            EventLogger.log_transition(
                op_log, str(image_id), ImageState.UNDEPLOYED.value, ImageState.DEPLOYED.value
            )
            return primary

    def _discard_incomplete(self, image_id: ImageId, op_log) -> None:
        if not self.store.exists(image_id):
            return
        try:
            self.store.primary_path(image_id)
        except ImageNotDeployedError:
            orphan = self.store.orphaned_backup(image_id)
            if orphan is not None:
                raise OrphanedBackupError(image_id, orphan.name)
            op_log.warning(
                f"Discarding incomplete image directory {self.store.image_dir(image_id)}"
            )
            self.store.discard(image_id)
            return
        raise ImageAlreadyDeployedError(image_id)

    def _obtain(self, source: str, directory: Path) -> None:
        local = Path(source)
        if local.is_file():
            log.debug(f"Copying local artifact {local}")
            try:
                shutil.copyfile(local, directory / local.name)
            except OSError as error:
                raise FetchError(f"Copying {local} failed: {error}") from error
        elif is_delta_descriptor(source):
            self.transfer.delta_sync(source, directory)
        else:
            self.transfer.fetch(source, directory)

    def _verify_primary(self, image_id: ImageId, source: str) -> Path:
        try:
            return self.store.primary_path(image_id)
        except ImageNotDeployedError as error:
            raise MalformedArtifactError(
                source, f"no {PRIMARY_SUFFIX} artifact was produced"
            ) from error

    # ------------------------------------------------------------------
    # update / rollback / clean
    # ------------------------------------------------------------------

    def update(self, image_id: ImageId) -> ImageStatus:
        """Delta-sync the primary against the URL embedded in it.

        zsync keeps the previous primary as ``<primary>.zs-old``. A backup
        left by an earlier update under a different name is superseded and
        deleted once the sync has succeeded.
        """
        with operation_context("update", image=str(image_id)) as op_log:
            from_state = self.store.state(image_id)
            primary = self.store.primary_path(image_id)
            url = read_update_pointer(primary).delta_url
            op_log.debug(f"Update pointer of {primary.name}: {url}")

            self.transfer.delta_sync(url, primary.parent, output=primary)

            self._remove_superseded_backups(primary, op_log)

            status = self.store.status(image_id)
            if status.state is not ImageState.UPDATED:
                raise MalformedArtifactError(
                    primary, "delta sync finished without keeping a backup"
                )
            EventLogger.log_transition(
                op_log, str(image_id), from_state.value, status.state.value, url=url
            )
            return status

    def _remove_superseded_backups(self, primary: Path, op_log) -> None:
        expected_backup = primary.with_name(primary.name + BACKUP_SUFFIX)
        try:
            stale_backups = [
                entry
                for entry in primary.parent.iterdir()
                if entry.name.endswith(BACKUP_SUFFIX) and entry != expected_backup
            ]
        except OSError as error:
            raise ArtifactIOError(primary.parent, "listing", error) from error
        for stale in stale_backups:
            op_log.debug(f"Removing superseded backup {stale.name}")
            _unlink(stale)

    def _require_backup(self, image_id: ImageId) -> tuple[Path, Path]:
        primary = self.store.primary_path(image_id)
        backup = self.store.backup_path(image_id)
        if backup is None:
            raise NoBackupError(image_id)
        return primary, backup

    def rollback(self, image_id: ImageId) -> Path:
        """Restore the backup as primary.

        Returns:
            Path of the restored primary
        """
        with operation_context("rollback", image=str(image_id)) as op_log:
            primary, backup = self._require_backup(image_id)
            restored = backup.with_name(backup.name[: -len(BACKUP_SUFFIX)])
            if not restored.name.endswith(PRIMARY_SUFFIX):
                raise MalformedArtifactError(
                    backup, f"does not restore to a {PRIMARY_SUFFIX} artifact"
                )

            if primary != restored:
                op_log.debug(f"Deleting updated primary {primary.name}")
                _unlink(primary)
            try:
                backup.replace(restored)
            except OSError as error:
                raise ArtifactIOError(backup, "restoring", error) from error

            EventLogger.log_transition(
                op_log, str(image_id), ImageState.UPDATED.value, ImageState.DEPLOYED.value
            )
            return restored

    def clean(self, image_id: ImageId) -> None:
        """Drop the backup, keeping the updated primary."""
        with operation_context("clean", image=str(image_id)) as op_log:
            _, backup = self._require_backup(image_id)
            _unlink(backup)
            EventLogger.log_transition(
                op_log, str(image_id), ImageState.UPDATED.value, ImageState.DEPLOYED.value
            )

    # ------------------------------------------------------------------
    # remove / list / info
    # ------------------------------------------------------------------

    def remove(self, image_id: ImageId) -> None:
        with operation_context("remove", image=str(image_id)) as op_log:
            if not self.store.exists(image_id):
                raise ImageNotDeployedError(image_id)
            try:
                from_state = self.store.state(image_id).value
            except InconsistentImageError as error:
                op_log.warning(str(error))
                from_state = "inconsistent"
            self.store.discard(image_id)
            EventLogger.log_transition(
                op_log, str(image_id), from_state, ImageState.UNDEPLOYED.value
            )

    def list(self) -> ImageListing:
        return self.store.list()

    def info(self, image_id: ImageId) -> ImageStatus:
        """Status of a deployed image, including its update URL when readable."""
        status = self.store.status(image_id)
        if status.state is ImageState.UNDEPLOYED:
            raise ImageNotDeployedError(image_id)
        try:
            url = read_update_pointer(status.primary).delta_url
        except (MalformedArtifactError, UnsupportedUpdatePointerError, ArtifactIOError) as error:
            log.debug(f"No usable update pointer in {status.primary}: {error}")
            url = None
        return dataclasses.replace(status, update_url=url)
