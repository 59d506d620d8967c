"""Update pointer embedded in a primary artifact.

Every deployable ISO carries its own update information in the 512-byte
application-use field of the ISO 9660 primary volume descriptor (byte offset
33651). The field holds ASCII text padded with NULs or spaces, in the
``transport|argument`` convention, e.g.::

    zsync|https://example.org/images/nitrux-rolling.iso.zsync

Only the zsync transport is understood; its token is stripped before the
descriptor URL is handed to the delta-sync step. Values without a ``|`` are
taken as the URL itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from znx.storage.exceptions import (
    ArtifactIOError,
    MalformedArtifactError,
    UnsupportedUpdatePointerError,
)


POINTER_OFFSET = 33651
POINTER_LENGTH = 512

ZSYNC_TRANSPORT = "zsync"
_PADDING = "\x00 \t\r\n"


@dataclass(frozen=True)
class UpdatePointer:
    """Decoded update pointer of one artifact."""

    raw: str

    @property
    def transport(self) -> str | None:
        if "|" not in self.raw:
            return None
        return self.raw.split("|", 1)[0].strip()

    @property
    def delta_url(self) -> str:
        """Descriptor URL for the delta-sync step.

        Raises:
            UnsupportedUpdatePointerError: For transports other than zsync
            MalformedArtifactError: If the zsync token carries no URL
        """
        transport = self.transport
        if transport is None:
            return self.raw
        if transport != ZSYNC_TRANSPORT:
            raise UnsupportedUpdatePointerError(self.raw, transport)
        url = self.raw.split("|", 1)[1].strip()
        if not url:
            raise MalformedArtifactError("update pointer", f"'{self.raw}' names no URL")
        return url


def _check_bounds(path: Path, size: int) -> None:
    if size < POINTER_OFFSET + POINTER_LENGTH:
        raise MalformedArtifactError(
            path,
            f"{size} bytes is too short to hold an update pointer "
            f"(needs {POINTER_OFFSET + POINTER_LENGTH})",
        )


def read_update_pointer(path: Path) -> UpdatePointer:
    """Read and decode the update pointer of an artifact.

    Raises:
        MalformedArtifactError: If the file is too short, the field is not
            ASCII, or it is empty
        ArtifactIOError: If the file cannot be read
    """
    path = Path(path)
    try:
        _check_bounds(path, path.stat().st_size)
        with open(path, "rb") as artifact:
            artifact.seek(POINTER_OFFSET)
            block = artifact.read(POINTER_LENGTH)
    except OSError as error:
        raise ArtifactIOError(path, "reading", error) from error
    if len(block) != POINTER_LENGTH:
        raise MalformedArtifactError(path, "short read of the update pointer")
    try:
        text = block.decode("ascii")
    except UnicodeDecodeError as error:
        raise MalformedArtifactError(path, f"update pointer is not ASCII text: {error}") from error
    value = text.strip(_PADDING)
    if not value:
        raise MalformedArtifactError(path, "artifact carries no update information")
    return UpdatePointer(raw=value)

