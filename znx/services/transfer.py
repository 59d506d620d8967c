"""Artifact transfer: plain downloads and zsync delta updates.

Two mechanisms produce or refresh an artifact inside an image directory:

- Bulk fetch: an HTTP(S) download streamed to ``<name>.part`` and renamed
  into place once complete, so a partial download never looks like an
  artifact.
- Delta sync: ``zsync`` given a descriptor URL. When the output file already
  exists zsync uses it as seed and, on success, renames it to
  ``<name>.zs-old``; that rename is what creates the backup artifact.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import aiohttp

from znx.config import settings
from znx.logging import EventLogger, LoggerFactory, ThrottledLogger
from znx.storage.command_runners import CommandFailure, run_command
from znx.storage.exceptions import DeltaSyncError, FetchError

log = LoggerFactory.for_transfer()

DELTA_DESCRIPTOR_SUFFIX = ".zsync"
PARTIAL_SUFFIX = ".part"
FETCH_SCHEMES = ("http", "https")


def is_delta_descriptor(source: str) -> bool:
    """True when the source names a zsync descriptor."""
    return urlparse(source).path.endswith(DELTA_DESCRIPTOR_SUFFIX)


def artifact_name_from_url(url: str) -> str:
    """Return the file name a download of ``url`` is stored under.

    Raises:
        FetchError: If the URL has no usable file name
    """
    name = Path(unquote(urlparse(url).path)).name
    if not name or name in (".", ".."):
        raise FetchError(f"Cannot derive a file name from {url}", url=url)
    return name


class Transfer:
    """Fetch and delta-sync artifacts into an image directory."""

    def __init__(
        self,
        zsync_command: Optional[str] = None,
        chunk_size: Optional[int] = None,
        progress_interval: Optional[float] = None,
    ):
        self.zsync_command = zsync_command or settings.get_setting("zsync_command", "zsync")
        self.chunk_size = chunk_size or settings.get_int(
            "download_chunk_size", settings.DEFAULT_DOWNLOAD_CHUNK_SIZE
        )
        if progress_interval is None:
            progress_interval = settings.get_float("progress_log_interval", 5.0)
        # Image downloads are not bounded in time.
        self.timeout = aiohttp.ClientTimeout(total=None)
        self._progress = ThrottledLogger(log, interval_seconds=progress_interval)

    def fetch(self, url: str, directory: Path) -> Path:
        """Download ``url`` into ``directory``.

        Returns:
            Path of the downloaded artifact

        Raises:
            FetchError: On unsupported schemes, network errors or non-200 replies
        """
        scheme = urlparse(url).scheme.lower()
        if scheme not in FETCH_SCHEMES:
            raise FetchError(f"Not a local file or an http(s) URL: {url}", url=url)

        target = Path(directory) / artifact_name_from_url(url)
        partial = target.with_name(target.name + PARTIAL_SUFFIX)
        log.info(f"Downloading {url} to {target}")
        completed = False
        try:
            size = asyncio.run(self._download(url, partial))
            partial.replace(target)
            completed = True
        finally:
            if not completed:
                partial.unlink(missing_ok=True)
        log.info(f"Downloaded {size} bytes from {url}")
        return target

    async def _download(self, url: str, target: Path) -> int:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise FetchError(
                            f"Download of {url} failed with HTTP status {resp.status}",
                            url=url,
                        )
                    total = resp.content_length
                    done = 0
                    with open(target, "wb") as out:
                        async for chunk in resp.content.iter_chunked(self.chunk_size):
                            out.write(chunk)
                            done += len(chunk)
                            EventLogger.log_download_progress(self._progress, url, done, total)
                    return done
        except aiohttp.ClientError as e:
            log.error(f"Network error downloading {url}: {e}")
            raise FetchError(f"Network error downloading {url}: {e}", url=url) from e
        except OSError as e:
            raise FetchError(f"Writing {target} failed: {e}", url=url) from e

    def delta_sync(self, url: str, directory: Path, output: Optional[Path] = None) -> Optional[Path]:
        """Run zsync against ``url`` inside ``directory``.

        Args:
            url: zsync descriptor URL
            directory: Image directory; zsync runs with it as working directory
            output: Artifact to refresh; when omitted zsync names the file
                after the descriptor

        Returns:
            The refreshed artifact path when ``output`` was given

        Raises:
            DeltaSyncError: If zsync is missing or fails
        """
        command = [self.zsync_command, "-q"]
        if output is not None:
            command.extend(["-o", Path(output).name])
        command.append(url)

        log.info(f"Delta-syncing {url} in {directory}")
        result = run_command(command, cwd=directory)
        if result.failure is CommandFailure.NOT_FOUND:
            raise DeltaSyncError(f"{self.zsync_command} is not installed", url=url)
        if not result.ok:
            raise DeltaSyncError(f"zsync failed for {url}: {result.message}", url=url)
        return Path(directory) / Path(output).name if output is not None else None
