"""
Pytest configuration and shared fixtures for znx tests.

This module provides common fixtures and utilities used across all test modules.
External tools are never executed: tests patch ``subprocess.run`` or
``run_command`` and work on image stores under ``tmp_path``.
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import Mock

import pytest

from znx.domain import BACKUP_SUFFIX
from znx.services.lifecycle import LifecycleEngine
from znx.storage.exceptions import DeltaSyncError, FetchError
from znx.storage.image_store import ImageStore
from znx.storage.update_pointer import POINTER_LENGTH, POINTER_OFFSET


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def znx_device() -> Dict[str, Any]:
    """
    Fixture providing an initialized znx device as returned by lsblk.

    Returns:
        Dict with a disk and its ZNX_BOOT / ZNX_DATA partitions.
    """
    return {
        "name": "sdb",
        "type": "disk",
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "partlabel": None,
        "children": [
            {
                "name": "sdb1",
                "type": "part",
                "mountpoint": None,
                "fstype": "vfat",
                "label": "ZNX_BOOT",
                "partlabel": "ZNX_BOOT",
            },
            {
                "name": "sdb2",
                "type": "part",
                "mountpoint": None,
                "fstype": "btrfs",
                "label": "ZNX_DATA",
                "partlabel": "ZNX_DATA",
            },
        ],
    }


@pytest.fixture
def blank_device() -> Dict[str, Any]:
    """Fixture providing a disk with a single unrelated partition."""
    return {
        "name": "sdc",
        "type": "disk",
        "mountpoint": None,
        "children": [
            {
                "name": "sdc1",
                "type": "part",
                "mountpoint": None,
                "fstype": "ext4",
                "label": "backup",
                "partlabel": None,
            }
        ],
    }


@pytest.fixture
def lsblk_json() -> Callable[..., str]:
    """
    Fixture providing a helper that renders lsblk -J output.

    Returns:
        Function taking device dicts and returning the JSON text.
    """

    def render(*devices: Dict[str, Any]) -> str:
        return json.dumps({"blockdevices": list(devices)})

    return render


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List]:
    """
    Fixture that captures all subprocess.run calls for inspection.

    Returns:
        List that will contain all subprocess command arguments.
    """
    calls = []

    def track_call(cmd, **kwargs):
        calls.append(cmd)
        result = Mock()
        result.returncode = 0
        result.stdout = ""
        result.stderr = ""
        return result

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


# ==============================================================================
# Artifact Fixtures
# ==============================================================================


ARTIFACT_SIZE = POINTER_OFFSET + POINTER_LENGTH + 2048


def build_artifact(
    path: Path,
    pointer: Optional[str] = "zsync|https://example.org/images/rolling.iso.zsync",
    fill: bytes = b"A",
    size: int = ARTIFACT_SIZE,
) -> Path:
    """Write a fake ISO of ``size`` bytes carrying ``pointer`` NUL-padded."""
    field = (pointer or "").encode("ascii").ljust(POINTER_LENGTH, b"\x00")
    assert len(field) == POINTER_LENGTH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(fill * size)
    with open(path, "r+b") as artifact:
        artifact.seek(POINTER_OFFSET)
        artifact.write(field)
    return path


@pytest.fixture
def make_artifact(tmp_path) -> Callable[..., Path]:
    """
    Fixture providing an ISO artifact builder.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Function ``(name, pointer=..., fill=b"A", size=...) -> Path`` writing
        into ``tmp_path / "sources"``.
    """

    def make(name: str = "rolling.iso", **kwargs) -> Path:
        return build_artifact(tmp_path / "sources" / name, **kwargs)

    return make


# ==============================================================================
# Lifecycle Fixtures
# ==============================================================================


class FakeTransfer:
    """
    In-process stand-in for Transfer.

    ``delta_sync`` mimics zsync: an existing output file is renamed to
    ``<output>.zs-old`` and a new file with ``new_content`` replaces it.
    ``fetch`` writes ``fetch_content`` under the URL's file name.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail_fetch = False
        self.fail_delta = False
        self.fetch_content: bytes = b""
        self.new_content: bytes = b""

    def fetch(self, url: str, directory: Path) -> Path:
        self.calls.append(("fetch", url, Path(directory)))
        if self.fail_fetch:
            (Path(directory) / "partial.iso.part").write_bytes(b"partial")
            raise FetchError(f"Download of {url} failed with HTTP status 404", url=url)
        target = Path(directory) / url.rsplit("/", 1)[-1]
        target.write_bytes(self.fetch_content)
        return target

    def delta_sync(self, url: str, directory: Path, output: Optional[Path] = None):
        self.calls.append(("delta_sync", url, Path(directory), output))
        if self.fail_delta:
            raise DeltaSyncError(f"zsync failed for {url}: could not connect", url=url)
        if output is None:
            target = Path(directory) / url.rsplit("/", 1)[-1][: -len(".zsync")]
        else:
            target = Path(directory) / Path(output).name
        if target.exists():
            target.replace(target.with_name(target.name + BACKUP_SUFFIX))
        target.write_bytes(self.new_content)
        return target if output is not None else None


@pytest.fixture
def fake_transfer(make_artifact) -> FakeTransfer:
    """Fixture providing a FakeTransfer producing valid artifacts."""
    transfer = FakeTransfer()
    transfer.fetch_content = make_artifact("fetched.iso", fill=b"F").read_bytes()
    transfer.new_content = make_artifact("updated.iso", fill=b"U").read_bytes()
    return transfer


@pytest.fixture
def store(tmp_path) -> ImageStore:
    """
    Fixture providing an ImageStore on a fake data partition.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        ImageStore rooted at ``tmp_path / "data" / "boot_images"``.
    """
    mount_point = tmp_path / "data"
    (mount_point / "boot_images").mkdir(parents=True)
    return ImageStore.on_mount(mount_point)


@pytest.fixture
def engine(store, fake_transfer) -> LifecycleEngine:
    """Fixture providing a LifecycleEngine wired to the fake transfer."""
    return LifecycleEngine(store, fake_transfer)


# ==============================================================================
# Global State Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_global_state():
    """
    Auto-use fixture that resets module-level settings before each test.

    A settings file in the developer's home directory must not change test
    outcomes, and tests that edit settings must not leak into others.
    """
    from znx.config import settings

    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def loguru_records() -> List[dict]:
    """
    Fixture capturing loguru records emitted during a test.

    Returns:
        List filled with record dicts as they are logged.
    """
    from loguru import logger

    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)
