"""Tests for the command line (main.py)."""

from contextlib import contextmanager
from pathlib import Path

import pytest

from znx import main
from znx.__version__ import __version__
from znx.domain import ImageId, ImageState, ImageStatus
from znx.storage.exceptions import (
    DeviceBusyError,
    DeviceNotManagedError,
    FetchError,
    NoBackupError,
    OperationInterruptedError,
    PrivilegeError,
)


@pytest.fixture
def cli(mocker, tmp_path):
    """Patch privileges, device checks and mounting; return the engine mock."""
    mocker.patch("znx.main.setup_logging")
    mocker.patch("znx.main.validate_root")
    mocker.patch("znx.main.validate_target_device")

    mount_point = tmp_path / "mnt"
    mount_point.mkdir()

    @contextmanager
    def session(device_path):
        yield mount_point

    mocker.patch("znx.main.MountSession", side_effect=session)
    engine = mocker.MagicMock()
    mocker.patch("znx.main._engine", return_value=engine)
    return engine


class TestUsage:
    """Tests for help, version and argument errors."""

    def test_no_arguments_prints_help(self, capsys):
        assert main.main([]) == 0
        assert "usage: znx" in capsys.readouterr().out

    def test_help_command(self, capsys):
        assert main.main(["help"]) == 0
        assert "deploy" in capsys.readouterr().out

    def test_version(self, capsys):
        assert main.main(["version"]) == 0
        assert capsys.readouterr().out.strip() == f"znx {__version__}"

    def test_missing_argument_is_usage_error(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main.main(["deploy", "/dev/sdb", "nitrux/rolling"])
        assert exc_info.value.code == 2

    def test_unknown_command(self):
        with pytest.raises(SystemExit) as exc_info:
            main.main(["frobnicate"])
        assert exc_info.value.code == 2

    def test_invalid_identifier_before_device_checks(self, cli, capsys):
        assert main.main(["deploy", "/dev/sdb", "not-an-id", "/x.iso"]) == 2

        assert "znx: error: Invalid image identifier 'not-an-id'" in capsys.readouterr().err
        main.validate_root.assert_not_called()
        cli.deploy.assert_not_called()

    def test_not_root(self, cli, capsys):
        main.validate_root.side_effect = PrivilegeError("list")

        assert main.main(["list", "/dev/sdb"]) == 2
        assert "must be run as root" in capsys.readouterr().err

    def test_busy_device(self, cli, capsys):
        main.validate_target_device.side_effect = DeviceBusyError("/dev/sdb", ["/media/x"])

        assert main.main(["list", "/dev/sdb"]) == 2
        assert "/media/x" in capsys.readouterr().err


class TestCommands:
    """Tests for command dispatch to the lifecycle engine."""

    def test_deploy(self, cli, capsys):
        cli.deploy.return_value = Path("/mnt/boot_images/nitrux/rolling/image.iso")

        assert main.main(["deploy", "/dev/sdb", "nitrux/rolling", "/srv/image.iso"]) == 0

        cli.deploy.assert_called_once_with(ImageId("nitrux", "rolling"), "/srv/image.iso")
        assert "Deployed nitrux/rolling (image.iso)" in capsys.readouterr().out
        main.validate_root.assert_called_once_with("deploy")
        main.validate_target_device.assert_called_once_with("/dev/sdb")

    def test_update(self, cli, capsys):
        cli.update.return_value = ImageStatus(
            image_id=ImageId("a", "b"),
            state=ImageState.UPDATED,
            primary=Path("x.iso"),
            backup=Path("x.iso.zs-old"),
        )

        assert main.main(["update", "/dev/sdb", "a/b"]) == 0
        assert "backup x.iso.zs-old" in capsys.readouterr().out

    @pytest.mark.parametrize("command", ["rollback", "revert"])
    def test_rollback_and_alias(self, cli, command):
        cli.rollback.return_value = Path("x.iso")

        assert main.main([command, "/dev/sdb", "a/b"]) == 0
        cli.rollback.assert_called_once_with(ImageId("a", "b"))

    def test_clean_and_remove(self, cli):
        assert main.main(["clean", "/dev/sdb", "a/b"]) == 0
        assert main.main(["remove", "/dev/sdb", "a/b"]) == 0

        cli.clean.assert_called_once_with(ImageId("a", "b"))
        cli.remove.assert_called_once_with(ImageId("a", "b"))

    def test_list(self, cli, capsys):
        cli.list.return_value = [ImageId("a", "x"), ImageId("b", "y")]

        assert main.main(["list", "/dev/sdb"]) == 0
        assert capsys.readouterr().out.splitlines() == ["a/x", "b/y"]

    def test_info(self, cli, capsys):
        cli.info.return_value = ImageStatus(
            image_id=ImageId("a", "b"),
            state=ImageState.DEPLOYED,
            primary=Path("x.iso"),
            size_bytes=3 * 1024 * 1024,
            update_url="https://example.org/x.iso.zsync",
        )

        assert main.main(["info", "/dev/sdb", "a/b"]) == 0

        out = capsys.readouterr().out
        assert "state:   deployed" in out
        assert "size:    3.0 MiB" in out
        assert "update:  https://example.org/x.iso.zsync" in out

    def test_init(self, cli, mocker, capsys):
        initialize = mocker.patch(
            "znx.main.layout.initialize", return_value=("/dev/sdb1", "/dev/sdb2")
        )

        assert main.main(["init", "/dev/sdb"]) == 0

        initialize.assert_called_once_with("/dev/sdb")
        main.validate_root.assert_called_once_with("init")
        assert "Initialized /dev/sdb" in capsys.readouterr().out

    def test_reset(self, cli, mocker, tmp_path):
        reset_data = mocker.patch("znx.main.layout.reset_data")

        assert main.main(["reset", "/dev/sdb"]) == 0
        reset_data.assert_called_once_with(tmp_path / "mnt")

    def test_logging_options(self, cli, tmp_path):
        main.main(["--debug", "--log-dir", str(tmp_path), "list", "/dev/sdb"])

        main.setup_logging.assert_called_once_with(debug=True, trace=False, log_dir=tmp_path)


class TestExitCodes:
    """Tests for error to exit status mapping."""

    def test_precondition_error(self, cli, capsys):
        cli.rollback.side_effect = NoBackupError("a/b")

        assert main.main(["rollback", "/dev/sdb", "a/b"]) == 3
        assert capsys.readouterr().err.startswith("znx: error: Image a/b has no backup")

    def test_unmanaged_device(self, cli, mocker):
        mocker.patch("znx.main.MountSession", side_effect=DeviceNotManagedError("/dev/sdb"))
        assert main.main(["list", "/dev/sdb"]) == 3

    def test_operation_failure(self, cli):
        cli.deploy.side_effect = FetchError("Download failed with HTTP status 404")
        assert main.main(["deploy", "/dev/sdb", "a/b", "https://x/y.iso"]) == 1

    def test_read_only_data_partition(self, cli, engine, make_artifact, mocker, capsys):
        """Test a failing delete during clean ends in an error line, not a traceback."""
        image_id = ImageId("nitrux", "rolling")
        engine.deploy(image_id, str(make_artifact("image.iso")))
        engine.update(image_id)
        mocker.patch("znx.main._engine", return_value=engine)
        mocker.patch(
            "pathlib.Path.unlink", side_effect=PermissionError(13, "Read-only file system")
        )

        assert main.main(["clean", "/dev/sdz", "nitrux/rolling"]) == 1

        err = capsys.readouterr().err
        assert err.startswith("znx: error: Deleting ")
        assert err.rstrip().endswith("image.iso.zs-old failed: Read-only file system")

    def test_interrupted(self, cli):
        cli.update.side_effect = OperationInterruptedError(15, "SIGTERM")
        assert main.main(["update", "/dev/sdb", "a/b"]) == 143

    def test_keyboard_interrupt(self, cli):
        cli.update.side_effect = KeyboardInterrupt
        assert main.main(["update", "/dev/sdb", "a/b"]) == 130


class TestFormatSize:
    @pytest.mark.parametrize(
        "size,expected",
        [(None, "unknown"), (512, "512 B"), (2048, "2.0 KiB"), (5 * 1024**3, "5.0 GiB")],
    )
    def test_format_size(self, size, expected):
        assert main._format_size(size) == expected
