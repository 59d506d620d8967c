"""Command line entry point for znx.

Every device command follows the same shape: usage checks (identifier
grammar, privileges, target device), then a ``MountSession`` over the data
partition, then exactly one lifecycle transition. ``init`` is the only
command that works on an unmanaged device.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from znx.__version__ import __version__
from znx.domain import ImageStatus
from znx.logging import LoggerFactory, operation_context, setup_logging
from znx.services.lifecycle import LifecycleEngine
from znx.services.transfer import Transfer
from znx.storage import layout
from znx.storage.exceptions import ZnxError
from znx.storage.image_store import ImageStore, validate_identifier
from znx.storage.mount import MountSession
from znx.storage.validation import validate_root, validate_target_device


log = LoggerFactory.for_system()

PROG = "znx"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Manage bootable OS images on a removable storage device",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--debug", action="store_true", help="Enable debug logging")
    verbosity.add_argument(
        "--trace", action="store_true", help="Enable trace logging, including tool output"
    )
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    init = commands.add_parser("init", help="Partition and format a device for znx")
    init.add_argument("device")

    deploy = commands.add_parser("deploy", help="Deploy an image from a file or URL")
    deploy.add_argument("device")
    deploy.add_argument("image", help="Image identifier (VENDOR/NAME)")
    deploy.add_argument("source", help="Local .iso, .zsync URL or download URL")

    for name, aliases, help_text in (
        ("update", [], "Delta-update an image from its embedded update URL"),
        ("rollback", ["revert"], "Restore the image kept by the last update"),
        ("clean", [], "Delete the backup kept by the last update"),
        ("remove", [], "Delete an image"),
        ("info", [], "Show the state of an image"),
    ):
        sub = commands.add_parser(name, aliases=aliases, help=help_text)
        sub.add_argument("device")
        sub.add_argument("image", help="Image identifier (VENDOR/NAME)")

    listing = commands.add_parser("list", help="List deployed images")
    listing.add_argument("device")

    reset = commands.add_parser("reset", help="Empty the data area, keeping images")
    reset.add_argument("device")

    commands.add_parser("help", help="Show this message")
    commands.add_parser("version", help="Show the znx version")
    return parser


def _prepare_device(command: str, device: str) -> None:
    validate_root(command)
    validate_target_device(device)


def _engine(mount_point: Path) -> LifecycleEngine:
    return LifecycleEngine(ImageStore.on_mount(mount_point), Transfer())


def _format_size(size_bytes) -> str:
    if size_bytes is None:
        return "unknown"
    size = float(size_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TiB"


def _print_status(status: ImageStatus) -> None:
    print(f"image:   {status.image_id}")
    print(f"state:   {status.state.value}")
    print(f"primary: {status.primary.name if status.primary else '-'}")
    print(f"backup:  {status.backup.name if status.backup else '-'}")
    print(f"size:    {_format_size(status.size_bytes)}")
    print(f"update:  {status.update_url or '-'}")


# ==============================================================================
# Commands
# ==============================================================================


def cmd_init(args) -> int:
    _prepare_device("init", args.device)
    with operation_context("init", device=args.device):
        boot_node, data_node = layout.initialize(args.device)
    print(f"Initialized {args.device} ({boot_node}, {data_node})")
    return 0


def cmd_deploy(args) -> int:
    image_id = validate_identifier(args.image)
    _prepare_device("deploy", args.device)
    with MountSession(args.device) as mount_point:
        primary = _engine(mount_point).deploy(image_id, args.source)
        print(f"Deployed {image_id} ({primary.name})")
    return 0


def cmd_update(args) -> int:
    image_id = validate_identifier(args.image)
    _prepare_device("update", args.device)
    with MountSession(args.device) as mount_point:
        status = _engine(mount_point).update(image_id)
        print(f"Updated {image_id} ({status.primary.name}, backup {status.backup.name})")
    return 0


def cmd_rollback(args) -> int:
    image_id = validate_identifier(args.image)
    _prepare_device("rollback", args.device)
    with MountSession(args.device) as mount_point:
        restored = _engine(mount_point).rollback(image_id)
        print(f"Rolled back {image_id} ({restored.name})")
    return 0


def cmd_clean(args) -> int:
    image_id = validate_identifier(args.image)
    _prepare_device("clean", args.device)
    with MountSession(args.device) as mount_point:
        _engine(mount_point).clean(image_id)
        print(f"Cleaned {image_id}")
    return 0


def cmd_remove(args) -> int:
    image_id = validate_identifier(args.image)
    _prepare_device("remove", args.device)
    with MountSession(args.device) as mount_point:
        _engine(mount_point).remove(image_id)
        print(f"Removed {image_id}")
    return 0


def cmd_list(args) -> int:
    _prepare_device("list", args.device)
    with MountSession(args.device) as mount_point:
        for image_id in _engine(mount_point).list():
            print(image_id)
    return 0


def cmd_info(args) -> int:
    image_id = validate_identifier(args.image)
    _prepare_device("info", args.device)
    with MountSession(args.device) as mount_point:
        _print_status(_engine(mount_point).info(image_id))
    return 0


def cmd_reset(args) -> int:
    _prepare_device("reset", args.device)
    with MountSession(args.device) as mount_point:
        with operation_context("reset", device=args.device):
            layout.reset_data(mount_point)
        print(f"Reset the data area of {args.device}")
    return 0


COMMANDS = {
    "init": cmd_init,
    "deploy": cmd_deploy,
    "update": cmd_update,
    "rollback": cmd_rollback,
    "revert": cmd_rollback,
    "clean": cmd_clean,
    "remove": cmd_remove,
    "list": cmd_list,
    "info": cmd_info,
    "reset": cmd_reset,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "help"):
        parser.print_help()
        return 0
    if args.command == "version":
        print(f"{PROG} {__version__}")
        return 0

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log.debug(f"znx {__version__}: {args.command}")

    try:
        return COMMANDS[args.command](args)
    except ZnxError as error:
        log.debug(f"{type(error).__name__}: {error}")
        print(f"{PROG}: error: {error}", file=sys.stderr)
        return error.exit_code
    except KeyboardInterrupt:
        print(f"{PROG}: error: Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
