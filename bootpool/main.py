from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from . import menu
from .activation import activate
from .enable import bootable_report, disable, enable, refresh
from .errors import BootpoolError, CorruptionError, FatalError, UserError
from .fetch import MEDIA, Fetcher, remote_stamps
from .image_store import install, list_images, remove
from .inventory import bootable_filesystems, require_pool_present, resolve_bootfs
from .layout import Layout
from .lib.command import CommandError
from .lib.env import PATHS
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .roles import update_compute_node
from .session import Session, open_session, require_global_zone

logger = logging.getLogger(__name__)

LIST_FMT = "%-22s %-30s %-10s %-4s %-4s"


def cmd_activate(session: Session, args: argparse.Namespace) -> int:
    session.require_root(args.subcmd)
    session.standalone_only(args.subcmd)
    bootfs = resolve_bootfs(session, args.pool)
    activate(session, args.stamp, bootfs)
    return 0


def cmd_avail(session: Session, args: argparse.Namespace) -> int:
    session.standalone_only("avail")
    if not session.settings.is_default_prefix:
        logger.warning(
            "%s is being queried for available platform images. Output may be empty, or unusual.",
            session.settings.url_prefix,
        )

    installed = set()
    for bfs in bootable_filesystems(session):
        installed.update(Layout(bfs.path).installed_stamps())

    # Only images at least as new as the running one, and not yet installed.
    for stamp in remote_stamps(session):
        if stamp >= session.running_stamp and stamp not in installed:
            print(stamp)
    return 0


def cmd_bootable(session: Session, args: argparse.Namespace) -> int:
    modes = [m for m in ("disable", "enable", "refresh") if getattr(args, m)]
    if len(modes) > 1:
        raise UserError("Use only one of -d, -e, -r")
    if args.source and not args.enable:
        raise UserError("-i may only be used with -e")

    if modes:
        session.require_root("bootable")
    if args.disable:
        disable(session, args.pool)
    elif args.refresh:
        refresh(session, args.pool)
    elif args.enable:
        if args.source is not None:
            session.standalone_only("'bootable -e' with '-i'")
        enable(session, args.pool, source=args.source)
    else:
        for row in bootable_report(session, args.pool):
            print("%-30s ==> %s" % (row.pool, row.describe()))
    return 0


def cmd_install(session: Session, args: argparse.Namespace) -> int:
    session.require_root("install")
    session.standalone_only("install")
    bootfs = resolve_bootfs(session, args.pool)
    with Fetcher(session, bootfs).resolve(args.source) as tree:
        install(session, tree, bootfs)
    menu.regenerate(bootfs.path)
    return 0


def cmd_list(session: Session, args: argparse.Namespace) -> int:
    if args.pool:
        require_pool_present(session, args.pool)
    if not args.no_header:
        print(LIST_FMT % ("PI STAMP", "BOOTABLE FILESYSTEM", "BOOT IMAGE", "NOW", "NEXT"))
    for bfs in bootable_filesystems(session):
        if args.pool and bfs.pool != args.pool:
            continue
        for row in list_images(session, bfs):
            print(
                LIST_FMT
                % (
                    row.stamp,
                    row.bootfs,
                    row.boot_image,
                    "yes" if row.now else "no",
                    "yes" if row.next else "no",
                )
            )
    return 0


def cmd_remove(session: Session, args: argparse.Namespace) -> int:
    session.require_root(args.subcmd)
    session.standalone_only(args.subcmd)
    bootfs = resolve_bootfs(session, args.pool)
    remove(session, args.stamp, bootfs)
    return 0


def cmd_update(session: Session, args: argparse.Namespace) -> int:
    session.require_root("update")
    update_compute_node(session, args.pool)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bootpool",
        description="Manage Platform Images on bootable ZFS pools.",
        epilog="Concurrent runs against the same bootable pool are not supported.",
    )
    p.add_argument("-v", "--verbose", action="count", default=0, help="More output (-vv for command traces)")
    p.add_argument("--config", default=PATHS.config_default, help="Configuration file (yaml|json)")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Log file")

    sub = p.add_subparsers(dest="subcmd", required=True)

    sp = sub.add_parser("activate", aliases=["assign"], help="Make a Platform Image the default")
    sp.add_argument("stamp")
    sp.add_argument("pool", nargs="?")
    sp.set_defaults(func=cmd_activate)

    sp = sub.add_parser("avail", help="List Platform Images available for install")
    sp.set_defaults(func=cmd_avail)

    sp = sub.add_parser("bootable", help="Query, enable, disable, or refresh bootable pools")
    sp.add_argument("-d", dest="disable", action="store_true", help="Disable booting from the pool")
    sp.add_argument("-e", dest="enable", action="store_true", help="Enable booting from the pool")
    sp.add_argument("-i", dest="source", default=None, help=f"Install source for -e (default: {MEDIA})")
    sp.add_argument("-r", dest="refresh", action="store_true", help="Refresh boot sectors and/or ESP")
    sp.add_argument("pool", nargs="?")
    sp.set_defaults(func=cmd_bootable)

    sp = sub.add_parser("install", help="Install a Platform Image")
    sp.add_argument("source", help="PI stamp, 'latest', 'media', a file, or a URL")
    sp.add_argument("pool", nargs="?")
    sp.set_defaults(func=cmd_install)

    sp = sub.add_parser("list", help="List installed Platform Images")
    sp.add_argument("-H", dest="no_header", action="store_true", help="No header line")
    sp.add_argument("pool", nargs="?")
    sp.set_defaults(func=cmd_list)

    sp = sub.add_parser("remove", aliases=["destroy"], help="Remove a Platform Image")
    sp.add_argument("stamp")
    sp.add_argument("pool", nargs="?")
    sp.set_defaults(func=cmd_remove)

    sp = sub.add_parser("update", help="Update a compute node's iPXE and backup Platform Image")
    sp.add_argument("pool", nargs="?")
    sp.set_defaults(func=cmd_update)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    configure_logging(log_path=args.log, verbosity=args.verbose)

    try:
        require_global_zone()
        session = open_session(config_path=args.config, verbose=args.verbose > 0)
        return int(args.func(session, args))
    except CorruptionError as e:
        print(f"POSSIBLE CORRUPTION: {e}", file=sys.stderr)
        return e.exit_code
    except BootpoolError as e:
        logger.debug("Command %s failed", args.subcmd, exc_info=True)
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code
    except CommandError as e:
        logger.debug("Command %s failed", args.subcmd, exc_info=True)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        # Unexpected I/O failure: the pool may be half-changed.
        logger.debug("Command %s failed", args.subcmd, exc_info=True)
        print(f"ERROR: {e}", file=sys.stderr)
        return FatalError.exit_code
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
