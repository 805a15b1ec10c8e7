from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from . import menu
from .errors import CorruptionError, FatalError, UserError
from .fetch import ImageTree
from .inventory import BootFS
from .layout import LOADER_OVERRIDES, MENU_DIR, PLATFORM_VERSION, Layout, read_record
from .lib.assets import copy_tree
from .session import Role, Session

logger = logging.getLogger(__name__)

# Keeps the ramdisk around after boot; loader.conf of every boot image needs it.
FSTYPE_LINE = 'fstype="ufs"'
IPXE = "ipxe"


def ensure_line(path: Path, line: str) -> None:
    lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    if line not in lines:
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")


def publish_tree(src: Path, final: Path, prepare: Optional[Callable[[Path], None]] = None) -> None:
    """Copy src to a hidden sibling of final, then rename it into place.

    A stamp directory therefore either exists complete or not at all.
    """

    partial = final.with_name(f".{final.name}.partial")
    if partial.exists():
        shutil.rmtree(partial)
    try:
        copy_tree(src, partial)
        if prepare is not None:
            prepare(partial)
        os.rename(partial, final)
    finally:
        if partial.exists():
            shutil.rmtree(partial, ignore_errors=True)


def install(session: Session, tree: ImageTree, bootfs: BootFS) -> str:
    """Copy a staged image into platform-<stamp> (and boot-<stamp>)."""

    layout = Layout(bootfs.path)
    stamp = tree.stamp
    platform_dir = layout.platform_dir(stamp)
    boot_dir = layout.boot_dir(stamp)

    if platform_dir.exists():
        raise UserError(
            f"PI-stamp {stamp} appears to be already on /{bootfs.name}. "
            f"Use  remove {stamp}  to remove any old copies."
        )
    if boot_dir.exists():
        raise UserError(
            f"PI-stamp {stamp} has boot bits already on /{bootfs.name}. "
            f"Use  remove {stamp}  to remove any old copies."
        )

    logger.info("Installing PI %s", stamp)

    def wire_boot(staged: Path) -> None:
        for name in LOADER_OVERRIDES:
            if (layout.custom_dir / name).exists():
                link = staged / name
                if link.is_symlink() or link.exists():
                    link.unlink()
                os.symlink(f"../{layout.custom_dir.name}/{name}", link)
        ensure_line(staged / "loader.conf", FSTYPE_LINE)

    try:
        if tree.has_boot_bits:
            publish_tree(tree.boot_src, boot_dir, wire_boot)
        publish_tree(tree.platform_src, platform_dir)
    except OSError as e:
        raise FatalError(f"Installation problem for {stamp} on /{bootfs.name}: {e}") from e

    if not platform_dir.is_dir():
        raise FatalError(f"Installation problem (no {bootfs.name}/platform-{stamp})")
    if tree.has_boot_bits and not boot_dir.is_dir():
        raise FatalError(f"Installation problem (no {bootfs.name}/boot-{stamp} from ISO)")
    return stamp


def remove(session: Session, stamp: str, bootfs: BootFS) -> None:
    """Delete platform-<stamp> and boot-<stamp> unless either is in use."""

    layout = Layout(bootfs.path)
    if not layout.platform_dir(stamp).is_dir():
        raise UserError(f"{stamp} is not a stamp for a PI on pool {bootfs.pool}")

    if layout.active_platform_stamp() == stamp:
        raise UserError(
            f"{stamp} is the next-booting PI. Please activate another PI "
            "using 'activate <other-PI-stamp>' first."
        )

    boot_dir = layout.boot_dir(stamp)
    if boot_dir.is_dir():
        # Boot bits may be older than the current PI; never drop the ones in use.
        if stamp in (layout.boot_version(), layout.boot_link_stamp()):
            raise UserError(
                f"{stamp} is the current set of boot binaries. Please activate "
                "another PI using 'activate <other-PI-stamp>' first."
            )
        shutil.rmtree(boot_dir)

    shutil.rmtree(layout.platform_dir(stamp))
    logger.info("Removed PI %s from /%s", stamp, bootfs.name)
    menu.regenerate(bootfs.path)


@dataclass(frozen=True)
class ImageRow:
    stamp: str
    bootfs: str
    boot_image: str
    now: bool
    next: bool


def _headnode_view(bootfs: BootFS) -> tuple[Optional[str], List[str]]:
    root = bootfs.path
    if not (root / MENU_DIR).is_dir():
        raise CorruptionError(f"Headnode boot filesystem {bootfs.name} has no {MENU_DIR}/ directory.")
    booting = None
    loader_conf = root / "boot" / "loader.conf"
    if loader_conf.exists():
        for ln in loader_conf.read_text(encoding="utf-8").splitlines():
            if ln.startswith("platform-version="):
                booting = ln.split("=", 1)[1].strip().strip('"')
    stamps = []
    for d in sorted((root / MENU_DIR).glob("*/platform")):
        s = read_record(d / PLATFORM_VERSION)
        if s:
            stamps.append(s)
    return booting, stamps


def list_images(session: Session, bootfs: BootFS) -> List[ImageRow]:
    layout = Layout(bootfs.path)
    bootbits = layout.boot_version()

    if session.role is Role.HEAD_NODE:
        booting, stamps = _headnode_view(bootfs)
    else:
        booting = layout.active_platform_stamp()
        stamps = layout.installed_stamps()

    rows: List[ImageRow] = []
    for pi in stamps:
        is_booting = pi == booting
        label = pi
        if pi == bootbits:
            image = "next"
        elif layout.boot_dir(pi).is_dir():
            image = "available"
            if pi == IPXE:
                if session.verbose:
                    label = f"ipxe({read_record(bootfs.path / 'etc/version/ipxe') or '?'})"
                if is_booting:
                    image = "next"
        else:
            image = "none"
        rows.append(
            ImageRow(
                stamp=label,
                bootfs=bootfs.name,
                boot_image=image,
                now=pi == session.running_stamp,
                next=is_booting,
            )
        )
    return rows
