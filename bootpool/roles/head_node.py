from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .. import boot_sectors
from ..errors import FatalError, UserError
from ..image_store import FSTYPE_LINE
from ..inventory import BootFS
from ..layout import MENU_DIR
from ..lib.assets import copy_tree, wipe_dir
from ..session import Role, Session

logger = logging.getLogger(__name__)

# Boot keys before version 2 use a different loader and cannot be cloned.
USB_KEY_VERSION = "2"
BOOTPARAM_PREFIX = "triton_"


def rewrite_loader_conf(path: Path, pool: str) -> None:
    """Record pool as the boot source, dropping older triton_* settings."""

    lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    if FSTYPE_LINE not in lines:
        lines.append(FSTYPE_LINE)
    lines = [ln for ln in lines if not ln.startswith(BOOTPARAM_PREFIX)]
    lines.append(f'{BOOTPARAM_PREFIX}bootpool="{pool}"')
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def uppercase_menu_entries(menu_dir: Path) -> None:
    """Older boot keys have lower-case os/ entries; the loader wants upper case."""

    if not menu_dir.is_dir():
        return
    for entry in sorted(menu_dir.iterdir()):
        upper = entry.name.upper()
        if entry.name != upper:
            entry.rename(menu_dir / upper)


class HeadNodeBringup:
    role = Role.HEAD_NODE
    enabled_hint = "Use 'sdcadm platform' to change PIs."

    def missing_prerequisite(self, session: Session) -> Optional[str]:
        if Path(session.paths.hn_bootpool_support).exists():
            return None
        return (
            "To activate a pool for Triton head node booting, newer global-zone "
            "tools (namely support for sdc-usbkey to treat a pool's boot "
            "filesystem as a USB key equivalent) are required. Please update "
            "your headnode global-zone tools by using "
            "'sdcadm experimental update-gz-tools' and try again."
        )

    def run(self, session: Session, bootfs: BootFS, source: str) -> str:
        pool = bootfs.pool
        if pool == session.hn_bootpool:
            raise UserError(f"Pool {pool} is already bootable, and we just booted it.")

        usbkey = session.usbkey
        premounted = usbkey.is_mounted()
        stick = usbkey.mount()
        logger.info("Mounted USB key on %s", stick)

        if usbkey.version() != USB_KEY_VERSION:
            if not premounted:
                usbkey.unmount()
            raise UserError("USB key must be Version 2 (loader) to install on a pool.")

        logger.info("Cleaning up %s", bootfs.name)
        wipe_dir(bootfs.path)

        logger.info("Copying over USB key contents to /%s", bootfs.name)
        try:
            copy_tree(stick, bootfs.path)
        except OSError as e:
            # The key stays mounted for inspection.
            raise FatalError(f"Problem copying USB key on {stick} (still mounted) to /{bootfs.name}: {e}") from e

        logger.info("Modifying loader.conf for pool-based Triton Head Node boot")
        rewrite_loader_conf(bootfs.path / "boot" / "loader.conf", pool)

        logger.info("Case-correcting %s/ entries.", MENU_DIR)
        uppercase_menu_entries(bootfs.path / MENU_DIR)

        if not premounted:
            usbkey.unmount()

        boot_sectors.program(session, pool, bootfs.path)

        print(f"NOTE:  Directory {bootfs.name} on pool {pool} is now able to be")
        print("this head node's virtual bootable USB key.")
        print("")
        print("If this isn't a replacement pool for an existing bootable")
        print("pool, you should remove the USB key from this headnode")
        print(f"and then reboot this headnode from a disk in {pool}")
        print("")
        print(f"The USB key (even if it's another pool's bootfs) is now {usbkey.status()}")
        print("because that is what it was before bootpool ran.")
        return pool
