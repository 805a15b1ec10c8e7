from __future__ import annotations

import logging

from . import boot_sectors, menu
from .errors import FatalError, UserError
from .inventory import BootFS
from .layout import BOOT, PLATFORM, Layout
from .session import Session

logger = logging.getLogger(__name__)


def activate(session: Session, stamp: str, bootfs: BootFS) -> None:
    """Make platform-<stamp> the default image of bootfs.

    Loader bits move along when boot-<stamp> exists, and boot sectors are
    rewritten for them before the platform pointer changes.

    Known risk: should that boot-sector write fail, `boot` has already moved
    on while `platform` still names the previous image.
    """

    layout = Layout(bootfs.path)

    if layout.active_platform_stamp() == stamp:
        logger.info("NOTE: %s is the current active PI.", stamp)
        menu.regenerate(bootfs.path)
        return

    if not layout.platform_dir(stamp).is_dir():
        raise UserError(f"{stamp} is not a stamp for a PI on pool {bootfs.pool}")

    logger.info("Platform Image %s will be loaded on next boot,", stamp)

    if layout.boot_dir(stamp).is_dir():
        layout.point(BOOT, stamp)
        layout.write_boot_version(stamp)
        boot_sectors.program(session, bootfs.pool, bootfs.path)
        logger.info("    with a new boot image,")
    else:
        # Not every platform image ships loader bits; keep the current ones.
        logger.warning("%s has no matching boot image, keeping the current one", stamp)
        if layout.boot_version() is None:
            raise FatalError(f"No boot version available on /{bootfs.name}")
        if not layout.has_boot_bits():
            raise FatalError(f"No boot bits directory on /{bootfs.name}")

    logger.info("    boot image %s", layout.boot_version())

    layout.point(PLATFORM, stamp)
    menu.regenerate(bootfs.path)
