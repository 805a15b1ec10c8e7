"""On-disk layout of a bootable filesystem.

    platform-<stamp>/        immutable platform image, etc/version/platform == stamp
    boot-<stamp>/            immutable loader bits
    platform -> ./platform-<stamp>
    boot -> ./boot-<stamp>
    etc/version/boot         stamp of the active loader bits
    os/                      generated boot menu tree (disposable)
    custom/                  operator loader overrides
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from .errors import CorruptionError
from .lib.assets import replace_symlink

logger = logging.getLogger(__name__)

PLATFORM = "platform"
BOOT = "boot"
MENU_DIR = "os"
CUSTOM_DIR = "custom"
PLATFORM_VERSION = "etc/version/platform"
BOOT_VERSION = "etc/version/boot"
LOADER_OVERRIDES = ("loader.conf.local", "loader.rc.local")


def read_record(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, NotADirectoryError):
        return None


class Layout:
    def __init__(self, root: Path):
        self.root = Path(root)

    def platform_dir(self, stamp: str) -> Path:
        return self.root / f"{PLATFORM}-{stamp}"

    def boot_dir(self, stamp: str) -> Path:
        return self.root / f"{BOOT}-{stamp}"

    @property
    def menu_dir(self) -> Path:
        return self.root / MENU_DIR

    @property
    def custom_dir(self) -> Path:
        return self.root / CUSTOM_DIR

    @property
    def platform_link(self) -> Path:
        return self.root / PLATFORM

    @property
    def boot_link(self) -> Path:
        return self.root / BOOT

    def active_platform_stamp(self) -> Optional[str]:
        """Stamp behind the `platform` pointer; None while uninitialized."""

        link = self.platform_link
        if not link.is_symlink():
            if link.exists():
                raise CorruptionError(f"Bootable filesystem {self.root} has non-symlink platform")
            return None
        stamp = read_record(link / PLATFORM_VERSION)
        if stamp is None:
            raise CorruptionError(f"{link} does not point at an installed platform image")
        return stamp

    def boot_version(self) -> Optional[str]:
        return read_record(self.root / BOOT_VERSION)

    def boot_link_stamp(self) -> Optional[str]:
        """Stamp named by the `boot` symlink target, whatever the record says."""

        if not self.boot_link.is_symlink():
            return None
        target = Path(os.readlink(self.boot_link)).name
        prefix = f"{BOOT}-"
        return target[len(prefix):] if target.startswith(prefix) else None

    def write_boot_version(self, stamp: str) -> None:
        p = self.root / BOOT_VERSION
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(stamp + "\n", encoding="utf-8")

    def has_boot_bits(self) -> bool:
        return self.boot_link.is_dir()

    def installed_stamps(self) -> List[str]:
        """Stamps recorded by each platform-* directory, in directory order."""

        stamps: List[str] = []
        for d in sorted(self.root.glob(f"{PLATFORM}-*")):
            if not d.is_dir():
                continue
            stamp = read_record(d / PLATFORM_VERSION)
            if stamp is None:
                logger.warning("%s has no version record; ignoring", str(d))
                continue
            stamps.append(stamp)
        return stamps

    def point(self, link_name: str, stamp: str) -> None:
        replace_symlink(self.root / link_name, f"./{link_name}-{stamp}")
        logger.info("%s now points at %s-%s", link_name, link_name, stamp)
