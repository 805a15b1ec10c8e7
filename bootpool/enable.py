from __future__ import annotations

import contextlib
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from . import boot_sectors
from .boot_sectors import Mode
from .errors import CorruptionError, FatalError, UserError
from .fetch import MEDIA
from .inventory import BootFS, require_pool_present, standard_bootfs_name
from .layout import Layout
from .roles import BRINGUPS
from .session import Role, Session

logger = logging.getLogger(__name__)


def is_pool_enabled(session: Session, pool: str) -> bool:
    """True when pool's bootfs is the standard <pool>/boot dataset."""

    require_pool_present(session, pool)
    current = session.zfs.pool_bootfs(pool)
    expected = standard_bootfs_name(pool)
    if current == expected:
        if session.zfs.dataset_exists(current):
            return True
        logger.info(".... odd, %s is pool's bootfs, but isn't a filesystem", expected)
    elif current != "-":
        raise CorruptionError(
            f"It appears pool {pool} has a different boot filesystem ({current}) than the "
            f"standard {expected}. It will need manual intervention."
        )
    return False


def _populated(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


def enable(
    session: Session,
    pool: str,
    source: Optional[str] = None,
    role: Optional[Role] = None,
) -> Optional[str]:
    """Make pool bootable for the given deployment role.

    Returns the installed stamp (standalone, compute node) or the pool name
    (head node); None when the pool was already bootable.
    """

    role = role or session.role
    if source is not None and role is not Role.STANDALONE:
        raise UserError("'bootable -e' with '-i' can only be used on standalone systems")
    if not pool:
        raise UserError("To enable a pool for booting, please specify at least a pool")

    bringup = BRINGUPS[role]()
    missing = bringup.missing_prerequisite(session)

    name = standard_bootfs_name(pool)
    bootfs = BootFS(name=name, path=session.mountpoint(name))

    if is_pool_enabled(session, pool):
        layout = Layout(bootfs.path)
        if _populated(layout.platform_link) and _populated(layout.boot_link):
            if missing:
                logger.warning("%s", missing)
            print(f"Pool {pool} appears to be bootable.")
            print(bringup.enabled_hint)
            return None
        # One or both of platform/boot are missing: start over.

    if missing:
        raise UserError(missing)

    if not session.zfs.dataset_exists(name):
        if not session.zfs.create_dataset(name, encryption="off"):
            raise FatalError(f"Cannot create {name} dataset")
    if not session.zfs.set_bootfs(pool, name):
        raise FatalError(f"Cannot set bootfs for {pool}")

    logger.info("Enabling %s as %s", name, role.value)
    return bringup.run(session, bootfs, source or MEDIA)


def _checked_enabled_pool(session: Session, pool: Optional[str]) -> BootFS:
    if not pool:
        raise UserError("Must specify a pool for disabling or refresh")
    if not is_pool_enabled(session, pool):
        raise UserError(f"Pool {pool} is not bootable, and cannot be disabled or refreshed")
    name = standard_bootfs_name(pool)
    return BootFS(name=name, path=session.mountpoint(name))


def disable(session: Session, pool: Optional[str]) -> None:
    bootfs = _checked_enabled_pool(session, pool)
    if session.role is Role.HEAD_NODE:
        if bootfs.pool == session.hn_bootpool:
            raise UserError(
                "WARNING: Disabling currently-booting pool. Please boot from a USB key or other pool"
            )
        logger.info("Disabling Triton Head Node inactive bootable pool.")

    logger.info("Disabling bootfs on pool %s", bootfs.pool)
    session.zfs.set_bootfs(bootfs.pool, "")
    boot_sectors.program(session, bootfs.pool, bootfs.path, Mode.ERASE)


def refresh(session: Session, pool: Optional[str]) -> None:
    bootfs = _checked_enabled_pool(session, pool)
    logger.info("Refreshing boot sectors and/or ESP on pool %s", bootfs.pool)
    boot_sectors.program(session, bootfs.pool, bootfs.path, Mode.WRITE)


@dataclass(frozen=True)
class PoolBootability:
    pool: str
    bootable: bool
    uefi: bool

    def describe(self) -> str:
        if not self.bootable:
            return "non-bootable"
        return "BIOS and UEFI" if self.uefi else "BIOS"


def _has_uefi_loader(session: Session, device: str) -> bool:
    Path(session.paths.staging_dir).mkdir(parents=True, exist_ok=True)
    mnt = tempfile.mkdtemp(prefix="bootpool-esp-", dir=session.paths.staging_dir)
    try:
        if not session.zfs.mount("pcfs", f"/dev/dsk/{device}s0", mnt):
            return False
        found = (Path(mnt) / "EFI" / "Boot" / "bootx64.efi").is_file()
        session.zfs.umount(mnt, force=True)
        return found
    finally:
        with contextlib.suppress(OSError):
            Path(mnt).rmdir()


def bootable_report(session: Session, pool: Optional[str] = None) -> List[PoolBootability]:
    if pool:
        require_pool_present(session, pool)
        pools = [pool]
    else:
        pools = session.zfs.list_pools()

    report: List[PoolBootability] = []
    for p in pools:
        if session.zfs.pool_bootfs(p) != standard_bootfs_name(p):
            report.append(PoolBootability(pool=p, bootable=False, uefi=False))
            continue
        uefi = any(_has_uefi_loader(session, dev) for dev in session.zfs.boot_devices(p))
        report.append(PoolBootability(pool=p, bootable=True, uefi=uefi))
    return report
