from __future__ import annotations

import contextlib
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List

from .errors import FatalError
from .session import Session

logger = logging.getLogger(__name__)

ESP_PAYLOAD = "EFI"


class Mode(str, Enum):
    WRITE = "write"
    ERASE = "erase"


@dataclass
class ProgramResult:
    slice_suffix: str
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def loader_slice(session: Session, pool: str, devices: List[str]) -> str:
    """Slice that receives loader code on each of the pool's disks.

    Pools created with a reserved boot region (`zpool create -B`) report a
    bootsize; slice 0 is then the EFI System Partition and pool data lives on
    slice 1. Without it, a pcfs slice 0 means someone built the ESP by hand,
    and slice 1 must hold the pool. Otherwise slice 0 is the pool itself.
    """

    if session.zfs.bootsize(pool) != "-":
        return "s1"
    if not devices:
        return "s0"

    first = devices[0]
    if session.zfs.fstyp(f"/dev/dsk/{first}s0") == "pcfs":
        s1type = session.zfs.fstyp(f"/dev/dsk/{first}s1")
        if s1type != "zfs":
            raise FatalError(f"Unusual configuration, {first}s1 not ZFS")
        return "s1"
    return "s0"


def _install_loader(session: Session, bootfs_path: Path, device: str, suffix: str) -> bool:
    # Trailing slash on -b matters: boot is a symlink.
    boot = f"{bootfs_path}/boot"
    r = session.runner(
        [
            "installboot",
            "-m",
            "-b",
            f"{boot}/",
            f"{boot}/pmbr",
            f"{boot}/gptzfsboot",
            f"/dev/rdsk/{device}{suffix}",
        ],
        check=False,
    )
    return r.ok


def _erase_esp(session: Session, device: str) -> bool:
    # Plain rmdir afterwards, never a recursive delete: the ESP may still be
    # mounted here if umount fails.
    Path(session.paths.staging_dir).mkdir(parents=True, exist_ok=True)
    mnt = tempfile.mkdtemp(prefix="bootpool-esp-", dir=session.paths.staging_dir)
    try:
        if not session.zfs.mount("pcfs", f"/dev/dsk/{device}s0", mnt):
            logger.warning("disk %s has no PCFS ESP, it seems", device)
            return False
        # Only the loader payload; the partition may hold other things.
        payload = Path(mnt) / ESP_PAYLOAD
        ok = True
        try:
            if payload.exists():
                shutil.rmtree(payload)
        except OSError as e:
            logger.warning("Can't clear %s on %s: %s", ESP_PAYLOAD, device, e)
            ok = False
        if not session.zfs.umount(mnt):
            logger.warning("Could not unmount ESP of %s from %s", device, mnt)
        return ok
    finally:
        with contextlib.suppress(OSError):
            Path(mnt).rmdir()


def program(session: Session, pool: str, bootfs_path: Path, mode: Mode = Mode.WRITE) -> ProgramResult:
    """Write or erase loader code on every disk of pool.

    Per-disk failures are warnings. Booting needs only one working path, so
    the call fails only when no disk at all could be handled.
    """

    devices = session.zfs.boot_devices(pool)
    suffix = loader_slice(session, pool, devices)
    result = ProgramResult(slice_suffix=suffix)

    for dev in devices:
        if mode is Mode.ERASE:
            if suffix == "s0":
                # BIOS-only boot: nothing lives in an ESP.
                result.succeeded.append(dev)
                continue
            ok = _erase_esp(session, dev)
        else:
            ok = _install_loader(session, bootfs_path, dev, suffix)
            if not ok:
                logger.warning("Can't installboot on %s%s", dev, suffix)

        (result.succeeded if ok else result.failed).append(dev)

    if not result.succeeded:
        raise FatalError(f"Could not modify ANY vdevs of pool {pool}")

    logger.info(
        "Boot sectors %s on pool %s: %d ok, %d failed",
        "written" if mode is Mode.WRITE else "erased",
        pool,
        len(result.succeeded),
        len(result.failed),
    )
    return result
