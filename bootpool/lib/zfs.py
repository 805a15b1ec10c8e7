from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional

from .command import Runner, run_cmd

logger = logging.getLogger(__name__)

_DISK_RE = re.compile(r"^c[0-9]+")
_SLICE_RE = re.compile(r"s[0-9]+$")


@dataclass(frozen=True)
class ZfsAdmin:
    """Thin adapter over zpool(8)/zfs(8) and friends.

    Only the handful of queries the boot-environment code needs; pool
    administration proper is left to the operator.
    """

    runner: Runner = run_cmd

    def list_pools(self) -> List[str]:
        r = self.runner(["zpool", "list", "-Ho", "name"])
        return [ln.strip() for ln in r.stdout.splitlines() if ln.strip()]

    def list_bootfs(self) -> List[str]:
        """Return bootable filesystems, in pool order."""

        r = self.runner(["zpool", "list", "-Ho", "name,bootfs"])
        out: List[str] = []
        for ln in r.stdout.splitlines():
            fields = ln.split()
            if len(fields) >= 2 and fields[1] != "-":
                out.append(fields[1])
        return out

    def pool_present(self, pool: Optional[str]) -> bool:
        argv = ["zpool", "list"] + ([pool] if pool else [])
        return self.runner(argv, check=False).ok

    def pool_bootfs(self, pool: str) -> str:
        r = self.runner(["zpool", "list", "-Ho", "bootfs", pool])
        return r.stdout.strip() or "-"

    def set_bootfs(self, pool: str, bootfs: str) -> bool:
        return self.runner(["zpool", "set", f"bootfs={bootfs}", pool], check=False).ok

    def bootsize(self, pool: str) -> str:
        r = self.runner(["zpool", "list", "-Ho", "bootsize", pool], check=False)
        return r.stdout.strip() or "-"

    def dataset_exists(self, name: str) -> bool:
        return self.runner(["zfs", "list", "-H", name], check=False).ok

    def create_dataset(self, name: str, **props: str) -> bool:
        argv = ["zfs", "create"]
        for k, v in props.items():
            argv += ["-o", f"{k}={v}"]
        return self.runner(argv + [name], check=False).ok

    def boot_devices(self, pool: str) -> List[str]:
        """Physical disks backing a pool, without slice suffixes."""

        r = self.runner(["zpool", "list", "-vHP", pool])
        devices: List[str] = []
        for ln in r.stdout.splitlines():
            fields = ln.split()
            if not fields:
                continue
            name = os.path.basename(fields[0])
            if not _DISK_RE.match(name):
                continue
            disk = _SLICE_RE.sub("", name)
            if disk not in devices:
                devices.append(disk)
        return devices

    def fstyp(self, device_path: str) -> Optional[str]:
        r = self.runner(["fstyp", device_path], check=False)
        if not r.ok:
            return None
        return r.stdout.strip() or None

    def mount(self, fstype: str, special: str, mountpoint: str, *, check: bool = False) -> bool:
        return self.runner(["mount", "-F", fstype, special, mountpoint], check=check).ok

    def umount(self, mountpoint: str, *, force: bool = False) -> bool:
        argv = ["umount"] + (["-f"] if force else []) + [mountpoint]
        return self.runner(argv, check=False).ok
