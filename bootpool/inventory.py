from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import UserError
from .session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BootFS:
    name: str
    path: Path

    @property
    def pool(self) -> str:
        return self.name.split("/", 1)[0]


def standard_bootfs_name(pool: str) -> str:
    return f"{pool}/boot"


def bootable_filesystems(session: Session) -> List[BootFS]:
    return [BootFS(name=n, path=session.mountpoint(n)) for n in session.zfs.list_bootfs()]


def require_pool_present(session: Session, pool: Optional[str]) -> None:
    if not session.zfs.pool_present(pool):
        raise UserError(f"Pool {pool} not present")


def resolve_bootfs(session: Session, pool: Optional[str] = None) -> BootFS:
    """Pick the target bootable filesystem.

    None found is an error, a lone one is chosen implicitly, several need
    the pool named.
    """

    if pool:
        require_pool_present(session, pool)

    found = bootable_filesystems(session)
    if not pool:
        if not found:
            raise UserError("No bootable pools available")
        if len(found) > 1:
            raise UserError("Multiple bootable pools are available, please specify one")
        logger.info("Selecting lone boot pool %s by default.", found[0].pool)
        return found[0]

    for bfs in found:
        if bfs.pool == pool:
            return bfs
    raise UserError(f"Pool {pool} does not appear to be bootable.")
