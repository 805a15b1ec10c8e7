from __future__ import annotations

import logging
from typing import Optional

from ..activation import activate
from ..fetch import Fetcher
from ..image_store import install
from ..inventory import BootFS
from ..session import Role, Session

logger = logging.getLogger(__name__)


class StandaloneBringup:
    role = Role.STANDALONE
    enabled_hint = "Use 'bootpool install' and 'bootpool activate' to change PIs."

    def missing_prerequisite(self, session: Session) -> Optional[str]:
        return None

    def run(self, session: Session, bootfs: BootFS, source: str) -> str:
        with Fetcher(session, bootfs).resolve(source) as tree:
            stamp = install(session, tree, bootfs)
        activate(session, stamp, bootfs)
        logger.info("Pool %s boots Platform Image %s", bootfs.pool, stamp)
        return stamp
