from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional

from .config_store import Settings, load_settings
from .errors import UserError
from .lib.command import Runner, run_cmd
from .lib.env import PATHS, Paths
from .lib.fleet import FleetClient, UsbKey, read_bootparams
from .lib.zfs import ZfsAdmin

logger = logging.getLogger(__name__)


class Role(str, Enum):
    STANDALONE = "standalone"
    COMPUTE_NODE = "compute-node"
    HEAD_NODE = "head-node"


def detect_role(bootparams: Mapping[str, str]) -> Role:
    """Pick the deployment role from boot parameters.

    Fleet compute nodes boot without either the `smartos` or the `headnode`
    parameter; head nodes carry `headnode`.
    """

    if "headnode" in bootparams:
        return Role.HEAD_NODE
    if "smartos" not in bootparams:
        return Role.COMPUTE_NODE
    return Role.STANDALONE


def current_running_stamp() -> str:
    return os.uname().version.replace("joyent_", "")


def require_global_zone(runner: Runner = run_cmd) -> None:
    if runner(["zonename"], check=False).stdout.strip() != "global":
        raise UserError("Must run bootpool in the global zone")


@dataclass
class Session:
    """Everything an operation needs, passed explicitly.

    Concurrent sessions against the same boot filesystem are not guarded
    against; callers must serialize them.
    """

    role: Role
    settings: Settings
    running_stamp: str
    bootparams: Dict[str, str] = field(default_factory=dict)
    runner: Runner = run_cmd
    paths: Paths = PATHS
    verbose: bool = False
    fleet: Optional[FleetClient] = None
    zfs: ZfsAdmin = field(init=False)
    usbkey: UsbKey = field(init=False)

    def __post_init__(self) -> None:
        self.zfs = ZfsAdmin(runner=self.runner)
        self.usbkey = UsbKey(runner=self.runner)
        if self.fleet is None and self.role is Role.COMPUTE_NODE:
            self.fleet = FleetClient(runner=self.runner, paths=self.paths)

    @property
    def hn_bootpool(self) -> Optional[str]:
        return self.bootparams.get("triton_bootpool") or None

    def mountpoint(self, dataset: str) -> Path:
        return Path(self.paths.alt_root) / dataset

    @contextlib.contextmanager
    def staging(self, purpose: str) -> Iterator[Path]:
        """Uniquely named scratch directory, removed when the block exits."""

        Path(self.paths.staging_dir).mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=f"bootpool-{purpose}-", dir=self.paths.staging_dir) as d:
            logger.debug("Staging %s in %s", purpose, d)
            yield Path(d)

    def standalone_only(self, what: str) -> None:
        if self.role is Role.COMPUTE_NODE:
            raise UserError(f"The {what} command cannot be used on a Triton Compute Node")
        if self.role is Role.HEAD_NODE:
            raise UserError(
                f"The {what} command cannot be used on a Triton Head Node. "
                "On a headnode, please use 'sdcadm platform'."
            )

    def require_root(self, what: str) -> None:
        if os.geteuid() != 0:
            raise UserError(f"Must be root for {what}")


def open_session(
    *,
    config_path: Optional[str] = PATHS.config_default,
    verbose: bool = False,
    runner: Runner = run_cmd,
    paths: Paths = PATHS,
) -> Session:
    """Probe the running system once and build a Session for it."""

    bootparams = read_bootparams(runner)
    role = detect_role(bootparams)
    logger.info("Running as %s", role.value)

    # The persisted config only governs the public image server, which fleet
    # nodes never use.
    settings = load_settings(config_path if role is Role.STANDALONE else None)

    return Session(
        role=role,
        settings=settings,
        running_stamp=current_running_stamp(),
        bootparams=bootparams,
        runner=runner,
        paths=paths,
        verbose=verbose,
    )
