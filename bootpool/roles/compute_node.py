"""Compute node: iPXE first, with one local platform image as backup.

The loader chain-loads iPXE so the node boots from the fleet as usual. The
placeholder platform-ipxe/ exists only so the layout stays well formed; the
single platform-<stamp>/ is there for booting when the fleet is unreachable.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Iterable, List, Optional

from .. import boot_sectors
from ..errors import CorruptionError, FatalError, UserError
from ..image_store import FSTYPE_LINE, IPXE, publish_tree
from ..inventory import BootFS, resolve_bootfs
from ..layout import BOOT, PLATFORM, PLATFORM_VERSION, Layout, read_record
from ..lib import net
from ..lib.assets import copy_tree, wipe_dir
from ..session import Role, Session

logger = logging.getLogger(__name__)

README_TEXT = """\
For iPXE boots, the platform/ directory is empty.  This README, and
the word "ipxe" in platform/etc/version/platform, are here so there's
something in the platform/ directory to prevent bootpool (and older
tools) from thinking something is wrong.
"""

ARCHIVE_FILES = ("boot_archive", "boot_archive.hash", "boot_archive.manifest", "boot_archive.gitstatus")
UNIX_REL = "i86pc/kernel/amd64/unix"
ARCHIVE_REL = "i86pc/amd64"
BACKUP_DIR_RE = re.compile(r"^platform-[0-9]+T[0-9]+Z$")


def _fleet_default(session: Session) -> Optional[str]:
    return session.fleet.default_platform() if session.fleet is not None else None


def _unique(stamps: Iterable[Optional[str]]) -> List[str]:
    out: List[str] = []
    for s in stamps:
        if s and s not in out:
            out.append(s)
    return out


def install_backup_image(session: Session, layout: Layout, stamp: str) -> bool:
    """Pull unix and the boot archive for stamp into platform-<stamp>.

    Paths come from the boot-file the fleet handed this node at boot.
    """

    logger.info("Installing as a backup Platform image PI stamp %s", stamp)
    if layout.platform_dir(stamp).is_dir():
        logger.info("PI stamp %s already installed.", stamp)
        return True

    unix_url = session.bootparams.get("boot-file", "")
    if stamp == _fleet_default(session):
        # Boot-file names the image we booted; swap in the requested stamp.
        unix_url = re.sub(r"os/[0-9TZ]*/", f"os/{stamp}/", unix_url)
    if not unix_url or stamp not in unix_url:
        logger.warning("Boot file %r does not provide PI stamp %s", unix_url, stamp)
        return False
    archive_prefix = unix_url.replace("kernel/amd64/unix", "amd64")

    with session.staging("backup-pi") as staging:
        tree = staging / "platform"
        (tree / "etc/version").mkdir(parents=True)
        (tree / PLATFORM_VERSION).write_text(stamp + "\n", encoding="utf-8")
        (tree / UNIX_REL).parent.mkdir(parents=True)
        (tree / ARCHIVE_REL).mkdir(parents=True, exist_ok=True)
        # The boot file path must end in platform/i86pc/kernel/amd64/unix.
        (tree / "platform").symlink_to(".")

        try:
            net.download(unix_url, tree / UNIX_REL)
            for name in ARCHIVE_FILES:
                net.download(f"{archive_prefix}/{name}", tree / ARCHIVE_REL / name)
        except net.FetchError as e:
            logger.warning("Could not fetch PI %s: %s", stamp, e)
            return False

        publish_tree(tree, layout.platform_dir(stamp))
    return True


def install_first_available(session: Session, layout: Layout, candidates: Iterable[Optional[str]]) -> Optional[str]:
    for stamp in _unique(candidates):
        if install_backup_image(session, layout, stamp):
            return stamp
        logger.info("...PI %s unavailable", stamp)
    return None


def loader_conf_lines(stamp: str) -> List[str]:
    base = f"/platform-{stamp}"
    return [
        'ipxe="true"',
        'smt_enabled="true"',
        'console="ttyb,ttya,ttyc,ttyd,text"',
        'os_console="ttyb"',
        FSTYPE_LINE,
        f"platform-version={stamp}",
        # Extra "platform" component: the kernel looks for .../platform/i86pc/kernel/amd64/unix.
        f'bootfile="{base}/platform/{UNIX_REL}"',
        f'boot_archive_name="{base}/{ARCHIVE_REL}/boot_archive"',
        f'boot_archive.hash_name="{base}/{ARCHIVE_REL}/boot_archive.hash"',
    ]


def _copy_versions(session: Session, root: Path) -> None:
    version_dir = root / "etc/version"
    version_dir.mkdir(parents=True, exist_ok=True)
    for f in sorted(Path(session.paths.ipxe_etc, "version").iterdir()):
        if f.is_file():
            shutil.copy2(f, version_dir / f.name)
    boot_ipxe = root / f"{BOOT}-{IPXE}"
    shutil.copy2(version_dir / "boot", boot_ipxe / "bootversion")
    shutil.copy2(version_dir / "ipxe", boot_ipxe / "ipxeversion")


class ComputeNodeBringup:
    role = Role.COMPUTE_NODE
    enabled_hint = "Use 'bootpool update' to update the CN's iPXE and backup PI."

    def missing_prerequisite(self, session: Session) -> Optional[str]:
        return None

    def run(self, session: Session, bootfs: BootFS, source: str) -> str:
        layout = Layout(bootfs.path)
        root = bootfs.path
        default_pi = _fleet_default(session)
        if default_pi != session.running_stamp:
            logger.info("Current booted PI %s is not default PI %s", session.running_stamp, default_pi)

        wipe_dir(root)

        placeholder = layout.platform_dir(IPXE)
        (placeholder / "etc/version").mkdir(parents=True)
        (placeholder / "README").write_text(README_TEXT, encoding="utf-8")
        (placeholder / PLATFORM_VERSION).write_text(IPXE + "\n", encoding="utf-8")

        copy_tree(session.paths.ipxe_boot, layout.boot_dir(IPXE))
        _copy_versions(session, root)
        logger.info("installing ipxe version: %s", read_record(root / "etc/version/ipxe"))

        layout.point(PLATFORM, IPXE)
        layout.point(BOOT, IPXE)

        stamp = install_first_available(session, layout, [default_pi, session.running_stamp])
        if stamp is None:
            raise FatalError(f"No PIs available; /{bootfs.name} was already wiped")

        boot_ipxe = layout.boot_dir(IPXE)
        shutil.copy2(boot_ipxe / "loader.conf.tmpl", boot_ipxe / "loader.conf")
        with open(boot_ipxe / "loader.conf", "a", encoding="utf-8") as fh:
            fh.write("\n".join(loader_conf_lines(stamp)) + "\n")

        boot_sectors.program(session, bootfs.pool, root)
        return stamp


def update_compute_node(session: Session, pool: Optional[str] = None) -> None:
    """Refresh the backup image and the fleet-provided iPXE/loader bits."""

    if session.role is not Role.COMPUTE_NODE:
        raise UserError("The update command may only be used on a Triton Compute Node")

    bootfs = resolve_bootfs(session, pool)
    root = bootfs.path
    layout = Layout(root)

    # A compute node carries exactly one real platform-<stamp>.
    pdirs = sorted(d for d in root.glob("platform-*") if BACKUP_DIR_RE.match(d.name) and d.is_dir())
    if len(pdirs) > 1:
        raise CorruptionError(f"Multiple platform-STAMP in CN bootfs /{bootfs.name}/.")
    if not pdirs:
        raise CorruptionError(f"No platform-STAMP in CN bootfs /{bootfs.name}/.")
    pdir = pdirs[0]
    pstamp = read_record(pdir / PLATFORM_VERSION)

    if pstamp != session.running_stamp:
        logger.info("Updating backup PI to %s", session.running_stamp)
        stamp = install_first_available(session, layout, [session.running_stamp, _fleet_default(session)])
        if stamp is None:
            raise UserError(f"No PIs available, keeping {pstamp}")
        if stamp != pstamp:
            logger.info("...success installing %s", stamp)
            shutil.rmtree(pdir)
            conf = layout.boot_dir(IPXE) / "loader.conf"
            conf.write_text(conf.read_text(encoding="utf-8").replace(str(pstamp), stamp), encoding="utf-8")

    disk_ipxe = read_record(root / "etc/version/ipxe")
    disk_boot = read_record(root / "etc/version/boot")
    new_ipxe = read_record(Path(session.paths.ipxe_etc, "version/ipxe"))
    new_boot = read_record(Path(session.paths.ipxe_etc, "version/boot"))
    if disk_ipxe == new_ipxe and disk_boot == new_boot:
        logger.info("No updates needed for iPXE and its loader.")
        return

    if disk_ipxe != new_ipxe:
        logger.info("Updating iPXE provided by headnode (ver: %s)", new_ipxe)
    if disk_boot != new_boot:
        logger.info("Updating boot loader provided by headnode (ver: %s)", new_boot)

    copy_tree(session.paths.ipxe_boot, root / BOOT)
    _copy_versions(session, root)
    boot_sectors.program(session, bootfs.pool, root)
