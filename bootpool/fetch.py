"""Turn an install source into a verified, staged image tree.

A source is one of:

- "latest": newest image on the image server.
- "media": installation media (USB key, then CD/ISO).
- a local file: ISO-9660 image or gzip'd platform tarball, told apart by
  content rather than by name.
- a URL: probed first, downloaded into staging, then handled once more as
  a local file. A URL never leads to another URL.
- anything else: a platform stamp, fetched by the server's naming
  convention.

Everything lands under a per-call staging directory which, along with any
mounts, is released when the resolve() block exits.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import tarfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import OperationError, UserError
from .inventory import BootFS
from .layout import BOOT_VERSION, PLATFORM_VERSION, Layout, read_record
from .lib import net
from .session import Session

logger = logging.getLogger(__name__)

LATEST = "latest"
MEDIA = "media"

GZIP_MAGIC = b"\x1f\x8b"
ISO9660_MAGIC = b"CD001"
ISO9660_MAGIC_OFFSET = 0x8001
# Listing size the image server is asked for; it returns oldest first.
LISTING_LIMIT = 1024


class SourceKind(str, Enum):
    LATEST = "latest"
    MEDIA = "media"
    LOCAL_FILE = "local-file"
    REMOTE = "remote"


class ArchiveKind(str, Enum):
    ISO = "iso"
    TGZ = "tgz"


@dataclass(frozen=True)
class ImageTree:
    """A staged image: root/platform, plus root/boot when has_boot_bits."""

    stamp: str
    root: Path
    has_boot_bits: bool

    @property
    def platform_src(self) -> Path:
        return self.root / "platform"

    @property
    def boot_src(self) -> Path:
        return self.root / "boot"


def classify(spec: str) -> SourceKind:
    if spec == LATEST:
        return SourceKind.LATEST
    if spec == MEDIA:
        return SourceKind.MEDIA
    if Path(spec).is_file():
        return SourceKind.LOCAL_FILE
    return SourceKind.REMOTE


def sniff_archive(path: Path) -> Optional[ArchiveKind]:
    with open(path, "rb") as fh:
        head = fh.read(ISO9660_MAGIC_OFFSET + len(ISO9660_MAGIC))
    if head.startswith(GZIP_MAGIC):
        return ArchiveKind.TGZ
    if head[ISO9660_MAGIC_OFFSET : ISO9660_MAGIC_OFFSET + len(ISO9660_MAGIC)] == ISO9660_MAGIC:
        return ArchiveKind.ISO
    return None


def file_digest(path: Path, algo: str) -> str:
    try:
        h = hashlib.new(algo)
    except ValueError as e:
        raise OperationError(f"Unsupported digest algorithm {algo!r}") from e
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def remote_stamps(session: Session) -> List[str]:
    """Image stamps published on the image server, sorted ascending."""

    url = f"{session.settings.url_prefix.rstrip('/')}?limit={LISTING_LIMIT}"
    try:
        text = net.fetch_text(url)
    except net.FetchError as e:
        raise OperationError(f"Failed fetching PI data from {url}: {e}") from e

    stamps: List[str] = []
    for ln in text.splitlines():
        ln = ln.strip()
        if not ln:
            continue
        try:
            name = json.loads(ln).get("name", "")
        except (ValueError, AttributeError):
            continue
        if isinstance(name, str) and name.endswith("Z"):
            stamps.append(name)
    return sorted(stamps)


class Fetcher:
    def __init__(self, session: Session, bootfs: BootFS):
        self.session = session
        self.bootfs = bootfs
        self.layout = Layout(bootfs.path)

    # -- integrity ---------------------------------------------------------

    def published_digest(self, artifact_name: str, stamp: str) -> str:
        settings = self.session.settings
        sum_url = settings.sum_url or f"{settings.url_prefix}{stamp}/{settings.digest_algorithm}sums.txt"
        try:
            text = net.fetch_text(sum_url)
        except net.FetchError as e:
            raise OperationError(f"Could not get checksum for PI from {sum_url}: {e}") from e
        for ln in text.splitlines():
            fields = ln.split()
            if len(fields) >= 2 and fields[-1].endswith(artifact_name):
                return fields[0].lower()
        raise OperationError(f"No published checksum for {artifact_name} in {sum_url}")

    def verify(self, artifact_name: str, stamp: str, local: Path) -> None:
        settings = self.session.settings
        if settings.skip_checksum:
            logger.warning("Not using validation checksum for %s", artifact_name)
            return
        published = self.published_digest(artifact_name, stamp)
        computed = file_digest(local, settings.digest_algorithm)
        logger.info("published_checksum: %s", published)
        logger.info("local_checksum:     %s", computed)
        if published != computed:
            raise OperationError(f"{artifact_name}: local file does not match published checksum")

    # -- staging helpers ---------------------------------------------------

    def _download(self, url: str, dest: Path) -> None:
        try:
            net.download(url, dest)
        except net.FetchError as e:
            raise OperationError(str(e)) from e

    def _mount_iso(self, iso: Path, mnt: Path, stack: contextlib.ExitStack) -> None:
        mnt.mkdir(exist_ok=True)
        if not self.session.zfs.mount("hsfs", str(iso), str(mnt)):
            raise OperationError(f"Cannot mount ISO {iso}")
        stack.callback(self.session.zfs.umount, str(mnt))

    def _iso_tree(self, mnt: Path, expected: Optional[str]) -> ImageTree:
        bstamp = read_record(mnt / BOOT_VERSION)
        pstamp = read_record(mnt / "platform" / PLATFORM_VERSION)
        if bstamp is None or pstamp is None:
            raise OperationError(f"{mnt} does not look like platform install media")
        if expected and bstamp != expected:
            raise OperationError(f"Boot bits stamp says {bstamp}, vs. argument stamp {expected}")
        # Boot and platform stamps match on install media.
        stamp = expected or bstamp
        if pstamp != stamp:
            raise OperationError(f"Boot stamp {stamp} mismatches platform stamp {pstamp}")
        return ImageTree(stamp=stamp, root=mnt, has_boot_bits=True)

    def _tgz_tree(self, archive: Path, dest: Path) -> ImageTree:
        dest.mkdir(exist_ok=True)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(dest, filter="tar")
        except (tarfile.TarError, OSError, EOFError) as e:
            raise OperationError(f"File {archive} is not an ISO or a .tgz file.") from e

        # Platform tarballs expand to platform-<stamp>/.
        expanded = sorted(p for p in dest.glob("platform-*") if p.is_dir())
        if len(expanded) != 1:
            raise OperationError(f"{archive} does not contain exactly one platform-* directory")
        expanded[0].rename(dest / "platform")

        stamp = read_record(dest / "platform" / PLATFORM_VERSION)
        if not stamp:
            raise OperationError(f"{archive} has no platform version record")
        return ImageTree(stamp=stamp, root=dest, has_boot_bits=False)

    # -- per-kind resolution ----------------------------------------------

    def _from_local(self, path: Path, staging: Path, stack: contextlib.ExitStack) -> ImageTree:
        kind = sniff_archive(path)
        if kind is ArchiveKind.ISO:
            logger.info("Treating %s as an ISO file.", path)
            mnt = staging / "mnt"
            self._mount_iso(path, mnt, stack)
            return self._iso_tree(mnt, None)
        if kind is ArchiveKind.TGZ:
            logger.info("Treating %s as a .tgz Platform Image file.", path)
            return self._tgz_tree(path, staging / "mnt")
        raise OperationError(f"Unknown file type for {path}")

    def _from_latest(self, staging: Path, stack: contextlib.ExitStack) -> ImageTree:
        prefix = self.session.settings.url_prefix
        iso = staging / "smartos.iso"
        logger.info("Downloading latest SmartOS ISO")
        self._download(f"{prefix}smartos-latest.iso", iso)

        expected: Optional[str] = None
        if not self.session.settings.skip_checksum:
            stamps = remote_stamps(self.session)
            if not stamps:
                raise OperationError("Image server lists no platform images")
            expected = stamps[-1]
            self.verify(f"smartos-{expected}.iso", expected, iso)

        mnt = staging / "mnt"
        self._mount_iso(iso, mnt, stack)
        return self._iso_tree(mnt, expected)

    def _from_media(self, staging: Path, stack: contextlib.ExitStack) -> ImageTree:
        mnt = staging / "mnt"
        mnt.mkdir(exist_ok=True)
        lib = self.session.paths.usb_key_lib
        # USB key first, without requiring its marker file, then CD/ISO.
        for fn in ('mount_usb_key "$1" skip', 'mount_ISO "$1"'):
            r = self.session.runner(["bash", "-c", f". {lib} && {fn}", "bootpool", str(mnt)], check=False)
            if r.ok:
                stack.callback(self.session.zfs.umount, str(mnt))
                return self._iso_tree(mnt, None)
            logger.info("Install media probe (%s) failed: %s", fn.split()[0], r.stderr.strip())
        raise OperationError("Cannot find install media")

    def _from_stamp(self, stamp: str, staging: Path, stack: contextlib.ExitStack) -> ImageTree:
        if self.layout.platform_dir(stamp).exists():
            raise UserError(
                f"PI-stamp {stamp} appears to be already on /{self.bootfs.name}. "
                f"Use  remove {stamp}  to remove any old copies."
            )

        prefix = self.session.settings.url_prefix
        try:
            index = net.fetch_text(f"{prefix}{stamp}/index.html")
        except net.FetchError:
            index = "not found"
        if "not found" in "\n".join(index.splitlines()[:10]).lower():
            raise UserError(f"PI-stamp {stamp} is invalid for download from {prefix}")

        artifact = f"smartos-{stamp}.iso"
        iso = staging / "smartos.iso"
        logger.info("Downloading ISO for Platform Image %s", stamp)
        self._download(f"{prefix}{stamp}/{artifact}", iso)
        self.verify(artifact, stamp, iso)

        mnt = staging / "mnt"
        self._mount_iso(iso, mnt, stack)
        return self._iso_tree(mnt, stamp)

    @contextlib.contextmanager
    def resolve(self, spec: str) -> Iterator[ImageTree]:
        """Yield a verified ImageTree for spec; staging is released on exit."""

        if not spec:
            raise UserError("Must specify a Platform Image")

        with contextlib.ExitStack() as stack:
            staging = stack.enter_context(self.session.staging("install"))
            current = spec
            hopped = False

            while True:
                kind = classify(current)
                if kind is SourceKind.LATEST:
                    tree = self._from_latest(staging, stack)
                elif kind is SourceKind.MEDIA:
                    tree = self._from_media(staging, stack)
                elif kind is SourceKind.LOCAL_FILE:
                    tree = self._from_local(Path(current), staging, stack)
                elif not hopped and self._fetched_url(current, staging):
                    current = str(staging / "download")
                    hopped = True
                    continue
                else:
                    tree = self._from_stamp(current, staging, stack)
                break

            logger.info("Resolved %s to Platform Image %s", spec, tree.stamp)
            yield tree

    def _fetched_url(self, url: str, staging: Path) -> bool:
        logger.info("Checking if URL %s exists", url)
        if not net.probe_url(url):
            return False
        try:
            net.download(url, staging / "download")
        except net.FetchError as e:
            logger.info("Failed to download from URL %s: %s", url, e)
            return False
        return True
