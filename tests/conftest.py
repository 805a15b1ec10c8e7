from __future__ import annotations

import io
import os
import tarfile
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from bootpool.config_store import Settings, default_config
from bootpool.inventory import BootFS
from bootpool.lib.assets import copy_tree
from bootpool.lib.command import CmdResult, CommandError
from bootpool.lib.env import Paths
from bootpool.session import Role, Session

POOL = "tank"
BOOTFS = "tank/boot"
DISKS = ("c1t0d0", "c1t1d0", "c1t2d0")


def ok(argv: Sequence[str] = (), stdout: str = "") -> CmdResult:
    return CmdResult(argv=list(argv), returncode=0, stdout=stdout, stderr="")


def failed(argv: Sequence[str] = (), stderr: str = "boom") -> CmdResult:
    return CmdResult(argv=list(argv), returncode=1, stdout="", stderr=stderr)


class FakeRunner:
    """Scripted stand-in for run_cmd; the last matching prefix wins."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self._handlers: List[tuple] = []

    def on(self, prefix: Sequence[str], stdout: str = "", returncode: int = 0, fn: Optional[Callable] = None) -> None:
        self._handlers.append((list(prefix), stdout, returncode, fn))

    def called(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if c[: len(prefix)] == list(prefix)]

    def __call__(self, argv, *, check: bool = True, **kwargs) -> CmdResult:
        argv = list(argv)
        self.calls.append(argv)
        result = ok(argv)
        for prefix, stdout, returncode, fn in reversed(self._handlers):
            if argv[: len(prefix)] == prefix:
                if fn is not None:
                    result = fn(argv)
                else:
                    result = CmdResult(argv=argv, returncode=returncode, stdout=stdout, stderr="")
                break
        if check and result.returncode != 0:
            raise CommandError(result)
        return result


def zpool_verbose(pool: str, disks: Sequence[str], slice_: str = "s1") -> str:
    lines = [f"{pool}\t99.5G\t1.2G\t98.3G\t-\t-\t0%\t1%\t1.00x\tONLINE\t-", "\tmirror-0\t99.5G\t1.2G\t98.3G"]
    lines += [f"\t/dev/dsk/{d}{slice_}\t-\t-\t-\t-\t-\t-\t-\t-\tONLINE" for d in disks]
    return "\n".join(lines) + "\n"


@pytest.fixture()
def runner() -> FakeRunner:
    r = FakeRunner()
    r.on(["zpool", "list", "-Ho", "name,bootfs"], stdout=f"{POOL}\t{BOOTFS}\n")
    r.on(["zpool", "list", "-Ho", "name"], stdout=f"{POOL}\n")
    r.on(["zpool", "list", "-Ho", "bootfs", POOL], stdout=f"{BOOTFS}\n")
    r.on(["zpool", "list", "-Ho", "bootsize", POOL], stdout="-\n")
    r.on(["zpool", "list", "-vHP", POOL], stdout=zpool_verbose(POOL, DISKS))
    r.on(["fstyp"], returncode=1)
    return r


@pytest.fixture()
def paths(tmp_path: Path) -> Paths:
    root = tmp_path / "root"
    staging = tmp_path / "staging"
    root.mkdir()
    staging.mkdir()
    return Paths(
        alt_root=str(root),
        config_default=str(tmp_path / "bootpool.yaml"),
        staging_dir=str(staging),
        ipxe_tree=str(tmp_path / "usbkey-contents"),
        hn_bootpool_support=str(tmp_path / "bootpool.js"),
        usb_key_lib=str(tmp_path / "usb-key.sh"),
        sdc_config_lib=str(tmp_path / "config.sh"),
    )


@pytest.fixture()
def settings() -> Settings:
    return Settings(raw=default_config())


@pytest.fixture()
def make_session(runner: FakeRunner, paths: Paths, settings: Settings):
    def _make(role: Role = Role.STANDALONE, **kwargs) -> Session:
        kwargs.setdefault("running_stamp", "20240101T000000Z")
        kwargs.setdefault("settings", settings)
        return Session(role=role, runner=runner, paths=paths, **kwargs)

    return _make


@pytest.fixture()
def session(make_session) -> Session:
    return make_session()


@pytest.fixture()
def bootfs(paths: Paths) -> BootFS:
    path = Path(paths.alt_root) / BOOTFS
    path.mkdir(parents=True)
    return BootFS(name=BOOTFS, path=path)


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def make_platform_tree(path: Path, stamp: str) -> Path:
    write(path / "etc/version/platform", stamp + "\n")
    write(path / "i86pc/kernel/amd64/unix", f"unix {stamp}")
    write(path / "i86pc/amd64/boot_archive", f"archive {stamp}")
    return path


def make_boot_tree(path: Path, stamp: str) -> Path:
    write(path / "loader.conf", 'console="text"\n')
    write(path / "pmbr", "pmbr")
    write(path / "gptzfsboot", f"gptzfsboot {stamp}")
    return path


def add_image(root: Path, stamp: str, *, boot: bool = True) -> None:
    make_platform_tree(root / f"platform-{stamp}", stamp)
    if boot:
        make_boot_tree(root / f"boot-{stamp}", stamp)


def set_active(root: Path, platform: str, boot: Optional[str] = None) -> None:
    for name, stamp in (("platform", platform), ("boot", boot)):
        if stamp is None:
            continue
        link = root / name
        if link.is_symlink():
            link.unlink()
        os.symlink(f"./{name}-{stamp}", link)
    if boot is not None:
        write(root / "etc/version/boot", boot + "\n")


def make_media_tree(path: Path, stamp: str) -> Path:
    """Layout of mounted install media (ISO or USB key)."""

    make_platform_tree(path / "platform", stamp)
    make_boot_tree(path / "boot", stamp)
    write(path / "etc/version/boot", stamp + "\n")
    return path


def copy_into_mountpoint(src: Path) -> Callable[[List[str]], CmdResult]:
    """Runner handler for `mount ... <mnt>` that populates the mountpoint."""

    def _mount(argv: List[str]) -> CmdResult:
        copy_tree(src, argv[-1])
        return ok(argv)

    return _mount


def make_tgz(path: Path, stamp: str) -> Path:
    """gzip'd tarball expanding to platform-<stamp>/, like release tarballs."""

    with tarfile.open(path, "w:gz") as tar:
        for rel, text in (
            ("etc/version/platform", stamp + "\n"),
            ("i86pc/kernel/amd64/unix", "unix"),
            ("i86pc/amd64/boot_archive", "archive"),
        ):
            data = text.encode()
            info = tarfile.TarInfo(f"platform-{stamp}/{rel}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


def make_fake_iso(path: Path) -> Path:
    data = bytearray(0x8010)
    data[0x8001:0x8006] = b"CD001"
    path.write_bytes(bytes(data))
    return path
