from __future__ import annotations

import os
from pathlib import Path

import pytest

from bootpool.enable import enable
from bootpool.errors import CorruptionError, FatalError, UserError
from bootpool.lib import net
from bootpool.roles import update_compute_node
from bootpool.roles.compute_node import loader_conf_lines
from bootpool.roles.head_node import rewrite_loader_conf, uppercase_menu_entries
from bootpool.session import Role

from conftest import BOOTFS, POOL, add_image, make_platform_tree, write

FLEET_PI = "20240201T000000Z"
RUNNING_PI = "20240101T000000Z"


def _boot_file(stamp: str) -> str:
    return f"http://10.99.99.7/os/{stamp}/platform/i86pc/kernel/amd64/unix"


def _not_yet_bootable(runner) -> None:
    runner.on(["zpool", "list", "-Ho", "bootfs", POOL], stdout="-\n")
    runner.on(["zfs", "list", "-H", BOOTFS], returncode=1)


class FakeFleet:
    def __init__(self, default):
        self.default = default

    def default_platform(self):
        return self.default


@pytest.fixture()
def ipxe_tree(paths) -> Path:
    root = Path(paths.ipxe_tree)
    write(root / "etc/version/boot", "20231001T000000Z\n")
    write(root / "etc/version/ipxe", "20231002T000000Z\n")
    write(root / "boot/loader.conf.tmpl", 'autoboot_delay="2"\n')
    write(root / "boot/pmbr", "pmbr")
    write(root / "boot/gptzfsboot", "gptzfsboot")
    write(root / "boot/ipxe.lkrn", "ipxe")
    return root


@pytest.fixture()
def downloads(monkeypatch):
    fetched = []

    def fake_download(url, dest):
        if "/missing/" in url:
            raise net.FetchError(f"Download of {url} failed: 404")
        fetched.append(url)
        Path(dest).write_text(url)

    monkeypatch.setattr(net, "download", fake_download)
    return fetched


@pytest.fixture()
def cn_session(make_session, runner, ipxe_tree, downloads):
    _not_yet_bootable(runner)
    return make_session(
        role=Role.COMPUTE_NODE,
        running_stamp=RUNNING_PI,
        fleet=FakeFleet(FLEET_PI),
        bootparams={"boot-file": _boot_file(RUNNING_PI)},
    )


# -- compute node -------------------------------------------------------------


def test_compute_node_enable_prefers_fleet_default(cn_session, runner, bootfs, downloads) -> None:
    assert enable(cn_session, POOL) == FLEET_PI

    root = bootfs.path
    assert os.readlink(root / "platform") == "./platform-ipxe"
    assert os.readlink(root / "boot") == "./boot-ipxe"
    assert (root / "platform-ipxe/etc/version/platform").read_text().strip() == "ipxe"
    assert "iPXE boots" in (root / "platform-ipxe/README").read_text()
    assert (root / "boot-ipxe/ipxeversion").read_text().strip() == "20231002T000000Z"
    assert (root / "etc/version/boot").read_text().strip() == "20231001T000000Z"

    backup = root / f"platform-{FLEET_PI}"
    assert (backup / "etc/version/platform").read_text().strip() == FLEET_PI
    assert (backup / "i86pc/kernel/amd64/unix").read_text() == _boot_file(FLEET_PI)
    assert os.readlink(backup / "platform") == "."
    assert f"http://10.99.99.7/os/{FLEET_PI}/platform/i86pc/amd64/boot_archive.hash" in downloads

    conf = (root / "boot-ipxe/loader.conf").read_text().splitlines()
    assert conf[0] == 'autoboot_delay="2"'
    assert f"platform-version={FLEET_PI}" in conf
    assert 'fstype="ufs"' in conf
    assert runner.called("installboot")


def test_compute_node_enable_falls_back_to_running_image(cn_session, bootfs) -> None:
    cn_session.fleet = FakeFleet(None)
    assert enable(cn_session, POOL) == RUNNING_PI
    assert (bootfs.path / f"platform-{RUNNING_PI}").is_dir()


def test_compute_node_enable_without_any_image_is_fatal(cn_session, bootfs) -> None:
    write(bootfs.path / "precious", "data")
    cn_session.fleet = FakeFleet(None)
    cn_session.bootparams["boot-file"] = "http://10.99.99.7/missing/20990101T000000Z/unix"
    with pytest.raises(FatalError, match="No PIs available") as excinfo:
        enable(cn_session, POOL)
    assert excinfo.value.exit_code == 2
    assert not (bootfs.path / "precious").exists()


def test_loader_conf_lines_point_at_backup() -> None:
    lines = loader_conf_lines(FLEET_PI)
    assert f'bootfile="/platform-{FLEET_PI}/platform/i86pc/kernel/amd64/unix"' in lines
    assert f'boot_archive_name="/platform-{FLEET_PI}/i86pc/amd64/boot_archive"' in lines
    assert 'ipxe="true"' in lines


def test_update_with_nothing_new(cn_session, runner, bootfs) -> None:
    cn_session.running_stamp = FLEET_PI
    enable(cn_session, POOL)
    writes = len(runner.called("installboot"))

    update_compute_node(cn_session)

    assert len(runner.called("installboot")) == writes


def test_update_replaces_backup_image(cn_session, runner, bootfs) -> None:
    enable(cn_session, POOL)
    newer = "20240301T000000Z"
    cn_session.running_stamp = newer
    cn_session.bootparams["boot-file"] = _boot_file(newer)

    update_compute_node(cn_session)

    root = bootfs.path
    assert (root / f"platform-{newer}").is_dir()
    assert not (root / f"platform-{FLEET_PI}").exists()
    conf = (root / "boot-ipxe/loader.conf").read_text()
    assert f"platform-version={newer}" in conf
    assert FLEET_PI not in conf


def test_update_refreshes_ipxe(cn_session, runner, bootfs, ipxe_tree) -> None:
    cn_session.running_stamp = FLEET_PI
    enable(cn_session, POOL)
    writes = len(runner.called("installboot"))
    write(ipxe_tree / "etc/version/ipxe", "20240401T000000Z\n")
    write(ipxe_tree / "boot/ipxe.lkrn", "new ipxe")

    update_compute_node(cn_session)

    root = bootfs.path
    assert (root / "etc/version/ipxe").read_text().strip() == "20240401T000000Z"
    assert (root / "boot-ipxe/ipxe.lkrn").read_text() == "new ipxe"
    assert len(runner.called("installboot")) == writes + 3


def test_update_needs_exactly_one_backup(cn_session, bootfs) -> None:
    with pytest.raises(CorruptionError, match="No platform-STAMP"):
        update_compute_node(cn_session)
    add_image(bootfs.path, RUNNING_PI, boot=False)
    add_image(bootfs.path, FLEET_PI, boot=False)
    with pytest.raises(CorruptionError, match="Multiple platform-STAMP"):
        update_compute_node(cn_session)


def test_update_only_on_compute_nodes(session) -> None:
    with pytest.raises(UserError, match="Compute Node"):
        update_compute_node(session)


# -- head node ----------------------------------------------------------------


@pytest.fixture()
def usb_key(tmp_path, paths, runner) -> Path:
    key = tmp_path / "usbkey"
    write(key / "boot/loader.conf", 'console="text"\ntriton_installer="1"\n')
    write(key / "boot/pmbr", "pmbr")
    write(key / "boot/gptzfsboot", "gptzfsboot")
    make_platform_tree(key / "os/20240101t000000z/platform", RUNNING_PI)
    write(key / "private/root.password", "x")
    write(Path(paths.hn_bootpool_support), "")

    runner.on(["sdc-usbkey", "status"], stdout="unmounted\n")
    runner.on(["sdc-usbkey", "status", "-j"], stdout='{"version": 2}\n')
    runner.on(["sdc-usbkey", "mount"], stdout=f"{key}\n")
    return key


@pytest.fixture()
def hn_session(make_session, runner):
    _not_yet_bootable(runner)
    return make_session(role=Role.HEAD_NODE, bootparams={"headnode": "true", "triton_bootpool": "zones"})


def test_head_node_clones_usb_key(hn_session, runner, bootfs, usb_key, capsys) -> None:
    write(bootfs.path / "leftover", "old")

    assert enable(hn_session, POOL) == POOL

    root = bootfs.path
    assert not (root / "leftover").exists()
    assert (root / "private/root.password").is_file()
    conf = (root / "boot/loader.conf").read_text().splitlines()
    assert f'triton_bootpool="{POOL}"' in conf
    assert 'triton_installer="1"' not in conf
    assert 'fstype="ufs"' in conf
    assert (root / "os/20240101T000000Z/platform").is_dir()
    assert runner.called("sdc-usbkey", "unmount")
    assert runner.called("installboot")
    assert "virtual bootable USB key" in capsys.readouterr().out


def test_head_node_refuses_old_usb_key(hn_session, runner, bootfs, usb_key) -> None:
    runner.on(["sdc-usbkey", "status", "-j"], stdout='{"version": 1}\n')
    write(bootfs.path / "leftover", "old")

    with pytest.raises(UserError, match="Version 2"):
        enable(hn_session, POOL)

    assert (bootfs.path / "leftover").is_file()
    assert runner.called("sdc-usbkey", "unmount")


def test_head_node_refuses_its_boot_pool(make_session, runner, bootfs, usb_key) -> None:
    _not_yet_bootable(runner)
    session = make_session(role=Role.HEAD_NODE, bootparams={"headnode": "true", "triton_bootpool": POOL})
    with pytest.raises(UserError, match="we just booted it"):
        enable(session, POOL)
    assert not runner.called("sdc-usbkey", "mount")


def test_rewrite_loader_conf(tmp_path) -> None:
    conf = write(tmp_path / "loader.conf", 'triton_bootpool="old"\nos_console="ttyb"\n')
    rewrite_loader_conf(conf, "zones")
    rewrite_loader_conf(conf, "zones")
    assert conf.read_text().splitlines() == ['os_console="ttyb"', 'fstype="ufs"', 'triton_bootpool="zones"']


def test_uppercase_menu_entries(tmp_path) -> None:
    (tmp_path / "os" / "20240101t000000z").mkdir(parents=True)
    (tmp_path / "os" / "20240201T000000Z").mkdir()
    uppercase_menu_entries(tmp_path / "os")
    assert sorted(p.name for p in (tmp_path / "os").iterdir()) == ["20240101T000000Z", "20240201T000000Z"]
