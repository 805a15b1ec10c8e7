from __future__ import annotations

import pytest

from bootpool import main as cli
from bootpool.errors import FatalError
from bootpool.session import Role, detect_role

from conftest import add_image, set_active

OLD = "20240101T000000Z"
NEW = "20240201T000000Z"


@pytest.fixture()
def run_cli(monkeypatch, session):
    monkeypatch.setattr(cli, "configure_logging", lambda **kw: "")
    monkeypatch.setattr(cli, "require_global_zone", lambda: None)
    monkeypatch.setattr(cli, "open_session", lambda **kw: session)
    monkeypatch.setattr(type(session), "require_root", lambda self, what: None)
    return cli.main


def test_parser_aliases() -> None:
    p = cli.build_parser()
    assert p.parse_args(["assign", NEW]).func is cli.cmd_activate
    assert p.parse_args(["destroy", NEW, "tank"]).func is cli.cmd_remove
    args = p.parse_args(["-vv", "bootable", "-e", "-i", "latest", "tank"])
    assert args.verbose == 2
    assert (args.enable, args.source, args.pool) == (True, "latest", "tank")


def test_role_detection() -> None:
    assert detect_role({"smartos": "true"}) is Role.STANDALONE
    assert detect_role({"smartos": "true", "headnode": "true"}) is Role.HEAD_NODE
    assert detect_role({"boot-file": "http://x/unix"}) is Role.COMPUTE_NODE


def test_list_prints_table(run_cli, bootfs, capsys) -> None:
    add_image(bootfs.path, OLD)
    add_image(bootfs.path, NEW)
    set_active(bootfs.path, NEW, NEW)

    assert run_cli(["list"]) == 0

    out = capsys.readouterr().out.splitlines()
    assert out[0].split() == ["PI", "STAMP", "BOOTABLE", "FILESYSTEM", "BOOT", "IMAGE", "NOW", "NEXT"]
    assert out[1].split() == [OLD, "tank/boot", "available", "yes", "no"]
    assert out[2].split() == [NEW, "tank/boot", "next", "no", "yes"]


def test_list_without_header(run_cli, bootfs, capsys) -> None:
    add_image(bootfs.path, OLD)
    set_active(bootfs.path, OLD, OLD)
    assert run_cli(["list", "-H"]) == 0
    assert len(capsys.readouterr().out.splitlines()) == 1


def test_activate_and_remove(run_cli, bootfs) -> None:
    add_image(bootfs.path, OLD)
    add_image(bootfs.path, NEW)
    set_active(bootfs.path, OLD, OLD)

    assert run_cli(["activate", NEW]) == 0
    assert run_cli(["remove", OLD]) == 0
    assert not (bootfs.path / f"platform-{OLD}").exists()


def test_user_error_exit_code(run_cli, bootfs, capsys) -> None:
    assert run_cli(["activate", NEW]) == 1
    assert "ERROR:" in capsys.readouterr().err


def test_corruption_exit_code(run_cli, bootfs, capsys) -> None:
    add_image(bootfs.path, OLD)
    (bootfs.path / "platform").mkdir()
    assert run_cli(["list"]) == 3
    assert "POSSIBLE CORRUPTION" in capsys.readouterr().err


def test_fatal_exit_code(run_cli, monkeypatch, capsys) -> None:
    def boom(session, args):
        raise FatalError("disks on fire")

    monkeypatch.setattr(cli, "cmd_update", boom)
    assert run_cli(["update"]) == 2
    assert "disks on fire" in capsys.readouterr().err


def test_bootable_flag_conflicts(run_cli, capsys) -> None:
    assert run_cli(["bootable", "-d", "-r", "tank"]) == 1
    assert "Use only one of" in capsys.readouterr().err
    assert run_cli(["bootable", "-i", "latest", "tank"]) == 1


def test_role_restricted_commands(run_cli, session, capsys) -> None:
    session.role = Role.HEAD_NODE
    assert run_cli(["install", "latest"]) == 1
    assert "sdcadm platform" in capsys.readouterr().err
    session.role = Role.STANDALONE
    assert run_cli(["update"]) == 1


def test_failing_tool_is_reported(run_cli, runner, capsys) -> None:
    runner.on(["zpool", "list", "-Ho", "name,bootfs"], returncode=1)
    assert run_cli(["list", "-H"]) == 1
    assert "zpool list" in capsys.readouterr().err


def test_stray_os_error_is_reported(run_cli, monkeypatch, capsys) -> None:
    def boom(session, args):
        raise PermissionError(13, "Permission denied", "/tank/boot/platform")

    monkeypatch.setattr(cli, "cmd_update", boom)
    assert run_cli(["update"]) == 2
    assert "ERROR: [Errno 13] Permission denied" in capsys.readouterr().err
