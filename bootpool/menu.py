"""Boot menu generation.

The os/ tree lets the loader offer platform images other than the default.
It holds:

- os/pi.rc: loader (Forth) settings describing up to three pages of
  alternate images, newest first, excluding the default one.
- os/<stamp>/platform: symlink to ../../platform-<stamp>. With "platform"
  as the last path component the kernel does not look for a boot archive in
  the default platform/ directory.

Everything here is derived from the installed platform-* directories and the
`platform` pointer, so the tree is removed and rebuilt on every change.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .layout import Layout

logger = logging.getLogger(__name__)

MAX_IMAGES = 15
PER_PAGE = 5
# The loader allows eight menu sets; main menu and friends use the first ones.
FIRST_PAGE_MENUSET = 3

RC_NAME = "pi.rc"

_RC_PREAMBLE = """\\
\\ Generated by bootpool.
\\

\\ Assume mainmenu_options=4 for now.

set mainmenu_caption[5]="Alternate [P]latform Images..."
set mainmenu_command[5]="3 goto_menu"
set mainmenu_keycode[5]=112
set mainansi_caption[5]="Alternate ^[1mP^[mlatform Images..."

\\ Will be reset by init_pi (see below and in menu-commands.4th).
set pimenu_optionstext="Platform Image: (UNINIT)"
\\ For feeding init_pi.
set pitext="Platform Image: "

"""


@dataclass(frozen=True)
class MenuPlan:
    default: str
    stamps: List[str]

    @property
    def pages(self) -> List[List[str]]:
        return [self.stamps[i : i + PER_PAGE] for i in range(0, len(self.stamps), PER_PAGE)]


def plan_menu(installed: List[str], default: str) -> Optional[MenuPlan]:
    """Newest MAX_IMAGES non-default stamps, or None when no menu is needed."""

    kept = sorted((s for s in set(installed) if s != default), reverse=True)[:MAX_IMAGES]
    if not kept:
        return None
    return MenuPlan(default=default, stamps=kept)


def _page_header(pagenum: int, totalpages: int, default: str) -> str:
    # Menu sets are numbered from FIRST_PAGE_MENUSET; the last page wraps.
    nextpage = FIRST_PAGE_MENUSET if pagenum == totalpages else pagenum + FIRST_PAGE_MENUSET
    menuset = pagenum + FIRST_PAGE_MENUSET - 1
    prefix = f"pi{pagenum}menu_"
    ansi = f"pi{pagenum}ansi_caption"
    return (
        f'set menuset_name{menuset}="pi{pagenum}"\n'
        f'set {prefix}init[1]="init_pi"\n'
        "\n"
        f'set {prefix}caption[1]="Back to Main Menu [Backspace]"\n'
        f'set {prefix}command[1]="pi_draw_screen drop 1 goto_menu"\n'
        f"set {prefix}keycode[1]=8\n"
        f'set {ansi}[1]="Back to Main Menu ^[1m[Backspace]^[m"\n'
        "\n"
        f'set {prefix}caption[2]="[P]age: {pagenum} of {totalpages}"\n'
        f'set {prefix}command[2]="{nextpage} goto_menu"\n'
        f"set {prefix}keycode[2]=112\n"
        f'set {ansi}[2]="^[1mP^[mage: {pagenum} of {totalpages}"\n'
        "\n"
        f"set {prefix}options=3\n"
        f'set {prefix}optionstext="${{pimenu_optionstext}}"\n'
        "\n"
        f'set {prefix}caption[3]="[D]efault ({default})"\n'
        f'set {prefix}command[3]="s\\" set bootpi=default\\" evaluate pi_unload pi_draw_screen"\n'
        f"set {prefix}keycode[3]=100\n"
        f'set {ansi}[3]="^[1mD^[mefault ({default})"\n'
        "\n"
    )


def _entry(pagenum: int, itemnum: int, stamp: str) -> str:
    prefix = f"pi{pagenum}menu_"
    n = itemnum + 3
    command = (
        f's\\" set bootpi={stamp}\\" evaluate '
        f's\\" load /os/{stamp}/platform/i86pc/kernel/amd64/unix\\" evaluate '
        f's\\" load -t rootfs /os/{stamp}/platform/i86pc/amd64/boot_archive\\" evaluate '
        "pi_draw_screen"
    )
    return (
        "\n"
        f'set {prefix}caption[{n}]="{stamp}"\n'
        f'set {prefix}command[{n}]="pi_unload {command}"\n'
        f'set pi{pagenum}ansi_caption[{n}]="{stamp}"\n'
        "\n"
    )


def render_rc(plan: MenuPlan) -> str:
    pages = plan.pages
    parts = [_RC_PREAMBLE]
    for pagenum, page in enumerate(pages, start=1):
        parts.append(_page_header(pagenum, len(pages), plan.default))
        for itemnum, stamp in enumerate(page, start=1):
            parts.append(_entry(pagenum, itemnum, stamp))
    return "".join(parts)


def regenerate(root: Path) -> Optional[MenuPlan]:
    """Rebuild os/ under a bootable filesystem from current inventory."""

    layout = Layout(root)
    menu_dir = layout.menu_dir

    logger.info("Removing old ./%s/ directory", menu_dir.name)
    if menu_dir.is_symlink() or menu_dir.is_file():
        menu_dir.unlink()
    elif menu_dir.exists():
        shutil.rmtree(menu_dir)

    default = layout.active_platform_stamp()
    if default is None:
        logger.info("No default platform image on %s; no menu generated", str(root))
        return None

    plan = plan_menu(layout.installed_stamps(), default)
    if plan is None:
        logger.info("No need for the ./%s/ directory, only one PI", menu_dir.name)
        return None

    logger.info("Creating new ./%s/ directory", menu_dir.name)
    menu_dir.mkdir()
    for stamp in plan.stamps:
        logger.info("Including Platform Image %s", stamp)
        entry = menu_dir / stamp
        entry.mkdir()
        os.symlink(f"../../platform-{stamp}", entry / "platform")

    (menu_dir / RC_NAME).write_text(render_rc(plan), encoding="utf-8")
    return plan
