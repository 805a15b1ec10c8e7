from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def copy_tree(src: str | Path, dst: str | Path) -> None:
    """Copy the contents of src into dst, preserving symlinks as links."""

    s = Path(src)
    d = Path(dst)
    if not s.is_dir():
        raise FileNotFoundError(str(src))

    d.mkdir(parents=True, exist_ok=True)
    # os.walk does not descend into symlinked directories; those are
    # reported in dirnames and recreated as links below.
    for dirpath, dirnames, filenames in os.walk(s):
        here = Path(dirpath)
        out_dir = d / here.relative_to(s)
        out_dir.mkdir(parents=True, exist_ok=True)
        for name in sorted(dirnames + filenames):
            item = here / name
            out = out_dir / name
            if item.is_symlink():
                if out.is_symlink() or out.is_file():
                    out.unlink()
                os.symlink(os.readlink(item), out)
            elif item.is_dir():
                out.mkdir(exist_ok=True)
            else:
                if out.is_symlink():
                    out.unlink()
                shutil.copy2(item, out)


def wipe_dir(path: str | Path) -> None:
    """Remove everything under path but keep path itself (it may be a mountpoint)."""

    p = Path(path)
    for child in p.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
    logger.info("Cleared %s", str(p))


def replace_symlink(link: str | Path, target: str) -> None:
    """Point link at target with a single rename."""

    lp = Path(link)
    tmp = lp.with_name(f".{lp.name}.new")
    if tmp.is_symlink() or tmp.exists():
        tmp.unlink()
    os.symlink(target, tmp)
    os.replace(tmp, lp)
