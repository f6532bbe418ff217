# fsutil.py
# Filesystem primitives shared by the runtimes, the store and the plan runner.
from __future__ import annotations

import os
import shutil
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List


def to_posix(rel: str) -> str:
    return rel.replace("\\", "/")


def inner_path(path: str) -> str:
    """Sandbox path ("/target", "./target") -> path relative to the rootfs."""
    p = to_posix(path).strip()
    while p.startswith("./"):
        p = p[2:]
    p = p.lstrip("/").rstrip("/")
    return "" if p == "." else p


def matches_any_glob(rel: str, globs: Iterable[str]) -> bool:
    """
    True when `rel` (posix, relative) is matched by a glob, or sits under a
    directory a glob names ("target" and "target/**" both cover "target/x").
    """
    rel = to_posix(rel)
    for g in globs:
        g = to_posix(g).strip()
        if not g:
            continue
        base = g[:-3] if g.endswith("/**") else g.rstrip("/")
        if rel == base or rel.startswith(base + "/"):
            return True
        if fnmatch(rel, g):
            return True
    return False


def remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif os.path.lexists(path):
        path.unlink()


def overlay_tree(src: Path, dest: Path) -> None:
    """
    Merge `src` into `dest`. On a path conflict `src` wins, including a
    file replacing a directory and the reverse.
    """
    dest.mkdir(parents=True, exist_ok=True)
    for entry in sorted(os.scandir(src), key=lambda e: e.name):
        target = dest / entry.name
        if entry.is_dir(follow_symlinks=False):
            if os.path.lexists(target) and (target.is_symlink() or not target.is_dir()):
                remove_path(target)
            overlay_tree(Path(entry.path), target)
            shutil.copystat(entry.path, target, follow_symlinks=False)
        else:
            if os.path.lexists(target):
                remove_path(target)
            shutil.copy2(entry.path, target, follow_symlinks=False)


def copy_path(src: Path, dest: Path) -> None:
    """Copy a file, symlink or directory to `dest`, keeping symlinks as links."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dest, follow_symlinks=False)


def missing_paths(root: Path, paths: Iterable[str]) -> List[str]:
    return [p for p in paths if not os.path.lexists(root / inner_path(p))]


def export_tree(root: Path, paths: Iterable[str], dest: Path) -> None:
    """
    Copy each listed path from `root` into `dest` at the same relative
    location. Callers check existence first (see missing_paths).
    """
    dest.mkdir(parents=True, exist_ok=True)
    for p in paths:
        rel = inner_path(p)
        if not rel:
            overlay_tree(root, dest)
            continue
        copy_path(root / rel, dest / rel)
