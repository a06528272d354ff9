# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import glob
import os
import shutil
from logging import getLogger
from pathlib import Path
from typing import Iterable, Set

from attrs import frozen

logger = getLogger(__name__)


def sp(path: Path) -> str:
    """Shorten path to parent and filename"""
    path_list = str(path).split(os.sep)
    return "." + os.sep + os.sep.join(path_list[-2:])


@frozen
class FileEntry:
    """Snapshot of a file or directory taken during a tree walk"""

    path: Path
    mtime: float
    size: int
    is_dir: bool

    @classmethod
    def from_path(cls, path: Path) -> "FileEntry":
        st = path.stat()
        return cls(
            path=path,
            mtime=st.st_mtime,
            size=st.st_size,
            is_dir=path.is_dir(),
        )

    @classmethod
    def from_dir_entry(cls, entry: os.DirEntry) -> "FileEntry":
        st = entry.stat()
        return cls(
            path=Path(entry.path),
            mtime=st.st_mtime,
            size=st.st_size,
            is_dir=entry.is_dir(),
        )


def suffix(path: Path) -> str:
    """File suffix without the leading dot, "" if there is none"""
    return path.suffix[1:]


def trunk(path: Path) -> Path:
    """Path without its suffix, e.g. /music/abc.mp3 -> /music/abc"""
    return path.with_suffix("") if path.suffix else path


def rel_copy(src_base: Path, path: Path, dst_base: Path) -> Path:
    """Re-root path from src_base onto dst_base.

    Raises:
        ValueError: path is not below src_base.
    """
    return dst_base / path.relative_to(src_base)


PART_SUFFIX = ".part"


def part_path(path: Path) -> Path:
    """Hidden sibling of path that a file is written to before it is complete"""
    return path.with_name("." + path.name + PART_SUFFIX)


def is_part(name: str) -> bool:
    return name.startswith(".") and name.endswith(PART_SUFFIX)


def has_counterpart(src_dir: Path, name: str) -> bool:
    """True if src_dir holds name or a file with the same trunk, any suffix"""
    if (src_dir / name).is_file():
        return True
    pattern = glob.escape(str(src_dir / trunk(Path(name)))) + ".*"
    return bool(glob.glob(pattern))


def remove_obsolete(src_dir: Path, tgt_dir: Path, keep: Iterable[str]) -> int:
    """Delete entries of tgt_dir that have no counterpart in src_dir.

    Directories need a directory of the same name on the source side, files
    need a source file with the same trunk (the suffix may differ since
    the target file could be a converted one). Names in keep are never
    touched, neither are files that are still being written. Returns the
    number of deleted entries.
    """
    keep_names: Set[str] = set(keep)
    deleted = 0
    for tobj in tgt_dir.iterdir():
        tobj_name = tobj.name
        if tobj_name in keep_names or is_part(tobj_name):
            continue
        if tobj.is_dir() and not tobj.is_symlink():
            if not (src_dir / tobj_name).is_dir():
                logger.info("    Cleaning dir %s", sp(tobj))
                shutil.rmtree(tobj)
                deleted += 1
        elif tobj.is_file():
            if not has_counterpart(src_dir, tobj_name):
                logger.info("    Cleaning file %s", sp(tobj))
                tobj.unlink()
                deleted += 1
        else:
            logger.debug("    Not a regular file, keeping %s", sp(tobj))
    return deleted


def clear_dir(path: Path, keep: Iterable[str]) -> None:
    """Delete all entries of directory path except the files named in keep"""
    keep_names = set(keep)
    for tobj in path.iterdir():
        if tobj.name in keep_names and not tobj.is_dir():
            continue
        if tobj.is_dir() and not tobj.is_symlink():
            shutil.rmtree(tobj)
        else:
            tobj.unlink()


def make_dir(path: Path) -> None:
    """Create directory path and missing parents, replacing files in the way

    Several threads may create the same directory concurrently.
    """
    missing = []
    p = path
    while not p.is_dir():
        missing.append(p)
        p = p.parent
    for p in reversed(missing):
        if p.exists() or p.is_symlink():
            logger.debug("  Replacing with dir %s", sp(p))
            try:
                p.unlink()
            except (FileNotFoundError, IsADirectoryError):
                pass
        p.mkdir(exist_ok=True)


def remove_if_empty(path: Path) -> bool:
    """Remove file (or directory) at path if it is empty"""
    try:
        if path.is_dir():
            if any(path.iterdir()):
                return False
            path.rmdir()
            return True
        if path.stat().st_size == 0:
            path.unlink()
            return True
    except FileNotFoundError:
        pass
    return False
