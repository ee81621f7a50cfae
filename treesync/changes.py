"""Comparison of two ordered file listings into add/modify/delete changes."""

from __future__ import annotations

import dataclasses
import enum
import os
from dataclasses import dataclass, field
from stat import S_ISDIR
from typing import Callable, Iterable, Iterator, Optional

COMPARE_CHUNK_SIZE = 32 * 1024


class ChangeKind(enum.IntEnum):
    """The kind of modification a change makes."""

    ADD = 0
    MODIFY = 1
    DELETE = 2

    def __str__(self) -> str:
        return self.name.lower()


class DiffType(enum.IntEnum):
    """How thoroughly two entries with the same path are compared."""

    NONE = 0
    METADATA = 1
    CONTENT = 2


@dataclass
class Stat:
    """Metadata of one file; ``mode`` holds POSIX ``st_mode`` bits."""

    path: str = ""
    mode: int = 0
    uid: int = 0
    gid: int = 0
    size: int = 0
    mod_time: int = 0
    linkname: str = ""
    devmajor: int = 0
    devminor: int = 0
    xattrs: dict[str, bytes] = field(default_factory=dict)

    def is_dir(self) -> bool:
        return S_ISDIR(self.mode)

    def clone(self) -> "Stat":
        return dataclasses.replace(self, xattrs=dict(self.xattrs))


@dataclass
class CurrentPath:
    """A path produced by a walker together with its metadata."""

    path: str
    stat: Stat


ChangeFunc = Callable[[ChangeKind, str, Optional[Stat], Optional[BaseException]], None]
FilterFunc = Callable[[str, Stat], bool]


def compare_path(p1: str, p2: str) -> int:
    """Order two paths component by component; returns -1, 0 or 1."""
    a = p1.split(os.sep)
    b = p2.split(os.sep)
    return (a > b) - (a < b)


def path_change(
    lower: Optional[CurrentPath], upper: Optional[CurrentPath]
) -> tuple[ChangeKind, str]:
    """Decide which change turns ``lower`` into ``upper``."""
    if lower is None:
        if upper is None:
            raise ValueError("cannot compare nil paths")
        return ChangeKind.ADD, upper.path
    if upper is None:
        return ChangeKind.DELETE, lower.path
    order = compare_path(lower.path, upper.path)
    if order < 0:
        return ChangeKind.DELETE, lower.path
    if order > 0:
        return ChangeKind.ADD, upper.path
    return ChangeKind.MODIFY, upper.path


def same_file(lower: CurrentPath, upper: CurrentPath, differ: DiffType) -> bool:
    """Whether two entries at the same path are considered unchanged."""
    if differ == DiffType.NONE:
        return False
    if not lower.stat.is_dir():
        if lower.stat.size != upper.stat.size:
            return False
        if lower.stat.mod_time != upper.stat.mod_time:
            return False
    if not compare_stat(lower.stat, upper.stat) or differ == DiffType.METADATA:
        return compare_stat(lower.stat, upper.stat)
    return compare_file_content(lower.path, upper.path)


def compare_file_content(p1: str, p2: str) -> bool:
    """Compare the bytes of two files chunk by chunk."""
    with open(p1, "rb") as f1, open(p2, "rb") as f2:
        while True:
            b1 = f1.read(COMPARE_CHUNK_SIZE)
            b2 = f2.read(COMPARE_CHUNK_SIZE)
            if b1 != b2:
                return False
            if not b1:
                return True


def compare_stat(a: Stat, b: Stat) -> bool:
    """Whether two stats agree on mode, ownership, device numbers and link."""
    return (
        a.mode == b.mode
        and a.uid == b.uid
        and a.gid == b.gid
        and a.devmajor == b.devmajor
        and a.devminor == b.devminor
        and a.linkname == b.linkname
    )


def double_walk_diff(
    change_fn: ChangeFunc,
    a: Iterable[CurrentPath],
    b: Iterable[CurrentPath],
    filter_fn: Optional[FilterFunc],
    differ: DiffType,
) -> None:
    """Merge two path-ordered listings and report each change to ``change_fn``.

    Entries below a deleted directory are not reported separately.
    """
    it1: Optional[Iterator[CurrentPath]] = iter(a)
    it2: Optional[Iterator[CurrentPath]] = iter(b)
    f1: Optional[CurrentPath] = None
    f2: Optional[CurrentPath] = None
    rmdir = ""

    while it1 is not None or it2 is not None:
        if f1 is None and it1 is not None:
            f1 = next(it1, None)
            if f1 is None:
                it1 = None
        if f2 is None and it2 is not None:
            f2 = next(it2, None)
            if f2 is None:
                it2 = None
        if f1 is None and f2 is None:
            continue

        f2copy: Optional[CurrentPath] = None
        if f2 is not None:
            stat_copy = f2.stat.clone()
            if filter_fn is not None:
                filter_fn(f2.path, stat_copy)
            f2copy = CurrentPath(f2.path, stat_copy)

        kind, path = path_change(f1, f2copy)
        reported: Optional[Stat] = None
        if kind == ChangeKind.ADD:
            rmdir = ""
            reported = f2.stat
            f2 = None
        elif kind == ChangeKind.DELETE:
            if rmdir and f1.path.startswith(rmdir):
                f1 = None
                continue
            if not rmdir and f1.stat.is_dir():
                rmdir = f1.path + os.sep
            elif rmdir:
                rmdir = ""
            f1 = None
        else:
            same = same_file(f1, f2copy, differ)
            if f1.stat.is_dir() and not f2copy.stat.is_dir():
                rmdir = f1.path + os.sep
            elif rmdir:
                rmdir = ""
            reported = f2.stat
            f1 = None
            f2 = None
            if same:
                continue
        change_fn(kind, path, reported, None)