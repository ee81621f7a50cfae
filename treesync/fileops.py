"""Directory creation, ownership, timestamps, hard links and rooted paths."""

from __future__ import annotations

import errno
import os
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from stat import S_ISDIR, S_ISLNK
from typing import Callable, Optional

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MAX_SYMLINKS = 255


@dataclass
class User:
    """Ownership to apply to a file."""

    uid: int = 0
    gid: int = 0
    sid: str = ""


Chowner = Callable[[Optional[User]], Optional[User]]


def _to_ns(tm: datetime) -> int:
    if tm.tzinfo is None:
        tm = tm.astimezone()
    return (tm - _EPOCH) // timedelta(microseconds=1) * 1000


def utimes(path: str, tm: Optional[datetime]) -> None:
    """Set both timestamps of ``path`` to ``tm``, not following symlinks."""
    if tm is None:
        return
    ns = _to_ns(tm)
    os.utime(path, ns=(ns, ns), follow_symlinks=False)


def chown(path: str, old: Optional[User], chowner: Optional[Chowner]) -> None:
    """Change ownership to whatever ``chowner`` maps ``old`` to."""
    if chowner is None:
        return
    user = chowner(old)
    if user is not None:
        os.lchown(path, user.uid, user.gid)


def mkdir_all(
    path: str,
    perm: int = 0o755,
    chowner: Optional[Chowner] = None,
    utime: Optional[datetime] = None,
) -> list[str]:
    """Create ``path`` and missing parents; return the directories created."""
    try:
        existing = os.stat(path)
    except OSError:
        existing = None
    if existing is not None:
        if S_ISDIR(existing.st_mode):
            return []
        raise NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), path)

    trimmed = path.rstrip(os.sep)
    j = trimmed.rfind(os.sep) + 1
    created: list[str] = []
    if j > 1:
        created = mkdir_all(path[: j - 1], perm, chowner, utime)

    try:
        if S_ISDIR(os.lstat(path).st_mode):
            return created
    except OSError:
        pass

    try:
        os.mkdir(path, perm)
    except OSError:
        try:
            is_dir = S_ISDIR(os.lstat(path).st_mode)
        except OSError:
            is_dir = False
        if is_dir:
            return created
        raise
    created.append(path)

    chown(path, None, chowner)
    utimes(path, utime)
    return created


def get_link_info(st: os.stat_result) -> tuple[int, bool]:
    """Return the inode and whether the entry is a hard-linked non-directory."""
    return st.st_ino, not S_ISDIR(st.st_mode) and st.st_nlink > 1


def get_link_source(name: str, st: os.stat_result, inodes: dict[int, str]) -> Optional[str]:
    """Return an earlier path sharing this inode, recording ``name`` if first."""
    inode, is_hardlink = get_link_info(st)
    if not is_hardlink:
        return None
    source = inodes.get(inode)
    if source is None:
        inodes[inode] = name
    return source


def root_path(root: str, path: str) -> str:
    """Resolve ``path`` inside ``root``, following symlinks without escaping it."""
    resolved: list[str] = []
    pending = deque(path.split(os.sep))
    links = 0
    while pending:
        part = pending.popleft()
        if part in ("", "."):
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = os.path.join(root, *resolved, part)
        try:
            info = os.lstat(candidate)
        except (FileNotFoundError, NotADirectoryError):
            resolved.append(part)
            continue
        if not S_ISLNK(info.st_mode):
            resolved.append(part)
            continue
        links += 1
        if links > _MAX_SYMLINKS:
            raise OSError(errno.ELOOP, "too many links", candidate)
        target = os.readlink(candidate)
        if os.path.isabs(target):
            resolved.clear()
        pending.extendleft(reversed(target.split(os.sep)))
    return os.path.join(root, *resolved)