"""Applying file metadata and creating special files on disk."""

from __future__ import annotations

import os
from stat import S_IFBLK, S_IFCHR, S_IFIFO, S_IMODE, S_ISCHR, S_ISFIFO, S_ISLNK

from treesync.changes import Stat


def chtimes(path: str, mtime_ns: int) -> None:
    """Set access and modification time without following symlinks."""
    if os.utime in os.supports_follow_symlinks:
        os.utime(path, ns=(mtime_ns, mtime_ns), follow_symlinks=False)
        return
    if S_ISLNK(os.lstat(path).st_mode):
        return
    os.utime(path, ns=(mtime_ns, mtime_ns))


def rewrite_metadata(path: str, stat: Stat) -> None:
    """Apply xattrs, ownership, permissions and mtime from ``stat``."""
    setxattr = getattr(os, "setxattr", None)
    if setxattr is not None:
        for key, value in stat.xattrs.items():
            try:
                setxattr(path, key, value)
            except OSError:
                pass
    os.lchown(path, stat.uid, stat.gid)
    if not S_ISLNK(stat.mode):
        os.chmod(path, S_IMODE(stat.mode))
    chtimes(path, stat.mod_time)


def mkdev(major: int, minor: int) -> int:
    """Combine major and minor numbers into a device number."""
    return os.makedev(major, minor)


def create_special_file(path: str, stat: Stat) -> None:
    """Create a character device, block device or FIFO described by ``stat``."""
    mode = S_IMODE(stat.mode)
    if S_ISCHR(stat.mode):
        mode |= S_IFCHR
    elif S_ISFIFO(stat.mode):
        mode |= S_IFIFO
    else:
        mode |= S_IFBLK
    os.mknod(path, mode, mkdev(stat.devmajor, stat.devminor))


def rename_file(src: str, dst: str) -> None:
    """Rename ``src`` to ``dst``, replacing ``dst``."""
    try:
        os.rename(src, dst)
    except OSError as exc:
        raise type(exc)(exc.errno, f"failed to rename {src} to {dst}") from exc