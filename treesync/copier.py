"""Copying files and trees with ``cp -a`` semantics, filters and notifications."""

from __future__ import annotations

import dataclasses
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from stat import (
    S_IFSOCK,
    S_IMODE,
    S_ISBLK,
    S_ISCHR,
    S_ISDIR,
    S_ISFIFO,
    S_ISLNK,
    S_ISREG,
    S_ISSOCK,
)
from typing import Callable, Optional

from treesync.changes import ChangeKind
from treesync.fileops import Chowner, User, chown, get_link_source, mkdir_all, root_path, utimes
from treesync.modes import ModeSet, parse_mode
from treesync.patterns import MatchInfo, PatternMatcher

XAttrErrorHandler = Callable[[str, str, str, BaseException], Optional[BaseException]]
CopyChangeFunc = Callable[[ChangeKind, str, os.stat_result, Optional[BaseException]], None]


@dataclass
class CopyInfo:
    """Options controlling a copy."""

    chown: Optional[Chowner] = None
    utime: Optional[datetime] = None
    allow_wildcards: bool = False
    mode: Optional[int] = None
    # Symbolic mode; overrides ``mode`` when non-empty.
    mode_str: str = ""
    xattr_error_handler: Optional[XAttrErrorHandler] = None
    copy_dir_contents: bool = False
    follow_links: bool = False
    include_patterns: list[str] = field(default_factory=list)
    exclude_patterns: list[str] = field(default_factory=list)
    always_replace_existing_dest_paths: bool = False
    change_func: Optional[CopyChangeFunc] = None


Opt = Callable[[CopyInfo], None]


def with_copy_info(info: CopyInfo) -> Opt:
    """Replace all options with those of ``info``."""

    def apply(ci: CopyInfo) -> None:
        for f in dataclasses.fields(CopyInfo):
            setattr(ci, f.name, getattr(info, f.name))

    return apply


def with_chown(uid: int, gid: int) -> Opt:
    def apply(ci: CopyInfo) -> None:
        ci.chown = lambda _old: User(uid=uid, gid=gid)

    return apply


def allow_wildcards(info: CopyInfo) -> None:
    info.allow_wildcards = True


def with_xattr_error_handler(handler: XAttrErrorHandler) -> Opt:
    def apply(ci: CopyInfo) -> None:
        ci.xattr_error_handler = handler

    return apply


def allow_xattr_errors(info: CopyInfo) -> None:
    with_xattr_error_handler(lambda _d, _s, _k, _e: None)(info)


def with_include_pattern(pattern: str) -> Opt:
    def apply(ci: CopyInfo) -> None:
        ci.include_patterns = [*ci.include_patterns, pattern]

    return apply


def with_exclude_pattern(pattern: str) -> Opt:
    def apply(ci: CopyInfo) -> None:
        ci.exclude_patterns = [*ci.exclude_patterns, pattern]

    return apply


def with_change_notifier(fn: CopyChangeFunc) -> Opt:
    def apply(ci: CopyInfo) -> None:
        ci.change_func = fn

    return apply


def _clean_join(*parts: str) -> str:
    parts = tuple(p for p in parts if p)
    if not parts:
        return ""
    return os.path.normpath(os.path.join(*parts))


def _base(path: str) -> str:
    stripped = path.rstrip(os.sep)
    if not stripped:
        return os.sep if path else "."
    return os.path.basename(stripped)


def _rooted(root: str, path: str, follow_links: bool) -> str:
    path = os.path.normpath(os.path.join(os.sep, path))
    if path == os.sep:
        return root
    if follow_links:
        return root_path(root, path)
    head, tail = os.path.split(path)
    return os.path.join(root_path(root, head), tail)


def _contains_wildcards(name: str) -> bool:
    chars = iter(name)
    for ch in chars:
        if ch == "\\":
            next(chars, None)
        elif ch in "*?[":
            return True
    return False


def _split_wildcards(path: str) -> tuple[str, str]:
    p1: list[str] = []
    p2: list[str] = []
    found = False
    for part in os.path.normpath(path).split(os.sep) if path else []:
        if not found and _contains_wildcards(part):
            found = True
        (p2 if found else p1).append(part or os.sep)
    return _clean_join(*p1), _clean_join(*p2)


def _glob_regex(pattern: str) -> Optional[re.Pattern[str]]:
    sep = re.escape(os.sep)
    out: list[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            out.append(f"[^{sep}]*")
        elif ch == "?":
            out.append(f"[^{sep}]")
        elif ch == "\\":
            i += 1
            if i >= len(pattern):
                return None
            out.append(re.escape(pattern[i]))
        elif ch == "[":
            end = pattern.find("]", i + 2)
            if end < 0:
                return None
            body = pattern[i + 1 : end]
            if body.startswith("^"):
                body = "^" + body[1:].replace("\\", "\\\\")
            else:
                body = body.replace("\\", "\\\\")
            out.append(f"[{body}]")
            i = end
        else:
            out.append(re.escape(ch))
        i += 1
    try:
        return re.compile("".join(out))
    except re.error:
        return None


def _resolve(base: str, comp: str) -> list[str]:
    regex = _glob_regex(comp)
    out: list[str] = []

    def walk(path: str) -> None:
        info = os.lstat(path)
        rel = os.path.relpath(path, base)
        if rel != "." and regex is not None and regex.fullmatch(rel):
            out.append(path)
            return
        if S_ISDIR(info.st_mode):
            for name in sorted(os.listdir(path)):
                walk(os.path.join(path, name))

    walk(base)
    return out


def resolve_wildcards(root: str, src: str, follow_links: bool) -> list[str]:
    """Expand wildcards in ``src`` to root-relative matching paths."""
    d1, d2 = _split_wildcards(src)
    if not d2:
        return [d1]
    base = _rooted(root, d1, follow_links)
    return [os.path.relpath(m, root) for m in _resolve(base, d2)]


def _fix_created_parent_dirs(dirs: list[str], tm: Optional[datetime]) -> None:
    for d in reversed(dirs):
        utimes(d, tm)


def _remove_all(path: str) -> None:
    try:
        info = os.lstat(path)
    except FileNotFoundError:
        return
    if S_ISDIR(info.st_mode):
        shutil.rmtree(path)
    else:
        os.remove(path)


def _lstat_or_none(path: str) -> Optional[os.stat_result]:
    try:
        return os.lstat(path)
    except FileNotFoundError:
        return None


def _copy_xattrs(dst: str, src: str, handler: XAttrErrorHandler) -> None:
    if not hasattr(os, "listxattr"):
        return
    try:
        keys = os.listxattr(src, follow_symlinks=False)
    except OSError as exc:
        err = handler(dst, src, "", exc)
        if err is not None:
            raise err
        return
    for key in keys:
        try:
            data = os.getxattr(src, key, follow_symlinks=False)
            os.setxattr(dst, key, data, follow_symlinks=False)
        except OSError as exc:
            err = handler(dst, src, key, exc)
            if err is not None:
                raise err
            return


def _copy_device(dst: str, st: os.stat_result) -> None:
    rdev = st.st_rdev if S_ISBLK(st.st_mode) or S_ISCHR(st.st_mode) else 0
    # A socket is copied as a stub.
    os.mknod(dst, st.st_mode & ~S_IFSOCK, rdev)


def _ensure_empty_file_target(dst: str) -> None:
    info = _lstat_or_none(dst)
    if info is None:
        return
    if S_ISDIR(info.st_mode):
        raise IsADirectoryError(f"cannot replace to directory {dst} with file")
    os.remove(dst)


def _copy_directory_only(dst: str, st: os.stat_result, overwrite: bool) -> bool:
    existing = _lstat_or_none(dst)
    if existing is None:
        os.mkdir(dst, S_IMODE(st.st_mode))
        return True
    if not S_ISDIR(existing.st_mode):
        raise NotADirectoryError(f"cannot copy to non-directory: {dst}")
    if overwrite:
        os.chmod(dst, S_IMODE(st.st_mode))
    return False


@dataclass
class _ParentDir:
    src_path: str
    dst_path: str
    copied: bool = False


class _Copier:
    def __init__(self, root: str, info: CopyInfo, mode_set: Optional[ModeSet]) -> None:
        self.root = root
        self.chown = info.chown
        self.utime = info.utime
        self.mode = info.mode
        self.mode_set = mode_set
        self.xattr_error_handler = info.xattr_error_handler or (lambda _d, _s, _k, e: e)
        self.include_matcher = (
            PatternMatcher(info.include_patterns) if info.include_patterns else None
        )
        self.exclude_matcher = (
            PatternMatcher(info.exclude_patterns) if info.exclude_patterns else None
        )
        self.change_fn = info.change_func
        self.always_replace = info.always_replace_existing_dest_paths
        self.inodes: dict[int, str] = {}
        self.parent_dirs: list[_ParentDir] = []

    def prepare_target_dir(
        self, src_followed: str, src: str, dest: str, copy_dir_contents: bool
    ) -> tuple[str, list[str]]:
        src_is_dir = S_ISDIR(os.lstat(src_followed).st_mode)
        try:
            fi_dest: Optional[os.stat_result] = os.stat(dest)
        except FileNotFoundError:
            fi_dest = None
        if (not copy_dir_contents and src_is_dir and fi_dest is not None) or (
            not src_is_dir and fi_dest is not None and S_ISDIR(fi_dest.st_mode)
        ):
            dest = os.path.normpath(os.path.join(dest, _base(src).lstrip(os.sep)))
        target = os.path.dirname(dest)
        if copy_dir_contents and src_is_dir and fi_dest is None:
            target = dest
        return dest, mkdir_all(target, 0o755, self.chown, self.utime)

    def copy(
        self,
        src: str,
        components: str,
        target: str,
        overwrite: bool,
        parent_include: MatchInfo,
        parent_exclude: MatchInfo,
    ) -> None:
        fi = os.lstat(src)
        target_fi = _lstat_or_none(target)

        include = True
        include_info = MatchInfo()
        exclude_info = MatchInfo()
        if components:
            if self.include_matcher is not None:
                include, include_info = self.include_matcher.matches_using_parent_results(
                    components, parent_include
                )
            if self.exclude_matcher is not None:
                excluded, exclude_info = self.exclude_matcher.matches_using_parent_results(
                    components, parent_exclude
                )
                if excluded:
                    include = False

        if include:
            if self.always_replace and target_fi is not None:
                if not (S_ISDIR(fi.st_mode) and S_ISDIR(target_fi.st_mode)):
                    _remove_all(target)
            self.create_parent_dirs(overwrite)

        is_dir = S_ISDIR(fi.st_mode)
        if not is_dir:
            if not include:
                return
            _ensure_empty_file_target(target)

        copy_info = include
        restore_timestamp = False
        notify = True
        mode = fi.st_mode
        if is_dir:
            created = self.copy_directory(
                src, components, target, fi, overwrite, include, include_info, exclude_info
            )
            if not overwrite:
                copy_info = created
                restore_timestamp = not created
            notify = False
        elif S_ISREG(mode):
            link = get_link_source(target, fi, self.inodes)
            if link:
                os.link(link, target)
            else:
                shutil.copyfile(src, target)
        elif S_ISLNK(mode):
            os.symlink(os.readlink(src), target)
        elif S_ISBLK(mode) or S_ISCHR(mode) or S_ISFIFO(mode) or S_ISSOCK(mode):
            _copy_device(target, fi)

        if copy_info:
            self.copy_file_info(fi, target)
            _copy_xattrs(target, src, self.xattr_error_handler)
        elif restore_timestamp and target_fi is not None:
            self.copy_file_timestamp(fi, target)
        if notify:
            self.notify_change(target, fi)

    def notify_change(self, target: str, fi: os.stat_result) -> None:
        if self.change_fn is None:
            return
        rel = target[len(self.root):] if target.startswith(self.root) else target
        self.change_fn(ChangeKind.ADD, os.path.normpath(rel) if rel else ".", fi, None)

    def create_parent_dirs(self, overwrite: bool) -> None:
        for parent in self.parent_dirs:
            if parent.copied:
                continue
            fi = os.stat(parent.src_path)
            if not S_ISDIR(fi.st_mode):
                raise NotADirectoryError(f"{parent.src_path} is not a directory")
            if _copy_directory_only(parent.dst_path, fi, overwrite):
                self.copy_file_info(fi, parent.dst_path)
                _copy_xattrs(parent.dst_path, parent.src_path, self.xattr_error_handler)
            parent.copied = True

    def copy_directory(
        self,
        src: str,
        components: str,
        dst: str,
        st: os.stat_result,
        overwrite: bool,
        include: bool,
        include_info: MatchInfo,
        exclude_info: MatchInfo,
    ) -> bool:
        created = False
        parent = _ParentDir(src, dst)
        if include:
            created = _copy_directory_only(dst, st, overwrite)
            if created or overwrite:
                self.notify_change(dst, st)
            parent.copied = True
        self.parent_dirs.append(parent)
        try:
            for name in sorted(os.listdir(src)):
                self.copy(
                    os.path.join(src, name),
                    os.path.join(components, name) if components else name,
                    os.path.join(dst, name),
                    True,
                    include_info,
                    exclude_info,
                )
        finally:
            self.parent_dirs.pop()
        return created

    def copy_file_info(self, fi: os.stat_result, name: str) -> None:
        chowner = self.chown if self.chown is not None else (lambda u: u)
        chown(name, User(uid=fi.st_uid, gid=fi.st_gid), chowner)
        mode = fi.st_mode
        if self.mode_set is not None:
            mode = self.mode_set.apply(mode)
        elif self.mode is not None:
            mode = self.mode & 0o7777
        if not S_ISLNK(fi.st_mode):
            os.chmod(name, S_IMODE(mode))
        self.copy_file_timestamp(fi, name)

    def copy_file_timestamp(self, fi: os.stat_result, name: str) -> None:
        if self.utime is not None:
            utimes(name, self.utime)
            return
        os.utime(name, ns=(fi.st_atime_ns, fi.st_mtime_ns), follow_symlinks=False)


def copy(src_root: str, src: str, dst_root: str, dst: str, *args: Opt) -> None:
    """Copy ``src`` under ``src_root`` to ``dst`` under ``dst_root``."""
    info = CopyInfo()
    for opt in args:
        opt(info)

    created_lists: list[list[str]] = []
    try:
        ensure = dst
        head, tail = os.path.split(dst)
        if tail not in ("", "."):
            ensure = head
        if ensure:
            created_lists.append(
                mkdir_all(root_path(dst_root, ensure), 0o755, info.chown, info.utime)
            )

        mode_set = parse_mode(info.mode_str, 0) if info.mode_str else None
        dest = root_path(dst_root, os.path.normpath(dst))
        copier = _Copier(dst_root, info, mode_set)

        srcs = [src]
        if info.allow_wildcards:
            srcs = resolve_wildcards(src_root, src, info.follow_links)
            if not srcs:
                raise FileNotFoundError(f"no matches found: {src}")

        for item in srcs:
            followed = _rooted(src_root, item, info.follow_links)
            target, created = copier.prepare_target_dir(
                followed, item, dest, info.copy_dir_contents
            )
            created_lists.append(created)
            copier.copy(followed, "", target, False, MatchInfo(), MatchInfo())
    finally:
        for created in reversed(created_lists):
            _fix_created_parent_dirs(created, info.utime)