"""Applying a stream of changes to a destination directory."""

from __future__ import annotations

import errno
import hashlib
import os
import shutil
import threading
import time
from stat import S_IMODE, S_ISBLK, S_ISCHR, S_ISDIR, S_ISFIFO, S_ISLNK
from typing import Any, Callable, Optional, Protocol

from treesync.changes import ChangeKind, FilterFunc, Stat
from treesync.fsmeta import chtimes, create_special_file, rename_file, rewrite_metadata


class _Writer(Protocol):
    def write(self, data: bytes) -> Any: ...

    def close(self) -> Any: ...


WriteToFunc = Callable[[str, _Writer], None]
NotifyFunc = Callable[[ChangeKind, str, Any, Optional[BaseException]], None]
ContentHasher = Callable[[Stat], Any]


def _join(base: str, path: str) -> str:
    return os.path.normpath(os.path.join(base, path.lstrip(os.sep)))


def _remove_all(path: str) -> None:
    try:
        info = os.lstat(path)
    except FileNotFoundError:
        return
    if S_ISDIR(info.st_mode):
        shutil.rmtree(path)
    else:
        os.remove(path)


def _raise(exc: OSError) -> None:
    raise exc


_rand_state = 0
_rand_lock = threading.Lock()


def next_suffix() -> str:
    """Return a pseudo-random nine-digit suffix for temporary file names."""
    global _rand_state
    with _rand_lock:
        r = _rand_state
        if r == 0:
            r = (time.time_ns() + os.getpid()) & 0xFFFFFFFF
        r = (r * 1664525 + 1013904223) & 0xFFFFFFFF
        _rand_state = r
    return f"{r % 1_000_000_000:09d}"


class HashedWriter:
    """Writer that forwards data and hashes it; ``stat`` describes the file."""

    def __init__(
        self,
        content_hasher: Optional[ContentHasher],
        stat: Optional[Stat],
        writer: Optional[_Writer],
    ) -> None:
        if stat is None:
            raise ValueError("invalid change without stat information")
        hasher = content_hasher if content_hasher is not None else (lambda _st: hashlib.sha256())
        self.stat = stat
        self._hash = hasher(stat)
        self._writer = writer
        self._digest = ""

    def write(self, data: bytes) -> int:
        if self._writer is not None:
            self._writer.write(data)
        self._hash.update(data)
        return len(data)

    def close(self) -> None:
        self._digest = f"sha256:{self._hash.hexdigest()}"
        if self._writer is not None:
            self._writer.close()

    def digest(self) -> str:
        """The content digest, set once the writer is closed."""
        return self._digest


class LazyFileWriter:
    """Writer that opens an existing file only on the first write.

    A read-only file is made writable for the duration and restored on close.
    """

    def __init__(self, dest: str) -> None:
        self.dest = dest
        self._fd: Optional[int] = None
        self._file_mode: Optional[int] = None

    def _open(self) -> int:
        try:
            return os.open(self.dest, os.O_WRONLY)
        except PermissionError as exc:
            try:
                mode = S_IMODE(os.stat(self.dest).st_mode)
                self._file_mode = mode
                os.chmod(self.dest, mode | 0o222)
                return os.open(self.dest, os.O_WRONLY)
            except OSError:
                raise exc from None

    def write(self, data: bytes) -> int:
        if self._fd is None:
            self._fd = self._open()
        view = memoryview(data)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]
        return len(data)

    def close(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            os.close(fd)
        mode, self._file_mode = self._file_mode, None
        if mode is not None:
            os.chmod(self.dest, mode)


class DiskWriter:
    """Writes received changes into ``dest``.

    File contents come from exactly one of ``sync_data_cb`` (called while the
    file is created) or ``async_data_cb`` (called on a background thread).
    """

    def __init__(
        self,
        dest: str,
        sync_data_cb: Optional[WriteToFunc] = None,
        async_data_cb: Optional[WriteToFunc] = None,
        notify_cb: Optional[NotifyFunc] = None,
        content_hasher: Optional[ContentHasher] = None,
        filter_fn: Optional[FilterFunc] = None,
    ) -> None:
        if sync_data_cb is None and async_data_cb is None:
            raise ValueError("no data callback specified")
        if sync_data_cb is not None and async_data_cb is not None:
            raise ValueError("can't specify both sync and async data callbacks")
        self.dest = dest
        self.sync_data_cb = sync_data_cb
        self.async_data_cb = async_data_cb
        self.notify_cb = notify_cb
        self.content_hasher = content_hasher
        self.filter_fn = filter_fn
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._errors: list[BaseException] = []
        self._dir_mod_times: dict[str, int] = {}

    def wait(self) -> None:
        """Wait for background writes, then restore directory timestamps."""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join()
        with self._lock:
            if self._errors:
                raise self._errors[0]
        root_key = os.path.normpath(self.dest)
        if root_key in self._dir_mod_times:
            chtimes(self.dest, self._dir_mod_times[root_key])
        for root, dirs, _files in os.walk(self.dest, onerror=_raise):
            for name in dirs:
                full = os.path.join(root, name)
                if os.path.islink(full):
                    continue
                mtime = self._dir_mod_times.get(os.path.normpath(full))
                if mtime is not None:
                    chtimes(full, mtime)

    def handle_change(
        self,
        kind: ChangeKind,
        path: str,
        stat: Optional[Stat],
        error: Optional[BaseException] = None,
    ) -> None:
        """Apply one change; any failure cancels the writer."""
        if error is not None:
            raise error
        if self._cancelled.is_set():
            raise RuntimeError("disk writer was cancelled")
        try:
            self._apply(kind, path, stat)
        except BaseException:
            self._cancelled.set()
            raise

    def _apply(self, kind: ChangeKind, path: str, stat: Optional[Stat]) -> None:
        dest_path = _join(self.dest, path)

        if kind == ChangeKind.DELETE:
            if self.filter_fn is not None and not self.filter_fn(path, Stat()):
                return
            _remove_all(dest_path)
            if self.notify_cb is not None:
                self.notify_cb(kind, path, None, None)
            return

        if stat is None:
            raise OSError(errno.EBADMSG, "change without stat info", path)
        stat_copy = stat.clone()
        if self.filter_fn is not None and not self.filter_fn(path, stat_copy):
            return

        rename = True
        old: Optional[os.stat_result]
        try:
            old = os.lstat(dest_path)
        except FileNotFoundError as exc:
            if kind != ChangeKind.ADD:
                raise FileNotFoundError(errno.ENOENT, "modify/rm", dest_path) from exc
            rename = False
            old = None

        if old is not None and stat.is_dir() and S_ISDIR(old.st_mode):
            rewrite_metadata(dest_path, stat_copy)
            return

        new_path = dest_path
        if rename:
            new_path = os.path.join(os.path.dirname(dest_path), ".tmp." + next_suffix())

        is_regular = False
        mode = stat.mode
        if stat.is_dir():
            try:
                os.mkdir(new_path, S_IMODE(mode))
            except FileExistsError:
                self._apply(kind, path, stat)
                return
            self._dir_mod_times[dest_path] = stat_copy.mod_time
        elif S_ISBLK(mode) or S_ISCHR(mode) or S_ISFIFO(mode):
            create_special_file(new_path, stat_copy)
        elif S_ISLNK(mode):
            os.symlink(stat_copy.linkname, new_path)
        elif stat_copy.linkname:
            os.link(_join(self.dest, stat_copy.linkname), new_path)
        else:
            is_regular = True
            fd = os.open(new_path, os.O_CREAT | os.O_WRONLY, S_IMODE(mode))
            with os.fdopen(fd, "wb") as handle:
                if self.sync_data_cb is not None:
                    self._process_change(ChangeKind.ADD, path, stat, handle)

        rewrite_metadata(new_path, stat_copy)

        if rename and old is not None:
            if S_ISDIR(old.st_mode) != stat.is_dir():
                _remove_all(dest_path)
            rename_file(new_path, dest_path)

        if is_regular:
            if self.async_data_cb is not None:
                self._request_async_file_data(path, dest_path, stat, stat_copy)
        else:
            self._process_change(kind, path, stat, None)

    def _request_async_file_data(
        self, path: str, dest: str, stat: Stat, stat_copy: Stat
    ) -> None:
        def run() -> None:
            writer = LazyFileWriter(dest)
            try:
                self._process_change(ChangeKind.ADD, path, stat, writer)
                writer.close()
                chtimes(dest, stat_copy.mod_time)
            except BaseException as exc:
                with self._lock:
                    self._errors.append(exc)

        thread = threading.Thread(target=run, daemon=True)
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def _process_change(
        self, kind: ChangeKind, path: str, stat: Stat, writer: Optional[_Writer]
    ) -> None:
        hashed: Optional[HashedWriter] = None
        if self.notify_cb is not None:
            hashed = HashedWriter(self.content_hasher, stat, writer)
        if writer is not None:
            fn = self.sync_data_cb if self.sync_data_cb is not None else self.async_data_cb
            fn(path, hashed if hashed is not None else writer)
        elif hashed is not None:
            hashed.close()
        if hashed is not None:
            self.notify_cb(kind, path, hashed, None)