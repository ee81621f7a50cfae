import os
import shutil
import time
from stat import (
    S_IFDIR,
    S_IFIFO,
    S_IFLNK,
    S_IFREG,
    S_IMODE,
    S_ISDIR,
    S_ISFIFO,
    S_ISLNK,
    S_ISREG,
)

import pytest

from treesync.changes import ChangeKind, Stat
from treesync.diskwriter import DiskWriter, HashedWriter, LazyFileWriter, next_suffix

HELLO_DIGEST = "sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
EMPTY_DIGEST = "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

_KINDS = {"ADD": ChangeKind.ADD, "CHG": ChangeKind.MODIFY, "DEL": ChangeKind.DELETE}


def _change_stream(lines):
    out = []
    for line in lines:
        parts = line.split(" ")
        kind = _KINDS[parts[0]]
        path = parts[1]
        if kind == ChangeKind.DELETE:
            out.append((kind, path, None, b""))
            continue
        typ = parts[2]
        stat = Stat(path=path, uid=os.getuid(), gid=os.getgid(), mod_time=time.time_ns())
        data = b""
        if typ == "dir":
            stat.mode = S_IFDIR | 0o755
        elif typ == "file":
            stat.mode = S_IFREG | 0o644
            if len(parts) > 3 and parts[3].startswith(">"):
                stat.linkname = parts[3][1:]
            elif len(parts) > 3:
                data = parts[3].encode()
            stat.size = len(data)
        elif typ == "symlink":
            stat.mode = S_IFLNK | 0o777
            stat.linkname = parts[3]
        out.append((kind, path, stat, data))
    return out


def _make_tree(root, lines):
    for _kind, path, stat, data in _change_stream(lines):
        full = os.path.join(root, path)
        if S_ISDIR(stat.mode):
            os.mkdir(full)
        elif S_ISLNK(stat.mode):
            os.symlink(stat.linkname, full)
        elif stat.linkname:
            os.link(os.path.join(root, stat.linkname), full)
        else:
            with open(full, "wb") as fh:
                fh.write(data)
    return root


def _walk(root):
    inodes = {}

    def visit(rel):
        base = os.path.join(root, rel) if rel else root
        for name in sorted(os.listdir(base)):
            p = os.path.join(rel, name) if rel else name
            st = os.lstat(os.path.join(root, p))
            linkname = ""
            if S_ISLNK(st.st_mode):
                linkname = os.readlink(os.path.join(root, p))
            elif S_ISREG(st.st_mode) and st.st_nlink > 1:
                key = (st.st_dev, st.st_ino)
                if key in inodes:
                    linkname = inodes[key]
                else:
                    inodes[key] = p
            yield p, Stat(
                path=p,
                mode=st.st_mode,
                uid=st.st_uid,
                gid=st.st_gid,
                size=st.st_size,
                mod_time=st.st_mtime_ns,
                linkname=linkname,
                devmajor=os.major(st.st_rdev),
                devminor=os.minor(st.st_rdev),
            )
            if S_ISDIR(st.st_mode):
                yield from visit(p)

    return list(visit(""))


def _listing(root):
    lines = []
    for p, st in _walk(root):
        if st.is_dir():
            lines.append(f"dir {p}")
        elif S_ISLNK(st.mode):
            lines.append(f"symlink:{st.linkname} {p}")
        else:
            suffix = f" >{st.linkname}" if st.linkname else ""
            lines.append(f"file {p}{suffix}")
    return "".join(line + "\n" for line in lines)


def _noop(path, writer):
    return None


def _copy_from(base, delay=0.0):
    def cb(path, writer):
        if delay:
            time.sleep(delay)
        with open(os.path.join(base, path), "rb") as fh:
            shutil.copyfileobj(fh, writer)

    return cb


def _apply_changes(dw, lines):
    for kind, path, stat, _data in _change_stream(lines):
        dw.handle_change(kind, path, stat, None)


def _walk_into(dw, src):
    for p, st in _walk(src):
        dw.handle_change(ChangeKind.ADD, p, st, None)


def test_writer_simple(tmp_path):
    dest = str(tmp_path)
    dw = DiskWriter(dest, sync_data_cb=_noop)
    _apply_changes(
        dw,
        [
            "ADD bar dir",
            "ADD bar/foo file",
            "ADD bar/foo2 symlink ../foo",
            "ADD foo file",
            "ADD foo2 file >foo",
        ],
    )
    assert _listing(dest) == (
        "dir bar\nfile bar/foo\nsymlink:../foo bar/foo2\nfile foo\nfile foo2 >foo\n"
    )


def test_writer_file_to_dir(tmp_path):
    dest = _make_tree(str(tmp_path), ["ADD foo file data1"])
    dw = DiskWriter(dest, sync_data_cb=_noop)
    _apply_changes(dw, ["ADD foo dir", "ADD foo/bar file data2"])
    assert _listing(dest) == "dir foo\nfile foo/bar\n"


def test_writer_dir_to_file(tmp_path):
    dest = _make_tree(str(tmp_path), ["ADD foo dir", "ADD foo/bar file data2"])
    dw = DiskWriter(dest, sync_data_cb=_noop)
    _apply_changes(dw, ["ADD foo file data1"])
    assert _listing(dest) == "file foo\n"


def test_walker_writer_simple(tmp_path):
    src = str(tmp_path / "src")
    dest = str(tmp_path / "dest")
    os.mkdir(src)
    os.mkdir(dest)
    _make_tree(
        src,
        [
            "ADD bar dir",
            "ADD bar/foo file",
            "ADD bar/foo2 symlink ../foo",
            "ADD foo file mydata",
            "ADD foo2 file",
        ],
    )
    dw = DiskWriter(dest, sync_data_cb=_copy_from(src))
    _walk_into(dw, src)
    assert _listing(dest) == (
        "dir bar\nfile bar/foo\nsymlink:../foo bar/foo2\nfile foo\nfile foo2\n"
    )
    with open(os.path.join(dest, "foo"), "rb") as fh:
        assert fh.read() == b"mydata"


def test_walker_writer_async(tmp_path):
    src = str(tmp_path / "src")
    dest = str(tmp_path / "dest")
    os.mkdir(src)
    os.mkdir(dest)
    _make_tree(
        src,
        [
            "ADD foo dir",
            "ADD foo/foo1 file data1",
            "ADD foo/foo2 file data2",
            "ADD foo/foo3 file data3",
            "ADD foo/foo4 file >foo/foo3",
            "ADD foo5 file data5",
        ],
    )
    dw = DiskWriter(dest, async_data_cb=_copy_from(src, 0.3))
    start = time.monotonic()
    _walk_into(dw, src)
    dw.wait()

    with open(os.path.join(dest, "foo/foo3"), "rb") as fh:
        assert fh.read() == b"data3"
    with open(os.path.join(dest, "foo/foo4"), "rb") as fh:
        assert fh.read() == b"data3"
    assert (
        os.lstat(os.path.join(dest, "foo/foo3")).st_ino
        == os.lstat(os.path.join(dest, "foo/foo4")).st_ino
    )
    with open(os.path.join(dest, "foo5"), "rb") as fh:
        assert fh.read() == b"data5"
    assert time.monotonic() - start < 0.9


def test_walker_writer_fifo(tmp_path):
    src = str(tmp_path / "src")
    dest = str(tmp_path / "dest")
    os.mkdir(src)
    os.mkdir(dest)
    _make_tree(src, ["ADD foo dir", "ADD foo/foo1 file data1"])
    os.mkfifo(os.path.join(src, "foo/pipe"), 0o600)
    dw = DiskWriter(dest, sync_data_cb=_copy_from(src))
    _walk_into(dw, src)
    dw.wait()
    st = os.lstat(os.path.join(dest, "foo/pipe"))
    assert S_ISFIFO(st.st_mode)
    assert S_IMODE(st.st_mode) == 0o600


def test_wait_restores_directory_mtime(tmp_path):
    src = str(tmp_path / "src")
    dest = str(tmp_path / "dest")
    os.mkdir(src)
    os.mkdir(dest)
    _make_tree(src, ["ADD foo dir", "ADD foo/bar file data"])
    fixed = 1_500_000_000 * 10**9
    os.utime(os.path.join(src, "foo"), ns=(fixed, fixed))
    dw = DiskWriter(dest, sync_data_cb=_copy_from(src))
    _walk_into(dw, src)
    dw.wait()
    assert os.lstat(os.path.join(dest, "foo")).st_mtime_ns == fixed


def test_constructor_requires_one_callback(tmp_path):
    with pytest.raises(ValueError, match="no data callback"):
        DiskWriter(str(tmp_path))
    with pytest.raises(ValueError, match="both"):
        DiskWriter(str(tmp_path), sync_data_cb=_noop, async_data_cb=_noop)


def test_delete_removes_and_notifies(tmp_path):
    dest = _make_tree(str(tmp_path), ["ADD foo dir", "ADD foo/bar file x"])
    seen = []
    dw = DiskWriter(dest, sync_data_cb=_noop, notify_cb=lambda *a: seen.append(a))
    dw.handle_change(ChangeKind.DELETE, "foo", None)
    assert not os.path.exists(os.path.join(dest, "foo"))
    assert seen == [(ChangeKind.DELETE, "foo", None, None)]


def test_delete_skipped_by_filter(tmp_path):
    dest = _make_tree(str(tmp_path), ["ADD foo file x"])
    seen = []
    filtered = []

    def filt(path, st):
        filtered.append(path)
        return False

    dw = DiskWriter(
        dest,
        sync_data_cb=_noop,
        notify_cb=lambda *a: seen.append(a),
        filter_fn=filt,
    )
    dw.handle_change(ChangeKind.DELETE, "foo", None)
    assert filtered == ["foo"]
    assert seen == []
    assert os.path.isfile(os.path.join(dest, "foo"))


def test_filter_skips_and_rewrites(tmp_path):
    dest = str(tmp_path)

    def filt(path, st):
        if path == "skip":
            return False
        st.mode = S_IFREG | 0o600
        return True

    dw = DiskWriter(dest, sync_data_cb=_noop, filter_fn=filt)
    _apply_changes(dw, ["ADD skip file", "ADD keep file"])
    assert sorted(os.listdir(dest)) == ["keep"]
    assert S_IMODE(os.lstat(os.path.join(dest, "keep")).st_mode) == 0o600


def test_modify_replaces_file_with_symlink(tmp_path):
    dest = _make_tree(str(tmp_path), ["ADD foo file old", "ADD target file t"])
    dw = DiskWriter(dest, sync_data_cb=_noop)
    _apply_changes(dw, ["CHG foo symlink target"])
    assert os.readlink(os.path.join(dest, "foo")) == "target"
    assert sorted(os.listdir(dest)) == ["foo", "target"]


def test_notify_digest_for_file_and_dir(tmp_path):
    dest = str(tmp_path)
    digests = {}

    def notify(kind, path, info, err):
        digests[path] = info.digest()

    def write_hello(path, writer):
        writer.write(b"hello")
        writer.close()

    dw = DiskWriter(dest, sync_data_cb=write_hello, notify_cb=notify)
    _apply_changes(dw, ["ADD d dir", "ADD f file"])
    assert digests == {"d": EMPTY_DIGEST, "f": HELLO_DIGEST}
    with open(os.path.join(dest, "f"), "rb") as fh:
        assert fh.read() == b"hello"


def test_modify_missing_fails_and_cancels(tmp_path):
    dw = DiskWriter(str(tmp_path), sync_data_cb=_noop)
    (_, _, stat, _), = _change_stream(["CHG missing file"])
    with pytest.raises(FileNotFoundError):
        dw.handle_change(ChangeKind.MODIFY, "missing", stat)
    (_, _, dir_stat, _), = _change_stream(["ADD x dir"])
    with pytest.raises(RuntimeError, match="cancelled"):
        dw.handle_change(ChangeKind.ADD, "x", dir_stat)


def test_passed_error_is_raised(tmp_path):
    dw = DiskWriter(str(tmp_path), sync_data_cb=_noop)
    with pytest.raises(ValueError, match="boom"):
        dw.handle_change(ChangeKind.ADD, "x", None, ValueError("boom"))


def test_missing_stat_raises(tmp_path):
    dw = DiskWriter(str(tmp_path), sync_data_cb=_noop)
    with pytest.raises(OSError, match="stat info"):
        dw.handle_change(ChangeKind.ADD, "x", None)


class _Sink:
    def __init__(self):
        self.data = b""
        self.closed = False

    def write(self, data):
        self.data += data

    def close(self):
        self.closed = True


def test_hashed_writer():
    sink = _Sink()
    hw = HashedWriter(None, Stat(), sink)
    assert hw.write(b"hello") == 5
    assert sink.data == b"hello"
    assert hw.digest() == ""
    hw.close()
    assert hw.digest() == HELLO_DIGEST
    assert sink.closed is True


def test_hashed_writer_requires_stat():
    with pytest.raises(ValueError, match="stat information"):
        HashedWriter(None, None, None)


def test_lazy_file_writer_read_only_file(tmp_path):
    path = str(tmp_path / "f")
    with open(path, "wb"):
        pass
    os.chmod(path, 0o444)
    lfw = LazyFileWriter(path)
    assert lfw.write(b"data") == 4
    lfw.close()
    with open(path, "rb") as fh:
        assert fh.read() == b"data"
    assert S_IMODE(os.stat(path).st_mode) == 0o444


def test_lazy_file_writer_without_write(tmp_path):
    path = str(tmp_path / "f")
    with open(path, "wb") as fh:
        fh.write(b"keep")
    LazyFileWriter(path).close()
    with open(path, "rb") as fh:
        assert fh.read() == b"keep"


def test_next_suffix_format():
    first = next_suffix()
    second = next_suffix()
    assert len(first) == 9 and first.isdigit()
    assert len(second) == 9 and second.isdigit()
    assert first != second