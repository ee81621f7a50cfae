# treesync

A library for comparing, applying and copying directory trees on POSIX
systems while keeping file metadata: ownership, permissions, timestamps,
extended attributes, symlinks, hard links and device nodes. It has no
dependencies outside the standard library.

## Modules

### `treesync.changes`

Compares two listings of files and reports what changed.

- `Stat` holds the metadata of one file (`mode` with POSIX `st_mode` bits,
  `uid`, `gid`, `size`, `mod_time` in nanoseconds, `linkname`, `devmajor`,
  `devminor`, `xattrs`). It has `is_dir()` and `clone()`.
- `CurrentPath` pairs a path with its `Stat`.
- `double_walk_diff(change_fn, a, b, filter_fn, differ)` merges two iterables
  of `CurrentPath`, both sorted by path, and calls
  `change_fn(kind, path, stat, None)` for each change. `kind` is a
  `ChangeKind` (`ADD`, `MODIFY`, `DELETE`; `str()` gives `"add"`,
  `"modify"`, `"delete"`). Paths below a deleted directory are not reported
  one by one. `filter_fn(path, stat)` may adjust a copy of each new stat
  before comparison.
- `DiffType` sets how entries at the same path are compared: `NONE` (always
  reported as modified), `METADATA` (size, mtime, mode, owner, device numbers
  and link target) or `CONTENT` (metadata and then the bytes of both files).
- `compare_path`, `path_change`, `same_file`, `compare_stat` and
  `compare_file_content` are the building blocks of that comparison.

### `treesync.diskwriter`

`DiskWriter(dest, sync_data_cb=None, async_data_cb=None, notify_cb=None,
content_hasher=None, filter_fn=None)` applies changes to the directory
`dest`.

- Exactly one of `sync_data_cb` or `async_data_cb` must be given, otherwise
  `ValueError` is raised. Either is called as `cb(path, writer)` and writes
  the file's bytes to `writer`. The sync callback runs while the file is
  created; the async one runs on a background thread, writing through a
  `LazyFileWriter` that opens the file on first write and briefly makes a
  read-only file writable.
- `handle_change(kind, path, stat, error=None)` creates, replaces or removes
  one entry: directories, regular files, symlinks, hard links (when
  `stat.linkname` is set on a non-symlink), and character/block devices or
  FIFOs. Existing entries are replaced by writing a `.tmp.<suffix>` entry and
  renaming it into place. Any failure cancels the writer, and later calls
  raise `RuntimeError`.
- `wait()` joins the background writes, raises the first error from them,
  and then puts back directory modification times.
- With `notify_cb`, every written entry is reported as
  `notify_cb(kind, path, hashed_writer, None)`. `hashed_writer.digest()` gives
  `"sha256:<hex>"` of the content. The hash object comes from
  `content_hasher(stat)`, or is SHA-256 if that is not given.
- `next_suffix()` returns the nine-digit pseudo-random suffix used for
  temporary names.

### `treesync.copier`

`copy(src_root, src, dst_root, dst, *options)` copies like `cp -a`. Both
`src` and `dst` are resolved inside their roots, and symlinks cannot lead
outside a root. Missing destination parents are created. Options are
functions that change a `CopyInfo`:

- `with_copy_info(info)`: use every setting from a `CopyInfo`.
- `allow_wildcards`: expand `*`, `?` and `[...]` in `src`. If nothing
  matches, `FileNotFoundError` is raised.
- `with_include_pattern(p)` / `with_exclude_pattern(p)`: filter with
  gitignore-style patterns. `**` is supported, and a leading `!` re-includes
  a path. Parent directories of an included path are created as needed.
- `with_chown(uid, gid)`: set a fixed owner.
- `with_xattr_error_handler(handler)` / `allow_xattr_errors`: decide what
  happens when extended attributes cannot be copied.
- `with_change_notifier(fn)`: call `fn(ChangeKind.ADD, path, stat_result,
  None)` for each path added, with `path` relative to `dst_root`.
- `CopyInfo` fields that have no helper: `utime` (a `datetime` applied to
  everything copied and created), `mode` (octal permissions), `mode_str`
  (octal or symbolic, e.g. `"u+x,go-w"`; it overrides `mode`),
  `copy_dir_contents`, `follow_links` and
  `always_replace_existing_dest_paths`.

`resolve_wildcards(root, src, follow_links)` expands a wildcard source by
itself.

### Lower-level helpers

- `treesync.modes`: `parse_mode(text, umask=0)` parses chmod-style modes,
  octal or symbolic, with `r w x X s t`, `u g o a`, `+ - =` and copying from
  another class. It returns a `ModeSet`, whose `apply(st_mode)` keeps the
  file-type bits.
- `treesync.patterns`: `PatternMatcher(patterns)` and its
  `matches_using_parent_results(path, parent_info)`, which returns
  `(matched, MatchInfo)` so a tree walk can reuse what its parent found.
- `treesync.fileops`: `mkdir_all`, `utimes`, `chown` (with a `User`),
  `get_link_info`, `get_link_source` and `root_path`.
- `treesync.fsmeta`: `chtimes`, `rewrite_metadata`, `create_special_file`,
  `mkdev` and `rename_file`.

## Example

```python
from treesync.copier import copy, with_include_pattern, with_change_notifier

seen = []

def on_change(kind, path, stat, error):
    seen.append(f"{kind}:{path}")

copy("/srv/src", "/", "/srv/dst", "/",
     with_include_pattern("bar"),
     with_change_notifier(on_change))
print(sorted(seen))
```

## What it does not do

- It has no command-line tools. Everything is used as a library.
- It has no wire protocol and no send or receive of trees over a stream.
  `DiskWriter` applies changes that the caller passes in.
- It does not walk a directory into `CurrentPath` listings for
  `double_walk_diff`. The caller supplies those listings, sorted by path.
- Only POSIX systems are supported. Changing ownership and creating device
  nodes need root.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```