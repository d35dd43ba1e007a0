"""
mfs.py — MFS filesystem engine.

A single flat directory of files stored inside one fixed-size image.
The ``MFS`` object owns the in-memory image and every metadata structure
in it; all mutations go through its methods.

    fs = MFS()
    fs.create("disk.img")          # fresh image, saved on savefs
    fs.insert("/etc/hostname")     # copy a host file in
    fs.retrieve("hostname", "/tmp/hostname.copy")
    fs.save()

Operations are serialised by a per-instance lock.  ``insert`` is
all-or-nothing: a failed or cancelled copy releases every block, the
inode and the directory slot it had claimed.
"""

from __future__ import annotations

import contextlib
import functools
import logging
import os
import stat as stat_mod
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from allocator import Allocator, LinearScanAllocator
from fsconfig import FSConfig, MAX_NAME_LEN
from fserrors import (
    AlreadyExists, Ambiguous, Cancelled, DestinationError, InsufficientSpace,
    InvalidArgument, MFSError, NameTooLong, NotFound, NotOpen, ReadOnly,
    SourceNotFound, TooLarge, UndeleteConflict,
)
from fslayout import (
    ATTR_HIDDEN, ATTR_NAMES, ATTR_READ_ONLY, NO_INODE,
    DirEntry, Inode, Layout, Metadata, blocks_for,
)
from hexdump import iter_rows
from imagestore import ImageStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileInfo:
    """A live file as seen through the directory."""
    name: str
    slot: int
    inode: int
    size: int
    attribute: int
    blocks: tuple[int, ...]

    @property
    def hidden(self) -> bool:
        return bool(self.attribute & ATTR_HIDDEN)

    @property
    def read_only(self) -> bool:
        return bool(self.attribute & ATTR_READ_ONLY)


def _locked(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


def _cipher_key(key) -> bytes:
    if isinstance(key, int):
        if not 0 <= key <= 0xFF:
            raise InvalidArgument(f"Key byte out of range: {key}")
        return bytes([key])
    if isinstance(key, str):
        key = key.encode("utf-8")
    key = bytes(key)
    if not key:
        raise InvalidArgument("Empty cipher key")
    return key


def _xor(data: bytes, keystream: bytes) -> bytes:
    n = len(data)
    x = int.from_bytes(data, "little") ^ int.from_bytes(keystream, "little")
    return x.to_bytes(n, "little")


class MFS:
    """In-memory MFS image plus the operations on it."""

    def __init__(self, config: FSConfig | None = None,
                 allocator_cls: type[Allocator] = LinearScanAllocator):
        self.config = (config or FSConfig()).validate()
        self.layout = Layout(self.config)
        self._allocator_cls = allocator_cls
        self._lock = threading.RLock()
        self.store: Optional[ImageStore] = None
        self.meta: Optional[Metadata] = None
        self.alloc: Optional[Allocator] = None
        self.image_path: Optional[str] = None

    # ── image lifecycle ────────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self.store is not None

    def _attach(self, store: ImageStore, path: str | None):
        meta = Metadata(store, self.layout)
        self.store = store
        self.meta = meta
        self.alloc = self._allocator_cls(meta)
        self.image_path = path

    def _require_open(self) -> Metadata:
        if self.meta is None:
            raise NotOpen()
        return self.meta

    @_locked
    def format(self, path: str | os.PathLike | None = None):
        """Replace any open image with a freshly initialised one."""
        store = ImageStore(self.layout.block_size, self.layout.num_blocks)
        self._attach(store, os.fspath(path) if path is not None else None)
        self.meta.init()

    @_locked
    def create(self, path: str | os.PathLike):
        """createfs: initialise a new image that ``save`` will write to *path*."""
        path = os.fspath(path)
        # Make sure savefs will be able to write here later.
        try:
            with open(path, "ab"):
                pass
        except OSError as e:
            raise DestinationError(
                f"Failed to create {path!r}: {e.strerror or e}") from e
        self.format(path)
        log.info("created filesystem image %s", path)

    @_locked
    def open(self, path: str | os.PathLike):
        path = os.fspath(path)
        store = ImageStore.load(path, self.layout.block_size,
                                self.layout.num_blocks)
        Metadata(store, self.layout).verify()
        self._attach(store, path)
        log.info("opened %s", path)

    @_locked
    def close(self):
        self._require_open()
        log.info("closed %s", self.image_path)
        self.store = self.meta = self.alloc = None
        self.image_path = None

    @_locked
    def save(self, path: str | os.PathLike | None = None) -> int:
        """savefs: write the image.  Returns the number of blocks written."""
        self._require_open()
        target = os.fspath(path) if path is not None else self.image_path
        if target is None:
            raise InvalidArgument("No image path; give one to save to")
        return self.store.save(target)

    # ── lookup ─────────────────────────────────────────────────────

    def _find(self, name: str) -> tuple[int, DirEntry] | None:
        for slot, entry in self.meta.entries():
            if entry.in_use and entry.name == name:
                return slot, entry
        return None

    def _lookup(self, name: str) -> tuple[int, DirEntry, Inode]:
        found = self._find(name)
        if found is None:
            raise NotFound(name)
        slot, entry = found
        return slot, entry, self.meta.read_inode(entry.inode)

    @staticmethod
    def _info(slot: int, entry: DirEntry, inode: Inode) -> FileInfo:
        return FileInfo(entry.name, slot, entry.inode, inode.file_size,
                        inode.attribute, tuple(inode.blocks))

    @_locked
    def stat(self, name: str) -> FileInfo:
        self._require_open()
        return self._info(*self._lookup(name))

    @_locked
    def list(self, include_hidden: bool = False) -> list[FileInfo]:
        """Live files in directory order, skipping hidden ones unless asked."""
        meta = self._require_open()
        files = []
        for slot, entry in meta.entries():
            if not entry.in_use:
                continue
            inode = meta.read_inode(entry.inode)
            if inode.hidden and not include_hidden:
                continue
            files.append(self._info(slot, entry, inode))
        return files

    @_locked
    def df(self) -> int:
        """Free bytes in the data region."""
        self._require_open()
        return self.alloc.available_space()

    # ── block streaming ────────────────────────────────────────────

    def _iter_chunks(self, inode: Inode, offset: int,
                     length: int) -> Iterator[bytes]:
        """Yield file bytes [offset, offset+length) block by block."""
        bs = self.layout.block_size
        img = self.store.img
        index, intra = divmod(offset, bs)
        remaining = length
        while remaining > 0 and index < len(inode.blocks):
            take = min(bs - intra, remaining)
            off = inode.blocks[index] * bs + intra
            yield bytes(img[off : off + take])
            remaining -= take
            index += 1
            intra = 0

    # ── insert ─────────────────────────────────────────────────────

    @_locked
    def insert(self, host_path: str | os.PathLike,
               cancel: threading.Event | None = None) -> FileInfo:
        """Copy a host file into the image under its base name."""
        meta = self._require_open()
        host_path = os.fspath(host_path)
        name = os.path.basename(host_path)
        if not name:
            raise InvalidArgument(f"No file name in {host_path!r}")
        try:
            raw_name = name.encode("utf-8")
        except UnicodeEncodeError:
            raise InvalidArgument(
                f"File name is not valid UTF-8: {name!r}") from None
        if len(raw_name) > MAX_NAME_LEN:
            raise NameTooLong(name, MAX_NAME_LEN)
        if self._find(name) is not None:
            raise AlreadyExists(name)

        try:
            st = os.stat(host_path)
        except OSError as e:
            raise SourceNotFound(
                f"File does not exist: {host_path!r}") from e
        if not stat_mod.S_ISREG(st.st_mode):
            raise SourceNotFound(f"Not a regular file: {host_path!r}")
        size = st.st_size
        if size > self.config.max_file_size:
            raise TooLarge(size, self.config.max_file_size)
        available = self.alloc.available_space()
        if size > available:
            raise InsufficientSpace(size, available)

        slot = self.alloc.find_free_directory_slot()
        index = self.alloc.find_free_inode()

        previous = meta.read_inode(index)
        self.alloc.claim_inode(index)
        inode = Inode(in_use=True, attribute=0, file_size=size)
        meta.write_inode(index, inode)

        claimed: list[int] = []
        try:
            self._copy_in(host_path, size, claimed, cancel)
        except BaseException:
            self._rollback_insert(index, previous, claimed)
            raise

        inode.blocks = claimed
        inode.generation = meta.alloc_seq
        meta.write_inode(index, inode)
        entry = DirEntry(name, True, index)
        meta.write_entry(slot, entry)
        self._detach_deleted(index, slot)
        log.info("inserted %r: %d bytes, %d blocks, slot %d, inode %d",
                 name, size, len(claimed), slot, index)
        return self._info(slot, entry, inode)

    def _copy_in(self, host_path: str, size: int, claimed: list[int],
                 cancel: threading.Event | None):
        bs = self.layout.block_size
        nblocks = blocks_for(size, bs)
        try:
            with open(host_path, "rb") as f:
                for i in range(nblocks):
                    if cancel is not None and cancel.is_set():
                        raise Cancelled("insert")
                    want = min(bs, size - i * bs)
                    chunk = f.read(want)
                    if len(chunk) != want:
                        raise SourceNotFound(
                            f"{host_path!r} shrank while reading "
                            f"(block {i}: got {len(chunk)} of {want} bytes)")
                    block = self.alloc.find_free_block()
                    claimed.append(block)
                    self.store.write_block(block, chunk)
        except MFSError:
            raise
        except OSError as e:
            raise SourceNotFound(
                f"Error reading {host_path!r}: {e.strerror or e}") from e

    def _detach_deleted(self, index: int, keep_slot: int):
        """Drop the inode reference of deleted entries whose inode was recycled."""
        for slot, entry in self.meta.entries():
            if slot != keep_slot and not entry.in_use and entry.inode == index:
                entry.inode = NO_INODE
                self.meta.write_entry(slot, entry)

    def _rollback_insert(self, index: int, previous: Inode,
                         claimed: list[int]):
        for block in claimed:
            self.alloc.release_block(block)
        # Keep the old (soft-deleted) record so its slot is still undeletable;
        # the generation check refuses it if we overwrote any of its blocks.
        self.meta.write_inode(index, previous)
        self.alloc.release_inode(index)
        log.warning("insert rolled back: released inode %d and %d blocks",
                    index, len(claimed))

    # ── retrieve ───────────────────────────────────────────────────

    @_locked
    def retrieve(self, name: str, dest: str | os.PathLike | None = None,
                 cancel: threading.Event | None = None) -> int:
        """Copy *name* out to *dest* (default: *name*).  Returns bytes written."""
        self._require_open()
        _, _, inode = self._lookup(name)
        dest = os.fspath(dest) if dest is not None else name
        try:
            out = open(dest, "wb")
        except OSError as e:
            raise DestinationError(
                f"Could not open {dest!r} for writing: {e.strerror or e}") from e

        written = 0
        try:
            with out:
                for chunk in self._iter_chunks(inode, 0, inode.file_size):
                    if cancel is not None and cancel.is_set():
                        raise Cancelled("retrieve")
                    out.write(chunk)
                    written += len(chunk)
        except Cancelled:
            with contextlib.suppress(OSError):
                os.remove(dest)
            raise
        except OSError as e:
            raise DestinationError(
                f"Error writing {dest!r}: {e.strerror or e}") from e
        log.info("retrieved %r -> %s (%d bytes)", name, dest, written)
        return written

    # ── read / hex dump ────────────────────────────────────────────

    def _window(self, name: str, offset: int,
                length: int) -> tuple[Inode, int]:
        """Validate a read request; returns (inode, clamped length)."""
        self._require_open()
        _, _, inode = self._lookup(name)
        if offset < 0 or length < 0:
            raise InvalidArgument("Offset and length must be non-negative")
        if offset > inode.file_size:
            raise InvalidArgument(f"File is only {inode.file_size} bytes")
        return inode, min(length, inode.file_size - offset)

    @_locked
    def read_range(self, name: str, offset: int, length: int) -> bytes:
        """Raw bytes [offset, offset+length), clamped to the file size."""
        inode, length = self._window(name, offset, length)
        return b"".join(self._iter_chunks(inode, offset, length))

    @_locked
    def read(self, name: str, offset: int, length: int) -> list[str]:
        """Hex dump rows for a byte range.  Reading at EOF gives no rows."""
        inode, length = self._window(name, offset, length)
        return list(iter_rows(self._iter_chunks(inode, offset, length), offset))

    # ── delete / undelete ──────────────────────────────────────────

    @_locked
    def delete(self, name: str):
        """Soft-delete: the records stay on disk for ``undelete``."""
        meta = self._require_open()
        slot, entry, inode = self._lookup(name)
        if inode.read_only:
            raise ReadOnly(name)

        entry.in_use = False
        meta.write_entry(slot, entry)
        inode.in_use = False
        meta.write_inode(entry.inode, inode)
        self.alloc.release_inode(entry.inode)
        for block in inode.blocks:
            self.alloc.release_block(block)
        log.info("deleted %r (slot %d, %d blocks freed)",
                 name, slot, len(inode.blocks))

    @_locked
    def deleted(self) -> list[tuple[int, str]]:
        """(slot, name) for every soft-deleted entry that still has an inode."""
        meta = self._require_open()
        return [(slot, e.name) for slot, e in meta.entries()
                if not e.in_use and e.inode != NO_INODE]

    @_locked
    def undelete(self, name: str, slot: int | None = None) -> FileInfo:
        """Restore a soft-deleted file.

        Several deleted entries can share a name; then *slot* must say
        which one.  Refuses with UndeleteConflict when the inode or any
        of the file's blocks were handed to another file since deletion.
        """
        meta = self._require_open()
        candidates = [s for s, n in self.deleted() if n == name]
        if not candidates:
            raise NotFound(name, f"No deleted file named {name!r}")
        if slot is None:
            if len(candidates) > 1:
                raise Ambiguous(name, candidates)
            slot = candidates[0]
        elif slot not in candidates:
            raise NotFound(name, f"Slot {slot} holds no deleted file named {name!r}")
        if self._find(name) is not None:
            raise AlreadyExists(name)

        entry = meta.read_entry(slot)
        index = entry.inode
        inode = meta.read_inode(index)
        if inode.in_use or not meta.inode_free(index):
            raise UndeleteConflict(
                f"Inode {index} of {name!r} has been reused")
        if len(inode.blocks) != blocks_for(inode.file_size,
                                            self.layout.block_size):
            raise UndeleteConflict(
                f"Inode {index} of {name!r} no longer describes the file")
        for block in inode.blocks:
            if not meta.block_free(block) or \
                    meta.generation(block) > inode.generation:
                raise UndeleteConflict(
                    f"Block {block} of {name!r} was reallocated since deletion")

        for block in inode.blocks:
            self.alloc.claim_block(block)
        self.alloc.claim_inode(index)
        inode.in_use = True
        meta.write_inode(index, inode)
        entry.in_use = True
        meta.write_entry(slot, entry)
        log.info("undeleted %r (slot %d)", name, slot)
        return self._info(slot, entry, inode)

    # ── attributes ─────────────────────────────────────────────────

    @_locked
    def attrib(self, name: str, op: str) -> int:
        """Apply ``+h``, ``-h``, ``+r`` or ``-r``.  Returns the new mask."""
        meta = self._require_open()
        if len(op) != 2 or op[0] not in "+-" or op[1] not in ATTR_NAMES:
            raise InvalidArgument(
                f"{op!r} is not an attribute; expected +h, -h, +r or -r")
        _, entry, inode = self._lookup(name)
        mask = ATTR_NAMES[op[1]]
        if op[0] == "+":
            inode.attribute |= mask
        else:
            inode.attribute &= ~mask & 0xFF
        meta.write_inode(entry.inode, inode)
        return inode.attribute

    # ── cipher ─────────────────────────────────────────────────────

    @_locked
    def encrypt(self, name: str, key) -> int:
        """XOR the file's content with a repeating key, in place.

        Applying the same key again restores the original bytes, so
        ``decrypt`` is the same operation.  Returns bytes transformed.
        """
        self._require_open()
        key = _cipher_key(key)
        _, _, inode = self._lookup(name)
        bs = self.layout.block_size
        img = self.store.img
        klen = len(key)
        pos = 0
        for block in inode.blocks:
            n = min(bs, inode.file_size - pos)
            if n <= 0:
                break
            phase = pos % klen
            keystream = (key * ((n + phase) // klen + 1))[phase : phase + n]
            off = block * bs
            img[off : off + n] = _xor(bytes(img[off : off + n]), keystream)
            pos += n
        return pos

    decrypt = encrypt

    # ── diagnostics ────────────────────────────────────────────────

    @_locked
    def info(self) -> dict:
        meta = self._require_open()
        lay = self.layout
        live = self.list(include_hidden=True)
        return {
            "image": self.image_path,
            "block_size": lay.block_size,
            "total_blocks": lay.num_blocks,
            "data_start": lay.data_start,
            "data_blocks": lay.data_blocks,
            "free_blocks": meta.count_free_blocks(),
            "max_files": lay.num_files,
            "files": len(live),
            "deleted": len(self.deleted()),
            "max_file_size": self.config.max_file_size,
            "bytes_free": self.alloc.available_space(),
            "alloc_seq": meta.alloc_seq,
            "allocator": self.alloc.name,
        }

    @_locked
    def check(self) -> list[str]:
        """Cross-check directory, inodes and bitmaps.  Returns problems found."""
        meta = self._require_open()
        lay = self.layout
        errors = []
        owners: dict[int, str] = {}
        names: set[str] = set()
        live_inodes: set[int] = set()

        for slot, entry in meta.entries():
            if not entry.in_use:
                continue
            if entry.name in names:
                errors.append(f"Duplicate live name {entry.name!r} (slot {slot})")
            names.add(entry.name)
            if not 0 <= entry.inode < lay.num_files:
                errors.append(f"Slot {slot} {entry.name!r}: bad inode {entry.inode}")
                continue
            if entry.inode in live_inodes:
                errors.append(f"Inode {entry.inode} referenced twice (slot {slot})")
            live_inodes.add(entry.inode)
            inode = meta.read_inode(entry.inode)
            if not inode.in_use:
                errors.append(f"{entry.name!r}: inode {entry.inode} not in use")
            want = blocks_for(inode.file_size, lay.block_size)
            if len(inode.blocks) != want:
                errors.append(f"{entry.name!r}: {len(inode.blocks)} blocks "
                              f"for {inode.file_size} bytes (expected {want})")
            for block in inode.blocks:
                if not lay.data_start <= block < lay.num_blocks:
                    errors.append(f"{entry.name!r}: block {block} outside data region")
                    continue
                if block in owners:
                    errors.append(f"Block {block} owned by {owners[block]!r} "
                                  f"and {entry.name!r}")
                owners[block] = entry.name
                if meta.block_free(block):
                    errors.append(f"{entry.name!r}: block {block} marked free")

        for block in range(lay.data_start, lay.num_blocks):
            if not meta.block_free(block) and block not in owners:
                errors.append(f"Block {block} marked used but unowned")
        for block in range(lay.data_start):
            if meta.block_free(block):
                errors.append(f"Metadata block {block} marked free")
        for index in range(lay.num_files):
            in_use = meta.inode_in_use(index)
            if meta.inode_free(index) == in_use:
                errors.append(f"Inode {index}: bitmap disagrees with in_use flag")
            if in_use and index not in live_inodes:
                errors.append(f"Inode {index} in use but not in the directory")
        return errors


# ── Convenience functions ──────────────────────────────────────────────

def format_image(path: str | Path, config: FSConfig | None = None) -> MFS:
    """Create, format and save a new image at *path*."""
    fs = MFS(config)
    fs.create(path)
    fs.save()
    return fs


def open_image(path: str | Path, config: FSConfig | None = None) -> MFS:
    fs = MFS(config)
    fs.open(path)
    return fs
