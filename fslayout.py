"""
fslayout.py — On-image metadata layout for MFS.

Image layout (block indices, reference geometry of 65536 × 1024 bytes):

    Block 0 ..          Directory table   (NUM_FILES × 69-byte records)
    next block          Free-inode map    (1 byte per inode, 1 = free)
    next blocks         Inode table       (one inode per block-aligned slot)
    next blocks         Free-block map    (1 byte per image block, 1 = free)
    next blocks         Generation table  (u32 LE per image block)
    next block          Superblock
    first_data_block .. Data region

Directory entry (69 bytes):
    +0   name[64]       NUL-padded UTF-8 (a full 64-byte name has no NUL)
    +64  in_use[1]      0 or 1
    +65  inode[4]       i32 LE, -1 = none

Inode record (16-byte header + BLOCKS_PER_FILE × 4):
    +0   in_use[1]
    +1   attribute[1]   bit0 = hidden, bit1 = read-only
    +2   reserved[2]
    +4   file_size[4]   u32 LE
    +8   generation[4]  u32 LE  allocation sequence at insert time
    +12  block_count[4] u32 LE
    +16  blocks[]       i32 LE each; slots past block_count hold -1

Superblock (32 bytes at the start of its block):
    +0   magic[4]       b"MFS1"
    +4   version[2]     u16 LE
    +6   max_name[2]    u16 LE
    +8   block_size[4]  u32 LE
    +12  num_blocks[4]  u32 LE
    +16  num_files[4]   u32 LE
    +20  blocks_per_file[4]
    +24  data_start[4]
    +28  alloc_seq[4]   u32 LE  last stamped allocation sequence number

All multi-byte fields are little-endian and are packed and unpacked with
explicit offsets; nothing is overlaid onto the buffer.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field

from fsconfig import FSConfig, MAX_NAME_LEN
from fserrors import ConfigError, ImageFormatError
from imagestore import ImageStore

log = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────

MAGIC = b"MFS1"
LAYOUT_VERSION = 1

DIR_ENTRY_SIZE = MAX_NAME_LEN + 1 + 4
INODE_HEADER_SIZE = 16
BLOCK_REF_SIZE = 4
GENERATION_SIZE = 4

NO_INODE = -1
UNUSED_BLOCK = -1

ATTR_HIDDEN = 0x01
ATTR_READ_ONLY = 0x02

ATTR_NAMES = {"h": ATTR_HIDDEN, "r": ATTR_READ_ONLY}

_SUPERBLOCK = struct.Struct("<4sHHIIIIII")
_ALLOC_SEQ_OFFSET = _SUPERBLOCK.size - 4    # last field of the superblock
_INODE_HEADER = struct.Struct("<BBHIII")

GENERATION_MASK = 0xFFFFFFFF


def blocks_for(nbytes: int, block_size: int) -> int:
    """Number of blocks needed to hold *nbytes*."""
    return (nbytes + block_size - 1) // block_size


# ── Records ────────────────────────────────────────────────────────────

@dataclass
class DirEntry:
    """One 69-byte directory record."""
    name: str = ""
    in_use: bool = False
    inode: int = NO_INODE


@dataclass
class Inode:
    """One inode record.  *blocks* holds only the allocated indices."""
    in_use: bool = False
    attribute: int = 0
    file_size: int = 0
    generation: int = 0
    blocks: list[int] = field(default_factory=list)

    @property
    def hidden(self) -> bool:
        return bool(self.attribute & ATTR_HIDDEN)

    @property
    def read_only(self) -> bool:
        return bool(self.attribute & ATTR_READ_ONLY)


@dataclass
class Superblock:
    version: int
    max_name_len: int
    block_size: int
    num_blocks: int
    num_files: int
    blocks_per_file: int
    data_start: int
    alloc_seq: int = 0


# ── Codecs ─────────────────────────────────────────────────────────────

def encode_name(name: str) -> bytes:
    raw = name.encode("utf-8")
    if len(raw) > MAX_NAME_LEN:
        raise ValueError(f"Name too long: {name!r} (max {MAX_NAME_LEN} bytes)")
    return raw


def encode_dir_entry(entry: DirEntry) -> bytes:
    buf = bytearray(DIR_ENTRY_SIZE)
    name_bytes = encode_name(entry.name)
    buf[0:len(name_bytes)] = name_bytes
    buf[MAX_NAME_LEN] = 1 if entry.in_use else 0
    struct.pack_into("<i", buf, MAX_NAME_LEN + 1, entry.inode)
    return bytes(buf)


def decode_dir_entry(raw: bytes | memoryview) -> DirEntry:
    name = bytes(raw[0:MAX_NAME_LEN]).split(b"\x00", 1)[0]
    in_use = raw[MAX_NAME_LEN] != 0
    inode = struct.unpack_from("<i", raw, MAX_NAME_LEN + 1)[0]
    try:
        text = name.decode("utf-8")
    except UnicodeDecodeError:
        raise ImageFormatError(
            f"Directory name {name!r} is not valid UTF-8") from None
    return DirEntry(text, in_use, inode)


def inode_record_size(blocks_per_file: int) -> int:
    return INODE_HEADER_SIZE + BLOCK_REF_SIZE * blocks_per_file


def encode_inode(inode: Inode, blocks_per_file: int) -> bytes:
    if len(inode.blocks) > blocks_per_file:
        raise ValueError(
            f"Inode holds {len(inode.blocks)} blocks (max {blocks_per_file})")
    buf = bytearray(inode_record_size(blocks_per_file))
    _INODE_HEADER.pack_into(buf, 0,
                            1 if inode.in_use else 0,
                            inode.attribute & 0xFF,
                            0,
                            inode.file_size,
                            inode.generation & GENERATION_MASK,
                            len(inode.blocks))
    refs = list(inode.blocks) + [UNUSED_BLOCK] * (blocks_per_file - len(inode.blocks))
    struct.pack_into(f"<{blocks_per_file}i", buf, INODE_HEADER_SIZE, *refs)
    return bytes(buf)


def decode_inode(raw: bytes | memoryview, blocks_per_file: int) -> Inode:
    in_use, attribute, _, file_size, generation, count = \
        _INODE_HEADER.unpack_from(raw, 0)
    if count > blocks_per_file:
        raise ImageFormatError(
            f"Inode block count {count} exceeds {blocks_per_file}")
    blocks = list(struct.unpack_from(f"<{count}i", raw, INODE_HEADER_SIZE))
    return Inode(bool(in_use), attribute, file_size, generation, blocks)


def encode_superblock(sb: Superblock) -> bytes:
    return _SUPERBLOCK.pack(MAGIC, sb.version, sb.max_name_len,
                            sb.block_size, sb.num_blocks, sb.num_files,
                            sb.blocks_per_file, sb.data_start,
                            sb.alloc_seq & GENERATION_MASK)


def decode_superblock(raw: bytes | memoryview) -> Superblock:
    (magic, version, max_name, block_size, num_blocks, num_files,
     blocks_per_file, data_start, alloc_seq) = _SUPERBLOCK.unpack_from(raw, 0)
    if magic != MAGIC:
        raise ImageFormatError(f"Bad magic {magic!r} (not an MFS image)")
    if version != LAYOUT_VERSION:
        raise ImageFormatError(
            f"Unsupported layout version {version} (expected {LAYOUT_VERSION})")
    return Superblock(version, max_name, block_size, num_blocks, num_files,
                      blocks_per_file, data_start, alloc_seq)


# ── Geometry ───────────────────────────────────────────────────────────

class Layout:
    """Block ranges for each metadata region, derived from an FSConfig."""

    def __init__(self, config: FSConfig):
        config.validate()
        self.config = config
        bs = config.block_size
        self.block_size = bs
        self.num_blocks = config.num_blocks
        self.num_files = config.num_files
        self.blocks_per_file = config.blocks_per_file

        self.dir_start = 0
        self.dir_blocks = blocks_for(config.num_files * DIR_ENTRY_SIZE, bs)
        self.inode_map_start = self.dir_start + self.dir_blocks
        self.inode_map_blocks = blocks_for(config.num_files, bs)
        self.inode_start = self.inode_map_start + self.inode_map_blocks
        self.inode_record_size = inode_record_size(config.blocks_per_file)
        self.inode_stride = blocks_for(self.inode_record_size, bs)
        self.inode_blocks = self.inode_stride * config.num_files
        self.block_map_start = self.inode_start + self.inode_blocks
        self.block_map_blocks = blocks_for(config.num_blocks, bs)
        self.gen_start = self.block_map_start + self.block_map_blocks
        self.gen_blocks = blocks_for(config.num_blocks * GENERATION_SIZE, bs)
        self.super_block = self.gen_start + self.gen_blocks
        self.metadata_end = self.super_block + 1

        if config.first_data_block is None:
            self.data_start = self.metadata_end
        elif config.first_data_block < self.metadata_end:
            raise ConfigError(
                f"first_data_block {config.first_data_block} overlaps "
                f"metadata (needs >= {self.metadata_end})")
        else:
            self.data_start = config.first_data_block

        if self.data_start >= config.num_blocks:
            raise ConfigError(
                f"No data region: metadata needs {self.data_start} of "
                f"{config.num_blocks} blocks")

    @property
    def data_blocks(self) -> int:
        return self.num_blocks - self.data_start

    # byte offsets into the flat image
    def dir_offset(self, slot: int) -> int:
        return self.dir_start * self.block_size + slot * DIR_ENTRY_SIZE

    def inode_offset(self, index: int) -> int:
        return (self.inode_start + index * self.inode_stride) * self.block_size

    def inode_map_offset(self, index: int) -> int:
        return self.inode_map_start * self.block_size + index

    def block_map_offset(self, block: int) -> int:
        return self.block_map_start * self.block_size + block

    def gen_offset(self, block: int) -> int:
        return self.gen_start * self.block_size + block * GENERATION_SIZE

    @property
    def super_offset(self) -> int:
        return self.super_block * self.block_size

    def superblock(self, alloc_seq: int = 0) -> Superblock:
        return Superblock(LAYOUT_VERSION, MAX_NAME_LEN, self.block_size,
                          self.num_blocks, self.num_files,
                          self.blocks_per_file, self.data_start, alloc_seq)

    def describe(self) -> dict:
        return {
            "directory": (self.dir_start, self.dir_blocks),
            "inode_map": (self.inode_map_start, self.inode_map_blocks),
            "inodes": (self.inode_start, self.inode_blocks),
            "block_map": (self.block_map_start, self.block_map_blocks),
            "generations": (self.gen_start, self.gen_blocks),
            "superblock": (self.super_block, 1),
            "data": (self.data_start, self.data_blocks),
        }


# ── Image-bound accessors ──────────────────────────────────────────────

class Metadata:
    """Reads and writes metadata records in an ImageStore."""

    def __init__(self, store: ImageStore, layout: Layout):
        if (store.block_size, store.num_blocks) != \
                (layout.block_size, layout.num_blocks):
            raise ImageFormatError("Image store does not match layout geometry")
        self.store = store
        self.layout = layout
        self.img = store.img

    # ── directory ──────────────────────────────────────────────────

    def read_entry(self, slot: int) -> DirEntry:
        off = self.layout.dir_offset(slot)
        return decode_dir_entry(memoryview(self.img)[off : off + DIR_ENTRY_SIZE])

    def write_entry(self, slot: int, entry: DirEntry):
        off = self.layout.dir_offset(slot)
        self.img[off : off + DIR_ENTRY_SIZE] = encode_dir_entry(entry)
        log.debug("dir[%d] <- %r in_use=%s inode=%d",
                  slot, entry.name, entry.in_use, entry.inode)

    def entries(self):
        """Yield (slot, DirEntry) for every directory slot."""
        for slot in range(self.layout.num_files):
            yield slot, self.read_entry(slot)

    # ── inodes ─────────────────────────────────────────────────────

    def read_inode(self, index: int) -> Inode:
        off = self.layout.inode_offset(index)
        size = self.layout.inode_record_size
        return decode_inode(memoryview(self.img)[off : off + size],
                            self.layout.blocks_per_file)

    def write_inode(self, index: int, inode: Inode):
        off = self.layout.inode_offset(index)
        rec = encode_inode(inode, self.layout.blocks_per_file)
        self.img[off : off + len(rec)] = rec
        log.debug("inode[%d] <- in_use=%s size=%d blocks=%d attr=%#x",
                  index, inode.in_use, inode.file_size, len(inode.blocks),
                  inode.attribute)

    def inode_in_use(self, index: int) -> bool:
        return self.img[self.layout.inode_offset(index)] != 0

    # ── bitmaps ────────────────────────────────────────────────────

    def inode_free(self, index: int) -> bool:
        return self.img[self.layout.inode_map_offset(index)] != 0

    def set_inode_free(self, index: int, free: bool):
        self.img[self.layout.inode_map_offset(index)] = 1 if free else 0

    def block_free(self, block: int) -> bool:
        return self.img[self.layout.block_map_offset(block)] != 0

    def set_block_free(self, block: int, free: bool):
        self.img[self.layout.block_map_offset(block)] = 1 if free else 0

    def count_free_blocks(self) -> int:
        lay = self.layout
        start = lay.block_map_offset(lay.data_start)
        end = lay.block_map_offset(lay.num_blocks)
        return lay.data_blocks - self.img.count(0, start, end)

    # ── generations ────────────────────────────────────────────────

    def generation(self, block: int) -> int:
        return struct.unpack_from("<I", self.img, self.layout.gen_offset(block))[0]

    def set_generation(self, block: int, value: int):
        struct.pack_into("<I", self.img, self.layout.gen_offset(block),
                         value & GENERATION_MASK)

    # ── superblock ─────────────────────────────────────────────────

    def read_superblock(self) -> Superblock:
        off = self.layout.super_offset
        return decode_superblock(memoryview(self.img)[off : off + _SUPERBLOCK.size])

    def write_superblock(self, sb: Superblock):
        off = self.layout.super_offset
        self.img[off : off + _SUPERBLOCK.size] = encode_superblock(sb)

    @property
    def alloc_seq(self) -> int:
        off = self.layout.super_offset + _ALLOC_SEQ_OFFSET
        return struct.unpack_from("<I", self.img, off)[0]

    @alloc_seq.setter
    def alloc_seq(self, value: int):
        off = self.layout.super_offset + _ALLOC_SEQ_OFFSET
        struct.pack_into("<I", self.img, off, value & GENERATION_MASK)

    def verify(self):
        """Check the superblock against this layout's geometry."""
        sb = self.read_superblock()
        expected = self.layout.superblock(sb.alloc_seq)
        for name in ("max_name_len", "block_size", "num_blocks", "num_files",
                     "blocks_per_file", "data_start"):
            got, want = getattr(sb, name), getattr(expected, name)
            if got != want:
                raise ImageFormatError(
                    f"Image geometry mismatch: {name} is {got}, "
                    f"configured {want}")

    # ── initialisation ─────────────────────────────────────────────

    def init(self):
        """Write a fresh, empty filesystem over the whole image."""
        lay = self.layout
        self.store.zero()

        free_entry = encode_dir_entry(DirEntry())
        for slot in range(lay.num_files):
            off = lay.dir_offset(slot)
            self.img[off : off + DIR_ENTRY_SIZE] = free_entry

        free_inode = encode_inode(Inode(), lay.blocks_per_file)
        for index in range(lay.num_files):
            off = lay.inode_offset(index)
            self.img[off : off + len(free_inode)] = free_inode
            self.set_inode_free(index, True)

        # Metadata (and any reserved gap) stays 0 = used.
        start = lay.block_map_offset(lay.data_start)
        self.img[start : start + lay.data_blocks] = b"\x01" * lay.data_blocks

        self.write_superblock(lay.superblock())
        log.debug("initialised %d blocks, data region %d..%d",
                  lay.num_blocks, lay.data_start, lay.num_blocks - 1)
