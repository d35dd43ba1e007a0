"""
allocator.py — Free block, inode and directory-slot allocation.

Allocator hierarchy:
  Allocator             — abstract base, the interface the engine calls
  └─ LinearScanAllocator — first-fit scans over the on-image bitmaps

Every block handed out by ``find_free_block`` is stamped with the next
allocation sequence number in the generation table.  Undelete compares
those stamps against the inode's generation to detect reuse.
"""

from __future__ import annotations

import abc
import logging

from fserrors import CorruptImage, Exhausted
from fslayout import Metadata

log = logging.getLogger(__name__)


class Allocator(abc.ABC):
    """Abstract allocator over a Metadata view."""

    def __init__(self, meta: Metadata):
        self.meta = meta
        self.layout = meta.layout

    @abc.abstractmethod
    def find_free_block(self) -> int:
        """Claim and return a free data block.  Raises Exhausted."""
        ...

    @abc.abstractmethod
    def find_free_inode(self) -> int:
        """Return a free inode index without claiming it.  Raises Exhausted."""
        ...

    @abc.abstractmethod
    def find_free_directory_slot(self) -> int:
        """Return the first free directory slot.  Raises Exhausted."""
        ...

    # ── claim / release ────────────────────────────────────────────

    def claim_block(self, block: int):
        self.meta.set_block_free(block, False)

    def release_block(self, block: int):
        self.meta.set_block_free(block, True)
        log.debug("released block %d", block)

    def claim_inode(self, index: int):
        self.meta.set_inode_free(index, False)

    def release_inode(self, index: int):
        self.meta.set_inode_free(index, True)

    def available_space(self) -> int:
        """Free data bytes, recomputed from the block bitmap."""
        return self.meta.count_free_blocks() * self.layout.block_size

    @property
    def name(self) -> str:
        return type(self).__name__


class LinearScanAllocator(Allocator):
    """First-fit linear scans.  Adequate for tens of thousands of blocks."""

    def find_free_block(self) -> int:
        meta = self.meta
        for block in range(self.layout.data_start, self.layout.num_blocks):
            if meta.block_free(block):
                meta.set_block_free(block, False)
                seq = (meta.alloc_seq + 1) & 0xFFFFFFFF
                meta.alloc_seq = seq
                meta.set_generation(block, seq)
                log.debug("allocated block %d (gen %d)", block, seq)
                return block
        raise Exhausted("block")

    def find_free_inode(self) -> int:
        meta = self.meta
        for index in range(self.layout.num_files):
            if meta.inode_free(index):
                if meta.inode_in_use(index):
                    raise CorruptImage(
                        f"Inode {index} is marked free but in use")
                return index
        raise Exhausted("inode")

    def find_free_directory_slot(self) -> int:
        for slot, entry in self.meta.entries():
            if not entry.in_use:
                return slot
        raise Exhausted("directory slot")
