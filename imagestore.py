"""
imagestore.py — In-memory block array mirroring the backing image file.

Pure storage: fixed-size blocks addressed by index, plus bulk load/save
to a host path.  No filesystem semantics live here.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fserrors import DestinationError, ImageFormatError, SourceNotFound

log = logging.getLogger(__name__)


class ImageStore:
    """A bytearray of ``num_blocks * block_size`` bytes."""

    def __init__(self, block_size: int, num_blocks: int,
                 data: bytes | bytearray | None = None):
        self.block_size = block_size
        self.num_blocks = num_blocks
        size = block_size * num_blocks
        if data is None:
            self.img = bytearray(size)
        else:
            if len(data) != size:
                raise ImageFormatError(
                    f"Image is {len(data)} bytes, expected {size} "
                    f"({num_blocks} blocks of {block_size})")
            self.img = bytearray(data)

    def __len__(self) -> int:
        return len(self.img)

    # ── block I/O ─────────────────────────────────────────────────

    def _check(self, n: int):
        if not 0 <= n < self.num_blocks:
            raise IndexError(f"Block {n} out of range (0..{self.num_blocks - 1})")

    def block(self, n: int) -> memoryview:
        """Writable view of block *n*."""
        self._check(n)
        off = n * self.block_size
        return memoryview(self.img)[off : off + self.block_size]

    def read_block(self, n: int) -> bytes:
        self._check(n)
        off = n * self.block_size
        return bytes(self.img[off : off + self.block_size])

    def write_block(self, n: int, data: bytes | bytearray):
        """Write *data* at the start of block *n*, zero-padding the rest."""
        self._check(n)
        if len(data) > self.block_size:
            raise ValueError(
                f"Block data is {len(data)} bytes (block size {self.block_size})")
        off = n * self.block_size
        self.img[off : off + len(data)] = data
        if len(data) < self.block_size:
            self.img[off + len(data) : off + self.block_size] = \
                bytes(self.block_size - len(data))

    def zero(self):
        self.img[:] = bytes(len(self.img))

    # ── serialisation ─────────────────────────────────────────────

    def save(self, path: str | Path) -> int:
        """Write the image to *path*.  Returns the number of blocks written."""
        try:
            Path(path).write_bytes(self.img)
        except OSError as e:
            raise DestinationError(
                f"Could not write image to {str(path)!r}: {e.strerror or e}") from e
        log.info("saved %d blocks to %s", self.num_blocks, path)
        return self.num_blocks

    @classmethod
    def load(cls, path: str | Path, block_size: int,
             num_blocks: int) -> "ImageStore":
        """Load an image from *path*; its size must match the geometry."""
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise SourceNotFound(
                f"Could not read image {str(path)!r}: {e.strerror or e}") from e
        store = cls(block_size, num_blocks, data)
        log.info("read %d blocks from %s", num_blocks, path)
        return store
