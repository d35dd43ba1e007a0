"""
fsconfig.py — Filesystem geometry configuration.

The defaults describe the reference image: 64 MiB made of 65536 blocks
of 1024 bytes, a 256-entry directory, 64-byte names and files of up to
1024 blocks (1 MiB).

Values can be overridden from the environment (``MFS_BLOCK_SIZE``,
``MFS_BLOCKS``, ``MFS_FILES``, ``MFS_BLOCKS_PER_FILE``,
``MFS_FIRST_DATA_BLOCK``) and then from command-line flags.  The same
geometry must be used to open an image as was used to create it; the
superblock records it and ``open`` refuses a mismatch.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from fserrors import ConfigError

# ── Reference geometry ────────────────────────────────────────────────

BLOCK_SIZE = 1024
NUM_BLOCKS = 65536                  # 64 MiB image
NUM_FILES = 256
MAX_NAME_LEN = 64
BLOCKS_PER_FILE = 1024

MIN_BLOCK_SIZE = 64

_ENV_VARS = {
    "block_size": "MFS_BLOCK_SIZE",
    "num_blocks": "MFS_BLOCKS",
    "num_files": "MFS_FILES",
    "blocks_per_file": "MFS_BLOCKS_PER_FILE",
    "first_data_block": "MFS_FIRST_DATA_BLOCK",
}


@dataclass(frozen=True)
class FSConfig:
    """Image geometry.

    *first_data_block* is the start of the data region.  ``None`` places
    it directly after the metadata; an explicit value may leave a gap of
    reserved blocks but can never overlap metadata.
    """
    block_size: int = BLOCK_SIZE
    num_blocks: int = NUM_BLOCKS
    num_files: int = NUM_FILES
    max_name_len: int = MAX_NAME_LEN
    blocks_per_file: int = BLOCKS_PER_FILE
    first_data_block: Optional[int] = None

    @property
    def image_size(self) -> int:
        return self.block_size * self.num_blocks

    @property
    def max_file_size(self) -> int:
        return self.block_size * self.blocks_per_file

    def validate(self) -> "FSConfig":
        """Check field ranges.  Returns self so calls can be chained."""
        if self.block_size < MIN_BLOCK_SIZE or self.block_size % 16:
            raise ConfigError(
                f"block_size must be a multiple of 16 and >= {MIN_BLOCK_SIZE}"
                f" (got {self.block_size})")
        for name in ("num_blocks", "num_files", "blocks_per_file"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be positive")
        if self.max_name_len != MAX_NAME_LEN:
            raise ConfigError(f"max_name_len is fixed at {MAX_NAME_LEN}")
        if self.num_blocks >= 2 ** 31:
            raise ConfigError("num_blocks must fit in a signed 32-bit index")
        if self.first_data_block is not None and self.first_data_block < 1:
            raise ConfigError("first_data_block must be positive")
        return self

    def with_overrides(self, **values) -> "FSConfig":
        """Return a copy with every non-None value in *values* applied."""
        known = {f.name for f in fields(self)}
        unknown = set(values) - known
        if unknown:
            raise ConfigError(f"Unknown config fields: {sorted(unknown)}")
        changes = {k: v for k, v in values.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ=None) -> "FSConfig":
        env = os.environ if environ is None else environ
        values = {}
        for field_name, var in _ENV_VARS.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[field_name] = int(raw, 0)
            except ValueError:
                raise ConfigError(f"{var}={raw!r} is not an integer") from None
        return cls().with_overrides(**values)
