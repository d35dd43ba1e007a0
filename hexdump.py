"""
hexdump.py — 16-column hex dump rows.

    000010: -- -- -- 48 65 6C 6C 6F 0A 00 01 02 03 04 05 06  |   Hello.......|

The address is the 16-aligned cumulative byte offset of the row.  When a
dump starts mid-row, the skipped leading columns print as ``--``; when
it ends mid-row, the missing columns are blank.
"""

from __future__ import annotations

from typing import Iterable, Iterator

ROW_BYTES = 16
PLACEHOLDER = "--"


def _printable(b: int) -> str:
    return chr(b) if 0x20 <= b < 0x7F else "."


def format_row(address: int, cells: list) -> str:
    """Render one row.  *cells* holds 16 items: a byte value, PLACEHOLDER
    for a skipped leading column, or None past the end of the data."""
    hex_parts = []
    ascii_parts = []
    for c in cells:
        if c is None:
            hex_parts.append("   ")
            ascii_parts.append(" ")
        elif c == PLACEHOLDER:
            hex_parts.append(PLACEHOLDER + " ")
            ascii_parts.append(" ")
        else:
            hex_parts.append(f"{c:02X} ")
            ascii_parts.append(_printable(c))
    return f"{address:06X}: {''.join(hex_parts)} |{''.join(ascii_parts)}|"


def iter_rows(chunks: Iterable[bytes], offset: int = 0) -> Iterator[str]:
    """Stream rows for data arriving as *chunks*, starting at *offset*."""
    address = offset - (offset % ROW_BYTES)
    cells: list = [PLACEHOLDER] * (offset % ROW_BYTES)
    for chunk in chunks:
        for b in chunk:
            cells.append(b)
            if len(cells) == ROW_BYTES:
                yield format_row(address, cells)
                address += ROW_BYTES
                cells = []
    if any(c != PLACEHOLDER for c in cells):
        cells.extend([None] * (ROW_BYTES - len(cells)))
        yield format_row(address, cells)


def hexdump(data: bytes, offset: int = 0) -> list[str]:
    return list(iter_rows([data], offset))
