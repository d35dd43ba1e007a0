"""
fserrors.py — Error taxonomy for the MFS engine.

Every engine failure is an ``MFSError``.  Each class also derives from
the closest builtin exception so callers that only know the builtins
(``FileNotFoundError``, ``FileExistsError``, ``ValueError`` ...) still
catch them.
"""

from __future__ import annotations


class MFSError(Exception):
    """Base for all filesystem engine errors."""
    pass


class NotOpen(MFSError, RuntimeError):
    def __init__(self, message: str = "Disk image not open"):
        super().__init__(message)


class NotFound(MFSError, FileNotFoundError):
    def __init__(self, name: str, message: str = ""):
        self.name = name
        super().__init__(message or f"File not found: {name!r}")


class AlreadyExists(MFSError, FileExistsError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"File already exists: {name!r}")


class NameTooLong(MFSError, ValueError):
    def __init__(self, name: str, limit: int):
        self.name = name
        self.limit = limit
        super().__init__(f"Name too long: {name!r} (max {limit} bytes)")


class TooLarge(MFSError, ValueError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"File exceeds maximum size ({size} > {limit} bytes)")


class InsufficientSpace(MFSError, RuntimeError):
    def __init__(self, size: int, available: int):
        self.size = size
        self.available = available
        super().__init__(
            f"Not enough space for {size} bytes ({available} bytes free)")


class Exhausted(MFSError, RuntimeError):
    """No free block, inode or directory slot."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"No free {resource}")


class ReadOnly(MFSError, PermissionError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Can not delete read-only file {name!r}")


class SourceNotFound(MFSError, FileNotFoundError):
    pass


class DestinationError(MFSError, OSError):
    pass


class Ambiguous(MFSError, LookupError):
    def __init__(self, name: str, slots: list[int]):
        self.name = name
        self.slots = list(slots)
        slot_list = ", ".join(str(s) for s in self.slots)
        super().__init__(
            f"{len(self.slots)} deleted entries named {name!r} "
            f"(slots {slot_list}); pick one")


class UndeleteConflict(MFSError, RuntimeError):
    pass


class InvalidArgument(MFSError, ValueError):
    pass


class ImageFormatError(MFSError, ValueError):
    pass


class CorruptImage(MFSError, RuntimeError):
    pass


class Cancelled(MFSError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} cancelled")


class ConfigError(MFSError, ValueError):
    pass
