"""Exceptions raised by the record store and frame source."""

from __future__ import annotations


class StorageError(Exception):
    """Base class for storage failures."""


class StorageUnavailable(StorageError):
    """A configured path could not be created or opened."""

    def __init__(self, path: object, reason: object = None) -> None:
        self.path = path
        message = f"Cannot open {path}"
        if reason is not None:
            message += f": {reason}"
        super().__init__(message)


class SizeMismatch(StorageError):
    """A stored label record disagrees with the current segment count."""

    def __init__(self, frame: int, stored: int, expected: int) -> None:
        self.frame = frame
        self.stored = stored
        self.expected = expected
        super().__init__(
            f"Frame {frame} has {stored} stored label(s) "
            f"but {expected} segment(s) were extracted"
        )


class InsertionIOFailure(StorageError):
    """Staging bytes for a splice failed before any destructive write."""
