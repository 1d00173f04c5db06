"""Per-frame size table with derived offsets."""

from __future__ import annotations

import numpy as np

ENTRY_DTYPE = np.dtype([("size", np.int64), ("offset", np.int64)])


def prefix_offsets(sizes: np.ndarray) -> np.ndarray:
    """Offsets of each block when blocks are packed in order.

    offset[i] == sum(sizes[:i])
    """
    sizes = np.asarray(sizes, dtype=np.int64)
    offsets = np.zeros(len(sizes), dtype=np.int64)
    if len(sizes) > 1:
        np.cumsum(sizes[:-1], out=offsets[1:])
    return offsets


class SizeTable:
    """Byte size and offset of every frame's block in one data file.

    Sizes are the source of truth. Offsets are never set directly;
    they are rebuilt from sizes after each mutation.
    """

    def __init__(self, length: int) -> None:
        self._entries = np.zeros(length, dtype=ENTRY_DTYPE)

    @classmethod
    def from_sizes(cls, sizes: np.ndarray) -> SizeTable:
        table = cls(len(sizes))
        table._entries["size"] = np.asarray(sizes, dtype=np.int64)
        table._reindex()
        return table

    def _reindex(self) -> None:
        self._entries["offset"] = prefix_offsets(self._entries["size"])

    @property
    def sizes(self) -> np.ndarray:
        return self._entries["size"]

    @property
    def offsets(self) -> np.ndarray:
        return self._entries["offset"]

    def size(self, frame: int) -> int:
        return int(self._entries["size"][frame])

    def offset(self, frame: int) -> int:
        return int(self._entries["offset"][frame])

    def set_size(self, frame: int, size: int) -> None:
        self._entries["size"][frame] = size
        self._reindex()

    def resize(self, length: int) -> None:
        """Grow with empty entries or drop trailing entries."""
        entries = np.zeros(length, dtype=ENTRY_DTYPE)
        keep = min(length, len(self._entries))
        entries[:keep] = self._entries[:keep]
        self._entries = entries
        self._reindex()

    def clear(self) -> None:
        self._entries[:] = 0

    def tail(self, frame: int) -> tuple[int, int]:
        """Byte span (start, end) of every block after `frame`."""
        start = self.offset(frame) + self.size(frame)
        return start, self.total

    def written(self) -> np.ndarray:
        """Frames that own at least one byte."""
        return np.flatnonzero(self._entries["size"])

    @property
    def total(self) -> int:
        return int(self._entries["size"].sum())

    def __len__(self) -> int:
        return len(self._entries)
