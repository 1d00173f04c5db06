"""Frame-indexed record store for segment labels and feature rows.

Each labeled frame owns one block in the feature data file and one block
in the label data file. Blocks are packed in frame order, so writing a
frame for the first time in the middle of already-written frames shifts
every later block forward. Per-frame byte sizes are mirrored to two size
files with one fixed slot per frame, and offsets are always rebuilt from
those sizes.

Usage:
    with RecordStore(feature_data, feature_sizes, label_data, label_sizes, max_frame=120) as store:
        store.put(5, features, labels)
        store.get(5)            # int32 label vector
        store.get_features(5)   # (n, FEATURE_WIDTH) float64 matrix
        store.export_text("label", "labels.txt")
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path
from typing import IO, Any

import numpy as np

from scanlabel.storage.errors import (
    InsertionIOFailure,
    SizeMismatch,
    StorageError,
    StorageUnavailable,
)
from scanlabel.storage.format import (
    COPY_CHUNK_BYTES,
    FEATURE_DTYPE,
    FEATURE_ROW_BYTES,
    FEATURE_SIZE_DTYPE,
    FEATURE_WIDTH,
    KIND_FEATURE,
    KIND_LABEL,
    KINDS,
    LABEL_BYTES,
    LABEL_DTYPE,
    LABEL_SIZE_DTYPE,
    SPILL_SUFFIX,
)
from scanlabel.storage.table import SizeTable
from scanlabel.utils.schema import SessionConfig, StoreSummary

logger = logging.getLogger(__name__)


def _read_slots(fh: IO[bytes], dtype: np.dtype) -> np.ndarray:
    fh.seek(0)
    raw = fh.read()
    usable = len(raw) - len(raw) % dtype.itemsize
    return np.frombuffer(raw[:usable], dtype=dtype).astype(np.int64)


def _write_slot(fh: IO[bytes], dtype: np.dtype, frame: int, size: int) -> None:
    fh.seek(frame * dtype.itemsize)
    fh.write(np.array([size], dtype=dtype).tobytes())


def _write_empty_slots(fh: IO[bytes], dtype: np.dtype, start: int, stop: int) -> None:
    """Zero slots [start, stop) and cut the file at `stop` slots."""
    fh.seek(start * dtype.itemsize)
    fh.write(np.zeros(max(stop - start, 0), dtype=dtype).tobytes())
    fh.truncate(stop * dtype.itemsize)


def _file_length(fh: IO[bytes]) -> int:
    fh.flush()
    return os.fstat(fh.fileno()).st_size


class _DataFile:
    """One data file with its size file, size table and spill file."""

    def __init__(self, kind: str, data_path: Path, size_path: Path, size_dtype: np.dtype) -> None:
        self.kind = kind
        self.data_path = data_path
        self.size_path = size_path
        self.spill_path = data_path.with_name(data_path.name + SPILL_SUFFIX)
        self.size_dtype = size_dtype
        self.table = SizeTable(0)
        self.data: IO[bytes] | None = None
        self.sizes: IO[bytes] | None = None

    def open(self) -> None:
        self.data = self._open(self.data_path)
        self.sizes = self._open(self.size_path)

    @staticmethod
    def _open(path: Path) -> IO[bytes]:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
            return open(path, "r+b")
        except OSError as e:
            raise StorageUnavailable(path, e.strerror or e) from e

    def close(self) -> None:
        for fh in (self.data, self.sizes):
            if fh is not None:
                fh.flush()
                fh.close()
        self.data = None
        self.sizes = None
        if self.spill_path.exists():
            self.spill_path.unlink()

    def read_at(self, offset: int, size: int) -> bytes:
        """Read a block without moving the file cursor."""
        assert self.data is not None
        position = self.data.tell()
        try:
            self.data.seek(offset)
            raw = self.data.read(size)
        finally:
            self.data.seek(position)
        if len(raw) != size:
            raise StorageError(
                f"Short read from {self.data_path}: wanted {size} bytes at {offset}, got {len(raw)}"
            )
        return raw

    def stage_tail(self, start: int, end: int) -> IO[bytes]:
        """Copy bytes [start, end) of the data file into a fresh spill file.

        The blocks in that span are already in ascending frame order.
        The spill is flushed to disk and its length verified before it
        is returned; nothing in the data file has been touched yet.
        """
        assert self.data is not None
        expected = end - start
        try:
            spill = open(self.spill_path, "w+b")
        except OSError as e:
            raise StorageUnavailable(self.spill_path, e.strerror or e) from e

        try:
            self.data.seek(start)
            remaining = expected
            while remaining > 0:
                chunk = self.data.read(min(COPY_CHUNK_BYTES, remaining))
                if not chunk:
                    break
                spill.write(chunk)
                remaining -= len(chunk)
            spill.flush()
            os.fsync(spill.fileno())
            staged = os.fstat(spill.fileno()).st_size
        except OSError as e:
            spill.close()
            raise InsertionIOFailure(f"Could not stage {self.kind} bytes: {e}") from e

        if staged != expected:
            spill.close()
            raise InsertionIOFailure(
                f"Staged {staged} of {expected} {self.kind} bytes from {self.data_path}"
            )
        spill.seek(0)
        return spill

    def splice(self, offset: int, record: bytes, spill: IO[bytes] | None) -> None:
        """Write `record` at `offset`, then the staged tail right after it."""
        assert self.data is not None
        self.data.seek(offset)
        self.data.write(record)
        if spill is not None:
            with spill:
                while chunk := spill.read(COPY_CHUNK_BYTES):
                    self.data.write(chunk)
        self.data.truncate()
        self.data.flush()

    def write_at(self, offset: int, record: bytes) -> None:
        assert self.data is not None
        self.data.seek(offset)
        self.data.write(record)
        self.data.flush()

    def write_size(self, frame: int, size: int) -> None:
        assert self.sizes is not None
        _write_slot(self.sizes, self.size_dtype, frame, size)
        self.sizes.flush()

    def slot_count(self) -> int:
        assert self.sizes is not None
        return _file_length(self.sizes) // self.size_dtype.itemsize


class RecordStore:
    """Random-access store of per-frame label and feature records.

    Args:
        feature_data_path: Concatenated feature blocks.
        feature_size_path: One float64 slot per frame with its feature block size.
        label_data_path: Concatenated label blocks.
        label_size_path: One int32 slot per frame with its label block size.
        max_frame: Number of frames in the underlying scan stream.
    """

    def __init__(
        self,
        feature_data_path: str | Path,
        feature_size_path: str | Path,
        label_data_path: str | Path,
        label_size_path: str | Path,
        max_frame: int,
    ) -> None:
        if max_frame < 0:
            raise ValueError(f"max_frame must be non-negative, got {max_frame}")

        self._features = _DataFile(
            KIND_FEATURE, Path(feature_data_path), Path(feature_size_path), FEATURE_SIZE_DTYPE
        )
        self._labels = _DataFile(
            KIND_LABEL, Path(label_data_path), Path(label_size_path), LABEL_SIZE_DTYPE
        )
        self._max_frame = max_frame
        self._written_max_frame = -1
        self._frames_written = 0
        self._opened = False

    @classmethod
    def from_config(cls, config: SessionConfig, max_frame: int) -> RecordStore:
        return cls(
            config.feature_data_path,
            config.feature_size_path,
            config.label_data_path,
            config.label_size_path,
            max_frame=max_frame,
        )

    # --- Lifecycle ---

    def open(self) -> None:
        """Open all four files, creating them if missing, and load the size tables."""
        if self._opened:
            raise RuntimeError("Store already open.")

        for f in (self._features, self._labels):
            try:
                f.open()
            except StorageUnavailable:
                self._features.close()
                self._labels.close()
                raise
        self._opened = True
        try:
            self._load_tables()
        except BaseException:
            self.close()
            raise

        self._recount()
        logger.info(
            "Opened record store: %d frame(s), %d written, highest written frame %d",
            self._max_frame, self._frames_written, self._written_max_frame,
        )

    def _load_tables(self) -> None:
        if _file_length(self._labels.sizes) == 0:
            for f in (self._features, self._labels):
                _write_empty_slots(f.sizes, f.size_dtype, 0, self._max_frame)
                f.sizes.flush()
                f.table = SizeTable(self._max_frame)
            self._check_data_lengths()
            logger.info("Initialized empty size tables for %d frames", self._max_frame)
            return

        for f in (self._features, self._labels):
            f.table = SizeTable.from_sizes(_read_slots(f.sizes, f.size_dtype))
        self._check_data_lengths()
        if len(self._features.table) != self._max_frame or len(self._labels.table) != self._max_frame:
            self._apply_resize(self._max_frame)
        self._check_segment_counts()

    def close(self) -> None:
        """Flush and close all files and remove spill files."""
        if not self._opened:
            return
        self._features.close()
        self._labels.close()
        self._opened = False

    def __enter__(self) -> RecordStore:
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _check_open(self) -> None:
        if not self._opened:
            raise RuntimeError("Store not opened. Call .open() first.")

    def _check_frame(self, frame: int) -> None:
        if not 0 <= frame < self._max_frame:
            raise IndexError(f"Frame {frame} out of range 0..{self._max_frame - 1}")

    def _check_data_lengths(self) -> None:
        for f in (self._features, self._labels):
            length = _file_length(f.data)
            total = f.table.total
            if length < total:
                raise StorageError(
                    f"{f.data_path} holds {length} bytes but its size table accounts for {total}"
                )
            if length > total:
                logger.warning(
                    "Discarding %d unaccounted trailing byte(s) in %s", length - total, f.data_path
                )
                f.data.truncate(total)
                f.data.flush()

    def _check_segment_counts(self) -> None:
        rows = self._features.table.sizes // FEATURE_ROW_BYTES
        labels = self._labels.table.sizes // LABEL_BYTES
        for frame in np.flatnonzero(rows != labels):
            logger.warning(
                "Frame %d has %d feature row(s) but %d label(s)",
                frame, rows[frame], labels[frame],
            )

    def _recount(self) -> None:
        written = self._labels.table.written()
        self._frames_written = len(written)
        self._written_max_frame = int(written[-1]) if len(written) else -1

    def _ensure_slots(self) -> None:
        """Re-establish the fixed slot layout after a clean emptied the size files."""
        for f in (self._features, self._labels):
            slots = f.slot_count()
            if slots < self._max_frame:
                _write_empty_slots(f.sizes, f.size_dtype, slots, self._max_frame)
                f.sizes.flush()

    # --- Record access ---

    def put(self, frame: int, features: np.ndarray, labels: np.ndarray | list[int]) -> None:
        """Write or overwrite the record for a frame.

        Args:
            frame: Frame index.
            features: (n, FEATURE_WIDTH) feature matrix, one row per segment.
            labels: n labels, each 0 or 1.

        Raises:
            ValueError: If the shapes disagree or a label is not 0 or 1.
            InsertionIOFailure: If staging the shifted tail failed. The data
                files are untouched in that case.
        """
        self._check_open()
        self._check_frame(frame)

        feature_arr = np.ascontiguousarray(features, dtype=FEATURE_DTYPE)
        label_arr = np.ascontiguousarray(labels, dtype=LABEL_DTYPE)
        if feature_arr.ndim != 2 or feature_arr.shape[1] != FEATURE_WIDTH:
            raise ValueError(
                f"Feature matrix must have shape (n, {FEATURE_WIDTH}), got {feature_arr.shape}"
            )
        if label_arr.ndim != 1 or len(label_arr) != feature_arr.shape[0]:
            raise ValueError(
                f"Expected {feature_arr.shape[0]} label(s), got shape {label_arr.shape}"
            )
        if len(label_arr) == 0:
            raise ValueError(f"Frame {frame} has no segments to store")
        if not np.isin(label_arr, (0, 1)).all():
            raise ValueError("Labels must be 0 or 1")

        self._ensure_slots()

        is_new = self._labels.table.size(frame) == 0

        records = {self._features: feature_arr.tobytes(), self._labels: label_arr.tobytes()}

        # Blocks after this frame move only when the record changes length
        moves = any(
            len(record) != f.table.size(frame) and f.table.tail(frame)[0] < f.table.total
            for f, record in records.items()
        )

        if moves:
            spills: dict[_DataFile, IO[bytes]] = {}
            try:
                for f in records:
                    spills[f] = f.stage_tail(*f.table.tail(frame))
            except StorageError:
                for spill in spills.values():
                    spill.close()
                raise
            for f, record in records.items():
                f.splice(f.table.offset(frame), record, spills[f])
        else:
            for f, record in records.items():
                f.write_at(f.table.offset(frame), record)
                if len(record) < f.table.size(frame):
                    f.data.truncate(f.table.offset(frame) + len(record))

        for f, record in records.items():
            f.table.set_size(frame, len(record))
            f.write_size(frame, len(record))

        if is_new:
            self._frames_written += 1
        self._written_max_frame = max(self._written_max_frame, frame)

        logger.debug(
            "put frame=%d segments=%d new=%s moved=%s", frame, len(label_arr), is_new, moves
        )

    def get(self, frame: int, expected: int | None = None) -> np.ndarray:
        """Read a frame's label vector.

        Args:
            frame: Frame index.
            expected: Segment count the caller will pair the labels with.

        Returns:
            int32 label vector; empty if the frame has never been written.

        Raises:
            SizeMismatch: If `expected` is given and a stored record has a
                different number of labels.
        """
        self._check_open()
        self._check_frame(frame)

        size = self._labels.table.size(frame)
        if size == 0:
            return np.empty(0, dtype=LABEL_DTYPE)

        raw = self._labels.read_at(self._labels.table.offset(frame), size)
        labels = np.frombuffer(raw, dtype=LABEL_DTYPE).copy()
        if expected is not None and len(labels) != expected:
            raise SizeMismatch(frame, len(labels), expected)
        logger.debug("get frame=%d labels=%d", frame, len(labels))
        return labels

    def get_features(self, frame: int) -> np.ndarray:
        """Read a frame's (n, FEATURE_WIDTH) feature matrix; empty if never written."""
        self._check_open()
        self._check_frame(frame)

        size = self._features.table.size(frame)
        if size == 0:
            return np.empty((0, FEATURE_WIDTH), dtype=FEATURE_DTYPE)

        raw = self._features.read_at(self._features.table.offset(frame), size)
        return np.frombuffer(raw, dtype=FEATURE_DTYPE).reshape(-1, FEATURE_WIDTH).copy()

    def records(self) -> Iterator[tuple[int, np.ndarray, np.ndarray]]:
        """Yield (frame, features, labels) for every written frame in frame order."""
        self._check_open()
        for frame in self._labels.table.written():
            frame = int(frame)
            yield frame, self.get_features(frame), self.get(frame)

    def __contains__(self, frame: object) -> bool:
        if not isinstance(frame, (int, np.integer)) or not 0 <= frame < self._max_frame:
            return False
        return self._labels.table.size(int(frame)) != 0

    # --- Maintenance ---

    def clean(self) -> None:
        """Empty all four files and forget every record."""
        self._check_open()
        for f in (self._features, self._labels):
            for fh in (f.data, f.sizes):
                fh.seek(0)
                fh.truncate()
                fh.flush()
            f.table.clear()
        self._written_max_frame = -1
        self._frames_written = 0
        logger.info("Cleaned record store")

    def resize(self, max_frame: int) -> None:
        """Change the number of frames.

        Growing adds empty slots. Shrinking drops the trailing frames and
        the bytes they own, which always sit at the end of each data file.
        """
        self._check_open()
        if max_frame < 0:
            raise ValueError(f"max_frame must be non-negative, got {max_frame}")
        if max_frame == self._max_frame and len(self._labels.table) == max_frame:
            return
        self._apply_resize(max_frame)
        self._recount()

    def _apply_resize(self, max_frame: int) -> None:
        previous = len(self._labels.table)
        for f in (self._features, self._labels):
            f.table.resize(max_frame)
            f.data.truncate(f.table.total)
            f.data.flush()
            slots = f.slot_count()
            _write_empty_slots(f.sizes, f.size_dtype, min(slots, max_frame), max_frame)
            f.sizes.flush()
        self._max_frame = max_frame
        logger.info("Resized record store from %d to %d frame(s)", previous, max_frame)

    # --- Export ---

    def export_text(self, kind: str, path: str | Path) -> int:
        """Write every record of one kind to a plain-text file.

        Feature rows become one line of FEATURE_WIDTH space-separated values,
        printed with enough digits to read back the exact float64;
        labels become one value per line. Records are walked through the
        size table in frame order, skipping frames never written. The data
        file's cursor is left where it was.

        Args:
            kind: "feature" or "label".
            path: Output text file, overwritten.

        Returns:
            Number of lines written.
        """
        self._check_open()
        if kind not in KINDS:
            raise ValueError(f"Unknown record kind '{kind}'. Use one of {KINDS}")

        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)

        lines = 0
        with open(out, "w") as fh:
            for frame in self._labels.table.written():
                frame = int(frame)
                if kind == KIND_FEATURE:
                    block = self.get_features(frame)
                    np.savetxt(fh, block, fmt="%.17g")
                else:
                    block = self.get(frame)
                    np.savetxt(fh, block, fmt="%d")
                lines += len(block)

        logger.info("Exported %d %s line(s) to %s", lines, kind, out)
        return lines

    # --- Metadata ---

    @property
    def max_frame(self) -> int:
        return self._max_frame

    @property
    def written_max_frame(self) -> int:
        """Highest frame ever written since open or clean, -1 if none."""
        return self._written_max_frame

    @property
    def frames_written(self) -> int:
        return self._frames_written

    @property
    def feature_table(self) -> SizeTable:
        return self._features.table

    @property
    def label_table(self) -> SizeTable:
        return self._labels.table

    @property
    def spill_paths(self) -> tuple[Path, Path]:
        return self._features.spill_path, self._labels.spill_path

    def summary(self) -> StoreSummary:
        self._check_open()
        segments = int(self._labels.table.total // LABEL_BYTES)
        positives = sum(int(labels.sum()) for _, _, labels in self.records())
        return StoreSummary(
            max_frame=self._max_frame,
            written_max_frame=self._written_max_frame,
            frames_written=self._frames_written,
            segments=segments,
            positive_labels=positives,
            feature_bytes=self._features.table.total,
            label_bytes=self._labels.table.total,
        )

    def __repr__(self) -> str:
        status = "open" if self._opened else "closed"
        return (
            f"RecordStore(max_frame={self._max_frame}, frames_written={self._frames_written}, "
            f"status={status})"
        )
