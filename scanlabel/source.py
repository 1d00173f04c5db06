"""FrameSource — raw laser log access by frame.

A raw log is a text file with one "a b" sample per line, either Cartesian
(x, y) or polar (theta in degrees, r). It is transcoded once into an HDF5
cache so any frame can be sliced out directly.

Usage:
    with FrameSource("scan.txt", "scan.h5", hz=720) as src:
        print(src.count())     # number of whole frames
        points = src.read(10)  # (720, 2) x/y matrix
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import h5py
import numpy as np

from scanlabel.storage.errors import StorageUnavailable
from scanlabel.storage.format import (
    CHUNK_SAMPLES,
    COMPRESSION,
    COMPRESSION_OPTS,
    POLAR_ATTR,
    POLAR_PROBE_SAMPLES,
    SAMPLES_DATASET,
    SOURCE_ATTR,
)
from scanlabel.utils.schema import SUPPORTED_HZ

logger = logging.getLogger(__name__)


def is_polar(samples: np.ndarray) -> bool:
    """Whether the first column of a log steps like a scan angle.

    Angles advance by 0.5 or 1 degree per sample depending on the sensor.
    """
    probe = samples[:POLAR_PROBE_SAMPLES, 0]
    if len(probe) < 2:
        return False
    tenths = (probe * 10).astype(np.int64)
    steps = np.diff(tenths)
    return bool(np.isin(steps, (5, 10)).all())


def polar_to_xy(samples: np.ndarray) -> np.ndarray:
    """Convert (theta degrees, r) rows to (x, y) rows."""
    theta = np.deg2rad(samples[:, 0])
    r = samples[:, 1]
    return np.column_stack([r * np.cos(theta), r * np.sin(theta)])


class FrameSource:
    """Frames of hz samples read from a cached raw laser log.

    Args:
        raw_path: Text log, one sample per line.
        cache_path: HDF5 cache written by ingest().
        hz: Samples per frame (360 or 720).
    """

    def __init__(self, raw_path: str | Path, cache_path: str | Path, hz: int = 720) -> None:
        self.raw_path = Path(raw_path)
        self.cache_path = Path(cache_path)
        self._check_hz(hz)
        self._hz = hz
        self._file: h5py.File | None = None
        self._polar = False

    @staticmethod
    def _check_hz(hz: int) -> None:
        if hz not in SUPPORTED_HZ:
            raise ValueError(f"hz must be one of {SUPPORTED_HZ}, got {hz}")

    def _cache_is_fresh(self) -> bool:
        if not self.cache_path.exists():
            return False
        if self.cache_path.stat().st_mtime < self.raw_path.stat().st_mtime:
            return False
        try:
            with h5py.File(str(self.cache_path), "r") as f:
                return f.attrs.get(SOURCE_ATTR) == str(self.raw_path.resolve())
        except OSError:
            return False

    def ingest(self, force: bool = False) -> int:
        """Transcode the raw log into the HDF5 cache.

        Skipped when the cache already holds this log and is newer than it.

        Returns:
            Number of samples in the cache.
        """
        if not self.raw_path.exists():
            raise StorageUnavailable(self.raw_path, "raw log not found")

        was_open = self._file is not None
        self.close()

        if force or not self._cache_is_fresh():
            try:
                samples = np.loadtxt(self.raw_path, usecols=(0, 1), ndmin=2, dtype=np.float64)
            except OSError as e:
                raise StorageUnavailable(self.raw_path, e) from e
            if samples.size == 0:
                samples = np.empty((0, 2), dtype=np.float64)

            polar = is_polar(samples)
            try:
                self.cache_path.parent.mkdir(parents=True, exist_ok=True)
                with h5py.File(str(self.cache_path), "w") as f:
                    f.create_dataset(
                        SAMPLES_DATASET,
                        data=samples,
                        maxshape=(None, 2),
                        chunks=(min(max(len(samples), 1), CHUNK_SAMPLES), 2),
                        compression=COMPRESSION,
                        compression_opts=COMPRESSION_OPTS,
                    )
                    f.attrs[POLAR_ATTR] = polar
                    f.attrs[SOURCE_ATTR] = str(self.raw_path.resolve())
            except OSError as e:
                raise StorageUnavailable(self.cache_path, e) from e
            logger.info(
                "Ingested %d %s sample(s) from %s",
                len(samples), "polar" if polar else "x/y", self.raw_path,
            )

        self.open()
        n = self.num_samples
        if not was_open:
            self.close()
        return n

    def open(self) -> None:
        """Open the cache for reading, ingesting first if needed."""
        if self._file is not None:
            return
        if not self.cache_path.exists():
            self.ingest()
        try:
            self._file = h5py.File(str(self.cache_path), "r")
        except OSError as e:
            raise StorageUnavailable(self.cache_path, e) from e
        self._polar = bool(self._file.attrs.get(POLAR_ATTR, False))

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> FrameSource:
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def hz(self) -> int:
        return self._hz

    def set_hz(self, hz: int) -> None:
        """Change samples per frame. Frame count halves or doubles accordingly."""
        self._check_hz(hz)
        self._hz = hz

    @property
    def polar(self) -> bool:
        return self._polar

    @property
    def num_samples(self) -> int:
        if self._file is None:
            raise RuntimeError("FrameSource not opened. Call .open() first.")
        return int(self._file[SAMPLES_DATASET].shape[0])

    def count(self) -> int:
        """Number of whole frames in the log."""
        return self.num_samples // self._hz

    def count_at(self, hz: int) -> int:
        """Number of whole frames the log would have at another rate."""
        self._check_hz(hz)
        return self.num_samples // hz

    def read(self, frame: int) -> np.ndarray:
        """Read one frame as an (hz, 2) x/y matrix."""
        n_frames = self.count()
        if not 0 <= frame < n_frames:
            raise IndexError(f"Frame {frame} out of range 0..{n_frames - 1}")

        assert self._file is not None
        start = frame * self._hz
        points = self._file[SAMPLES_DATASET][start:start + self._hz]
        if self._polar:
            points = polar_to_xy(points)
        return np.asarray(points, dtype=np.float64)

    def __repr__(self) -> str:
        return f"FrameSource(raw='{self.raw_path}', hz={self._hz})"
