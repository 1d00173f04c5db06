"""LabelingSession — the state machine behind a labeling front end.

A front end sets request flags and edits labels; once per UI frame it
calls tick(), which handles the requests in a fixed order:

    clean -> load -> frame refresh -> save -> text output

Usage:
    from scanlabel import LabelingSession, SessionConfig

    config = SessionConfig.load_or_create("scanlabel.cfg", root="dataset")
    with LabelingSession(config, config_path="scanlabel.cfg") as session:
        session.seek(12)
        session.tick()
        session.label_nearest()
        session.save_requested = True
        session.tick()
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import numpy as np

from scanlabel.export.text import export_training_data
from scanlabel.features import FeatureExtractor
from scanlabel.playback import FrameData, FramePlayer
from scanlabel.source import FrameSource
from scanlabel.storage.errors import SizeMismatch
from scanlabel.storage.format import LABEL_DTYPE
from scanlabel.storage.store import RecordStore
from scanlabel.utils.schema import SUPPORTED_HZ, SegmentInfo, SessionConfig

logger = logging.getLogger(__name__)

# Minimum spacing between two saves, in seconds
SAVE_DEBOUNCE = 0.1

DEFAULT_MOUSE_AREA = 0.05


class LabelingSession:
    """Owns the frame source, the record store and the working label vector.

    Args:
        config: Paths and persisted counters.
        config_path: Where close() writes the updated config. None skips it.
        extractor: Segmenter for loaded frames.
        clock: Monotonic time source in seconds, used for auto-play and
            save debouncing.
    """

    def __init__(
        self,
        config: SessionConfig,
        config_path: str | Path | None = None,
        extractor: FeatureExtractor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.config_path = Path(config_path) if config_path is not None else None
        self._extractor = extractor or FeatureExtractor()
        self._clock = clock

        self._source: FrameSource | None = None
        self._player: FramePlayer | None = None
        self._store: RecordStore | None = None

        # Pending requests, handled by tick()
        self.clean_requested = False
        self.load_requested = False
        self.needs_refresh = False
        self.save_requested = False
        self.output_requested = False

        # Labeling modes
        self.show_rect = False
        self.show_nearest = False
        self.auto_label = False
        self.label_mouse_area = DEFAULT_MOUSE_AREA
        self.rect: tuple[float, float, float, float] | None = None

        self.frame_data: FrameData | None = None
        self.labels = np.zeros(0, dtype=LABEL_DTYPE)
        self.last_saved_frame = config.last_saved_frame
        self.last_warning: str | None = None

        self._last_save_time = -math.inf
        self._in_tick = False
        self._opened = False

    # --- Lifecycle ---

    def open(self) -> None:
        """Ingest the raw log if needed and open the record store."""
        if self._opened:
            raise RuntimeError("Session already open.")

        self._source = FrameSource(
            self.config.raw_data_path, self.config.raw_cache_path, hz=self.config.hz
        )
        self._source.ingest()
        self._source.open()
        self._player = FramePlayer(
            self._source, self._extractor, on_load=self._attach_labels, clock=self._clock
        )
        self._store = RecordStore.from_config(self.config, max_frame=self._store_frames())
        try:
            self._store.open()
        except Exception:
            self._source.close()
            raise

        self._check_counters()
        self._opened = True
        self.needs_refresh = True

    def _store_frames(self) -> int:
        """Frame slots for the store: the frame count at the highest frame rate.

        Switching hz only changes how many of these slots are reachable, so
        records beyond the current frame range are kept.
        """
        assert self._source is not None
        return self._source.count_at(min(SUPPORTED_HZ))

    def _check_counters(self) -> None:
        assert self._store is not None
        recorded = (self.config.written_max_frame, self.config.frames_written)
        actual = (self._store.written_max_frame, self._store.frames_written)
        if recorded != actual:
            logger.warning(
                "Config counters (highest frame %d, %d written) disagree with the size table "
                "(highest frame %d, %d written); using the size table",
                *recorded, *actual,
            )

    def close(self) -> None:
        """Close files, remove spill files and write back the config."""
        if not self._opened:
            return
        assert self._store is not None and self._source is not None

        self.config.last_saved_frame = self.last_saved_frame
        self.config.written_max_frame = self._store.written_max_frame
        self.config.frames_written = self._store.frames_written
        self.config.hz = self._source.hz

        self._store.close()
        self._source.close()
        self._opened = False

        if self.config_path is not None:
            self.config.save(self.config_path)

    def __enter__(self) -> LabelingSession:
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _require_open(self) -> tuple[FramePlayer, RecordStore]:
        if not self._opened or self._player is None or self._store is None:
            raise RuntimeError("Session not opened. Call .open() first.")
        return self._player, self._store

    # --- Tick ---

    def tick(self, now: float | None = None) -> None:
        """Handle pending requests in order: clean, load, refresh, save, output."""
        player, _ = self._require_open()
        if self._in_tick:
            raise RuntimeError("tick() called while a tick is in progress.")

        now = self._clock() if now is None else now
        self._in_tick = True
        try:
            if player.poll(now):
                self.needs_refresh = True
            self._check_clean()
            self._check_load()
            self._check_refresh()
            self._check_save(now)
            self._check_output()
        finally:
            self._in_tick = False

    def _check_clean(self) -> None:
        if not self.clean_requested:
            return
        self.clean_requested = False
        self._clean()

    def _clean(self) -> None:
        player, store = self._require_open()
        store.clean()
        for path in (self.config.feature_output_path, self.config.label_output_path):
            Path(path).unlink(missing_ok=True)

        player.seek(0)
        player.auto_play = False
        player.replay = False
        self.show_rect = False
        self.show_nearest = False
        self.auto_label = False
        self.save_requested = False
        self.output_requested = False
        self.labels = np.zeros(0, dtype=LABEL_DTYPE)
        self.frame_data = None
        self.last_saved_frame = -1
        self.needs_refresh = True

    def _check_load(self) -> None:
        if not self.load_requested:
            return
        self.load_requested = False

        player, store = self._require_open()
        assert self._source is not None
        # Records belong to the previous log
        self._clean()
        self._source.ingest(force=True)
        player.recount()
        store.resize(self._store_frames())
        self.needs_refresh = True
        logger.info("Loaded %s: %d frame(s)", self._source.raw_path, player.max_frame)

    def _check_refresh(self) -> None:
        if not self.needs_refresh:
            return
        self.needs_refresh = False

        player, _ = self._require_open()
        if player.max_frame == 0:
            self.frame_data = None
            self.labels = np.zeros(0, dtype=LABEL_DTYPE)
            return
        player.load()

    def _attach_labels(self, data: FrameData) -> None:
        """Reset the working labels for a freshly loaded frame, reusing stored ones."""
        _, store = self._require_open()
        self.frame_data = data
        self.labels = np.zeros(data.num_segments, dtype=LABEL_DTYPE)
        if data.frame not in store:
            return
        try:
            self.labels = store.get(data.frame, expected=data.num_segments)
        except SizeMismatch as e:
            self.last_warning = f"{e}; stored labels discarded"
            logger.warning(self.last_warning)

    def _check_save(self, now: float) -> None:
        if self.auto_label and (self.show_rect or self.show_nearest):
            if self.show_rect and self.rect is not None:
                self.label_rect(*self.rect)
            if self.show_nearest:
                self.label_nearest()
            self.save_requested = True

        if not self.save_requested:
            return
        self.save_requested = False

        if now - self._last_save_time < SAVE_DEBOUNCE:
            logger.debug("Save ignored, previous save %.3fs ago", now - self._last_save_time)
            return
        if self.save():
            self._last_save_time = now

    def _check_output(self) -> None:
        if not self.output_requested:
            return
        self.output_requested = False
        self.export()

    # --- Actions ---

    def save(self) -> bool:
        """Store the current frame's features and working labels.

        Returns:
            False if there was nothing to save.
        """
        _, store = self._require_open()
        data = self.frame_data
        if data is None or data.num_segments == 0:
            logger.debug("Nothing to save for the current frame")
            return False

        store.put(data.frame, data.features, self.labels)
        self.last_saved_frame = data.frame
        return True

    def export(self) -> tuple[int, int]:
        """Write the feature and label text exports.

        Returns:
            (feature lines, label lines)
        """
        _, store = self._require_open()
        return export_training_data(
            store, self.config.feature_output_path, self.config.label_output_path
        )

    def request_load(self, raw_path: str | Path | None = None) -> None:
        """Ask the next tick to switch to a raw log, discarding current records."""
        if raw_path is not None:
            self.config.raw_data_path = Path(raw_path)
            if self._source is not None:
                self._source.raw_path = Path(raw_path)
        self.load_requested = True

    def set_hz(self, hz: int) -> None:
        """Change samples per frame.

        The frame count halves or doubles and the cursor resets. Stored records
        are left in place.
        """
        player, _ = self._require_open()
        assert self._source is not None
        if hz == self._source.hz:
            return
        self._source.set_hz(hz)
        self.config.hz = hz
        player.recount()
        player.seek(0)
        self.needs_refresh = True

    # --- Navigation ---

    def seek(self, frame: int) -> None:
        player, _ = self._require_open()
        player.seek(frame)
        self.needs_refresh = True

    def next_frame(self) -> None:
        player, _ = self._require_open()
        if player.step(1):
            self.needs_refresh = True

    def prev_frame(self) -> None:
        player, _ = self._require_open()
        if player.step(-1):
            self.needs_refresh = True

    # --- Label edits ---

    @property
    def segments(self) -> list[np.ndarray]:
        return self.frame_data.segments if self.frame_data is not None else []

    def set_labels(self, labels: np.ndarray | list[int]) -> None:
        arr = np.asarray(labels, dtype=LABEL_DTYPE)
        if arr.shape != (len(self.segments),):
            raise ValueError(f"Expected {len(self.segments)} label(s), got shape {arr.shape}")
        if not np.isin(arr, (0, 1)).all():
            raise ValueError("Labels must be 0 or 1")
        self.labels = arr.copy()

    def toggle_at(self, x: float, y: float) -> list[int]:
        """Flip the label of every segment with a point near (x, y).

        Returns:
            Indices of the flipped segments.
        """
        area = self.label_mouse_area
        flipped = []
        for i, seg in enumerate(self.segments):
            near = (np.abs(seg[:, 0] - x) < area) & (np.abs(seg[:, 1] - y) < area)
            if near.any():
                self.labels[i] = 1 - self.labels[i]
                flipped.append(i)
        return flipped

    def label_rect(self, x_min: float, y_min: float, x_max: float, y_max: float) -> list[int]:
        """Label 1 every segment with a point strictly inside the rectangle."""
        hit = []
        for i, seg in enumerate(self.segments):
            inside = (
                (x_min < seg[:, 0]) & (seg[:, 0] < x_max)
                & (y_min < seg[:, 1]) & (seg[:, 1] < y_max)
            )
            if inside.any():
                self.labels[i] = 1
                hit.append(i)
        return hit

    def label_nearest(self) -> int | None:
        """Label 1 the segment whose centroid is closest to the sensor."""
        if not self.segments:
            return None
        distances = [float(np.linalg.norm(seg.mean(axis=0))) for seg in self.segments]
        nearest = int(np.argmin(distances))
        self.labels[nearest] = 1
        return nearest

    def segment_infos(self) -> list[SegmentInfo]:
        infos = []
        for i, seg in enumerate(self.segments):
            cx, cy = seg.mean(axis=0)
            infos.append(SegmentInfo(
                index=i,
                points=len(seg),
                centroid_x=float(cx),
                centroid_y=float(cy),
                label=int(self.labels[i]),
            ))
        return infos

    # --- Properties ---

    @property
    def player(self) -> FramePlayer:
        return self._require_open()[0]

    @property
    def store(self) -> RecordStore:
        return self._require_open()[1]

    @property
    def frame(self) -> int:
        return self.player.frame

    @property
    def max_frame(self) -> int:
        return self.player.max_frame

    @property
    def written_max_frame(self) -> int:
        return self.store.written_max_frame

    @property
    def frames_written(self) -> int:
        return self.store.frames_written

    def __repr__(self) -> str:
        if not self._opened:
            return "LabelingSession(status=closed)"
        return (
            f"LabelingSession(frame={self.frame}, max_frame={self.max_frame}, "
            f"frames_written={self.frames_written})"
        )
