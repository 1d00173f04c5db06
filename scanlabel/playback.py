"""FramePlayer — frame cursor, timed auto-play and frame loading.

Usage:
    player = FramePlayer(source, on_load=lambda data: print(len(data.segments)))
    player.seek(10)
    data = player.load()

    player.auto_play = True
    player.fps = 30
    while running:
        if player.poll():
            player.load()
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

import numpy as np

from scanlabel.features import FeatureExtractor
from scanlabel.source import FrameSource

MIN_FPS = 1
MAX_FPS = 200


@dataclass
class FrameData:
    """One loaded frame: raw points plus its segments and features."""

    frame: int
    points: np.ndarray
    features: np.ndarray
    segments: list[np.ndarray] = field(default_factory=list)

    @property
    def num_segments(self) -> int:
        return len(self.segments)


class FramePlayer:
    """Moves through the frames of a FrameSource.

    Args:
        source: Opened frame source.
        extractor: Segmenter applied to each loaded frame.
        fps: Auto-play rate in frames per second.
        on_load: Called with every FrameData that load() produces.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        source: FrameSource,
        extractor: FeatureExtractor | None = None,
        fps: int = 60,
        on_load: Callable[[FrameData], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.extractor = extractor or FeatureExtractor()
        self.on_load = on_load
        self.fps = fps
        self.auto_play = False
        self.replay = False

        self._clock = clock
        self._last_advance = clock()
        self._frame = 0
        self._max_frame = source.count()

    @property
    def fps(self) -> int:
        return self._fps

    @fps.setter
    def fps(self, value: int) -> None:
        if not MIN_FPS <= value <= MAX_FPS:
            raise ValueError(f"fps must be within {MIN_FPS}..{MAX_FPS}, got {value}")
        self._fps = value

    @property
    def frame(self) -> int:
        return self._frame

    @property
    def max_frame(self) -> int:
        """Number of frames available."""
        return self._max_frame

    def recount(self) -> int:
        """Re-read the frame count from the source and clamp the cursor."""
        self._max_frame = self.source.count()
        self._frame = min(self._frame, max(self._max_frame - 1, 0))
        return self._max_frame

    def seek(self, frame: int) -> bool:
        """Move to a frame, clamped to the valid range. Returns True if it moved."""
        target = min(max(frame, 0), max(self._max_frame - 1, 0))
        moved = target != self._frame
        self._frame = target
        return moved

    def step(self, delta: int = 1) -> bool:
        return self.seek(self._frame + delta)

    def poll(self, now: float | None = None) -> bool:
        """Advance one frame if auto-play is on and the frame period has passed.

        At the last frame, replay wraps to frame 0; otherwise the cursor stays.

        Returns:
            True if the cursor moved.
        """
        if not self.auto_play:
            return False

        now = self._clock() if now is None else now
        if (now - self._last_advance) * 1000 <= 1000 / self._fps:
            return False
        self._last_advance = now

        if self._frame < self._max_frame - 1:
            self._frame += 1
            return True
        if self.replay and self._frame != 0:
            self._frame = 0
            return True
        return False

    def load(self) -> FrameData:
        """Read and segment the current frame, then run the on_load hook."""
        points = self.source.read(self._frame)
        features, segments = self.extractor.extract(points)
        data = FrameData(frame=self._frame, points=points, features=features, segments=segments)
        if self.on_load is not None:
            self.on_load(data)
        return data

    def __repr__(self) -> str:
        return (
            f"FramePlayer(frame={self._frame}, max_frame={self._max_frame}, "
            f"fps={self._fps}, auto_play={self.auto_play})"
        )
