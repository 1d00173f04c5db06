"""Segmentation and per-segment geometric features for one scan frame."""

from __future__ import annotations

import numpy as np

from scanlabel.storage.format import FEATURE_WIDTH

# Gap between consecutive points that starts a new segment, in metres
SEGMENT_GAP = 0.1

FEATURE_NAMES = (
    "points",
    "spread",
    "width",
    "radius",
    "circularity",
    "center_distance",
    "box_long",
    "box_short",
    "box_area",
    "line_residual",
)


def valid_points(points: np.ndarray) -> np.ndarray:
    """Rows whose coordinates are both finite and nonzero."""
    tiny = np.finfo(np.float64).tiny
    mask = np.isfinite(points).all(axis=1) & (np.abs(points) >= tiny).all(axis=1)
    return points[mask]


def segment_points(points: np.ndarray, gap: float = SEGMENT_GAP) -> list[np.ndarray]:
    """Split a frame into runs of neighbouring points.

    A scan wraps around, so when the last valid point is within `gap`
    of the first, the final run is joined in front of the first one.
    """
    pts = valid_points(np.asarray(points, dtype=np.float64))
    if len(pts) == 0:
        return []

    jumps = np.linalg.norm(np.diff(pts, axis=0), axis=1) >= gap
    segments = np.split(pts, np.flatnonzero(jumps) + 1)

    wraps = np.linalg.norm(pts[0] - pts[-1]) < gap
    if wraps and len(segments) > 1:
        segments[0] = np.vstack([segments[-1], segments[0]])
        segments.pop()
    return segments


def _circle_fit(seg: np.ndarray) -> tuple[float, float, float]:
    """Least-squares circle: (radius, circularity residual, centre distance)."""
    x, y = seg[:, 0], seg[:, 1]
    A = np.column_stack([-2 * x, -2 * y, np.ones(len(seg))])
    b = -(x**2) - y**2
    (xc, yc, c), *_ = np.linalg.lstsq(A, b, rcond=None)

    radius = float(np.sqrt(max(xc**2 + yc**2 - c, 0.0)))
    dist = np.sqrt((xc - x) ** 2 + (yc - y) ** 2)
    circularity = float(((radius - dist) ** 2).sum())
    center_distance = float(np.hypot(xc, yc))
    return radius, circularity, center_distance


def _box_and_line(seg: np.ndarray) -> tuple[float, float, float, float]:
    """Principal-axis bounding box (long, short, area) and line residual."""
    if len(seg) < 2:
        return 0.0, 0.0, 0.0, 0.0

    centered = seg - seg.mean(axis=0)
    _, _, vt = np.linalg.svd(centered, full_matrices=False)
    along = centered @ vt[0]
    across = centered @ vt[1]

    long_side = float(along.max() - along.min())
    short_side = float(across.max() - across.min())
    return long_side, short_side, long_side * short_side, float((across**2).mean())


def segment_features(seg: np.ndarray) -> np.ndarray:
    """FEATURE_WIDTH descriptors of one segment, ordered as FEATURE_NAMES."""
    n = len(seg)
    spread = 0.0
    if n >= 2:
        spread = float(np.sqrt(((seg - seg.mean(axis=0)) ** 2).sum() / (n - 1)))
    width = float(np.linalg.norm(seg[0] - seg[-1]))

    return np.array(
        [n, spread, width, *_circle_fit(seg), *_box_and_line(seg)],
        dtype=np.float64,
    )


class FeatureExtractor:
    """Turns a frame's point matrix into segments and a feature matrix.

    Args:
        gap: Distance between consecutive points that splits segments.
    """

    def __init__(self, gap: float = SEGMENT_GAP) -> None:
        self.gap = gap

    def extract(self, points: np.ndarray) -> tuple[np.ndarray, list[np.ndarray]]:
        """Segment a frame.

        Returns:
            (features, segments): an (n, FEATURE_WIDTH) matrix and the n
            (k, 2) segment point arrays, in scan order.
        """
        segments = segment_points(points, self.gap)
        features = np.zeros((len(segments), FEATURE_WIDTH), dtype=np.float64)
        for i, seg in enumerate(segments):
            features[i] = segment_features(seg)
        return features, segments

    def __repr__(self) -> str:
        return f"FeatureExtractor(gap={self.gap})"
