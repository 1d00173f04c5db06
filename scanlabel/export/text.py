"""Plain-text training export for scanlabel record stores.

Writes two files that line up row for row:
  - feature file — one line of FEATURE_WIDTH values per labeled segment
  - label file — one 0/1 line per labeled segment
"""

from __future__ import annotations

from pathlib import Path

from scanlabel.storage.format import KIND_FEATURE, KIND_LABEL
from scanlabel.storage.store import RecordStore


def export_training_data(
    store: RecordStore,
    feature_path: str | Path,
    label_path: str | Path,
) -> tuple[int, int]:
    """Export every stored record as training text.

    Args:
        store: An opened record store.
        feature_path: Output path for feature rows.
        label_path: Output path for labels.

    Returns:
        (feature lines, label lines); equal for a consistent store.
    """
    features = store.export_text(KIND_FEATURE, feature_path)
    labels = store.export_text(KIND_LABEL, label_path)
    return features, labels


def export_to_dir(store: RecordStore, output_dir: str | Path, prefix: str = "scan") -> list[Path]:
    """Export into a directory as {prefix}_features.txt and {prefix}_labels.txt."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    feature_path = out / f"{prefix}_features.txt"
    label_path = out / f"{prefix}_labels.txt"
    export_training_data(store, feature_path, label_path)
    return [feature_path, label_path]
