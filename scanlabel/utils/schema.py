"""Pydantic models for scanlabel configuration and summaries."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

SUPPORTED_HZ = (360, 720)

# Line order of the session configuration file
_PATH_FIELDS = (
    "raw_data_path",
    "raw_cache_path",
    "feature_output_path",
    "label_output_path",
    "feature_data_path",
    "feature_size_path",
    "label_data_path",
    "label_size_path",
)
_INT_FIELDS = ("hz", "last_saved_frame", "written_max_frame", "frames_written")


class SessionConfig(BaseModel):
    """Paths and counters carried between labeling sessions.

    Stored as a plain text file with one value per line: the eight paths
    followed by hz, last saved frame, highest written frame and the count
    of frames written.
    """

    raw_data_path: Path
    raw_cache_path: Path
    feature_output_path: Path
    label_output_path: Path
    feature_data_path: Path
    feature_size_path: Path
    label_data_path: Path
    label_size_path: Path
    hz: int = 720
    last_saved_frame: int = -1
    written_max_frame: int = -1
    frames_written: int = Field(default=0, ge=0)

    @field_validator("hz")
    @classmethod
    def check_hz(cls, v: int) -> int:
        if v not in SUPPORTED_HZ:
            raise ValueError(f"hz must be one of {SUPPORTED_HZ}, got {v}")
        return v

    @classmethod
    def default(cls, root: str | Path) -> SessionConfig:
        """Default file layout under a data root directory."""
        root = Path(root)
        binary = root / "binary_data"
        return cls(
            raw_data_path=root / "raw_data" / "demo_train_xy.txt",
            raw_cache_path=binary / "raw_samples.h5",
            feature_output_path=root / "default_data" / "default_feature_data.txt",
            label_output_path=root / "default_data" / "default_label_data.txt",
            feature_data_path=binary / "feature_bin",
            feature_size_path=binary / "feature_num_bin",
            label_data_path=binary / "label_bin",
            label_size_path=binary / "label_num_bin",
        )

    def to_text(self) -> str:
        values = [str(getattr(self, name)) for name in _PATH_FIELDS + _INT_FIELDS]
        return "\n".join(values) + "\n"

    @classmethod
    def from_text(cls, data: str) -> SessionConfig:
        lines = [line.strip() for line in data.splitlines()]
        names = _PATH_FIELDS + _INT_FIELDS
        if len(lines) < len(_PATH_FIELDS):
            raise ValueError(
                f"Session config needs at least {len(_PATH_FIELDS)} lines, got {len(lines)}"
            )
        # Counters are optional so files written before they existed still load
        values = {name: value for name, value in zip(names, lines) if value}
        return cls.model_validate(values)

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_text())

    @classmethod
    def load(cls, path: str | Path) -> SessionConfig:
        return cls.from_text(Path(path).read_text())

    @classmethod
    def load_or_create(cls, path: str | Path, root: str | Path | None = None) -> SessionConfig:
        """Read a config file, writing the default layout first if it is missing or empty."""
        path = Path(path)
        if not path.exists() or path.stat().st_size == 0:
            config = cls.default(root if root is not None else path.parent)
            config.save(path)
            return config
        return cls.load(path)


class StoreSummary(BaseModel):
    """Counts describing the contents of a record store."""

    max_frame: int
    written_max_frame: int
    frames_written: int
    segments: int
    positive_labels: int
    feature_bytes: int
    label_bytes: int


class SegmentInfo(BaseModel):
    """One extracted segment as shown to a user."""

    index: int
    points: int
    centroid_x: float
    centroid_y: float
    label: int
