"""scanlabel — label laser scan segments for classifier training.

Segments each frame of a laser range-finder log, lets a front end mark
segments as targets, and keeps labels plus per-segment features in a
frame-indexed binary store that accepts writes in any frame order.

Quick start:
    from scanlabel import LabelingSession, RecordStore, SessionConfig

    # Label
    config = SessionConfig.load_or_create("scanlabel.cfg", root="dataset")
    with LabelingSession(config, config_path="scanlabel.cfg") as session:
        session.seek(20)
        session.tick()             # loads frame 20
        session.label_nearest()
        session.save_requested = True
        session.tick()             # stores it

    # Read back
    with RecordStore.from_config(config, max_frame=120) as store:
        print(store.get(20))
        store.export_text("label", "labels.txt")
"""

__version__ = "0.1.0"

from scanlabel.features import FeatureExtractor
from scanlabel.playback import FrameData, FramePlayer
from scanlabel.session import LabelingSession
from scanlabel.source import FrameSource
from scanlabel.storage.errors import (
    InsertionIOFailure,
    SizeMismatch,
    StorageError,
    StorageUnavailable,
)
from scanlabel.storage.store import RecordStore
from scanlabel.utils.schema import SessionConfig

__all__ = [
    "FeatureExtractor",
    "FrameData",
    "FramePlayer",
    "FrameSource",
    "InsertionIOFailure",
    "LabelingSession",
    "RecordStore",
    "SessionConfig",
    "SizeMismatch",
    "StorageError",
    "StorageUnavailable",
    "__version__",
]
