"""scanlabel record store file format constants.

A store is four flat binary files with no header:

    feature data   — per-frame blocks, rows of FEATURE_WIDTH float64 values
    feature sizes  — max_frame fixed float64 slots, byte size of each feature block
    label data     — per-frame blocks, one int32 (0 or 1) per segment
    label sizes    — max_frame fixed int32 slots, byte size of each label block

Blocks are laid out in frame order with no gaps; a frame's offset is the
sum of the sizes of all earlier frames.
"""

import numpy as np

# Values per feature row
FEATURE_WIDTH = 10

# Record dtypes (little-endian)
FEATURE_DTYPE = np.dtype("<f8")
LABEL_DTYPE = np.dtype("<i4")

# Size slot dtypes; feature sizes are stored as float64 holding an integral byte count
FEATURE_SIZE_DTYPE = np.dtype("<f8")
LABEL_SIZE_DTYPE = np.dtype("<i4")

FEATURE_ROW_BYTES = FEATURE_WIDTH * FEATURE_DTYPE.itemsize
LABEL_BYTES = LABEL_DTYPE.itemsize

# Suffix of the scratch files used to stage bytes during a splice
SPILL_SUFFIX = ".spill"

# Copy granularity when staging the tail of a data file
COPY_CHUNK_BYTES = 1 << 20

# Record kinds accepted by export_text()
KIND_FEATURE = "feature"
KIND_LABEL = "label"
KINDS = (KIND_FEATURE, KIND_LABEL)

# Raw sample cache (HDF5)
SAMPLES_DATASET = "samples"
POLAR_ATTR = "polar"
SOURCE_ATTR = "source"
COMPRESSION = "gzip"
COMPRESSION_OPTS = 4
CHUNK_SAMPLES = 7200

# Samples inspected when deciding whether a raw log is (theta, r)
POLAR_PROBE_SAMPLES = 360
