"""scanlabel Example: Headless Labeling of a Simulated Scan Log

Generates a 720-sample-per-frame laser log of a room with a walking
person (a small arc) and a wall, labels the person in every other frame
out of order, then exports training text.

Run:
    python examples/headless_labeling.py

Output:
    - Creates example_data/ with the raw log, the record store and a config
    - Writes example_data/default_data/*.txt training exports
"""

from pathlib import Path

import numpy as np

from scanlabel import LabelingSession, SessionConfig

HZ = 720
NUM_FRAMES = 40


def simulate_log(path: Path, seed: int = 0) -> None:
    """Write a polar (theta, r) log: a wall at 4 m and a person walking across."""
    rng = np.random.default_rng(seed)
    theta = np.arange(HZ) * 0.5  # 0.5 degree steps cover 0..359.5

    rows = []
    for frame in range(NUM_FRAMES):
        r = np.full(HZ, 4.0) + rng.normal(0, 0.005, HZ)

        # Person: ~0.4 m wide blob 1.5 m away, sweeping from 40 to 140 degrees
        center = 40 + 100 * frame / (NUM_FRAMES - 1)
        person = np.abs(theta - center) < 7.5
        r[person] = 1.5 + 0.15 * (1 - np.cos(np.deg2rad(theta[person] - center) * 12))

        # Dropouts behind the sensor
        r[(theta > 200) & (theta < 340)] = 0.0
        rows.append(np.column_stack([theta, r]))

    path.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(path, np.vstack(rows), fmt="%.4f")


def main() -> None:
    root = Path("example_data")
    config_path = root / "scanlabel.cfg"

    config = SessionConfig.load_or_create(config_path, root=root)
    config.hz = HZ
    simulate_log(config.raw_data_path)

    # --- Label every other frame, back to front ---
    with LabelingSession(config, config_path=config_path) as session:
        session.tick()
        print(f"Loaded {session.max_frame} frames")

        for frame in reversed(range(0, session.max_frame, 2)):
            session.seek(frame)
            session.tick()
            target = session.label_nearest()
            session.save()
            print(f"  frame {frame:3d}: {len(session.segments)} segment(s), labeled #{target}")

        session.output_requested = True
        session.tick()

        summary = session.store.summary()
        print(f"\nFrames written: {summary.frames_written}")
        print(f"Segments stored: {summary.segments} ({summary.positive_labels} positive)")

    print(f"Features: {config.feature_output_path}")
    print(f"Labels:   {config.label_output_path}")


if __name__ == "__main__":
    main()
