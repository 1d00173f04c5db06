"""Tests for the scanlabel pipeline: raw log → frames → segments → labels → store → export."""

import logging

import numpy as np
import pytest
from pydantic import ValidationError

from scanlabel import LabelingSession
from scanlabel.features import FeatureExtractor, segment_features, segment_points
from scanlabel.playback import FramePlayer
from scanlabel.source import FrameSource, is_polar
from scanlabel.storage.errors import StorageUnavailable
from scanlabel.storage.format import FEATURE_WIDTH
from scanlabel.utils.schema import SessionConfig

HZ = 360

# Each cluster is a run of 10 points, 1 cm apart, starting at this corner
CLUSTERS = {
    "A": (1.0, 1.0),
    "B": (3.0, 0.5),
    "C": (-2.0, -2.0),
    "D": (0.5, 4.0),
}
FRAME_CLUSTERS = ["ABC", "ABCD", "AB", "ABC", "ABCD", "ABC"]


def make_frame(names, hz=HZ):
    points = np.zeros((hz, 2))
    for i, name in enumerate(names):
        x, y = CLUSTERS[name]
        start = i * 90
        points[start:start + 10, 0] = x + 0.01 * np.arange(10)
        points[start:start + 10, 1] = y
    return points


def write_log(path, frames):
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(path, np.vstack([make_frame(names) for names in frames]), fmt="%.4f")
    return path


@pytest.fixture
def config(tmp_path):
    cfg = SessionConfig.default(tmp_path)
    cfg.hz = HZ
    write_log(cfg.raw_data_path, FRAME_CLUSTERS)
    return cfg


@pytest.fixture
def session(config):
    s = LabelingSession(config)
    s.open()
    s.tick(now=0.0)
    yield s
    s.close()


# ── Features ───────────────────────────────────────────────


class TestFeatures:
    def test_clusters_become_segments(self):
        features, segments = FeatureExtractor().extract(make_frame("ABC"))
        assert features.shape == (3, FEATURE_WIDTH)
        assert len(segments) == 3
        assert features[:, 0].tolist() == [10, 10, 10]
        assert segments[1][0].tolist() == pytest.approx([3.0, 0.5])

    def test_wrapped_run_joins_first_segment(self):
        points = np.array([
            [1.00, 1.0], [1.01, 1.0],
            [3.00, 3.0], [3.01, 3.0],
            [0.98, 1.0], [0.99, 1.0],
        ])
        segments = segment_points(points)
        assert len(segments) == 2
        assert len(segments[0]) == 4
        assert segments[0][0].tolist() == pytest.approx([0.98, 1.0])

    def test_no_valid_points(self):
        points = np.zeros((HZ, 2))
        points[5] = [np.nan, 1.0]
        features, segments = FeatureExtractor().extract(points)
        assert features.shape == (0, FEATURE_WIDTH)
        assert segments == []

    def test_invalid_points_are_skipped(self):
        points = np.array([[1.0, 1.0], [0.0, 0.0], [np.inf, 1.0], [1.01, 1.0]])
        segments = segment_points(points)
        assert len(segments) == 1
        assert len(segments[0]) == 2

    def test_line_segment(self):
        seg = np.column_stack([1.0 + 0.01 * np.arange(10), np.full(10, 2.0)])
        f = segment_features(seg)
        assert f[0] == 10
        assert f[2] == pytest.approx(0.09)
        assert f[6] == pytest.approx(0.09)
        assert f[7] == pytest.approx(0.0, abs=1e-9)
        assert f[9] == pytest.approx(0.0, abs=1e-12)

    def test_circle_segment(self):
        theta = np.linspace(0, np.pi / 2, 20)
        seg = np.column_stack([3.0 + 0.5 * np.cos(theta), 0.5 * np.sin(theta)])
        f = segment_features(seg)
        assert f[3] == pytest.approx(0.5, rel=1e-6)
        assert f[4] == pytest.approx(0.0, abs=1e-9)
        assert f[5] == pytest.approx(3.0, rel=1e-6)

    def test_single_point_segment(self):
        f = segment_features(np.array([[1.0, 2.0]]))
        assert f[0] == 1
        assert f[1] == 0.0
        assert f[2] == 0.0
        assert f[6:].tolist() == [0.0, 0.0, 0.0, 0.0]
        assert np.isfinite(f).all()


# ── Frame Source ───────────────────────────────────────────


class TestFrameSource:
    def test_count_and_read(self, config):
        with FrameSource(config.raw_data_path, config.raw_cache_path, hz=HZ) as src:
            assert src.count() == 6
            assert src.polar is False
            frame = src.read(2)
            assert frame.shape == (HZ, 2)
            assert frame[90].tolist() == pytest.approx([3.0, 0.5])

    def test_read_out_of_range(self, config):
        with FrameSource(config.raw_data_path, config.raw_cache_path, hz=HZ) as src:
            with pytest.raises(IndexError):
                src.read(6)
            with pytest.raises(IndexError):
                src.read(-1)

    def test_set_hz_halves_frames(self, config):
        with FrameSource(config.raw_data_path, config.raw_cache_path, hz=HZ) as src:
            src.set_hz(720)
            assert src.count() == 3
            assert src.read(0).shape == (720, 2)
            assert src.count_at(360) == 6

    def test_fresh_cache_is_reused(self, config):
        src = FrameSource(config.raw_data_path, config.raw_cache_path, hz=HZ)
        assert src.ingest() == 6 * HZ
        stamp = config.raw_cache_path.stat().st_mtime_ns
        assert src.ingest() == 6 * HZ
        assert config.raw_cache_path.stat().st_mtime_ns == stamp

    def test_polar_log(self, tmp_path):
        raw = tmp_path / "polar.txt"
        theta = np.arange(HZ) * 0.5
        np.savetxt(raw, np.column_stack([theta, np.full(HZ, 2.0)]), fmt="%.4f")

        with FrameSource(raw, tmp_path / "polar.h5", hz=HZ) as src:
            assert src.polar is True
            frame = src.read(0)
            assert frame[0].tolist() == pytest.approx([2.0, 0.0])
            assert frame[180].tolist() == pytest.approx([0.0, 2.0], abs=1e-9)

    def test_is_polar_rejects_xy(self):
        assert not is_polar(make_frame("ABC"))
        assert not is_polar(np.array([[0.0, 1.0]]))

    def test_missing_raw_log(self, tmp_path):
        src = FrameSource(tmp_path / "missing.txt", tmp_path / "cache.h5", hz=HZ)
        with pytest.raises(StorageUnavailable):
            src.ingest()

    def test_invalid_hz(self, tmp_path):
        with pytest.raises(ValueError, match="hz"):
            FrameSource(tmp_path / "a.txt", tmp_path / "a.h5", hz=500)


# ── Playback ───────────────────────────────────────────────


class TestFramePlayer:
    @pytest.fixture
    def source(self, config):
        src = FrameSource(config.raw_data_path, config.raw_cache_path, hz=HZ)
        src.open()
        yield src
        src.close()

    def test_seek_clamps(self, source):
        player = FramePlayer(source, clock=lambda: 0.0)
        assert player.max_frame == 6
        assert player.seek(100) is True
        assert player.frame == 5
        assert player.seek(5) is False
        player.seek(-3)
        assert player.frame == 0

    def test_poll_waits_for_frame_period(self, source):
        player = FramePlayer(source, fps=10, clock=lambda: 0.0)
        assert player.poll(now=1.0) is False  # auto-play off

        player.auto_play = True
        assert player.poll(now=0.05) is False
        assert player.poll(now=0.2) is True
        assert player.frame == 1
        assert player.poll(now=0.25) is False

    def test_poll_stops_or_wraps_at_end(self, source):
        player = FramePlayer(source, fps=10, clock=lambda: 0.0)
        player.auto_play = True
        player.seek(5)
        assert player.poll(now=1.0) is False
        assert player.frame == 5

        player.replay = True
        assert player.poll(now=2.0) is True
        assert player.frame == 0

    def test_fps_range(self, source):
        with pytest.raises(ValueError, match="fps"):
            FramePlayer(source, fps=0)
        player = FramePlayer(source)
        with pytest.raises(ValueError):
            player.fps = 201
        player.fps = 200
        assert player.fps == 200

    def test_load_runs_hook(self, source):
        loaded = []
        player = FramePlayer(source, on_load=loaded.append, clock=lambda: 0.0)
        player.seek(1)
        data = player.load()
        assert data.frame == 1
        assert data.num_segments == 4
        assert loaded == [data]


# ── Labeling Session ───────────────────────────────────────


class TestLabelingSession:
    def test_open_loads_first_frame(self, session):
        assert session.frame == 0
        assert session.max_frame == 6
        assert len(session.segments) == 3
        assert session.labels.tolist() == [0, 0, 0]
        assert session.frames_written == 0

    def test_save_and_reload_labels(self, session):
        assert session.label_nearest() == 0
        session.save_requested = True
        session.tick(now=1.0)
        assert 0 in session.store
        assert session.store.get(0).tolist() == [1, 0, 0]

        session.next_frame()
        session.tick(now=2.0)
        assert session.labels.tolist() == [0, 0, 0, 0]

        session.prev_frame()
        session.tick(now=3.0)
        assert session.labels.tolist() == [1, 0, 0]

    def test_save_debounce(self, session):
        session.set_labels([1, 0, 0])
        session.save_requested = True
        session.tick(now=1.0)

        session.set_labels([0, 1, 0])
        session.save_requested = True
        session.tick(now=1.05)
        assert session.store.get(0).tolist() == [1, 0, 0]
        assert session.save_requested is False

        session.save_requested = True
        session.tick(now=1.2)
        assert session.store.get(0).tolist() == [0, 1, 0]

    def test_out_of_order_labels_persist(self, config, tmp_path):
        config_path = tmp_path / "scanlabel.cfg"
        with LabelingSession(config, config_path=config_path) as s:
            for frame, labels in ((4, [0, 0, 0, 1]), (1, [1, 1, 0, 0]), (3, [0, 0, 1])):
                s.seek(frame)
                s.tick(now=float(frame))
                s.set_labels(labels)
                assert s.save() is True

        saved = SessionConfig.load(config_path)
        assert saved.written_max_frame == 4
        assert saved.frames_written == 3
        assert saved.last_saved_frame == 3

        with LabelingSession(saved, config_path=config_path) as s:
            assert s.store.get(1).tolist() == [1, 1, 0, 0]
            assert s.store.get(3).tolist() == [0, 0, 1]
            assert s.store.get(4).tolist() == [0, 0, 0, 1]
            assert s.store.get_features(1).shape == (4, FEATURE_WIDTH)
            assert s.store.label_table.offsets[[1, 3, 4]].tolist() == [0, 16, 28]

            s.seek(4)
            s.tick(now=10.0)
            assert s.labels.tolist() == [0, 0, 0, 1]

    def test_clean_request(self, session, config):
        session.set_labels([1, 0, 1])
        session.save()
        session.export()
        assert config.label_output_path.exists()

        session.seek(3)
        session.clean_requested = True
        session.tick(now=1.0)

        assert session.frames_written == 0
        assert session.written_max_frame == -1
        assert 0 not in session.store
        assert session.frame == 0
        assert session.last_saved_frame == -1
        assert session.labels.tolist() == [0, 0, 0]
        assert not config.label_output_path.exists()

        session.set_labels([0, 1, 0])
        session.save()
        assert session.store.get(0).tolist() == [0, 1, 0]

    def test_auto_label_nearest(self, session):
        session.auto_label = True
        session.show_nearest = True
        session.seek(2)
        session.tick(now=1.0)
        assert session.store.get(2).tolist() == [1, 0]

    def test_label_rect(self, session):
        assert session.label_rect(2.5, 0.0, 3.5, 1.0) == [1]
        assert session.labels.tolist() == [0, 1, 0]
        # Strictly inside: a point on the edge does not count
        assert session.label_rect(1.09, 0.0, 2.0, 2.0) == []

    def test_toggle_at(self, session):
        assert session.toggle_at(1.0, 1.0) == [0]
        assert session.labels.tolist() == [1, 0, 0]
        session.toggle_at(1.02, 1.01)
        assert session.labels.tolist() == [0, 0, 0]
        assert session.toggle_at(10.0, 10.0) == []

    def test_set_labels_validates(self, session):
        with pytest.raises(ValueError, match="label"):
            session.set_labels([1, 0])
        with pytest.raises(ValueError, match="0 or 1"):
            session.set_labels([1, 2, 0])

    def test_size_mismatch_discards_stored_labels(self, session):
        session.store.put(0, np.zeros((2, FEATURE_WIDTH)), [1, 1])
        session.seek(0)
        session.tick(now=1.0)
        assert session.labels.tolist() == [0, 0, 0]
        assert "discarded" in session.last_warning

    def test_set_hz_halves_frames(self, session, config):
        session.seek(4)
        session.tick(now=1.0)
        session.set_labels([1, 0, 0, 0])
        session.save()

        session.set_hz(720)
        session.tick(now=2.0)
        assert session.max_frame == 3
        assert session.frame == 0
        assert len(session.segments) == 7
        assert config.hz == 720

        # Records past the shorter frame range are kept
        assert session.store.max_frame == 6
        assert 4 in session.store
        assert session.frames_written == 1

    def test_hz_round_trip_keeps_labels(self, session):
        session.seek(4)
        session.tick(now=1.0)
        session.set_labels([1, 0, 0, 1])
        session.save()

        session.set_hz(720)
        session.tick(now=2.0)
        session.set_hz(360)
        session.seek(4)
        session.tick(now=3.0)

        assert session.max_frame == 6
        assert session.labels.tolist() == [1, 0, 0, 1]
        assert session.frames_written == 1

    def test_reopen_at_other_hz_keeps_labels(self, config):
        with LabelingSession(config) as s:
            s.seek(5)
            s.tick(now=0.0)
            s.set_labels([0, 1, 0])
            s.save()
            s.set_hz(720)

        assert config.hz == 720
        with LabelingSession(config) as s:
            assert s.max_frame == 3
            assert s.store.get(5).tolist() == [0, 1, 0]
            s.set_hz(360)
            s.seek(5)
            s.tick(now=1.0)
            assert s.labels.tolist() == [0, 1, 0]

    def test_load_request_switches_logs(self, session, tmp_path, config):
        session.set_labels([1, 0, 0])
        session.save()

        other = write_log(tmp_path / "other" / "log.txt", ["AB", "AB", "AB"])
        session.request_load(other)
        session.tick(now=1.0)

        assert config.raw_data_path == other
        assert session.max_frame == 3
        assert session.frames_written == 0
        assert len(session.segments) == 2

    def test_output_request(self, session, config):
        session.set_labels([1, 0, 1])
        session.save()
        session.output_requested = True
        session.tick(now=1.0)

        assert config.label_output_path.read_text().split() == ["1", "0", "1"]
        rows = config.feature_output_path.read_text().strip().splitlines()
        assert len(rows) == 3
        assert len(rows[0].split()) == FEATURE_WIDTH

    def test_empty_frame_is_not_saved(self, tmp_path):
        cfg = SessionConfig.default(tmp_path)
        cfg.hz = HZ
        write_log(cfg.raw_data_path, ["ABC", ""])
        with LabelingSession(cfg) as s:
            s.seek(1)
            s.tick(now=0.0)
            assert s.segments == []
            assert s.save() is False
            assert 1 not in s.store

    def test_empty_frame_does_not_hold_off_next_save(self, tmp_path):
        cfg = SessionConfig.default(tmp_path)
        cfg.hz = HZ
        write_log(cfg.raw_data_path, ["ABC", ""])
        with LabelingSession(cfg) as s:
            s.seek(1)
            s.tick(now=0.0)
            s.save_requested = True
            s.tick(now=1.0)
            assert s.frames_written == 0

            s.seek(0)
            s.tick(now=1.02)
            s.set_labels([1, 1, 0])
            s.save_requested = True
            s.tick(now=1.05)
            assert s.store.get(0).tolist() == [1, 1, 0]

    def test_tick_is_not_reentrant(self, session):
        session.player.on_load = lambda data: session.tick()
        session.needs_refresh = True
        with pytest.raises(RuntimeError, match="in progress"):
            session.tick(now=1.0)

    def test_requires_open(self, config):
        s = LabelingSession(config)
        with pytest.raises(RuntimeError, match="not opened"):
            s.tick()
        assert repr(s) == "LabelingSession(status=closed)"

    def test_counter_disagreement_is_logged(self, config, caplog):
        config.frames_written = 5
        with caplog.at_level(logging.WARNING, logger="scanlabel.session"):
            with LabelingSession(config) as s:
                assert s.frames_written == 0
        assert "disagree" in caplog.text


# ── Session Config ─────────────────────────────────────────


class TestSessionConfig:
    def test_roundtrip(self, tmp_path):
        cfg = SessionConfig.default(tmp_path)
        cfg.last_saved_frame = 4
        cfg.written_max_frame = 9
        cfg.frames_written = 2
        path = tmp_path / "scanlabel.cfg"
        cfg.save(path)
        assert len(path.read_text().splitlines()) == 12
        assert SessionConfig.load(path) == cfg

    def test_default_layout(self, tmp_path):
        cfg = SessionConfig.default(tmp_path)
        assert cfg.raw_data_path == tmp_path / "raw_data" / "demo_train_xy.txt"
        assert cfg.label_size_path == tmp_path / "binary_data" / "label_num_bin"
        assert cfg.hz == 720

    def test_paths_only_file(self, tmp_path):
        lines = SessionConfig.default(tmp_path).to_text().splitlines()[:8]
        cfg = SessionConfig.from_text("\n".join(lines))
        assert cfg.hz == 720
        assert cfg.frames_written == 0
        assert cfg.written_max_frame == -1

    def test_too_few_lines(self):
        with pytest.raises(ValueError, match="at least 8"):
            SessionConfig.from_text("a\nb\n")

    def test_bad_hz(self, tmp_path):
        lines = SessionConfig.default(tmp_path).to_text().splitlines()
        lines[8] = "500"
        with pytest.raises(ValidationError):
            SessionConfig.from_text("\n".join(lines))

    def test_load_or_create(self, tmp_path):
        path = tmp_path / "cfg" / "scanlabel.cfg"
        cfg = SessionConfig.load_or_create(path, root=tmp_path / "data")
        assert path.exists()
        assert cfg.feature_data_path == tmp_path / "data" / "binary_data" / "feature_bin"
        assert SessionConfig.load_or_create(path) == cfg


# ── CLI ────────────────────────────────────────────────────


class TestCLI:
    @pytest.fixture
    def config_path(self, config, tmp_path):
        path = tmp_path / "scanlabel.cfg"
        config.save(path)
        return path

    def test_cli_version(self):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_cli_ingest(self, config_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["-c", str(config_path), "ingest"])
        assert result.exit_code == 0
        assert "2160 samples cached" in result.output

    def test_cli_label_and_show(self, config_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["-c", str(config_path), "label", "2", "--nearest"])
        assert result.exit_code == 0
        assert "Saved frame 2: 1 0" in result.output

        result = runner.invoke(cli, ["-c", str(config_path), "show", "2"])
        assert result.exit_code == 0
        assert "stored" in result.output

        saved = SessionConfig.load(config_path)
        assert saved.frames_written == 1
        assert saved.last_saved_frame == 2

    def test_cli_label_explicit(self, config_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["-c", str(config_path), "label", "0", "-l", "1,0,1"])
        assert result.exit_code == 0
        assert "Saved frame 0: 1 0 1" in result.output

    def test_cli_label_errors(self, config_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["-c", str(config_path), "label", "0"])
        assert result.exit_code == 1

        result = runner.invoke(cli, ["-c", str(config_path), "label", "0", "-l", "1,0"])
        assert result.exit_code == 1

    def test_cli_info(self, config_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        runner.invoke(cli, ["-c", str(config_path), "label", "1", "-l", "0,1,0,0"])
        result = runner.invoke(cli, ["-c", str(config_path), "info"])
        assert result.exit_code == 0
        assert "Frames written" in result.output
        assert "Written Frames" in result.output

    def test_cli_export(self, config_path, tmp_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        runner.invoke(cli, ["-c", str(config_path), "label", "0", "-l", "1,0,1"])
        out = tmp_path / "out"
        result = runner.invoke(cli, ["-c", str(config_path), "export", "-o", str(out)])
        assert result.exit_code == 0
        assert "Exported 1 frame(s)" in result.output
        assert (out / "scan_labels.txt").read_text().split() == ["1", "0", "1"]
        assert (out / "scan_features.txt").exists()

    def test_cli_clean(self, config_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        runner.invoke(cli, ["-c", str(config_path), "label", "0", "-l", "1,0,1"])
        result = runner.invoke(cli, ["-c", str(config_path), "clean", "--yes"])
        assert result.exit_code == 0
        assert "Store cleaned" in result.output
        assert SessionConfig.load(config_path).frames_written == 0

    def test_cli_frame_out_of_range(self, config_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["-c", str(config_path), "label", "99", "--nearest"])
        assert result.exit_code == 1
        assert "out of range" in result.output
        assert SessionConfig.load(config_path).frames_written == 0

        result = runner.invoke(cli, ["-c", str(config_path), "show", "6"])
        assert result.exit_code == 1

    def test_cli_show_features(self, config_path):
        from click.testing import CliRunner

        from scanlabel.cli.main import cli

        runner = CliRunner()
        result = runner.invoke(cli, ["-c", str(config_path), "show", "2", "--features"])
        assert result.exit_code == 0
        assert "circularity" in result.output
        assert "line_residual" in result.output
