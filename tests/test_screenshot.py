import os
import time

from PIL import Image

from fakes import FakeScreenshots
from os_autopilot.core.config import ScreenshotSettings
from os_autopilot.tools import screenshot
from os_autopilot.tools.screenshot import ScreenshotCapture


def test_small_capture_is_sent_as_is(tmp_path):
    shots = FakeScreenshots(tmp_path)
    with shots.transient("t") as shot:
        assert shot.success
        assert shot.value == shots.captured[0]
    assert not shot.value.exists()


def test_oversized_capture_is_compressed_and_both_files_removed(tmp_path):
    shots = FakeScreenshots(tmp_path, size=(800, 600), max_bytes=10, compress_max_dimension=100)
    with shots.transient("t") as shot:
        sent = shot.value
        assert sent.name.endswith("_compressed.jpg")
        with Image.open(sent) as img:
            assert max(img.size) <= 100
    assert list(tmp_path.iterdir()) == []


def test_compression_failure_keeps_original(tmp_path):
    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"not really a jpeg" * 10)
    shots = ScreenshotCapture(ScreenshotSettings(directory=str(tmp_path), max_bytes=1))
    assert shots.compress(broken) == broken
    assert not (tmp_path / "broken_compressed.jpg").exists()


def test_decompression_bomb_keeps_original(tmp_path, monkeypatch):
    def bomb(path):
        raise Image.DecompressionBombError("huge")

    monkeypatch.setattr(screenshot.Image, "open", bomb)
    shot = tmp_path / "huge.jpg"
    shot.write_bytes(b"x" * 64)
    shots = ScreenshotCapture(ScreenshotSettings(directory=str(tmp_path), max_bytes=1))
    assert shots.compress(shot) == shot
    assert not (tmp_path / "huge_compressed.jpg").exists()


def test_files_removed_when_caller_raises(tmp_path):
    shots = FakeScreenshots(tmp_path)
    try:
        with shots.transient("t"):
            raise RuntimeError("vision exploded")
    except RuntimeError:
        pass
    assert list(tmp_path.iterdir()) == []


def test_sweep_stale_only_removes_old_files(tmp_path):
    old, fresh = tmp_path / "old.jpg", tmp_path / "fresh.jpg"
    old.write_bytes(b"x")
    fresh.write_bytes(b"x")
    past = time.time() - 3600
    os.utime(old, (past, past))

    shots = ScreenshotCapture(ScreenshotSettings(directory=str(tmp_path), stale_after_seconds=60))
    assert shots.sweep_stale() == 1
    assert not old.exists() and fresh.exists()


def test_sweep_missing_directory(tmp_path):
    shots = ScreenshotCapture(ScreenshotSettings(directory=str(tmp_path / "nope")))
    assert shots.sweep_stale() == 0
