# os_autopilot/tools/screenshot.py
import logging
import shutil
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from PIL import Image

from os_autopilot.core.config import ScreenshotSettings
from os_autopilot.core.tal import ErrorKind, Result
from os_autopilot.tools.pyautogui.py_auto_tool import PyAutoTool
from os_autopilot.utils.process import run_cmd

logger = logging.getLogger(__name__)


class ScreenshotCapture:
    """
    Captures screenshots into a scratch directory.

    Every file is transient: callers use ``transient()`` so the capture and
    any compressed copy are removed on every exit path.
    """

    def __init__(self, settings: Optional[ScreenshotSettings] = None, pyauto: Optional[PyAutoTool] = None):
        self.settings = settings or ScreenshotSettings()
        self._pyauto = pyauto

    @property
    def directory(self) -> Path:
        return Path(self.settings.directory)

    def backend(self) -> str:
        if self.settings.backend != "auto":
            return self.settings.backend
        return "screencapture" if shutil.which("screencapture") else "pyautogui"

    def new_path(self, prefix: str = "shot") -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory / f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}.jpg"

    def capture(self, path: Path) -> Result:
        backend = self.backend()
        if backend == "screencapture":
            proc = run_cmd(["screencapture", "-x", "-t", "jpg", str(path)], timeout=10)
        else:
            proc = (self._pyauto or PyAutoTool()).screenshot(str(path))

        if not proc.ok:
            return Result.fail(f"Screenshot failed ({backend}): {proc.failure_text()}", ErrorKind.SCREENSHOT_FAILED)
        if not path.exists() or path.stat().st_size == 0:
            return Result.fail(f"Screenshot failed ({backend}): no image written", ErrorKind.SCREENSHOT_FAILED)
        return Result.ok(path)

    def compress(self, path: Path) -> Path:
        """Downscale and re-encode oversized captures; the original is kept if that fails."""
        size = path.stat().st_size
        if size <= self.settings.max_bytes:
            return path

        target = path.with_name(f"{path.stem}_compressed.jpg")
        dim = self.settings.compress_max_dimension
        try:
            with Image.open(path) as img:
                img = img.convert("RGB")
                img.thumbnail((dim, dim))
                img.save(target, format="JPEG", quality=self.settings.compress_quality)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            logger.warning("Screenshot compression failed, sending original: %s", e)
            if target.exists():
                target.unlink()
            return path

        logger.debug("Compressed screenshot %d -> %d bytes", size, target.stat().st_size)
        return target

    @contextmanager
    def transient(self, prefix: str = "shot") -> Iterator[Result]:
        """Capture (and compress) a screenshot; yields a Result holding the path to send."""
        path = self.new_path(prefix)
        created = [path]
        try:
            result = self.capture(path)
            if result.success:
                final = self.compress(path)
                if final != path:
                    created.append(final)
                result = Result.ok(final)
            yield result
        finally:
            for p in created:
                try:
                    if p.exists():
                        p.unlink()
                except OSError as e:
                    logger.warning("Could not delete screenshot %s: %s", p, e)

    def sweep_stale(self) -> int:
        """Remove screenshots left behind by earlier runs."""
        if not self.directory.is_dir():
            return 0
        cutoff = time.time() - self.settings.stale_after_seconds
        removed = 0
        for entry in self.directory.iterdir():
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except OSError as e:
                logger.debug("Skipping %s during sweep: %s", entry, e)
        if removed:
            logger.info("Removed %d stale screenshots from %s", removed, self.directory)
        return removed
