import pytest
from PIL import Image
from pathlib import Path

from os_autopilot.core.config import AppConfig, ClickSettings, ScreenshotSettings
from os_autopilot.core.registry import registry


@pytest.fixture(autouse=True)
def isolate_registry():
    """
    Save & restore registry adapters/contracts around each test to avoid cross-test leakage.
    """
    saved_adapters = dict(registry._adapters)
    saved_contracts = dict(registry._contracts)
    try:
        yield
    finally:
        registry._adapters.clear()
        registry._adapters.update(saved_adapters)
        registry._contracts.clear()
        registry._contracts.update(saved_contracts)


@pytest.fixture
def tmp_image(tmp_path: Path):
    """
    Create a small plain PNG to use wherever a screenshot file is expected.
    """
    img_path = tmp_path / "sample.png"
    img = Image.new("RGB", (200, 200), color=(255, 255, 255))
    img.save(img_path)
    return str(img_path)


@pytest.fixture
def config(tmp_path: Path):
    """Fast, side-effect free configuration."""
    return AppConfig(
        openai_api_key="test-key",
        task_timeout=5.0,
        max_attempts=2,
        screenshots=ScreenshotSettings(directory=str(tmp_path / "shots")),
        clicks=ClickSettings(fallback_delay=0.0, wait_seconds=0.0),
    )
