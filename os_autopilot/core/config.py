# os_autopilot/core/config.py
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "configs" / "autopilot.yaml"


class ScreenshotSettings(BaseModel):
    directory: str = Field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "autopilot-screenshots")
    )
    # auto | screencapture | pyautogui
    backend: str = "auto"
    max_bytes: int = 3 * 1024 * 1024
    compress_max_dimension: int = 1920
    compress_quality: int = 60
    stale_after_seconds: float = 600.0


class ClickSettings(BaseModel):
    default_point: Tuple[int, int] = (500, 400)
    fallback_center: Tuple[int, int] = (640, 400)
    fallback_delay: float = 0.5
    wait_seconds: float = 2.0
    scroll_amount: int = 5


class ChromeSettings(BaseModel):
    binary: str = "google-chrome"
    debugging_url: str = "http://127.0.0.1:9222"
    user_data_dir: str = Field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "autopilot-chrome")
    )
    launch_timeout: float = 10.0
    step_timeout: float = 10.0


class AppConfig(BaseModel):
    openai_api_key: Optional[str] = None
    text_model: str = "gpt-4o"
    vision_model: str = "gpt-4o"
    request_timeout: float = 30.0

    task_timeout: float = Field(default=15.0, gt=0)
    max_attempts: int = Field(default=2, ge=1)
    context_ttl: float = Field(default=120.0, gt=0)
    script_timeout: float = 30.0
    shell_timeout: float = 30.0

    direct_app_shortcuts: bool = True
    ai_disambiguation: bool = False
    system_prompt: Optional[str] = None
    history_size: int = 5
    log_level: str = "INFO"

    default_tools: Dict[str, str] = Field(
        default_factory=lambda: {"pointer": "cliclick", "browser": "chrome_devtools"}
    )
    screenshots: ScreenshotSettings = Field(default_factory=ScreenshotSettings)
    clicks: ClickSettings = Field(default_factory=ClickSettings)
    chrome: ChromeSettings = Field(default_factory=ChromeSettings)


# env var -> top-level field
_ENV_OVERRIDES = {
    "OPENAI_API_KEY": "openai_api_key",
    "AUTOPILOT_TEXT_MODEL": "text_model",
    "AUTOPILOT_VISION_MODEL": "vision_model",
    "AUTOPILOT_TASK_TIMEOUT": "task_timeout",
    "AUTOPILOT_MAX_ATTEMPTS": "max_attempts",
    "AUTOPILOT_LOG_LEVEL": "log_level",
}


def _load_yaml(cfg_path: Path) -> Dict[str, Any]:
    if not cfg_path.exists():
        logger.debug("No config file at %s, using defaults", cfg_path)
        return {}
    try:
        with open(cfg_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not read config %s: %s", cfg_path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping, ignoring it", cfg_path)
        return {}
    return data


def load_config(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> AppConfig:
    """
    Build the runtime configuration.

    Precedence: environment overrides > YAML file > model defaults. The file
    path comes from ``path``, then ``AUTOPILOT_CONFIG``, then
    ``configs/autopilot.yaml`` at the repository root.
    """
    env = os.environ if env is None else env
    cfg_path = Path(path or env.get("AUTOPILOT_CONFIG") or DEFAULT_CONFIG_PATH)
    data = _load_yaml(cfg_path)

    for var, field in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            data[field] = value

    shot_dir = env.get("AUTOPILOT_SCREENSHOT_DIR")
    if shot_dir:
        data["screenshots"] = dict(data.get("screenshots") or {}, directory=shot_dir)

    try:
        return AppConfig(**data)
    except ValidationError as e:
        logger.error("Invalid configuration in %s, falling back to defaults: %s", cfg_path, e)
        fallback = {k: v for k, v in data.items() if k == "openai_api_key"}
        return AppConfig(**fallback)
