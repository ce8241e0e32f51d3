import logging

from os_autopilot.core.config import AppConfig, load_config
from os_autopilot.utils.logger import setup_logging


def test_defaults_without_file(tmp_path):
    cfg = load_config(str(tmp_path / "missing.yaml"), env={})
    assert cfg == AppConfig(screenshots=cfg.screenshots, chrome=cfg.chrome)
    assert cfg.task_timeout == 15.0 and cfg.max_attempts == 2 and cfg.context_ttl == 120.0
    assert cfg.clicks.fallback_center == (640, 400)


def test_shipped_config_loads():
    cfg = load_config(env={})
    assert cfg.default_tools == {"pointer": "cliclick", "browser": "chrome_devtools"}
    assert cfg.clicks.default_point == (500, 400)


def test_yaml_then_env_precedence(tmp_path):
    path = tmp_path / "autopilot.yaml"
    path.write_text("task_timeout: 20\nmax_attempts: 3\nscreenshots:\n  compress_quality: 50\n")

    cfg = load_config(
        env={
            "AUTOPILOT_CONFIG": str(path),
            "AUTOPILOT_MAX_ATTEMPTS": "4",
            "OPENAI_API_KEY": "sk-test",
            "AUTOPILOT_SCREENSHOT_DIR": str(tmp_path / "shots"),
        }
    )

    assert cfg.task_timeout == 20.0
    assert cfg.max_attempts == 4
    assert cfg.openai_api_key == "sk-test"
    assert cfg.screenshots.directory == str(tmp_path / "shots")
    assert cfg.screenshots.compress_quality == 50


def test_invalid_values_fall_back_to_defaults(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("task_timeout: -1\n")
    cfg = load_config(str(path), env={"OPENAI_API_KEY": "sk-test"})
    assert cfg.task_timeout == 15.0
    assert cfg.openai_api_key == "sk-test"


def test_non_mapping_yaml_is_ignored(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    assert load_config(str(path), env={}).max_attempts == 2


def test_setup_logging_is_idempotent():
    log = setup_logging("debug")
    setup_logging("warning")
    handlers = [h for h in log.handlers if getattr(h, "_autopilot", False)]
    assert len(handlers) == 1
    assert log.level == logging.WARNING
