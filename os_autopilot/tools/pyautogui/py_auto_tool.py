# os_autopilot/tools/pyautogui/py_auto_tool.py
import logging
import time

from os_autopilot.core.adapters import PointerTool
from os_autopilot.core.tal import ProcessResult

logger = logging.getLogger(__name__)


def _load_pyautogui():
    # pyautogui talks to the display server on import, so keep it out of module import time
    import pyautogui

    pyautogui.FAILSAFE = False
    pyautogui.PAUSE = 0.05
    return pyautogui


class PyAutoTool(PointerTool):
    capabilities = ["precision_click", "screenshot"]

    def __init__(self, delay=0.2):
        self.delay = delay

    def is_available(self) -> bool:
        try:
            _load_pyautogui()
        except Exception as e:
            logger.debug("pyautogui unavailable: %s", e)
            return False
        return True

    def _move_and_wait(self, x, y):
        pyautogui = _load_pyautogui()
        pyautogui.moveTo(x, y, duration=0.15)
        time.sleep(0.05)

    def click(self, x: int, y: int) -> ProcessResult:
        logger.debug("pyautogui click(%s, %s)", x, y)
        try:
            self._move_and_wait(x, y)
            _load_pyautogui().click(x, y)
            time.sleep(self.delay)
        except Exception as e:
            logger.warning("pyautogui click failed: %s", e)
            return ProcessResult(exit_code=1, error=str(e))
        return ProcessResult(exit_code=0)

    def screenshot(self, path: str) -> ProcessResult:
        try:
            _load_pyautogui().screenshot().convert("RGB").save(path, "JPEG", quality=85)
        except Exception as e:
            logger.warning("pyautogui screenshot failed: %s", e)
            return ProcessResult(exit_code=1, error=str(e))
        return ProcessResult(exit_code=0, stdout=path)
