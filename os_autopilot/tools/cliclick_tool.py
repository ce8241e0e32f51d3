# os_autopilot/tools/cliclick_tool.py
from os_autopilot.core.adapters import PointerTool
from os_autopilot.core.tal import ProcessResult
from os_autopilot.utils.process import run_cmd


class CliclickTool(PointerTool):
    """Precision clicks through the ``cliclick`` command line tool (macOS)."""

    capabilities = ["precision_click"]
    requires = ["cliclick"]

    def __init__(self, timeout: float = 5):
        self.timeout = timeout

    def click(self, x: int, y: int) -> ProcessResult:
        return run_cmd(["cliclick", f"c:{x},{y}"], timeout=self.timeout)
