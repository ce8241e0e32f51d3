# os_autopilot/repos/osascript_adapter.py
import logging
from typing import List

from os_autopilot.core.adapters import BaseAdapter
from os_autopilot.core.tal import ProcessResult
from os_autopilot.utils.process import run_cmd

logger = logging.getLogger(__name__)


class OsaScriptAdapter(BaseAdapter):
    """
    OS automation executor.

    Scripts are handed to ``osascript`` one ``-e`` argument per line, so no
    shell quoting is involved. Shell commands go through the system shell.
    """

    capabilities = ["script", "shell"]
    requires = ["osascript"]

    def __init__(self, script_timeout: float = 30, shell_timeout: float = 30):
        self.script_timeout = script_timeout
        self.shell_timeout = shell_timeout

    def build_script_argv(self, lines: List[str]) -> List[str]:
        argv = ["osascript"]
        for line in lines:
            argv += ["-e", line]
        return argv

    def run_script(self, lines: List[str], cancel_token=None) -> ProcessResult:
        lines = [line for line in lines if line.strip()]
        if not lines:
            return ProcessResult(exit_code=1, error="empty script")
        logger.debug("osascript (%d lines)", len(lines))
        return run_cmd(self.build_script_argv(lines), timeout=self.script_timeout, cancel_token=cancel_token)

    def run_shell(self, command: str, cancel_token=None) -> ProcessResult:
        logger.debug("shell: %s", command)
        return run_cmd(command, timeout=self.shell_timeout, shell=True, cancel_token=cancel_token)
