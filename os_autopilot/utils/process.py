# os_autopilot/utils/process.py
import logging
import os
import signal
import subprocess
import time
from typing import List, Union

from os_autopilot.core.tal import ProcessResult

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


def _kill(proc: subprocess.Popen):
    """Kill the child and its process group, then reap it."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        logger.debug("Process %s already exited", proc.pid)
    try:
        proc.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", proc.pid)


def run_cmd(
    cmd: Union[List[str], str],
    timeout: float = 30,
    shell: bool = False,
    cancel_token=None,
) -> ProcessResult:
    """
    Run a process to completion and capture its output. Never raises.

    When ``cancel_token`` is given it is polled while the process runs; a
    cancellation kills the process (and anything it spawned) right away.
    """
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            shell=shell,
            start_new_session=os.name == "posix",
        )
    except (OSError, ValueError, subprocess.SubprocessError) as e:
        logger.warning("Could not spawn %s: %s", cmd, e)
        return ProcessResult(exit_code=-1, error=str(e))

    deadline = time.monotonic() + timeout
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("Killing cancelled process: %s", cmd)
                _kill(proc)
                return ProcessResult(exit_code=-1, error="cancelled")
            if time.monotonic() >= deadline:
                logger.warning("Process timed out after %ss: %s", timeout, cmd)
                _kill(proc)
                return ProcessResult(exit_code=-1, error=f"timed out after {timeout}s")

    return ProcessResult(exit_code=proc.returncode, stdout=stdout or "", stderr=stderr or "")


def escape_applescript_str(s: str) -> str:
    return s.replace("\\", "\\\\").replace('"', '\\"')
