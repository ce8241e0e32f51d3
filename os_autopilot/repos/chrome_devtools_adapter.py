# os_autopilot/repos/chrome_devtools_adapter.py
import json
import logging
import shutil
import subprocess
import threading
import time
from typing import List, Optional
from urllib.parse import urlparse

import pychrome
import requests

from os_autopilot.core.adapters import BaseAdapter
from os_autopilot.core.session import CancellationToken
from os_autopilot.core.tal import ErrorKind, ExecutionOutcome, WebAction, WebStep

logger = logging.getLogger(__name__)

_KEYS = {
    "enter": ("Enter", 13, "\r"),
    "return": ("Enter", 13, "\r"),
    "tab": ("Tab", 9, "\t"),
    "escape": ("Escape", 27, None),
    "esc": ("Escape", 27, None),
    "backspace": ("Backspace", 8, None),
}


class ChromeDevToolsAdapter(BaseAdapter):
    """
    Browser-automation collaborator driving Chrome over the DevTools protocol.

    One instance is one browser session: a tab is opened lazily on the first
    step and torn down by ``close()``. Chrome is launched with a remote
    debugging port when no endpoint answers.
    """

    capabilities = ["web_steps", "navigate", "dom interaction"]

    def __init__(
        self,
        binary: str = "google-chrome",
        debugging_url: str = "http://127.0.0.1:9222",
        user_data_dir: str = "/tmp/autopilot-chrome",
        launch_timeout: float = 10.0,
        step_timeout: float = 10.0,
        browser_factory=pychrome.Browser,
    ):
        self.binary = binary
        self.debugging_url = debugging_url.rstrip("/")
        self.user_data_dir = user_data_dir
        self.launch_timeout = launch_timeout
        self.step_timeout = step_timeout
        self._browser_factory = browser_factory
        self._browser = None
        self._tab = None
        self._proc: Optional[subprocess.Popen] = None
        self._closed = False
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "ChromeDevToolsAdapter":
        c = config.chrome
        return cls(
            binary=c.binary,
            debugging_url=c.debugging_url,
            user_data_dir=c.user_data_dir,
            launch_timeout=c.launch_timeout,
            step_timeout=c.step_timeout,
        )

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None or self._endpoint_alive()

    # ---------------------------------------------------------
    # Session management
    # ---------------------------------------------------------
    def _endpoint_alive(self) -> bool:
        try:
            return requests.get(f"{self.debugging_url}/json/version", timeout=1).ok
        except requests.RequestException:
            return False

    def _launch(self):
        port = urlparse(self.debugging_url).port or 9222
        chrome_cmd = [
            self.binary,
            f"--remote-debugging-port={port}",
            "--remote-allow-origins=*",
            f"--user-data-dir={self.user_data_dir}",
        ]
        logger.info("Launching Chrome: %s", " ".join(chrome_cmd))
        proc = subprocess.Popen(chrome_cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        with self._lock:
            if self._closed:
                proc.terminate()
                raise RuntimeError("browser session closed during launch")
            self._proc = proc

        deadline = time.monotonic() + self.launch_timeout
        while time.monotonic() < deadline:
            if self._endpoint_alive():
                return
            time.sleep(0.25)
        raise RuntimeError(f"Chrome debugging endpoint {self.debugging_url} did not come up")

    def _ensure_tab(self):
        with self._lock:
            if self._closed:
                raise RuntimeError("browser session already closed")
            if self._tab is not None:
                return self._tab

        # Launching can take seconds; close() must not block behind it.
        if not self._endpoint_alive():
            self._launch()
        browser = self._browser_factory(url=self.debugging_url)
        tab = browser.new_tab()
        tab.start()

        with self._lock:
            closed = self._closed
            if not closed:
                self._browser, self._tab = browser, tab
        if closed:
            tab.stop()
            browser.close_tab(tab)
            raise RuntimeError("browser session closed during startup")

        tab.Page.bringToFront()
        return tab

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            tab, self._tab = self._tab, None
            browser, self._browser = self._browser, None
            proc, self._proc = self._proc, None
        if tab is not None:
            try:
                tab.stop()
                browser.close_tab(tab)
            except Exception as e:
                logger.debug("Closing tab failed: %s", e)
        if proc is not None and proc.poll() is None:
            proc.terminate()
        logger.debug("Browser session closed")

    # ---------------------------------------------------------
    # Steps
    # ---------------------------------------------------------
    def run_steps(self, steps: List[WebStep], cancel_token: Optional[CancellationToken] = None) -> ExecutionOutcome:
        """Run steps in order; the first failure aborts the rest."""
        for index, step in enumerate(steps, start=1):
            if cancel_token is not None and cancel_token.cancelled:
                return ExecutionOutcome(
                    success=False,
                    error=f"Cancelled before step {index} ({step.action.value})",
                    error_kind=ErrorKind.CANCELLED,
                    failed_step=index,
                    failed_action=step.action.value,
                )
            try:
                self._run_step(step, cancel_token)
            except Exception as e:
                logger.warning("Web step %d (%s) failed: %s", index, step.describe(), e)
                return ExecutionOutcome(
                    success=False,
                    error=f"Step {index} ({step.action.value}) failed: {e}",
                    error_kind=ErrorKind.EXECUTION_FAILED,
                    failed_step=index,
                    failed_action=step.action.value,
                )
        return ExecutionOutcome(success=True, message=f"Completed {len(steps)} browser steps")

    def _run_step(self, step: WebStep, cancel_token: Optional[CancellationToken]):
        if step.action is WebAction.WAIT:
            seconds = step.seconds or 1.0
            if cancel_token is not None:
                if cancel_token.sleep(seconds):
                    raise RuntimeError("cancelled while waiting")
            else:
                time.sleep(seconds)
            return

        tab = self._ensure_tab()

        if step.action is WebAction.NAVIGATE:
            tab.Page.navigate(url=step.url, _timeout=self.step_timeout)
            self._poll(tab, "document.readyState === 'complete'", cancel_token)
        elif step.action is WebAction.CLICK:
            self._wait_for_selector(tab, step.selector, cancel_token)
            self._evaluate(tab, f"document.querySelector({json.dumps(step.selector)}).click()")
        elif step.action is WebAction.TYPE:
            if step.selector:
                self._wait_for_selector(tab, step.selector, cancel_token)
                self._evaluate(tab, f"document.querySelector({json.dumps(step.selector)}).focus()")
            tab.Input.insertText(text=step.text)
        elif step.action is WebAction.PRESS:
            self._press(tab, step.key)
        else:
            raise ValueError(f"Unsupported web action: {step.action}")

    def _press(self, tab, key: str):
        name, code, text = _KEYS.get(key.strip().lower(), (key, 0, key if len(key) == 1 else None))
        down = {"type": "keyDown", "key": name, "code": name, "windowsVirtualKeyCode": code}
        if text:
            down["text"] = text
        tab.Input.dispatchKeyEvent(**down)
        tab.Input.dispatchKeyEvent(type="keyUp", key=name, code=name, windowsVirtualKeyCode=code)

    def _evaluate(self, tab, expression: str):
        reply = tab.Runtime.evaluate(expression=expression, returnByValue=True)
        if reply.get("exceptionDetails"):
            raise RuntimeError(reply["exceptionDetails"].get("text", "script error"))
        return (reply.get("result") or {}).get("value")

    def _wait_for_selector(self, tab, selector: str, cancel_token):
        expression = f"document.querySelector({json.dumps(selector)}) !== null"
        if not self._poll(tab, expression, cancel_token):
            raise RuntimeError(f"element not found: {selector}")

    def _poll(self, tab, expression: str, cancel_token, interval: float = 0.25) -> bool:
        deadline = time.monotonic() + self.step_timeout
        while True:
            if self._evaluate(tab, expression):
                return True
            if time.monotonic() >= deadline:
                return False
            if cancel_token is not None:
                if cancel_token.sleep(interval):
                    raise RuntimeError("cancelled")
            else:
                time.sleep(interval)
