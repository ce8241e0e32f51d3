# os_autopilot/core/adapters.py
import shutil
from abc import ABC, abstractmethod
from typing import List

from os_autopilot.core.tal import ProcessResult


class BaseAdapter(ABC):
    # Metadata read by the registry when building the adapter contract
    capabilities: List[str] = []
    requires: List[str] = []

    def is_available(self) -> bool:
        return all(shutil.which(binary) for binary in self.requires)


class PointerTool(BaseAdapter):
    """A tool that can click at exact screen coordinates."""

    capabilities = ["precision_click"]

    @abstractmethod
    def click(self, x: int, y: int) -> ProcessResult:
        pass
