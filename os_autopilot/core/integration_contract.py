# os_autopilot/core/integration_contract.py
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class AdapterContract(BaseModel):
    name: str
    adapter_class: str
    capabilities: List[str] = Field(default_factory=list)
    # external binaries the adapter shells out to
    requires: List[str] = Field(default_factory=list)
    config_options: Optional[Dict[str, Any]] = None

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities
