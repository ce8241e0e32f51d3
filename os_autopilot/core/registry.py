# os_autopilot/core/registry.py
from typing import Any, Dict, List, Optional

from os_autopilot.core.integration_contract import AdapterContract


class Registry:
    def __init__(self):
        self._adapters: Dict[str, Any] = {}
        self._contracts: Dict[str, AdapterContract] = {}

    def register_adapter(self, name: str, obj: Any):
        """
        obj may be an adapter class, a factory or an instance.
        We store the object and auto-generate a contract from its metadata.
        """
        self._adapters[name] = obj

        # resolve class (if instance, use its class)
        adapter_cls = obj if isinstance(obj, type) else obj.__class__

        contract = AdapterContract(
            name=name,
            adapter_class=f"{adapter_cls.__module__}.{adapter_cls.__qualname__}",
            capabilities=list(getattr(adapter_cls, "capabilities", []) or []),
            requires=list(getattr(adapter_cls, "requires", []) or []),
        )
        self._contracts[name] = contract

    def get_adapter(self, name: str) -> Optional[Any]:
        return self._adapters.get(name)

    def create(self, name: str, **kwargs) -> Any:
        """Return an instance for ``name``, calling it if it was registered as a class/factory."""
        obj = self._adapters.get(name)
        if obj is None:
            raise KeyError(f"Adapter '{name}' is not registered")
        if isinstance(obj, type) or (callable(obj) and not hasattr(obj, "capabilities")):
            return obj(**kwargs)
        return obj

    def get_contract(self, name: str) -> Optional[AdapterContract]:
        return self._contracts.get(name)

    def list_adapters(self) -> List[str]:
        return list(self._adapters.keys())

    def list_contracts(self):
        return {k: v.model_dump() for k, v in self._contracts.items()}

    def find_by_capability(self, capability: str) -> List[str]:
        return [name for name, c in self._contracts.items() if c.supports(capability)]


# global registry instance
registry = Registry()
