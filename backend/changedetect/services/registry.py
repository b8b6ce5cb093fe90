"""
Centralized entity and contract registries

Entity sources are registered per type discriminator; delivery contracts
per name. Modules listed in HASHING_REGISTRY_MODULES register themselves
on import.
"""

import importlib
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from changedetect.core.config import settings
from changedetect.core.domain.contracts import DeliveryContract, EntitySource
from changedetect.core.exceptions import ContractNotRegistered, EntityTypeNotRegistered
from changedetect.core.logging_config import get_logger

ContractFactory = Callable[[Dict[str, Any]], DeliveryContract]

# ======================== ENTITY REGISTRY ========================

class EntityRegistry:
    """Registry of entity sources keyed by type discriminator."""

    def __init__(self):
        self._sources: Dict[str, EntitySource] = {}
        self._loaded_modules: Set[str] = set()
        self.logger = get_logger("registry.entities")

    # ======================== REGISTRATION METHODS ========================

    def register(self, source: EntitySource, entity_type: Optional[str] = None) -> None:
        key = entity_type or source.entity_type
        if not key:
            raise ValueError("Entity source has no entity_type")
        self._sources[key] = source
        self.logger.info(f"Registered entity source: {key}")

    def unregister(self, entity_type: str) -> None:
        self._sources.pop(entity_type, None)

    def clear(self) -> None:
        self._sources.clear()
        self._loaded_modules.clear()

    def load_modules(self, module_paths: Sequence[str]) -> List[str]:
        """Import registering modules once each."""
        loaded = []
        for path in module_paths:
            if path in self._loaded_modules:
                continue
            importlib.import_module(path)
            self._loaded_modules.add(path)
            loaded.append(path)
            self.logger.info(f"Loaded registry module: {path}")
        return loaded

    # ======================== QUERY METHODS ========================

    def get_source(self, entity_type: str) -> EntitySource:
        source = self._sources.get(entity_type)
        if source is None:
            raise EntityTypeNotRegistered(entity_type)
        return source

    def is_registered(self, entity_type: str) -> bool:
        return entity_type in self._sources

    def list_entity_types(self) -> List[str]:
        return sorted(self._sources)

# ======================== CONTRACT REGISTRY ========================

class ContractRegistry:
    """Registry of delivery contract factories keyed by name."""

    def __init__(self):
        self._factories: Dict[str, ContractFactory] = {}
        self.logger = get_logger("registry.contracts")

    def register(self, name: str, factory: ContractFactory) -> None:
        self._factories[name] = factory
        self.logger.info(f"Registered delivery contract: {name}")

    def unregister(self, name: str) -> None:
        self._factories.pop(name, None)

    def create(self, name: str, config: Optional[Dict[str, Any]] = None) -> DeliveryContract:
        factory = self._factories.get(name)
        if factory is None:
            raise ContractNotRegistered(name)
        return factory(dict(config or {}))

    def list_contracts(self) -> List[str]:
        return sorted(self._factories)

# Global registries
entity_registry = EntityRegistry()
contract_registry = ContractRegistry()

def load_configured_modules() -> List[str]:
    """Import the built-in targets and every module named in settings."""
    importlib.import_module("changedetect.services.publishing.targets")
    return entity_registry.load_modules(settings.hashing.registry_modules)

__all__ = [
    'EntityRegistry',
    'ContractRegistry',
    'entity_registry',
    'contract_registry',
    'load_configured_modules',
]
