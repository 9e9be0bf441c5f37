from __future__ import annotations
import logging
from typing import Any, Dict, List, Mapping, Optional

from relay.core.errors import ProviderConfigError, ProviderNotFoundError
from relay.core.ports import ModelProvider, ProviderFactory
from relay.core.result import Err, Ok, Result

logger = logging.getLogger(__name__)

# Substring -> factory name, tried in order when no factory matches exactly.
NAME_HINTS = (
    ("qwen", "qwen"),
    ("local", "qwen"),
    ("openrouter", "openrouter"),
    ("router", "openrouter"),
)


class ProviderRegistry:
    """
    Named factories, built once at the composition root and passed around.
    Lookup is exact first, then by the substring hints above.
    """

    def __init__(self) -> None:
        self._factories: Dict[str, ProviderFactory] = {}

    def register(self, factory: ProviderFactory) -> None:
        if factory.name in self._factories:
            logger.debug("Replacing provider factory %s", factory.name)
        self._factories[factory.name] = factory

    def registered_providers(self) -> List[str]:
        return list(self._factories)

    def resolve(self, name: str) -> Optional[ProviderFactory]:
        if name in self._factories:
            return self._factories[name]
        lowered = name.lower()
        for marker, target in NAME_HINTS:
            if marker in lowered and target in self._factories:
                return self._factories[target]
        return None

    def create(self, config: Any) -> Result[ModelProvider]:
        name = config.get("name") if isinstance(config, Mapping) else getattr(config, "name", None)
        if not isinstance(name, str):
            return Err(ProviderConfigError("unknown", "config has no provider name"))
        factory = self.resolve(name)
        if factory is None:
            return Err(ProviderNotFoundError(name, f"No factory registered for provider '{name}'"))
        return factory.create(config)

    def validate_config(self, raw: Any) -> Result[Any]:
        if not isinstance(raw, Mapping):
            return Err(ProviderConfigError("unknown", "provider config must be a mapping"))
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            return Err(ProviderConfigError("unknown", "provider config requires a string 'name'"))
        factory = self.resolve(name)
        if factory is None:
            return Err(ProviderConfigError(name, f"no factory registered for provider '{name}'"))
        return factory.validate_config(dict(raw))


def default_registry(**factory_kwargs: Any) -> ProviderRegistry:
    """Registry with the built-in qwen and openrouter factories."""
    from relay.providers.openrouter import OpenRouterProviderFactory
    from relay.providers.qwen import QwenProviderFactory

    registry = ProviderRegistry()
    registry.register(QwenProviderFactory(**factory_kwargs))
    registry.register(OpenRouterProviderFactory(**factory_kwargs))
    return registry
