"""Provider adapter interface and routing.

The engine is provider-agnostic: every create/update/delete goes through an
object implementing the Provider protocol. Adapters classify failures by
raising TransientProviderError (retried) or PermanentProviderError.
"""

import logging
from typing import Any, Optional, Protocol, runtime_checkable

from config import ProviderConfig, ReconcilerConfig
from declarations import ResourceSpec

logger = logging.getLogger(__name__)


@runtime_checkable
class Provider(Protocol):
    """Capability interface translating generic operations into provider calls."""

    def create(self, spec: ResourceSpec) -> tuple[str, dict[str, Any]]:
        """Create the resource; return (external_id, attributes)."""

    def update(self, external_id: str, changes: dict, spec: Optional[ResourceSpec] = None) -> dict[str, Any]:
        """Apply attribute changes in place; return the new attributes."""

    def delete(self, external_id: str, record: Any = None) -> None:
        """Delete the resource."""


def type_prefix(resource_type: str) -> str:
    """Provider prefix of a resource type (google_storage_bucket -> google)."""
    return resource_type.split('_', 1)[0]


class ProviderRegistry:
    """Routes resource types to provider adapters.

    Lookup order: exact resource type, type prefix, then 'default'.
    """

    def __init__(self, default: Optional[Provider] = None):
        self._providers: dict[str, Provider] = {}
        if default is not None:
            self._providers['default'] = default

    def register(self, key: str, provider: Provider) -> None:
        """Register a provider for a resource type, type prefix, or 'default'."""
        if not isinstance(provider, Provider):
            raise TypeError(f"{provider!r} does not implement create/update/delete")
        self._providers[key] = provider

    def keys(self) -> list[str]:
        return sorted(self._providers)

    def for_type(self, resource_type: str) -> Provider:
        """Get the provider responsible for a resource type.

        Raises:
            KeyError: If no provider matches and there is no default
        """
        for key in (resource_type, type_prefix(resource_type), 'default'):
            if key in self._providers:
                return self._providers[key]
        raise KeyError(f"No provider registered for resource type '{resource_type}'")


def _build_provider(pconf: ProviderConfig) -> Provider:
    if pconf.type == 'command':
        from providers.command import CommandProvider
        return CommandProvider(
            name=pconf.key,
            hooks=pconf.hooks,
            timeout=pconf.timeout,
            env=pconf.env,
            cwd=pconf.cwd,
        )
    from providers.memory import MemoryProvider
    return MemoryProvider(name=pconf.key, computed=pconf.computed)


def build_registry(config: ReconcilerConfig) -> ProviderRegistry:
    """Create a ProviderRegistry from the providers section of the settings."""
    registry = ProviderRegistry()
    for key, pconf in config.providers.items():
        registry.register(key, _build_provider(pconf))
        logger.debug(f"Provider '{key}': {pconf.type}")
    return registry
