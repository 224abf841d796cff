"""Provider adapters."""

from providers.base import Provider, ProviderRegistry, build_registry, type_prefix
from providers.command import CommandProvider
from providers.memory import MemoryProvider

__all__ = [
    'Provider',
    'ProviderRegistry',
    'build_registry',
    'type_prefix',
    'CommandProvider',
    'MemoryProvider',
]
