from __future__ import annotations

from types import MappingProxyType
from typing import Callable, Mapping, Optional

from secretsfs.config import Config
from secretsfs.errors import ConfigError
from secretsfs.fs.providers.secrets import SecretsProvider
from secretsfs.fs.providers.templates import TemplatesProvider
from secretsfs.fs.types import Provider
from secretsfs.store.base import Store


class DuplicateNamespaceError(RuntimeError):
    pass


class Registry:
    """
    Namespace name -> provider. Filled once at startup, read-only afterwards,
    so lookups need no locking.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        name = provider.namespace
        if not name or "/" in name:
            raise ConfigError(f"Invalid namespace name: {name!r}")
        if name in self._providers:
            raise DuplicateNamespaceError(f"Namespace already registered: {name}")
        self._providers[name] = provider

    def get(self, name: str) -> Optional[Provider]:
        return self._providers.get(name)

    def all(self) -> Mapping[str, Provider]:
        return MappingProxyType(self._providers)

    def __len__(self) -> int:
        return len(self._providers)


_FIOS: dict[str, Callable[[Store, Config], Provider]] = {
    SecretsProvider.namespace: lambda store, cfg: SecretsProvider(store),
    TemplatesProvider.namespace: lambda store, cfg: TemplatesProvider(store, cfg.templates_path),
}


def available_fios() -> list[str]:
    return sorted(_FIOS)


def build_registry(store: Store, cfg: Config) -> Registry:
    """Construct and register every provider listed in `fio.enabled`."""
    registry = Registry()
    for name in cfg.fio_enabled:
        factory = _FIOS.get(name)
        if factory is None:
            raise ConfigError(f"Unknown FIO {name!r}; available: {', '.join(available_fios())}")
        registry.register(factory(store, cfg))
    return registry
