from __future__ import annotations

from typing import Callable, Optional

import httpx

from secretsfs.config import Config
from secretsfs.errors import ConfigError
from secretsfs.store.base import Store
from secretsfs.store.vault import VaultStore


def _vault(cfg: Config, transport: Optional[httpx.BaseTransport]) -> Store:
    return VaultStore(cfg.vault, substchar=cfg.substchar, tls=cfg.tls, transport=transport)


_STORES: dict[str, Callable[[Config, Optional[httpx.BaseTransport]], Store]] = {
    "vault": _vault,
}


def available_stores() -> list[str]:
    return sorted(_STORES)


def build_store(cfg: Config, *, transport: Optional[httpx.BaseTransport] = None) -> Store:
    """Construct the single active store named by `store.enabled`."""
    factory = _STORES.get(cfg.store_enabled)
    if factory is None:
        raise ConfigError(f"Unknown store {cfg.store_enabled!r}; available: {', '.join(available_stores())}")
    return factory(cfg, transport)
