from __future__ import annotations

from typing import Any, Callable, TypeVar

from secretsfs.errors import FsError, IsDirectory, NotFound
from secretsfs.fs.registry import Registry
from secretsfs.fs.types import DIR_MODE, Attrs, DirEntry, Provider, dir_attrs, split_path
from secretsfs.identity import CallerIdentity
from secretsfs.logging.ndjson import log_event
from secretsfs.store.base import Store

T = TypeVar("T")


class SecretsFs:
    """
    Filesystem root. Lists the registered namespaces and routes every other
    path to the provider owning its first segment (exact, case-sensitive).
    """

    def __init__(self, registry: Registry, store: Store) -> None:
        self._registry = registry
        self._store = store

    @property
    def store(self) -> Store:
        return self._store

    @property
    def registry(self) -> Registry:
        return self._registry

    def _provider_for(self, namespace: str) -> Provider:
        p = self._registry.get(namespace)
        if p is None:
            raise NotFound(f"Unknown namespace: {namespace}")
        return p

    def _call(self, op: str, path: str, identity: CallerIdentity, fn: Callable[[], T]) -> T:
        try:
            res = fn()
        except FsError as e:
            log_event(
                level="info",
                event=f"fs.{op}",
                uid=identity.uid,
                path=path,
                data={"namespace": split_path(path)[0], "status": type(e).__name__, "error": str(e)},
            )
            raise
        data: dict[str, Any] = {"namespace": split_path(path)[0], "status": "ok"}
        if isinstance(res, bytes):
            data["contentLen"] = len(res)
        elif isinstance(res, list):
            data["entries"] = len(res)
        log_event(level="debug", event=f"fs.{op}", uid=identity.uid, path=path, data=data)
        return res

    def attributes(self, path: str, identity: CallerIdentity) -> Attrs:
        def run() -> Attrs:
            namespace, rest = split_path(path)
            if not namespace:
                return dir_attrs()
            return self._provider_for(namespace).attributes(rest, identity)

        return self._call("attributes", path, identity, run)

    def list(self, path: str, identity: CallerIdentity) -> list[DirEntry]:
        def run() -> list[DirEntry]:
            namespace, rest = split_path(path)
            if not namespace:
                return [DirEntry(name=name, mode=DIR_MODE) for name in self._registry.all()]
            return self._provider_for(namespace).list(rest, identity)

        return self._call("list", path, identity, run)

    def open(self, path: str, flags: int, identity: CallerIdentity) -> bytes:
        def run() -> bytes:
            namespace, rest = split_path(path)
            if not namespace:
                raise IsDirectory("Root is a directory")
            provider = self._provider_for(namespace)
            if not rest:
                raise IsDirectory(f"Namespace root is a directory: {namespace}")
            return provider.open(rest, flags, identity)

        return self._call("open", path, identity, run)


def new_filesystem(registry: Registry, store: Store) -> SecretsFs:
    return SecretsFs(registry, store)
