from __future__ import annotations

from secretsfs.errors import IsDirectory
from secretsfs.fs.types import Attrs, DirEntry
from secretsfs.identity import CallerIdentity
from secretsfs.store.base import Store


class SecretsProvider:
    """
    Store tree exposed as-is under /secrets.
    """

    namespace = "secrets"

    def __init__(self, store: Store) -> None:
        self._store = store

    def attributes(self, path: str, identity: CallerIdentity) -> Attrs:
        return self._store.attributes(path, identity)

    def list(self, path: str, identity: CallerIdentity) -> list[DirEntry]:
        return self._store.list(path, identity)

    def open(self, path: str, flags: int, identity: CallerIdentity) -> bytes:
        content = self._store.open(path, flags, identity)
        # an empty value is not served as a readable file
        if not content:
            raise IsDirectory(f"Empty content for {path}")
        return content
