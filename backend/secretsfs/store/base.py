from __future__ import annotations

from typing import Protocol

from secretsfs.fs.types import Attrs, DirEntry
from secretsfs.identity import CallerIdentity


class Store(Protocol):
    """
    A secret backend exposed as a synthetic directory tree.

    Implementations raise `secretsfs.errors.FsError` subclasses; paths are
    relative to the backend's own secret tree.
    """

    def attributes(self, secret_path: str, identity: CallerIdentity) -> Attrs: ...

    def list(self, secret_path: str, identity: CallerIdentity) -> list[DirEntry]: ...

    def open(self, secret_path: str, flags: int, identity: CallerIdentity) -> bytes: ...

    def describe(self) -> str: ...
