from __future__ import annotations

import stat
from dataclasses import dataclass
from typing import Protocol

from secretsfs.identity import CallerIdentity

DIR_MODE = stat.S_IFDIR | 0o550
FILE_MODE = stat.S_IFREG | 0o440


@dataclass(frozen=True)
class Attrs:
    mode: int
    size: int = 0

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.mode)


@dataclass(frozen=True)
class DirEntry:
    name: str
    mode: int


def dir_attrs() -> Attrs:
    return Attrs(mode=DIR_MODE)


def file_attrs(size: int = 0) -> Attrs:
    return Attrs(mode=FILE_MODE, size=size)


def split_path(path: str) -> tuple[str, str]:
    """
    "a/b/c" -> ("a", "b/c"); "a" -> ("a", ""); "" -> ("", "").
    """
    path = path.strip("/")
    head, _, rest = path.partition("/")
    return head, rest


class Provider(Protocol):
    """A file-I/O provider mounted under one top-level namespace."""

    namespace: str

    def attributes(self, path: str, identity: CallerIdentity) -> Attrs: ...

    def list(self, path: str, identity: CallerIdentity) -> list[DirEntry]: ...

    def open(self, path: str, flags: int, identity: CallerIdentity) -> bytes: ...
