from __future__ import annotations

import errno
import itertools
import os
import threading
import time
from typing import Any, Callable, Optional

from fuse import FUSE, FuseOSError, Operations, fuse_get_context

from secretsfs.errors import FsError
from secretsfs.fs.router import SecretsFs
from secretsfs.identity import CallerIdentity, identity_for_uid
from secretsfs.logging.ndjson import log_event


def _ns_path(path: str) -> str:
    # fusepy hands "/a/b"; providers take "a/b".
    return path.strip("/")


class SecretsFuse(Operations):
    """
    Kernel-facing adapter: one fusepy callback per caller-visible operation,
    each resolving the caller's identity and delegating to the root.

    `open` materializes the whole content into a per-handle buffer so a read
    never observes a partial render; handles use direct I/O since template
    sizes are unknown until rendered.
    """

    raw_fi = True

    def __init__(
        self,
        fs: SecretsFs,
        *,
        context: Callable[[], tuple[int, int, int]] = fuse_get_context,
        resolve: Callable[[int], CallerIdentity] = identity_for_uid,
    ) -> None:
        self._fs = fs
        self._context = context
        self._resolve = resolve
        self._mounted_at = time.time()
        self._lock = threading.Lock()
        self._handles: dict[int, bytes] = {}
        self._next_fh = itertools.count(1)

    def _identity(self) -> CallerIdentity:
        uid, _gid, _pid = self._context()
        return self._resolve(uid)

    def _guard(self, op: str, path: str, fn: Callable[[CallerIdentity], Any]) -> Any:
        try:
            return fn(self._identity())
        except FsError as e:
            raise FuseOSError(e.errno) from e
        except FuseOSError:
            raise
        except Exception as e:  # noqa: BLE001
            log_event(level="error", event="fuse.exception", path=path, data={"op": op, "error": repr(e)})
            raise FuseOSError(errno.EIO) from e

    def getattr(self, path: str, fh: Any = None) -> dict[str, Any]:
        def run(identity: CallerIdentity) -> dict[str, Any]:
            attrs = self._fs.attributes(_ns_path(path), identity)
            return {
                "st_mode": attrs.mode,
                "st_nlink": 2 if attrs.is_dir else 1,
                "st_size": attrs.size,
                "st_uid": identity.uid,
                "st_gid": identity.gid,
                "st_atime": self._mounted_at,
                "st_mtime": self._mounted_at,
                "st_ctime": self._mounted_at,
            }

        return self._guard("getattr", path, run)

    def readdir(self, path: str, fh: int) -> list[str]:
        def run(identity: CallerIdentity) -> list[str]:
            entries = self._fs.list(_ns_path(path), identity)
            return [".", ".."] + [e.name for e in entries]

        return self._guard("readdir", path, run)

    def open(self, path: str, fi: Any) -> int:
        if fi.flags & (os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_TRUNC):
            raise FuseOSError(errno.EROFS)

        def run(identity: CallerIdentity) -> int:
            content = self._fs.open(_ns_path(path), fi.flags, identity)
            with self._lock:
                fh = next(self._next_fh)
                self._handles[fh] = content
            fi.fh = fh
            fi.direct_io = 1
            return 0

        return self._guard("open", path, run)

    def read(self, path: str, size: int, offset: int, fi: Any) -> bytes:
        with self._lock:
            content = self._handles.get(fi.fh)
        if content is None:
            raise FuseOSError(errno.EBADF)
        return content[offset : offset + size]

    def release(self, path: str, fi: Any) -> int:
        with self._lock:
            self._handles.pop(fi.fh, None)
        return 0

    def open_handles(self) -> int:
        with self._lock:
            return len(self._handles)


def parse_mount_options(opts: Optional[str]) -> dict[str, Any]:
    """
    "allow_other,ro,uid=0" -> {"allow_other": True, "ro": True, "uid": "0"}
    """
    out: dict[str, Any] = {}
    for item in (opts or "").split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        out[key.strip()] = value.strip() if sep else True
    return out


def mount(fs: SecretsFs, mountpoint: str, *, foreground: bool, options: Optional[dict[str, Any]] = None) -> None:
    """Serve until unmounted; libfuse daemonizes unless `foreground`."""
    log_event(level="info", event="fuse.mount", path=mountpoint, data={"foreground": foreground, "options": options or {}})
    kwargs: dict[str, Any] = {"ro": True, "fsname": "secretsfs", **(options or {})}
    FUSE(SecretsFuse(fs), mountpoint, foreground=foreground, nothreads=False, **kwargs)
