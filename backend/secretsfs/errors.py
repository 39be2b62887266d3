from __future__ import annotations

import errno as _errno


class FsError(RuntimeError):
    """
    Base for every per-call failure surfaced to the kernel.

    Subclasses pin the POSIX status; the message is for logs only and never
    reaches the caller.
    """

    errno: int = _errno.EIO


class NotFound(FsError):
    errno = _errno.ENOENT


class PermissionDenied(FsError):
    errno = _errno.EACCES


class IsDirectory(FsError):
    errno = _errno.EISDIR


class NotDirectory(FsError):
    errno = _errno.ENOTDIR


class InvalidArgument(FsError):
    errno = _errno.EINVAL


class ResourceBusy(FsError):
    errno = _errno.EBUSY


class RemoteIOError(FsError):
    # EREMOTEIO is Linux-only.
    errno = getattr(_errno, "EREMOTEIO", _errno.EIO)


class ConfigError(RuntimeError):
    pass
