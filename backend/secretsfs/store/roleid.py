from __future__ import annotations

import os
import stat
from pathlib import Path

from secretsfs.config import VaultConfig
from secretsfs.errors import PermissionDenied
from secretsfs.identity import CallerIdentity

_READ = (stat.S_IRUSR, stat.S_IRGRP, stat.S_IROTH)
_SEARCH = (stat.S_IXUSR, stat.S_IXGRP, stat.S_IXOTH)


def roleid_path(cfg: VaultConfig, identity: CallerIdentity) -> Path:
    """
    Per-user override if configured (no fallback), else the default file with
    $HOME substituted.
    """
    override = cfg.roleid_useroverride.get(identity.username)
    raw = override if override is not None else cfg.roleid_file
    return Path(raw.replace("$HOME", identity.home))


def _allowed(st: os.stat_result, identity: CallerIdentity, bits: tuple[int, int, int]) -> bool:
    if identity.uid == 0:
        return True
    usr, grp, oth = bits
    if st.st_uid == identity.uid:
        return bool(st.st_mode & usr)
    try:
        groups = os.getgrouplist(identity.username, identity.gid)
    except OSError:
        groups = [identity.gid]
    if st.st_gid in groups:
        return bool(st.st_mode & grp)
    return bool(st.st_mode & oth)


def _open_parent(path: Path, identity: CallerIdentity) -> int:
    """
    Open the directory holding `path` one component at a time, never following
    a symlink, and require that the caller may search every directory on the
    way. Returns an fd the caller must close.
    """
    parent = Path(os.path.realpath(path.parent))
    fd = os.open("/", os.O_RDONLY | os.O_DIRECTORY)
    try:
        for part in parent.parts[1:]:
            if not _allowed(os.fstat(fd), identity, _SEARCH):
                raise PermissionDenied(f"Directory above {path} not searchable by uid {identity.uid}")
            nxt = os.open(part, os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW, dir_fd=fd)
            os.close(fd)
            fd = nxt
        if not _allowed(os.fstat(fd), identity, _SEARCH):
            raise PermissionDenied(f"Directory of {path} not searchable by uid {identity.uid}")
    except BaseException:
        os.close(fd)
        raise
    return fd


def read_role_id(path: Path, identity: CallerIdentity) -> str:
    """
    Read the role id the caller provisioned.

    The daemon usually runs as root, so access is checked against the caller,
    not the daemon. The final component is never followed as a symlink; its
    mode bits are checked on the descriptor that is then read.
    """
    try:
        dir_fd = _open_parent(path, identity)
        try:
            # O_NONBLOCK keeps a FIFO from stalling the open
            fd = os.open(path.name, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK, dir_fd=dir_fd)
        finally:
            os.close(dir_fd)
        try:
            st = os.fstat(fd)
            if not stat.S_ISREG(st.st_mode):
                raise PermissionDenied(f"Role id path is not a regular file: {path}")
            if not _allowed(st, identity, _READ):
                raise PermissionDenied(f"Role id file not readable by uid {identity.uid}: {path}")
        except BaseException:
            os.close(fd)
            raise
        with os.fdopen(fd, "rb") as f:
            role_id = f.read().decode("utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        raise PermissionDenied(f"Cannot read role id file {path}: {e}") from e
    if not role_id:
        raise PermissionDenied(f"Role id file is empty: {path}")
    return role_id
