from __future__ import annotations

import pwd
from dataclasses import dataclass

from secretsfs.errors import PermissionDenied


@dataclass(frozen=True)
class CallerIdentity:
    uid: int
    gid: int
    username: str
    home: str


def identity_for_uid(uid: int) -> CallerIdentity:
    """
    Resolve the requesting uid through the password database.

    Called once per filesystem operation; results are never cached since the
    kernel hands credentials per request.
    """
    try:
        pw = pwd.getpwuid(uid)
    except KeyError as e:
        raise PermissionDenied(f"Unknown uid: {uid}") from e
    return CallerIdentity(uid=pw.pw_uid, gid=pw.pw_gid, username=pw.pw_name, home=pw.pw_dir)
