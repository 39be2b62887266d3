from __future__ import annotations

import json
import os
import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

_lock = threading.Lock()
_echo = False

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def log_dir() -> Path:
    p = os.environ.get("SFS_LOG_DIR")
    if p:
        return Path(p)
    return Path("/var/log/secretsfs")


def _today_prefix(ts: Optional[float] = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time())
    return dt.strftime("secretsfs-%Y-%m-%d")


def _max_bytes() -> int:
    try:
        return int(os.environ.get("SFS_LOG_MAX_BYTES", str(50 * 1024 * 1024)))
    except ValueError:
        return 50 * 1024 * 1024


def _retention_days() -> int:
    try:
        return int(os.environ.get("SFS_LOG_RETENTION_DAYS", "7"))
    except ValueError:
        return 7


def _min_level() -> int:
    name = os.environ.get("SFS_LOG_LEVEL", "info").strip().lower()
    return _LEVELS.get(name, _LEVELS["info"])


def _truncate(v: Any, *, max_len: int = 600) -> Any:
    if v is None:
        return None
    if isinstance(v, str):
        if len(v) <= max_len:
            return v
        return v[:max_len] + f"...(+{len(v) - max_len} chars)"
    if isinstance(v, (int, float, bool)):
        return v
    if isinstance(v, dict):
        out: dict[str, Any] = {}
        for k, vv in list(v.items())[:80]:
            out[str(k)] = _truncate(vv, max_len=max_len)
        if len(v) > 80:
            out["_truncated_keys"] = len(v) - 80
        return out
    if isinstance(v, (list, tuple)):
        items = [_truncate(x, max_len=max_len) for x in list(v)[:80]]
        if len(v) > 80:
            items.append({"_truncated_items": len(v) - 80})
        return items
    return _truncate(str(v), max_len=max_len)


def _pick_log_file(*, ts: Optional[float] = None) -> Path:
    d = log_dir()
    d.mkdir(parents=True, exist_ok=True)
    prefix = _today_prefix(ts)
    base = d / f"{prefix}.ndjson"
    max_b = _max_bytes()

    if not base.exists() or base.stat().st_size < max_b:
        return base

    # Size exceeded; pick next suffix.
    for i in range(1, 1000):
        p = d / f"{prefix}.{i}.ndjson"
        if not p.exists() or p.stat().st_size < max_b:
            return p
    return base


def _prune_old_files() -> None:
    d = log_dir()
    if not d.exists():
        return
    cutoff = datetime.now() - timedelta(days=_retention_days())
    for p in d.glob("secretsfs-*.ndjson"):
        try:
            if datetime.fromtimestamp(p.stat().st_mtime) < cutoff:
                p.unlink(missing_ok=True)
        except OSError:
            continue


def init_logging(*, echo: bool = False) -> None:
    """
    Ensure the log dir exists and prune old files.

    With `echo`, every record is mirrored to stderr (foreground mounts).
    """
    global _echo
    with _lock:
        _echo = echo
        log_dir().mkdir(parents=True, exist_ok=True)
        _prune_old_files()


def log_event(
    *,
    level: str,
    event: str,
    data: Optional[dict[str, Any]] = None,
    uid: Optional[int] = None,
    path: Optional[str] = None,
) -> None:
    """
    Append a single structured NDJSON record.
    Never include secret values; callers pass paths, names and sizes.
    """
    if _LEVELS.get(level, _LEVELS["info"]) < _min_level():
        return
    rec: dict[str, Any] = {
        "ts": int(time.time() * 1000),
        "level": level,
        "event": event,
    }
    if uid is not None:
        rec["uid"] = uid
    if path is not None:
        rec["path"] = path
    if data:
        rec["data"] = _truncate(data)

    line = json.dumps(rec, ensure_ascii=False)
    with _lock:
        if _echo:
            print(line, file=sys.stderr)
        try:
            _prune_old_files()
            with open(_pick_log_file(), "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            # Best-effort: never fail a filesystem call due to logging.
            pass
