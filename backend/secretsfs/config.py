from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from secretsfs.errors import ConfigError


# Keys in vault k/v pairs may contain '/', which is illegal in a file name.
# Such slashes are exposed as `general.substchar`.
DEFAULTS: dict[str, Any] = {
    "general": {
        "substchar": "_",
    },
    "tls": {
        "cacert": None,
        "capath": None,
        "clientcert": None,
        "clientkey": None,
        "tlsservername": None,
        "insecure": False,
    },
    "fio": {
        "enabled": ["secrets", "templates"],
        "templatefiles": {
            "templatespath": "/etc/secretsfs/templates/",
        },
    },
    "store": {
        "enabled": "vault",
        "vault": {
            "addr": "http://127.0.0.1:8200",
            "timeout": 10.0,
            "mtdata": "secret/metadata/",
            "dtdata": "secret/data/",
            "approle_mount": "approle",
            "roleid": {
                # $HOME is replaced with the requesting user's home directory.
                "file": "$HOME/.vault-roleid",
                # username -> path; takes precedence and does not fall back to `file`.
                "useroverride": {},
            },
        },
    },
}

SYSTEM_CONFIG_PATH = Path("/etc/secretsfs/secretsfs.json")


@dataclass(frozen=True)
class TlsConfig:
    cacert: Optional[str] = None
    capath: Optional[str] = None
    clientcert: Optional[str] = None
    clientkey: Optional[str] = None
    tlsservername: Optional[str] = None
    insecure: bool = False


@dataclass(frozen=True)
class VaultConfig:
    addr: str
    timeout: float
    mtdata: str
    dtdata: str
    approle_mount: str
    roleid_file: str
    roleid_useroverride: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Config:
    substchar: str
    fio_enabled: tuple[str, ...]
    templates_path: Path
    store_enabled: str
    vault: VaultConfig
    tls: TlsConfig
    source: Optional[Path] = None


def defaults_json() -> str:
    return json.dumps(DEFAULTS, indent=2, sort_keys=False) + "\n"


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def config_file_path() -> Optional[Path]:
    """
    First existing config file, in order:
    - SFS_CONFIG_FILE
    - $HOME/.secretsfs/secretsfs.json
    - /etc/secretsfs/secretsfs.json
    """
    explicit = (os.environ.get("SFS_CONFIG_FILE") or "").strip()
    if explicit:
        p = Path(explicit).expanduser()
        if not p.exists():
            raise ConfigError(f"SFS_CONFIG_FILE does not exist: {p}")
        return p
    user_cfg = Path("~/.secretsfs/secretsfs.json").expanduser()
    if user_cfg.exists():
        return user_cfg
    if SYSTEM_CONFIG_PATH.exists():
        return SYSTEM_CONFIG_PATH
    return None


def _read_file(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return raw


def _env_overrides() -> dict[str, Any]:
    out: dict[str, Any] = {}
    env = os.environ

    addr = (env.get("VAULT_ADDR") or "").strip()
    if addr:
        out.setdefault("store", {}).setdefault("vault", {})["addr"] = addr
    timeout = (env.get("SFS_VAULT_TIMEOUT") or "").strip()
    if timeout:
        out.setdefault("store", {}).setdefault("vault", {})["timeout"] = timeout
    store = (env.get("SFS_STORE") or "").strip()
    if store:
        out.setdefault("store", {})["enabled"] = store
    subst = env.get("SFS_SUBSTCHAR")
    if subst:
        out.setdefault("general", {})["substchar"] = subst
    templates = (env.get("SFS_TEMPLATES_PATH") or "").strip()
    if templates:
        out.setdefault("fio", {}).setdefault("templatefiles", {})["templatespath"] = templates
    fios = env.get("SFS_FIO_ENABLED")
    if fios is not None:
        out.setdefault("fio", {})["enabled"] = [f.strip() for f in fios.split(",") if f.strip()]
    return out


def load_raw_config(path: Optional[Path] = None) -> tuple[dict[str, Any], Optional[Path]]:
    source = path if path is not None else config_file_path()
    raw = DEFAULTS
    if source is not None:
        raw = _merge(raw, _read_file(source))
    raw = _merge(raw, _env_overrides())
    return raw, source


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def parse_config(raw: dict[str, Any], *, source: Optional[Path] = None) -> Config:
    try:
        general = raw["general"]
        fio = raw["fio"]
        store = raw["store"]
        vault = store["vault"]
        roleid = vault["roleid"]
        tls = raw.get("tls") or {}
    except (KeyError, TypeError) as e:
        raise ConfigError(f"Missing config section: {e}") from e

    substchar = str(general.get("substchar") or "")
    if len(substchar) != 1 or substchar == "/":
        raise ConfigError("general.substchar must be a single character other than '/'")

    enabled = fio.get("enabled") or []
    if isinstance(enabled, str) or not all(isinstance(x, str) for x in enabled):
        raise ConfigError("fio.enabled must be a list of names")

    store_enabled = str(store.get("enabled") or "").strip()
    if not store_enabled:
        raise ConfigError("store.enabled is required")

    try:
        timeout = float(vault.get("timeout"))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"store.vault.timeout must be a number: {e}") from e
    if timeout <= 0:
        raise ConfigError("store.vault.timeout must be positive")

    overrides = roleid.get("useroverride") or {}
    if not isinstance(overrides, dict):
        raise ConfigError("store.vault.roleid.useroverride must be an object")

    addr = str(vault.get("addr") or "").strip()
    if not addr.startswith(("http://", "https://")):
        raise ConfigError(f"store.vault.addr must be an http(s) URL: {addr!r}")

    templates_path = str((fio.get("templatefiles") or {}).get("templatespath") or "").strip()
    if not templates_path:
        raise ConfigError("fio.templatefiles.templatespath is required")

    return Config(
        substchar=substchar,
        fio_enabled=tuple(enabled),
        templates_path=Path(templates_path).expanduser(),
        store_enabled=store_enabled,
        vault=VaultConfig(
            addr=addr.rstrip("/"),
            timeout=timeout,
            mtdata=str(vault.get("mtdata") or "").strip("/") + "/",
            dtdata=str(vault.get("dtdata") or "").strip("/") + "/",
            approle_mount=str(vault.get("approle_mount") or "approle").strip("/"),
            roleid_file=str(roleid.get("file") or ""),
            roleid_useroverride={str(k): str(v) for k, v in overrides.items()},
        ),
        tls=TlsConfig(
            cacert=_opt_str(tls.get("cacert")),
            capath=_opt_str(tls.get("capath")),
            clientcert=_opt_str(tls.get("clientcert")),
            clientkey=_opt_str(tls.get("clientkey")),
            tlsservername=_opt_str(tls.get("tlsservername")),
            insecure=bool(tls.get("insecure", False)),
        ),
        source=source,
    )


def load_config(path: Optional[Path] = None) -> Config:
    raw, source = load_raw_config(path)
    return parse_config(raw, source=source)
