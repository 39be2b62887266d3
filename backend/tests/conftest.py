from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterator
from uuid import uuid4

import httpx
import pytest

from secretsfs.config import VaultConfig
from secretsfs.identity import CallerIdentity
from secretsfs.store.vault import VaultStore

_ENV_VARS = (
    "VAULT_ADDR",
    "SFS_CONFIG_FILE",
    "SFS_STORE",
    "SFS_SUBSTCHAR",
    "SFS_TEMPLATES_PATH",
    "SFS_VAULT_TIMEOUT",
    "SFS_FIO_ENABLED",
    "SFS_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    home = tmp_path / "daemon-home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("SFS_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr("secretsfs.config.SYSTEM_CONFIG_PATH", tmp_path / "no-such-secretsfs.json")
    return home


def _json(status: int, body: dict[str, Any]) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(body).encode("utf-8"), headers={"Content-Type": "application/json"})


def _denied() -> httpx.Response:
    return _json(403, {"errors": ["permission denied"]})


class FakeVault:
    """
    Minimal KV v2 + AppRole server.

    `secrets` maps secret path -> key/value data; `role_ids` maps role id ->
    set of secret paths (or folder prefixes ending in "/") that role may not
    read.
    """

    def __init__(self) -> None:
        self.secrets: dict[str, dict[str, Any]] = {}
        self.role_ids: dict[str, set[str]] = {}
        self.tokens: dict[str, str] = {}
        self.logins = 0
        self.login_delay = 0.0
        self.requests: list[tuple[str, str]] = []
        self.fail_with: Callable[[httpx.Request], httpx.Response] | None = None
        self._lock = threading.Lock()

    def expire_tokens(self) -> None:
        with self._lock:
            self.tokens.clear()

    def _is_denied(self, role: str, path: str) -> bool:
        for rule in self.role_ids.get(role, set()):
            if rule.endswith("/") and path.startswith(rule):
                return True
            if path == rule:
                return True
        return False

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        with self._lock:
            self.requests.append((request.method, path))
        if self.fail_with is not None:
            return self.fail_with(request)

        if path == "/v1/auth/approle/login":
            role = json.loads(request.content).get("role_id")
            with self._lock:
                self.logins += 1
            if self.login_delay:
                time.sleep(self.login_delay)
            if role not in self.role_ids:
                return _json(400, {"errors": ["invalid role ID"]})
            token = f"tok-{uuid4().hex}"
            with self._lock:
                self.tokens[token] = role
            return _json(200, {"auth": {"client_token": token, "lease_duration": 60}})

        with self._lock:
            role = self.tokens.get(request.headers.get("X-Vault-Token", ""))
        if role is None:
            return _denied()

        if path == "/v1/auth/token/lookup-self":
            return _json(200, {"data": {"id": "redacted"}})

        meta = "/v1/secret/metadata/"
        data = "/v1/secret/data/"
        if path.startswith(meta):
            rel = path[len(meta):]
            if request.method == "LIST":
                keys = set()
                for p in self.secrets:
                    if p.startswith(rel):
                        head, sep, _rest = p[len(rel):].partition("/")
                        keys.add(head + sep)
                if not keys:
                    return _json(404, {"errors": []})
                if self._is_denied(role, rel):
                    return _denied()
                return _json(200, {"data": {"keys": sorted(keys)}})
            if rel not in self.secrets:
                return _json(404, {"errors": []})
            if self._is_denied(role, rel):
                return _denied()
            return _json(200, {"data": {"current_version": 1}})

        if path.startswith(data):
            rel = path[len(data):]
            if self._is_denied(role, rel):
                return _denied()
            if rel not in self.secrets:
                return _json(404, {"errors": []})
            return _json(200, {"data": {"data": self.secrets[rel], "metadata": {"version": 1}}})

        return _json(404, {"errors": []})


@pytest.fixture
def fake_vault() -> FakeVault:
    fv = FakeVault()
    fv.secrets = {
        "db": {"username": "admin", "password": "s3cr3t"},
        "apps/web/tls": {"cert/pem": "CERT", "port": 8443},
        "apps/worker": {"token": "abc"},
    }
    fv.role_ids = {"role-alice": set(), "role-bob": {"db"}}
    return fv


@pytest.fixture
def homes() -> Iterator[Path]:
    # role-id reads require every ancestor to be searchable by the caller;
    # pytest's tmp dirs are private to the runner
    root = Path(os.path.realpath(tempfile.mkdtemp(prefix="secretsfs-homes-")))
    root.chmod(0o755)
    yield root
    shutil.rmtree(root, ignore_errors=True)


def _make_identity(homes: Path, name: str, uid: int, role_id: str | None) -> CallerIdentity:
    home = homes / name
    home.mkdir()
    home.chmod(0o755)
    if role_id is not None:
        f = home / ".vault-roleid"
        f.write_text(role_id + "\n", encoding="utf-8")
        f.chmod(0o644)
    return CallerIdentity(uid=uid, gid=os.getgid(), username=name, home=str(home))


@pytest.fixture
def alice(homes: Path) -> CallerIdentity:
    return _make_identity(homes, "alice", os.getuid(), "role-alice")


@pytest.fixture
def bob(homes: Path) -> CallerIdentity:
    return _make_identity(homes, "bob", os.getuid() + 1, "role-bob")


@pytest.fixture
def carol(homes: Path) -> CallerIdentity:
    # no role id file provisioned
    return _make_identity(homes, "carol", os.getuid() + 2, None)


@pytest.fixture
def new_identity(homes: Path) -> Callable[..., CallerIdentity]:
    def make(name: str, uid: int, role_id: str | None = None) -> CallerIdentity:
        return _make_identity(homes, name, uid, role_id)

    return make


@pytest.fixture
def vault_config() -> VaultConfig:
    return VaultConfig(
        addr="http://vault.test",
        timeout=5.0,
        mtdata="secret/metadata/",
        dtdata="secret/data/",
        approle_mount="approle",
        roleid_file="$HOME/.vault-roleid",
    )


@pytest.fixture
def store(fake_vault: FakeVault, vault_config: VaultConfig) -> Iterator[VaultStore]:
    s = VaultStore(vault_config, substchar="_", transport=httpx.MockTransport(fake_vault.handler))
    yield s
    s.close()
