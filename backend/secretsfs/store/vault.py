from __future__ import annotations

import json
from typing import Any, Optional, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from secretsfs.config import TlsConfig, VaultConfig
from secretsfs.errors import IsDirectory, NotDirectory, NotFound, PermissionDenied, RemoteIOError
from secretsfs.fs.types import DIR_MODE, FILE_MODE, Attrs, DirEntry, dir_attrs, file_attrs
from secretsfs.identity import CallerIdentity
from secretsfs.logging.ndjson import log_event
from secretsfs.store.roleid import read_role_id, roleid_path
from secretsfs.store.sessions import SessionCache
from secretsfs.store.tls import SSLContextBuilder


class _LoginAuth(BaseModel):
    client_token: str
    lease_duration: int = 0


class _LoginResponse(BaseModel):
    auth: _LoginAuth


class _ListData(BaseModel):
    keys: list[str] = []


class _ListResponse(BaseModel):
    data: _ListData


class _SecretData(BaseModel):
    # null when the latest version is deleted
    data: Optional[dict[str, Any]] = None


class _SecretResponse(BaseModel):
    data: _SecretData


_M = TypeVar("_M", bound=BaseModel)


class VaultStore:
    """
    Vault KV v2 engine as a directory tree.

    Folders and secrets are directories; the keys of a secret are files whose
    content is the value. Every call authenticates as the requesting user via
    AppRole, using a role id read from a file the user provisioned.
    """

    name = "vault"

    def __init__(
        self,
        cfg: VaultConfig,
        *,
        substchar: str = "_",
        tls: Optional[TlsConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._cfg = cfg
        self._substchar = substchar
        builder = SSLContextBuilder(tls or TlsConfig())
        self._sni = builder.server_name
        self._client = httpx.Client(
            base_url=cfg.addr,
            timeout=httpx.Timeout(cfg.timeout),
            verify=builder.build_client(),
            transport=transport,
        )
        self._sessions = SessionCache(self._login)

    def describe(self) -> str:
        return self.name

    def close(self) -> None:
        self._client.close()

    # -- transport ---------------------------------------------------------

    def _send(
        self,
        method: str,
        url: str,
        *,
        token: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = {"X-Vault-Token": token} if token else {}
        extensions = {"sni_hostname": self._sni} if self._sni else None
        try:
            return self._client.request(method, url, headers=headers, json=payload, extensions=extensions)
        except httpx.TimeoutException as e:
            log_event(level="error", event="vault.timeout", data={"method": method, "url": url})
            raise RemoteIOError(f"Vault timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            log_event(level="error", event="vault.transport_error", data={"method": method, "url": url, "error": str(e)})
            raise RemoteIOError(f"Vault unreachable: {e}") from e

    @staticmethod
    def _errors_text(r: httpx.Response) -> str:
        try:
            body = r.json()
        except ValueError:
            return r.text
        if isinstance(body, dict) and isinstance(body.get("errors"), list):
            return "; ".join(str(e) for e in body["errors"])
        return r.text

    def _check(self, r: httpx.Response) -> httpx.Response:
        if r.is_success:
            return r
        log_event(
            level="warning",
            event="vault.error",
            data={"method": r.request.method, "url": str(r.request.url.path), "status": r.status_code, "errors": self._errors_text(r)},
        )
        if r.status_code == 404:
            raise NotFound(f"Vault: no such path {r.request.url.path}")
        if r.status_code == 403:
            raise PermissionDenied(f"Vault: permission denied on {r.request.url.path}")
        raise RemoteIOError(f"Vault error {r.status_code}")

    @staticmethod
    def _parse(model: type[_M], r: httpx.Response) -> _M:
        try:
            return model.model_validate(r.json())
        except (ValueError, ValidationError) as e:
            raise RemoteIOError(f"Malformed Vault response for {r.request.url.path}: {e}") from e

    # -- authentication ----------------------------------------------------

    def _login(self, identity: CallerIdentity) -> str:
        role_id = read_role_id(roleid_path(self._cfg, identity), identity)
        r = self._send(
            "POST",
            f"/v1/auth/{self._cfg.approle_mount}/login",
            payload={"role_id": role_id},
        )
        if r.status_code in (400, 403):
            log_event(level="warning", event="vault.login_denied", uid=identity.uid, data={"status": r.status_code})
            raise PermissionDenied(f"Vault rejected role id for uid {identity.uid}")
        auth = self._parse(_LoginResponse, self._check(r)).auth
        log_event(level="info", event="vault.login", uid=identity.uid, data={"leaseDuration": auth.lease_duration})
        return auth.client_token

    def _token_valid(self, token: str) -> bool:
        r = self._send("GET", "/v1/auth/token/lookup-self", token=token)
        if r.status_code in (401, 403):
            return False
        self._check(r)
        return True

    def _authed(self, method: str, url: str, identity: CallerIdentity) -> httpx.Response:
        token = self._sessions.token(identity)
        r = self._send(method, url, token=token)
        if r.status_code == 403 and not self._token_valid(token):
            log_event(level="info", event="vault.token_refresh", uid=identity.uid)
            self._sessions.invalidate(identity, token)
            token = self._sessions.token(identity)
            r = self._send(method, url, token=token)
        return r

    def _fetch(self, method: str, url: str, identity: CallerIdentity) -> Optional[httpx.Response]:
        """Authenticated request; None on 404, FsError on any other failure."""
        r = self._authed(method, url, identity)
        if r.status_code == 404:
            return None
        return self._check(r)

    # -- tree --------------------------------------------------------------

    def _meta_url(self, path: str) -> str:
        return f"/v1/{self._cfg.mtdata}{quote(path)}"

    def _data_url(self, path: str) -> str:
        return f"/v1/{self._cfg.dtdata}{quote(path)}"

    def expose(self, key: str) -> str:
        return key.replace("/", self._substchar)

    def _folder_keys(self, path: str, identity: CallerIdentity) -> Optional[list[str]]:
        url = self._meta_url(f"{path}/" if path else "")
        r = self._fetch("LIST", url, identity)
        if r is None:
            return None
        return self._parse(_ListResponse, r).data.keys

    def _is_secret(self, path: str, identity: CallerIdentity) -> bool:
        if not path:
            return False
        return self._fetch("GET", self._meta_url(path), identity) is not None

    def _secret_data(self, path: str, identity: CallerIdentity) -> Optional[dict[str, Any]]:
        if not path:
            return None
        r = self._fetch("GET", self._data_url(path), identity)
        if r is None:
            return None
        return self._parse(_SecretResponse, r).data.data

    @staticmethod
    def _encode(value: Any) -> bytes:
        if isinstance(value, str):
            return value.encode("utf-8")
        return json.dumps(value, ensure_ascii=False).encode("utf-8")

    def _lookup_key(self, path: str, identity: CallerIdentity) -> Optional[bytes]:
        parent, _, name = path.rpartition("/")
        data = self._secret_data(parent, identity)
        if not data:
            return None
        for key, value in data.items():
            if self.expose(key) == name:
                return self._encode(value)
        return None

    def _is_dir(self, path: str, identity: CallerIdentity) -> bool:
        # A path may be hidden from LIST by policy yet readable as a secret, so a
        # denial on one probe does not end the lookup.
        denied = False
        try:
            if self._folder_keys(path, identity) is not None:
                return True
        except PermissionDenied:
            denied = True
        try:
            if self._is_secret(path, identity):
                return True
        except PermissionDenied:
            denied = True
        if denied:
            raise PermissionDenied(f"Vault: metadata of {path} not visible")
        return False

    def attributes(self, secret_path: str, identity: CallerIdentity) -> Attrs:
        path = secret_path.strip("/")
        if not path:
            return dir_attrs()
        denied = False
        try:
            if self._is_dir(path, identity):
                return dir_attrs()
        except PermissionDenied:
            denied = True
        try:
            value = self._lookup_key(path, identity)
        except PermissionDenied:
            value, denied = None, True
        if value is not None:
            return file_attrs(len(value))
        if denied:
            raise PermissionDenied(f"Vault: {path} not accessible")
        raise NotFound(f"Vault: no such entry {path}")

    def list(self, secret_path: str, identity: CallerIdentity) -> list[DirEntry]:
        path = secret_path.strip("/")
        denied = False
        try:
            keys = self._folder_keys(path, identity)
        except PermissionDenied:
            keys, denied = None, True
        if keys is not None:
            names = {k.rstrip("/") for k in keys if k.rstrip("/")}
            return [DirEntry(name=self.expose(n), mode=DIR_MODE) for n in sorted(names)]

        try:
            data = self._secret_data(path, identity)
        except PermissionDenied:
            data, denied = None, True
        if data is not None:
            return [DirEntry(name=self.expose(k), mode=FILE_MODE) for k in sorted(data)]

        if path and self._lookup_key(path, identity) is not None:
            raise NotDirectory(f"Vault: {path} is a key, not a directory")
        if denied:
            raise PermissionDenied(f"Vault: {path} not accessible")
        raise NotFound(f"Vault: no such directory {path}")

    def open(self, secret_path: str, flags: int, identity: CallerIdentity) -> bytes:
        _ = flags
        path = secret_path.strip("/")
        if not path:
            raise IsDirectory("Vault: root is a directory")
        denied = False
        try:
            value = self._lookup_key(path, identity)
        except PermissionDenied:
            value, denied = None, True
        if value is not None:
            return value
        try:
            if self._is_dir(path, identity):
                raise IsDirectory(f"Vault: {path} is a directory")
        except PermissionDenied:
            denied = True
        if denied:
            raise PermissionDenied(f"Vault: {path} not accessible")
        raise NotFound(f"Vault: no such secret {path}")
