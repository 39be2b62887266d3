from __future__ import annotations

import threading

import httpx
import pytest

from secretsfs.errors import IsDirectory, NotDirectory, NotFound, PermissionDenied, RemoteIOError
from secretsfs.fs.types import DIR_MODE, FILE_MODE
from secretsfs.store.vault import VaultStore


def test_root_lists_top_level_folders_and_secrets(store, alice):
    entries = store.list("", alice)
    assert [e.name for e in entries] == ["apps", "db"]
    assert all(e.mode == DIR_MODE for e in entries)


def test_secret_lists_its_keys_as_files(store, alice):
    entries = store.list("db", alice)
    assert [(e.name, e.mode) for e in entries] == [("password", FILE_MODE), ("username", FILE_MODE)]


def test_slash_in_key_is_substituted(store, alice):
    names = [e.name for e in store.list("apps/web/tls", alice)]
    assert names == ["cert_pem", "port"]
    assert store.open("apps/web/tls/cert_pem", 0, alice) == b"CERT"


def test_non_string_values_are_json_encoded(store, alice):
    assert store.open("apps/web/tls/port", 0, alice) == b"8443"


def test_attributes(store, alice):
    assert store.attributes("", alice).is_dir
    assert store.attributes("apps", alice).is_dir
    assert store.attributes("db", alice).is_dir
    attrs = store.attributes("db/password", alice)
    assert not attrs.is_dir
    assert attrs.size == len(b"s3cr3t")


def test_attributes_are_stable_across_calls(store, alice):
    for path in ("db/password", "apps", "apps/web/tls/port", ""):
        assert store.attributes(path, alice) == store.attributes(path, alice)


def test_missing_entries_are_not_found(store, alice):
    with pytest.raises(NotFound):
        store.attributes("nope", alice)
    with pytest.raises(NotFound):
        store.list("nope", alice)
    with pytest.raises(NotFound):
        store.open("db/nope", 0, alice)


def test_list_of_key_is_not_directory(store, alice):
    with pytest.raises(NotDirectory):
        store.list("db/password", alice)


def test_open_of_directory_is_rejected(store, alice):
    with pytest.raises(IsDirectory):
        store.open("", 0, alice)
    with pytest.raises(IsDirectory):
        store.open("db", 0, alice)


def test_policy_denial_is_permission_denied(store, alice, bob):
    assert store.open("db/username", 0, alice) == b"admin"
    with pytest.raises(PermissionDenied):
        store.open("db/username", 0, bob)
    with pytest.raises(PermissionDenied):
        store.list("db", bob)
    with pytest.raises(PermissionDenied):
        store.attributes("db/username", bob)


def test_each_user_gets_own_session(store, fake_vault, alice, bob):
    store.list("", alice)
    store.list("", bob)
    store.list("apps", alice)
    assert fake_vault.logins == 2


def test_missing_role_id_is_permission_denied(store, fake_vault, carol):
    with pytest.raises(PermissionDenied):
        store.list("", carol)
    assert fake_vault.logins == 0


def test_unknown_role_id_is_permission_denied(store, fake_vault, alice):
    del fake_vault.role_ids["role-alice"]
    with pytest.raises(PermissionDenied):
        store.list("", alice)


def test_expired_token_is_refreshed_once(store, fake_vault, alice):
    assert store.open("db/password", 0, alice) == b"s3cr3t"
    fake_vault.expire_tokens()
    assert store.open("db/password", 0, alice) == b"s3cr3t"
    assert fake_vault.logins == 2


def test_concurrent_refresh_logs_in_once(store, fake_vault, alice):
    store.open("db/password", 0, alice)
    fake_vault.expire_tokens()
    fake_vault.login_delay = 0.2

    n = 8
    barrier = threading.Barrier(n)
    results: list[bytes] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        try:
            out = store.open("db/password", 0, alice)
        except BaseException as e:  # noqa: BLE001
            with lock:
                errors.append(e)
            return
        with lock:
            results.append(out)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert results == [b"s3cr3t"] * n
    assert fake_vault.logins == 2


def test_timeout_maps_to_remote_io(store, fake_vault, alice):
    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    fake_vault.fail_with = slow
    with pytest.raises(RemoteIOError):
        store.list("", alice)


def test_server_error_maps_to_remote_io(store, fake_vault, alice):
    store.list("", alice)
    fake_vault.fail_with = lambda request: httpx.Response(503, json={"errors": ["sealed"]})
    with pytest.raises(RemoteIOError):
        store.open("db/password", 0, alice)


def test_malformed_response_maps_to_remote_io(store, fake_vault, alice):
    store.list("", alice)
    fake_vault.fail_with = lambda request: httpx.Response(200, json={"unexpected": True})
    with pytest.raises(RemoteIOError):
        store.open("db/password", 0, alice)


def test_custom_substchar(fake_vault, vault_config, alice):
    s = VaultStore(vault_config, substchar="~", transport=httpx.MockTransport(fake_vault.handler))
    try:
        assert [e.name for e in s.list("apps/web/tls", alice)] == ["cert~pem", "port"]
    finally:
        s.close()


def test_describe(store):
    assert store.describe() == "vault"
