import json

import pytest

from fleet import StoreConflict

from ..store import (
    GenerationRecord,
    SecretPart,
    SecretStore,
    StoredSecret,
)


def make_secret(key="shared/db-password", owners=("host-a", "host-b")):
    return StoredSecret(
        key,
        owners,
        {
            "secret": SecretPart("secret", True, recipients={
                owner: "cipher-{}".format(owner).encode("ascii")
                for owner in owners}),
            "cert": SecretPart("cert", False, data=b"CERT"),
        },
        generation=GenerationRecord("abc", {"generator": "pwgen"}),
        created_at="2026-01-01T00:00:00+00:00")


def test_store__1(tmpdir):
    """It commits a secret and reads it back."""
    store = SecretStore(str(tmpdir))
    committed = store.commit(make_secret(), None)
    assert 1 == committed.revision
    secret = store.get("shared/db-password")
    assert 1 == secret.revision
    assert {"host-a", "host-b"} == secret.owners
    assert b"cipher-host-a" == secret.parts["secret"].recipients["host-a"]
    assert b"CERT" == secret.parts["cert"].data
    assert {"secret": True, "cert": False} == secret.layout
    assert GenerationRecord("abc", {"generator": "pwgen"}) == secret.generation


def test_store__2(tmpdir):
    """It keeps ciphertext base64 encoded per recipient on disk."""
    store = SecretStore(str(tmpdir))
    store.commit(make_secret())
    with open(str(tmpdir / "secrets" / "shared" / "db-password.json")) as f:
        data = json.load(f)
    assert ["host-a", "host-b"] == data["owners"]
    assert "Y2lwaGVyLWhvc3QtYQ==" == (
        data["parts"]["secret"]["recipients"]["host-a"])
    assert {"encrypted": False, "data": "Q0VSVA=="} == data["parts"]["cert"]


def test_store__3(tmpdir):
    """It refuses commits based on an outdated revision."""
    store = SecretStore(str(tmpdir))
    store.commit(make_secret(), None)
    with pytest.raises(StoreConflict) as e:
        store.commit(make_secret(), None)
    assert (None, 1) == (e.value.expected, e.value.actual)
    second = store.commit(make_secret(owners=["host-a"]), 1)
    assert 2 == second.revision
    with pytest.raises(StoreConflict):
        store.commit(make_secret(), 1)
    assert {"host-a"} == store.get("shared/db-password").owners


def test_store__4(tmpdir):
    """It does not change the committed object's revision."""
    store = SecretStore(str(tmpdir))
    secret = make_secret()
    committed = store.commit(secret)
    assert 0 == secret.revision
    assert committed is not secret


def test_store__5(tmpdir):
    """It lists shared and host secrets."""
    store = SecretStore(str(tmpdir))
    store.commit(make_secret("shared/db-password"))
    store.commit(make_secret("hosts/host-a/ssh-key", ["host-a"]))
    store.commit(make_secret("hosts/host-b/ssh-key", ["host-b"]))
    assert [
        "hosts/host-a/ssh-key", "hosts/host-b/ssh-key", "shared/db-password"
    ] == store.keys()
    assert ["shared/db-password"] == store.list_shared()
    assert ["hosts/host-a/ssh-key"] == store.list_host_secrets("host-a")
    assert 3 == len(list(store.iter_secrets()))


def test_store__6(tmpdir):
    """It deletes secrets and cleans up empty directories."""
    store = SecretStore(str(tmpdir))
    store.commit(make_secret("hosts/host-a/ssh-key", ["host-a"]))
    with pytest.raises(StoreConflict):
        store.delete("hosts/host-a/ssh-key", 3)
    store.delete("hosts/host-a/ssh-key", 1)
    assert store.get("hosts/host-a/ssh-key") is None
    assert not (tmpdir / "secrets" / "hosts").exists()
    # Deleting twice is fine.
    store.delete("hosts/host-a/ssh-key")


def test_store__7(tmpdir):
    """It returns nothing for unknown secrets."""
    store = SecretStore(str(tmpdir))
    assert store.get("shared/unknown") is None
    assert [] == store.keys()


def test_stored_secret_copy_is_independent():
    secret = make_secret()
    copy = secret.copy()
    copy.parts["secret"].recipients.pop("host-a")
    copy.owners.discard("host-a")
    assert {"host-a", "host-b"} == secret.parts["secret"].holders
    assert {"host-a", "host-b"} == secret.owners
