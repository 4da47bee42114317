"""Versioned, atomic persistence of encrypted secrets.

Every secret lives in its own JSON document below `secrets/` in the fleet
repository:

    secrets/shared/<name>.json
    secrets/hosts/<host>/<name>.json

A document records the owners, the generation record and, per part, either
one base64 ciphertext per recipient host or a single public blob. Nothing in
here ever sees plaintext of private parts.

"""
import base64
import copy
import fcntl
import json
import os
import pathlib
import tempfile
import threading
from typing import Dict, List, Optional

from fleet import StoreConflict

ANY_REVISION = object()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class SecretPart(object):

    def __init__(self, name, encrypted, recipients=None, data=None):
        self.name = name
        self.encrypted = encrypted
        self.recipients: Dict[str, bytes] = dict(recipients or {})
        self.data: Optional[bytes] = data

    def __repr__(self):
        if self.encrypted:
            return "<SecretPart {} for {}>".format(
                self.name, ", ".join(sorted(self.recipients)))
        return "<SecretPart {} (public)>".format(self.name)

    @property
    def holders(self):
        return set(self.recipients)

    def to_dict(self):
        if self.encrypted:
            return {
                "encrypted": True,
                "recipients": {
                    host: _b64(blob)
                    for host, blob in sorted(self.recipients.items())}}
        return {"encrypted": False, "data": _b64(self.data)}

    @classmethod
    def from_dict(cls, name, data):
        if data["encrypted"]:
            return cls(name, True, recipients={
                host: base64.b64decode(blob)
                for host, blob in data["recipients"].items()})
        return cls(name, False, data=base64.b64decode(data["data"]))


class GenerationRecord(object):
    """Hash of the generator inputs that produced the current plaintext."""

    def __init__(self, hash, inputs):
        self.hash = hash
        self.inputs = inputs

    def __eq__(self, other):
        return (isinstance(other, GenerationRecord)
                and self.hash == other.hash
                and self.inputs == other.inputs)

    def __repr__(self):
        return "<GenerationRecord {}>".format(self.hash[:12])

    def to_dict(self):
        return {"hash": self.hash, "inputs": self.inputs}

    @classmethod
    def from_dict(cls, data):
        if data is None:
            return None
        return cls(data["hash"], data["inputs"])


class StoredSecret(object):

    def __init__(self, key, owners, parts, generation=None, managed=True,
                 created_at=None, expires_at=None, revision=0):
        self.key = key
        self.owners = set(owners)
        self.parts: Dict[str, SecretPart] = dict(parts)
        self.generation: Optional[GenerationRecord] = generation
        self.managed = managed
        self.created_at = created_at
        self.expires_at = expires_at
        self.revision = revision

    def __repr__(self):
        return "<StoredSecret {} rev {}>".format(self.key, self.revision)

    def copy(self):
        return copy.deepcopy(self)

    @property
    def layout(self):
        return {name: part.encrypted for name, part in self.parts.items()}

    def to_dict(self):
        return {
            "owners": sorted(self.owners),
            "managed": self.managed,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "revision": self.revision,
            "generation": (
                self.generation.to_dict() if self.generation else None),
            "parts": {
                name: part.to_dict()
                for name, part in sorted(self.parts.items())}}

    @classmethod
    def from_dict(cls, key, data):
        return cls(
            key,
            data["owners"],
            {name: SecretPart.from_dict(name, part)
             for name, part in data["parts"].items()},
            generation=GenerationRecord.from_dict(data.get("generation")),
            managed=data.get("managed", True),
            created_at=data.get("created_at"),
            expires_at=data.get("expires_at"),
            revision=data.get("revision", 0))


class SecretStore(object):
    """The single source of truth for encrypted secrets."""

    def __init__(self, base_dir):
        self.root = pathlib.Path(base_dir) / "secrets"
        # fcntl locks belong to the process, threads need their own lock.
        self._lock = threading.Lock()

    def path(self, key) -> pathlib.Path:
        return self.root / "{}.json".format(key)

    def _locked(self):
        return _StoreLock(self)

    def _read(self, key) -> Optional[StoredSecret]:
        path = self.path(key)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return StoredSecret.from_dict(key, json.load(f))

    def get(self, key) -> Optional[StoredSecret]:
        with self._locked():
            return self._read(key)

    def commit(self, secret: StoredSecret,
               expected_revision=ANY_REVISION) -> StoredSecret:
        """Write all parts of a secret at once.

        `expected_revision` is the revision the caller based its changes on,
        `None` if it expected the secret not to exist yet.

        """
        with self._locked():
            current = self._read(secret.key)
            actual = current.revision if current else None
            if (expected_revision is not ANY_REVISION
                    and expected_revision != actual):
                raise StoreConflict.from_context(
                    secret.key, expected_revision, actual)
            committed = secret.copy()
            committed.revision = (actual or 0) + 1
            path = self.path(secret.key)
            path.parent.mkdir(parents=True, exist_ok=True)
            content = json.dumps(committed.to_dict(), indent=2, sort_keys=True)
            fd, tmp = tempfile.mkstemp(
                dir=str(path.parent), prefix=".{}.".format(path.name))
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(content + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, str(path))
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
            return committed

    def delete(self, key, expected_revision=ANY_REVISION):
        with self._locked():
            current = self._read(key)
            if current is None:
                return
            if (expected_revision is not ANY_REVISION
                    and expected_revision != current.revision):
                raise StoreConflict.from_context(
                    key, expected_revision, current.revision)
            path = self.path(key)
            path.unlink()
            parent = path.parent
            while parent != self.root and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent

    def keys(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(
            str(p.relative_to(self.root))[:-len(".json")]
            for p in self.root.glob("**/*.json")
            if not p.name.startswith("."))

    def list_shared(self) -> List[str]:
        return [k for k in self.keys() if k.startswith("shared/")]

    def list_host_secrets(self, hostname) -> List[str]:
        prefix = "hosts/{}/".format(hostname)
        return [k for k in self.keys() if k.startswith(prefix)]

    def iter_secrets(self):
        for key in self.keys():
            secret = self.get(key)
            if secret is not None:
                yield secret


class _StoreLock(object):
    """Exclusive access to the store across threads and processes."""

    def __init__(self, store):
        self.store = store
        self.fd = None

    def __enter__(self):
        self.store._lock.acquire()
        try:
            self.store.root.mkdir(parents=True, exist_ok=True)
            self.fd = open(self.store.root / ".lock", "a+")
            fcntl.lockf(self.fd, fcntl.LOCK_EX)
        except BaseException:
            if self.fd is not None:
                self.fd.close()
                self.fd = None
            self.store._lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.fd.close()
        self.fd = None
        self.store._lock.release()
