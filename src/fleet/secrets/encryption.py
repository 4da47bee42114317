import base64
import os
import subprocess
import threading
from typing import Dict, List, Optional

import pyrage
import requests
from cryptography.hazmat.primitives import serialization

from fleet import EncryptionFailure, output, prepare_error

from .recipients import RecipientResolver, parse_recipient
from .store import SecretPart

# Name of the operator's own identity in `prefer_identities`.
LOCAL = "local"

identities = None


def _load_identity(id_path):
    with open(id_path, "rb") as f:
        key_content = f.read()
    if b"AGE-SECRET-KEY-" in key_content:
        return [
            pyrage.x25519.Identity.from_str(line.strip())
            for line in key_content.decode("ascii").splitlines()
            if line.strip().startswith("AGE-SECRET-KEY-")]
    try:
        priv_key = serialization.load_ssh_private_key(key_content, None)
    except (ValueError, TypeError):
        passphrase = get_passphrase(id_path).encode("utf-8")
        priv_key = serialization.load_ssh_private_key(key_content, passphrase)

    pkey = priv_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.OpenSSH,
        serialization.NoEncryption(),
    )
    return [pyrage.ssh.Identity.from_buffer(pkey)]


def get_identities():
    """The operator's age identities.

    Taken from `FLEET_AGE_IDENTITIES` (comma separated paths to ssh private
    keys or age identity files) or the usual ssh key locations.

    """
    global identities
    if identities is None:
        paths = os.environ.get("FLEET_AGE_IDENTITIES")
        paths = [x.strip() for x in paths.split(",")] if paths else []
        if not paths:
            # The order ssh uses.
            paths = [
                "~/.ssh/id_rsa",
                "~/.ssh/id_ecdsa",
                "~/.ssh/id_ecdsa_sk",
                "~/.ssh/id_ed25519",
                "~/.ssh/id_ed25519_sk",
                "~/.ssh/id_dsa",
            ]
        paths = [
            os.path.expanduser(x)
            for x in paths
            if os.path.exists(os.path.expanduser(x))
        ]
        output.annotate("Found identities: {}".format(paths), debug=True)

        identities = []
        for path in paths:
            try:
                identities.extend(_load_identity(path))
            except Exception as e:
                output.annotate(
                    "Ignoring identity {}: {}".format(path, e), red=True)
                continue

    return identities


known_passphrases: Dict[str, str] = {}


def get_passphrase(identity: str) -> str:
    """Prompt the user for a passphrase if necessary."""
    if identity in known_passphrases:
        return known_passphrases[identity]

    op = os.environ.get("FLEET_AGE_IDENTITY_PASSPHRASE")

    if op and not op.startswith("op://"):
        passphrase = op
    elif op:
        op_process = subprocess.run(
            ["op", "read", op],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=True,
        )
        passphrase = op_process.stdout.decode("utf-8").strip()
    else:
        import getpass

        passphrase = getpass.getpass(
            "Enter passphrase for {}: ".format(identity)
        )

    known_passphrases[identity] = passphrase
    return passphrase


def encrypt_for(plaintext: bytes, keys: List[str]) -> bytes:
    return pyrage.encrypt(plaintext, [parse_recipient(key) for key in keys])


class LocalIdentityHolder(object):
    """Reencrypt with an identity of the operator.

    Only works where the operator holds a copy of an owner's private key.

    """

    name = LOCAL

    def __init__(self, identities=None):
        self._identities = identities

    @property
    def identities(self):
        if self._identities is None:
            self._identities = get_identities()
        return self._identities

    def decrypt(self, ciphertext: bytes) -> bytes:
        if not self.identities:
            raise ValueError("No local identity available")
        try:
            return pyrage.decrypt(ciphertext, self.identities)
        except pyrage.DecryptError as e:
            raise ValueError("Could not decrypt: {}".format(e))

    def reencrypt(self, ciphertext: bytes,
                  recipients: List[List[str]]) -> List[bytes]:
        plaintext = self.decrypt(ciphertext)
        return [encrypt_for(plaintext, keys) for keys in recipients]

    def close(self):
        pass


class AgentIdentityHolder(object):
    """Reencrypt on an owner host. The plaintext stays on that host."""

    def __init__(self, host):
        self.host = host
        self.name = host.name
        self._connected = False
        self._lock = threading.Lock()

    def reencrypt(self, ciphertext: bytes,
                  recipients: List[List[str]]) -> List[bytes]:
        with self._lock:
            if not self.host.connected:
                output.step(self.name, "Connecting for reencryption ...")
                self.host.connect()
                self.host.start()
                self._connected = True
            result = self.host.rpc.reencrypt(
                base64.b64encode(ciphertext).decode("ascii"), recipients)
        return [base64.b64decode(x) for x in result]

    def close(self):
        with self._lock:
            if self._connected:
                self.host.disconnect()
                self._connected = False


class EncryptionManager(object):
    """The only place that writes ciphertext.

    `identity_holders` maps holder names (owner host names or `local`) to
    objects offering `reencrypt(ciphertext, [keys, ...])`. Missing holders
    are created on demand.

    """

    def __init__(self, graph, identity_holders=None, resolver=None):
        self.graph = graph
        self.resolver = resolver or RecipientResolver(graph.hosts)
        self.holders = dict(identity_holders or {})
        self._lock = threading.Lock()

    def holder(self, name):
        with self._lock:
            if name not in self.holders:
                if name == LOCAL:
                    self.holders[name] = LocalIdentityHolder()
                elif name in self.graph.hosts:
                    self.holders[name] = AgentIdentityHolder(
                        self.graph.hosts[name])
                else:
                    return None
            return self.holders[name]

    def close(self):
        for holder in list(self.holders.values()):
            holder.close()

    def _resolve(self, definition, owners, errors) -> Dict[str, List[str]]:
        keys = {}
        for owner in sorted(owners):
            try:
                self.resolver.recipients(owner)
                keys[owner] = self.resolver.keys(owner)
            except (ValueError, requests.RequestException) as e:
                error = EncryptionFailure.from_context(
                    definition.label, owner, e)
                output.annotate(str(error), red=True)
                errors.append(error)
        return keys

    def encrypt(self, definition, plaintext_parts: Dict[str, bytes]):
        """Encrypt fresh plaintext for every owner with a usable key.

        Returns the parts, the owners holding a ciphertext and the
        encryption failures of the excluded owners.

        """
        errors: List[EncryptionFailure] = []
        keys = self._resolve(definition, definition.owners, errors)
        parts = {}
        holders = set(keys)
        for name, encrypted in sorted(definition.expected_parts.items()):
            data = plaintext_parts[name]
            if not encrypted:
                parts[name] = SecretPart(name, False, data=data)
                continue
            part = SecretPart(name, True)
            for owner in sorted(holders):
                try:
                    part.recipients[owner] = encrypt_for(data, keys[owner])
                except pyrage.EncryptError as e:
                    errors.append(EncryptionFailure.from_context(
                        definition.label, owner, e))
                    holders.discard(owner)
            parts[name] = part
        for part in parts.values():
            if part.encrypted:
                part.recipients = {
                    h: blob for h, blob in part.recipients.items()
                    if h in holders}
        if not definition.private_parts:
            holders = set(definition.owners)
        return parts, holders, errors

    def holder_order(self, holders) -> List[str]:
        order = []
        for name in list(self.graph.settings.prefer_identities) + [LOCAL]:
            if name not in order and (name == LOCAL or name in holders):
                order.append(name)
        order.extend(sorted(set(holders) - set(order)))
        return order

    def _reencrypt_part(self, part, groups, holders) -> Optional[list]:
        for name in self.holder_order(holders):
            holder = self.holder(name)
            if holder is None:
                continue
            if name == LOCAL:
                candidates = [
                    part.recipients[h] for h in sorted(holders)]
            else:
                candidates = [part.recipients[name]]
            for ciphertext in candidates:
                try:
                    return holder.reencrypt(ciphertext, groups)
                except ValueError as e:
                    # Not one of this holder's identities.
                    output.annotate(
                        "{}: could not reencrypt {}: {}".format(
                            name, part.name, e),
                        debug=True)
                except Exception as e:
                    output.annotate(
                        "{}: could not reencrypt {}: {}".format(
                            name, part.name, prepare_error(e)),
                        red=True)
                    # The holder is unusable, try the next one.
                    break
        return None

    def reencrypt(self, definition, stored):
        """Adapt stored ciphertext to the current owners.

        Removed owners lose their ciphertext, added owners get one made from
        the plaintext an identity holder decrypts. Ciphertext of remaining
        owners is kept as it is.

        """
        errors: List[EncryptionFailure] = []
        parts = {}
        for name, old in stored.parts.items():
            parts[name] = SecretPart(
                name,
                old.encrypted,
                recipients={
                    h: blob for h, blob in old.recipients.items()
                    if h in definition.owners},
                data=old.data)
        private = sorted(name for name, p in parts.items() if p.encrypted)
        if not private:
            return parts, set(definition.owners), errors

        holders = set(definition.owners)
        for name in private:
            holders &= parts[name].holders
        added = set(definition.owners) - holders

        keys = self._resolve(definition, added, errors)
        if keys and not holders:
            for owner in sorted(keys):
                errors.append(EncryptionFailure.from_context(
                    definition.label, owner, "no remaining owner holds the "
                    "secret, it needs to be regenerated or added again"))
            keys = {}
        if keys:
            targets = sorted(keys)
            groups = [keys[owner] for owner in targets]
            new = {}
            for name in private:
                result = self._reencrypt_part(parts[name], groups, holders)
                if result is None:
                    for owner in targets:
                        errors.append(EncryptionFailure.from_context(
                            definition.label, owner,
                            "no identity holder could decrypt part "
                            "`{}`".format(name)))
                    new = {}
                    break
                new[name] = dict(zip(targets, result))
            for name, blobs in new.items():
                parts[name].recipients.update(blobs)
            if new:
                holders |= set(targets)
        return parts, holders, errors
