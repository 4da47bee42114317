import threading
from typing import Dict, List, Tuple

import pyrage
import requests

from fleet import output

# Public keys of a host may be given literally or as an https URL to a key
# file (e.g. https://github.com/<user>.keys).
KEY_PREFIXES = ("ssh-", "age1")


def resolve_keys(key) -> List[str]:
    """Expand a configured host key into the public keys it stands for."""
    keys = []
    for entry in [x.strip() for x in key.replace("\n", ",").split(",")]:
        if not entry:
            continue
        if entry.startswith(KEY_PREFIXES):
            keys.append(entry)
        elif entry.startswith("http://"):
            raise ValueError("Downloading public keys over http is insecure!")
        elif entry.startswith("https://"):
            output.annotate(
                "Downloading key file from `{}`".format(entry), debug=True)
            response = requests.get(entry, timeout=30)
            response.raise_for_status()
            keys.extend(
                sorted(
                    line.strip()
                    for line in response.text.splitlines()
                    if line.strip().startswith(KEY_PREFIXES)))
        else:
            raise ValueError("Unknown key type: {}".format(entry[:24]))
    if not keys:
        raise ValueError("No public key found")
    return keys


def parse_recipient(key):
    if key.startswith("age1"):
        return pyrage.x25519.Recipient.from_str(key)
    if key.startswith("ssh-"):
        return pyrage.ssh.Recipient.from_str(key)
    raise ValueError("Unsupported recipient key: {}".format(key[:24]))


class RecipientResolver(object):
    """Look up, once per run, the public keys each host encrypts to."""

    def __init__(self, hosts):
        self.hosts = hosts
        self._cache: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def keys(self, hostname) -> List[str]:
        with self._lock:
            if hostname in self._cache:
                return self._cache[hostname]
        host = self.hosts[hostname]
        if not host.key:
            raise ValueError("No public key configured")
        # Downloads run unlocked, the first result to arrive is kept.
        keys = resolve_keys(host.key)
        with self._lock:
            return self._cache.setdefault(hostname, keys)

    def recipients(self, hostname) -> list:
        try:
            return [parse_recipient(key) for key in self.keys(hostname)]
        except pyrage.RecipientError as e:
            raise ValueError("Invalid public key: {}".format(e))


def owner_changes(stored, definition) -> Tuple[set, set]:
    """Return (added, removed) owners between store and definition."""
    current = stored.owners if stored is not None else set()
    return (set(definition.owners) - current,
            current - set(definition.owners))
