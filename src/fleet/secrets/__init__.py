import base64
import hashlib
import os.path
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from fleet import (
    GenerationFailure,
    ReportingException,
    StoreConflict,
    StoreInconsistency,
    output,
)

from .encryption import EncryptionManager
from .generator import GeneratorEngine, generation_record, needs_regeneration
from .recipients import owner_changes
from .store import SecretStore, StoredSecret

UNCHANGED = "unchanged"
GENERATED = "generated"
REENCRYPTED = "reencrypted"
REMOVED = "removed"
FAILED = "failed"

REQUESTED = "regeneration requested"


class Outcome(object):
    """What one run did to one secret."""

    def __init__(self, key, action, reasons=(), errors=()):
        self.key = key
        self.action = action
        self.reasons = list(reasons)
        self.errors = list(errors)

    def __repr__(self):
        return "<Outcome {} {}>".format(self.key, self.action)

    @property
    def ok(self):
        return self.action != FAILED


class SecretManager(object):
    """Bring the stored secrets in line with their definitions.

    Per secret, generation, encryption and the store commit happen in this
    order and never concurrently with another update of the same secret.

    """

    def __init__(self, graph, store=None, engine=None, encryption=None,
                 identity_holders=None):
        self.graph = graph
        self.store = store or SecretStore(graph.base_dir)
        self.engine = engine or GeneratorEngine(
            graph.base_dir, graph.settings.generation_jobs)
        self.encryption = encryption or EncryptionManager(
            graph, identity_holders)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def _lock_for(self, key):
        with self._locks_lock:
            return self._locks.setdefault(key, threading.Lock())

    def close(self):
        self.encryption.close()
        self.engine.shutdown()

    def update(self, definition, force=False) -> Outcome:
        with self._lock_for(definition.key):
            return self._update(definition, force)

    def _update(self, definition, force):
        stored = self.store.get(definition.key)
        revision = stored.revision if stored is not None else None

        if definition.managed:
            reasons = needs_regeneration(definition, stored)
            if force and not reasons:
                reasons = [REQUESTED]
            if reasons:
                return self._generate(definition, revision, reasons)
        elif stored is None:
            return Outcome(definition.key, FAILED, errors=[
                StoreInconsistency.from_context(
                    definition.label,
                    "has no content yet, use `fleet secrets add`")])
        elif stored.layout != definition.expected_parts:
            return Outcome(definition.key, FAILED, errors=[
                StoreInconsistency.from_context(
                    definition.label,
                    "stored parts do not match the definition, use "
                    "`fleet secrets add` to replace it")])

        added, removed = owner_changes(stored, definition)
        missing = set(definition.owners) - stored.owners
        for part in stored.parts.values():
            if part.encrypted:
                missing |= set(definition.owners) - part.holders
        if not added and not removed and not missing:
            return Outcome(definition.key, UNCHANGED)

        reasons = []
        if added:
            reasons.append("owners added: {}".format(", ".join(sorted(added))))
        if removed:
            reasons.append(
                "owners removed: {}".format(", ".join(sorted(removed))))
        if removed and not definition.managed:
            output.annotate(
                "Warning: {} can not be regenerated, removed owners {} may "
                "still know its plaintext.".format(
                    definition.label, ", ".join(sorted(removed))),
                red=True)
        return self._reencrypt(definition, stored, reasons)

    def _generate(self, definition, revision, reasons) -> Outcome:
        output.step(definition.label, "Regenerating: {}".format(
            ", ".join(reasons)))
        try:
            generated = self.engine.generate(definition)
        except GenerationFailure as e:
            return Outcome(definition.key, FAILED, reasons, [e])
        parts, holders, errors = self.encryption.encrypt(
            definition, generated.parts)
        if definition.private_parts and not holders:
            # Keep the previous ciphertext rather than storing an unreadable
            # secret.
            return Outcome(definition.key, FAILED, reasons, errors)
        secret = StoredSecret(
            definition.key,
            holders,
            parts,
            generation=generation_record(definition),
            managed=True,
            created_at=generated.created_at,
            expires_at=generated.expires_at)
        try:
            self.store.commit(secret, revision)
        except StoreConflict as e:
            return Outcome(definition.key, FAILED, reasons, errors + [e])
        return Outcome(definition.key, GENERATED, reasons, errors)

    def _reencrypt(self, definition, stored, reasons) -> Outcome:
        output.step(definition.label, "Reencrypting: {}".format(
            ", ".join(reasons)))
        parts, holders, errors = self.encryption.reencrypt(
            definition, stored)
        if holders == stored.owners and all(
                part.recipients == stored.parts[name].recipients
                for name, part in parts.items()):
            # Every added owner failed, keep the revision as it is.
            return Outcome(
                definition.key, FAILED if errors else UNCHANGED, reasons,
                errors)
        secret = stored.copy()
        secret.owners = holders
        secret.parts = parts
        try:
            self.store.commit(secret, stored.revision)
        except StoreConflict as e:
            return Outcome(definition.key, FAILED, reasons, errors + [e])
        return Outcome(definition.key, REENCRYPTED, reasons, errors)

    def definitions(self, hosts: Optional[List[str]] = None):
        result = []
        for key, definition in sorted(self.graph.secrets.items()):
            if definition.host:
                if self.graph.hosts[definition.host].ignore:
                    continue
                if hosts and definition.host not in hosts:
                    continue
            elif hosts and not set(hosts) & definition.owners:
                continue
            result.append(definition)
        return result

    def regenerate_all(self, hosts=None, force=False) -> List[Outcome]:
        """Update every defined secret, one failure does not stop others."""
        definitions = self.definitions(hosts)
        outcomes = []

        def update(definition):
            try:
                return self.update(definition, force)
            except ReportingException as e:
                return Outcome(definition.key, FAILED, errors=[e])

        with ThreadPoolExecutor(
                self.graph.settings.generation_jobs,
                thread_name_prefix="secrets") as pool:
            outcomes.extend(pool.map(update, definitions))
        if not hosts:
            outcomes.extend(self.remove_undefined())
        return outcomes

    def remove_undefined(self) -> List[Outcome]:
        outcomes = []
        for key in self.store.keys():
            if key in self.graph.secrets:
                continue
            output.step(key, "Removing secret without definition")
            self.store.delete(key)
            outcomes.append(Outcome(key, REMOVED))
        return outcomes


def report_outcomes(outcomes) -> bool:
    """Print per secret results. Returns whether all of them succeeded."""
    success = True
    for outcome in outcomes:
        if outcome.action != UNCHANGED:
            output.tabular(
                outcome.action, outcome.key, red=not outcome.ok)
        for error in outcome.errors:
            error.report()
        success = success and outcome.ok
    return success


def install_document(graph, store, hostname) -> dict:
    """Collect the ciphertext a host needs to install its secrets.

    Refuses a secret that is still encrypted for removed owners or that
    was not encrypted for this host. Other owners missing from the
    recipients only get a warning: their own install refuses the secret.

    """
    host = graph.hosts[hostname]
    document = {}
    for definition in graph.secrets_for(hostname):
        stored = store.get(definition.key)
        if stored is None:
            raise StoreInconsistency.from_context(
                definition.label, "not in the store", hostname)
        if stored.layout != definition.expected_parts:
            raise StoreInconsistency.from_context(
                definition.label, "stored parts do not match the definition",
                hostname)
        excluded = set()
        for part in stored.parts.values():
            if not part.encrypted or part.holders == definition.owners:
                continue
            stale = part.holders - definition.owners
            problems = []
            if hostname not in part.holders:
                problems.append("missing {}".format(hostname))
            if stale:
                problems.append("stale {}".format(", ".join(sorted(stale))))
            if problems:
                raise StoreInconsistency.from_context(
                    definition.label,
                    "recipients of `{}` do not match the owners ({})".format(
                        part.name, "; ".join(problems)),
                    hostname)
            excluded |= definition.owners - part.holders
        if excluded:
            output.annotate(
                "{}: {} is not encrypted for {}, run "
                "`fleet secrets regenerate`".format(
                    hostname, definition.label, ", ".join(sorted(excluded))),
                red=True)

        directory = os.path.join(host.secrets_directory, definition.name)
        parts = {}
        for name, part in sorted(stored.parts.items()):
            raw = part.recipients[hostname] if part.encrypted else part.data
            digest = hashlib.sha1(raw).hexdigest()
            parts[name] = {
                "path": os.path.join(directory, "{}-{}".format(digest, name)),
                "stablePath": os.path.join(directory, name),
                "raw": base64.b64encode(raw).decode("ascii"),
                "encrypted": part.encrypted,
            }
        document[definition.name] = {
            "owner": definition.owner,
            "group": definition.group,
            "mode": definition.mode,
            "reload": definition.reload_command,
            "parts": parts,
        }
    return document
