import sys

from configupdater import ConfigUpdater

from fleet import (
    ConfigurationError,
    StoreInconsistency,
    UnknownHostError,
    output,
)
from fleet.environment import FleetGraph
from fleet.secrets import SecretManager, report_outcomes
from fleet.secrets.encryption import EncryptionManager, LocalIdentityHolder
from fleet.secrets.generator import needs_regeneration, utcnow
from fleet.secrets.store import SecretStore, StoredSecret


def load_graph(base_dir="."):
    graph = FleetGraph.load(base_dir)
    if graph.exceptions:
        for error in sorted(
                graph.exceptions, key=lambda x: getattr(x, "sort_key", (-99,))):
            error.report()
        raise ConfigurationError.from_context(
            "{} configuration error(s), see above.".format(
                len(graph.exceptions)))
    return graph


def find_definition(graph, name):
    """Look up `NAME` (shared secret) or `HOST:NAME` (host secret)."""
    host, _, secret = name.rpartition(":")
    return graph.find_secret(secret, host or None)


def summary(**kw):
    graph = load_graph()
    store = SecretStore(graph.base_dir)
    for key, definition in sorted(graph.secrets.items()):
        stored = store.get(key)
        output.line(definition.label, bold=True)
        output.tabular(
            "Kind", "managed" if definition.managed else "unmanaged")
        output.tabular("Owners", ", ".join(sorted(definition.owners)) or "-")
        if stored is None:
            output.tabular("State", "missing", red=True)
            continue
        output.tabular("Revision", str(stored.revision))
        output.tabular("Created", stored.created_at or "-")
        if stored.expires_at:
            output.tabular("Expires", stored.expires_at)
        for name, part in sorted(stored.parts.items()):
            if part.encrypted:
                holders = ", ".join(sorted(part.holders)) or "nobody"
                output.tabular(name, "encrypted for " + holders)
            else:
                output.tabular(name, "public")
        if definition.managed:
            reasons = needs_regeneration(definition, stored)
            if reasons:
                output.tabular("State", "stale: " + ", ".join(reasons),
                               red=True)
            else:
                output.tabular("State", "up to date", green=True)
    for key in store.keys():
        if key not in graph.secrets:
            output.line("{} (no definition)".format(key), red=True)
    return 0


def regenerate(secrets=(), hosts=(), force=False, **kw):
    """Regenerate or reencrypt secrets as their definitions require.

    Without explicit secrets, all secrets are updated and secrets that are
    no longer defined are removed from the store.

    """
    graph = load_graph()
    manager = SecretManager(graph)
    try:
        if secrets:
            outcomes = [
                manager.update(find_definition(graph, name), force)
                for name in secrets]
        else:
            outcomes = manager.regenerate_all(list(hosts), force)
    finally:
        manager.close()
    return 0 if report_outcomes(outcomes) else 1


def read(secret, part="secret", **kw):
    """Decrypt a part with the operator's identities to stdout."""
    graph = load_graph()
    definition = find_definition(graph, secret)
    stored = SecretStore(graph.base_dir).get(definition.key)
    if stored is None:
        raise StoreInconsistency.from_context(
            definition.label, "not in the store")
    if part not in stored.parts:
        raise ConfigurationError.from_context(
            "Secret `{}` has no part `{}`".format(definition.label, part))
    stored_part = stored.parts[part]
    if not stored_part.encrypted:
        data = stored_part.data
    else:
        holder = LocalIdentityHolder()
        for hostname, ciphertext in sorted(stored_part.recipients.items()):
            try:
                data = holder.decrypt(ciphertext)
                break
            except ValueError as e:
                output.annotate(
                    "{}: {}".format(hostname, e), debug=True)
                continue
        else:
            output.error(
                "None of your identities can decrypt `{}`.".format(
                    definition.label))
            return 1
    sys.stdout.buffer.write(data)
    sys.stdout.flush()
    return 0


def add(secret, parts=(), **kw):
    """Store operator supplied content for an unmanaged secret.

    Parts are given as `NAME=FILE`. A secret with a single part may be read
    from stdin instead.

    """
    graph = load_graph()
    definition = find_definition(graph, secret)
    if definition.managed:
        raise ConfigurationError.from_context(
            "Secret `{}` is generated, use `fleet secrets regenerate`.".format(
                definition.label))

    plaintext = {}
    for spec in parts:
        name, sep, filename = spec.partition("=")
        if not sep:
            raise ConfigurationError.from_context(
                "Expected NAME=FILE, got `{}`".format(spec))
        with open(filename, "rb") as f:
            plaintext[name] = f.read()
    if not plaintext and len(definition.expected_parts) == 1:
        (name,) = definition.expected_parts
        plaintext[name] = sys.stdin.buffer.read()
    if set(plaintext) != set(definition.expected_parts):
        raise ConfigurationError.from_context(
            "Secret `{}` needs the parts: {}".format(
                definition.label,
                ", ".join(sorted(definition.expected_parts))))

    store = SecretStore(graph.base_dir)
    stored = store.get(definition.key)
    encryption = EncryptionManager(graph)
    parts, holders, errors = encryption.encrypt(definition, plaintext)
    for error in errors:
        error.report()
    if definition.private_parts and not holders:
        return 1
    committed = store.commit(
        StoredSecret(
            definition.key,
            holders,
            parts,
            managed=False,
            created_at=utcnow().isoformat()),
        stored.revision if stored is not None else None)
    output.step(definition.label, "Stored revision {}".format(
        committed.revision))
    return 1 if errors else 0


def _edit_owners(graph, definition, owners):
    if definition.host:
        raise ConfigurationError.from_context(
            "Host secrets are owned by their host only.", definition.label)
    if not owners and definition.private_parts:
        raise ConfigurationError.from_context(
            "Removing the last owner would leave nobody to decrypt "
            "the secret.", "secret:" + definition.name)
    with open(graph.config_file, "r") as f:
        config = ConfigUpdater().read_string(f.read())
    section = "secret:" + definition.name
    config.set(section, "owners", ",\n".join(sorted(owners)).split("\n"))
    with open(graph.config_file, "w") as f:
        f.write(str(config))


def _change_owners(secret, change):
    graph = load_graph()
    definition = find_definition(graph, secret)
    owners = change(set(definition.owners))
    if owners == definition.owners:
        output.step(definition.label, "Owners unchanged")
        return 0
    _edit_owners(graph, definition, owners)

    graph = load_graph()
    manager = SecretManager(graph)
    try:
        outcome = manager.update(find_definition(graph, secret))
    finally:
        manager.close()
    return 0 if report_outcomes([outcome]) else 1


def add_owner(secret, hostname, **kw):
    """Make a host an owner of a shared secret and encrypt it for the
    host."""
    graph = load_graph()
    if hostname not in graph.hosts:
        raise UnknownHostError.from_context("secret:" + secret, hostname)
    return _change_owners(secret, lambda owners: owners | {hostname})


def remove_owner(secret, hostname, **kw):
    """Take a host out of a shared secret's owners."""
    return _change_owners(secret, lambda owners: owners - {hostname})
