import ast
import configparser
import json
import os.path
import types
from configparser import RawConfigParser
from typing import Dict, List, Optional

from fleet import (
    ConfigurationError,
    DuplicateHostError,
    MissingOwnersError,
    UnknownHostError,
)

from .host import Host, LocalHost, RemoteHost

CONFIG_FILE = "fleet.cfg"


class ConfigSection(dict):
    def as_list(self, option):
        result = self[option].strip()
        if not result:
            return []
        if "," in result:
            result = [x.strip() for x in result.split(",")]
            result = [x for x in result if x]
        elif "\n" in result:
            result = (x.strip() for x in result.split("\n"))
            result = [x for x in result if x]
        else:
            result = [result]
        return result

    def as_bool(self, option, default=False):
        if option not in self:
            return default
        return bool(ast.literal_eval(self[option]))


class Config(object):
    def __init__(self, path):
        config = RawConfigParser()
        config.optionxform = lambda optionstr: optionstr
        if path:  # Test support
            try:
                config.read(path)
            except configparser.DuplicateSectionError as e:
                if e.section.startswith("host:"):
                    raise DuplicateHostError.from_context(
                        e.section.replace("host:", "", 1))
                raise ConfigurationError.from_context(str(e), e.section)
            except configparser.Error as e:
                raise ConfigurationError.from_context(str(e))
        self.config = config

    def __contains__(self, section):
        return self.config.has_section(section)

    def __getitem__(self, section):
        if section not in self:
            raise KeyError(section)
        return ConfigSection(
            (x, self.config.get(section, x))
            for x in self.config.options(section)
        )

    def __iter__(self):
        return iter(self.config.sections())

    def get(self, section, default=None):
        try:
            return self[section]
        except KeyError:
            return default


def _choice(*options):
    def convert(value):
        if value not in options:
            raise ValueError(
                "expected one of {}, got `{}`".format(", ".join(options), value)
            )
        return value

    return convert


def _list(value):
    return ConfigSection(value=value).as_list("value")


class Settings(object):
    """Fleet-wide settings from the `[fleet]` section."""

    build_command = None
    jobs = 1
    generation_jobs = 4
    connect_method = "ssh"
    connect_attempts = 3
    confirm_timeout = 120.0
    watchdog_grace = 60.0
    poll_interval = 5.0
    health_command = "systemctl is-system-running --wait"
    state_directory = "/var/lib/fleet"
    secrets_directory = "/run/secrets"
    identity = "/etc/ssh/ssh_host_ed25519_key"
    watchdog_timer = "systemd"
    service_user = "root"
    system = "x86_64-linux"
    python = "python3"
    prefer_identities: List[str] = []

    CONVERSIONS = {
        "build_command": str,
        "jobs": int,
        "generation_jobs": int,
        "connect_method": _choice("ssh", "local"),
        "connect_attempts": int,
        "confirm_timeout": float,
        "watchdog_grace": float,
        "poll_interval": float,
        "health_command": str,
        "state_directory": str,
        "secrets_directory": str,
        "identity": str,
        "watchdog_timer": _choice("systemd", "none"),
        "service_user": str,
        "system": str,
        "python": str,
        "prefer_identities": _list,
    }

    def __init__(self, **kw):
        for key, value in kw.items():
            if key not in self.CONVERSIONS:
                raise TypeError("Unknown setting: {}".format(key))
            setattr(self, key, value)

    @classmethod
    def from_config(cls, section, exceptions):
        kw = {}
        for key, value in section.items():
            if key not in cls.CONVERSIONS:
                exceptions.append(
                    ConfigurationError.from_context(
                        "Unknown setting `{}`".format(key), "fleet"
                    )
                )
                continue
            try:
                kw[key] = cls.CONVERSIONS[key](value)
            except ValueError as e:
                exceptions.append(
                    ConfigurationError.from_context(
                        "Invalid value for `{}`: {}".format(key, e), "fleet"
                    )
                )
        return cls(**kw)

    @property
    def watchdog_window(self):
        return self.confirm_timeout + self.watchdog_grace


class SecretDefinition(object):
    """What a secret should look like and who may read it.

    Shared secrets have an explicit owner set, host secrets (`host` is set)
    are owned by exactly that host. Definitions without a generator are
    unmanaged: their content is added by an operator.

    """

    def __init__(
        self,
        name,
        owners,
        generator=None,
        generation_data=None,
        private_parts=("secret",),
        public_parts=(),
        regenerate_on_owner_added=False,
        mode="0440",
        owner="root",
        group=None,
        reload_command=None,
        host=None,
    ):
        self.name = name
        self.owners = frozenset(owners)
        self.generator = generator
        self.generation_data = generation_data
        self.private_parts = tuple(private_parts)
        self.public_parts = tuple(public_parts)
        self.regenerate_on_owner_added = regenerate_on_owner_added
        self.mode = mode
        self.owner = owner
        self.group = group
        self.reload_command = reload_command
        self.host = host

    def __repr__(self):
        return "<SecretDefinition {}>".format(self.key)

    @property
    def key(self):
        if self.host:
            return "hosts/{}/{}".format(self.host, self.name)
        return "shared/{}".format(self.name)

    @property
    def label(self):
        if self.host:
            return "{}:{}".format(self.host, self.name)
        return self.name

    @property
    def managed(self):
        return self.generator is not None

    @property
    def expected_parts(self) -> Dict[str, bool]:
        parts = {name: True for name in self.private_parts}
        parts.update({name: False for name in self.public_parts})
        return parts


def load_secret(section, name, data, hosts, exceptions, host=None):
    """Turn a `[secret:...]` or `[host-secret:...]` section into a
    definition. Problems are collected in `exceptions`."""
    problems = len(exceptions)

    if host:
        owners = {host}
    else:
        owners = set(data.as_list("owners")) if "owners" in data else set()
    for owner in sorted(owners):
        if owner not in hosts:
            exceptions.append(UnknownHostError.from_context(section, owner))

    private_parts = (
        data.as_list("private_parts") if "private_parts" in data else ["secret"]
    )
    public_parts = (
        data.as_list("public_parts") if "public_parts" in data else []
    )
    if set(private_parts) & set(public_parts):
        exceptions.append(
            ConfigurationError.from_context(
                "Parts can not be both private and public: {}".format(
                    ", ".join(sorted(set(private_parts) & set(public_parts)))
                ),
                section,
            )
        )
    if not private_parts and not public_parts:
        exceptions.append(
            ConfigurationError.from_context("Secret has no parts.", section)
        )
    for part in private_parts + public_parts:
        if part in ("marker", "created_at", "expires_at") or "/" in part:
            exceptions.append(
                ConfigurationError.from_context(
                    "Invalid part name `{}`".format(part), section
                )
            )
    if private_parts and not owners:
        exceptions.append(MissingOwnersError.from_context(section))

    generation_data = None
    if "generation_data" in data:
        try:
            generation_data = json.loads(data["generation_data"])
        except ValueError as e:
            exceptions.append(
                ConfigurationError.from_context(
                    "Invalid JSON in `generation_data`: {}".format(e), section
                )
            )

    mode = data.get("mode", "0440")
    try:
        int(mode, 8)
    except ValueError:
        exceptions.append(
            ConfigurationError.from_context(
                "Invalid file mode `{}`".format(mode), section
            )
        )

    try:
        regenerate_on_owner_added = data.as_bool("regenerate_on_owner_added")
    except (ValueError, SyntaxError):
        exceptions.append(
            ConfigurationError.from_context(
                "Invalid value for `regenerate_on_owner_added`: {}".format(
                    data["regenerate_on_owner_added"]
                ),
                section,
            )
        )
        regenerate_on_owner_added = False

    if len(exceptions) > problems:
        return None

    return SecretDefinition(
        name,
        owners,
        generator=data.get("generator") or None,
        generation_data=generation_data,
        private_parts=private_parts,
        public_parts=public_parts,
        regenerate_on_owner_added=regenerate_on_owner_added,
        mode=mode,
        owner=data.get("owner", "root"),
        group=data.get("group"),
        reload_command=data.get("reload_command") or None,
        host=host,
    )


class FleetGraph(object):
    """The hosts and secret definitions of a fleet.

    Built once per run from `fleet.cfg` and not changed afterwards.

    """

    def __init__(self, base_dir=".", settings=None, hosts=None, secrets=None):
        self.base_dir = os.path.abspath(base_dir)
        self.settings = settings or Settings()
        self.hosts = types.MappingProxyType(dict(hosts or {}))
        self.secrets = types.MappingProxyType(
            {d.key: d for d in (secrets or [])}
        )
        self.exceptions: List[Exception] = []

    @property
    def config_file(self):
        return os.path.join(self.base_dir, CONFIG_FILE)

    @classmethod
    def load(cls, base_dir="."):
        config_file = os.path.join(base_dir, CONFIG_FILE)
        if not os.path.exists(config_file):
            raise ConfigurationError.from_context(
                "Missing configuration file: {}".format(
                    os.path.abspath(config_file)
                )
            )
        config = Config(config_file)
        exceptions: List[Exception] = []

        settings = Settings.from_config(config.get("fleet", {}), exceptions)
        host_factory = (
            LocalHost if settings.connect_method == "local" else RemoteHost
        )

        hosts: Dict[str, Host] = {}
        for section in config:
            if not section.startswith("host:"):
                continue
            name = section.replace("host:", "", 1)
            try:
                hosts[name] = host_factory(name, settings, config[section])
            except (ValueError, SyntaxError) as e:
                exceptions.append(
                    ConfigurationError.from_context(
                        "Invalid host setting: {}".format(e), section
                    )
                )

        secrets = []
        for section in config:
            if section == "fleet" or section.startswith("host:"):
                continue
            if section.startswith("secret:"):
                name = section.replace("secret:", "", 1)
                definition = load_secret(
                    section, name, config[section], hosts, exceptions
                )
            elif section.startswith("host-secret:"):
                host, _, name = section.replace("host-secret:", "", 1).partition(
                    ":"
                )
                if host not in hosts:
                    exceptions.append(
                        UnknownHostError.from_context(section, host)
                    )
                    continue
                definition = load_secret(
                    section, name, config[section], hosts, exceptions, host
                )
            else:
                exceptions.append(
                    ConfigurationError.from_context(
                        "Superfluous section", section
                    )
                )
                continue
            if definition is not None:
                secrets.append(definition)

        graph = cls(base_dir, settings, hosts, secrets)
        graph.exceptions.extend(exceptions)
        graph.exceptions.extend(graph._check_install_names())
        return graph

    def _check_install_names(self):
        # Shared and host secrets share one directory per name on the host.
        exceptions = []
        for hostname in sorted(self.hosts):
            seen = {}
            for definition in self.secrets_for(hostname):
                if definition.name in seen:
                    exceptions.append(
                        ConfigurationError.from_context(
                            "Secret name `{}` is used twice on host {}".format(
                                definition.name, hostname
                            ),
                            definition.label,
                        )
                    )
                seen[definition.name] = definition
        return exceptions

    def secrets_for(self, hostname) -> List[SecretDefinition]:
        return [
            d
            for key, d in sorted(self.secrets.items())
            if hostname in d.owners
        ]

    def find_secret(self, name, host=None) -> SecretDefinition:
        key = (
            "hosts/{}/{}".format(host, name) if host else "shared/{}".format(name)
        )
        if key not in self.secrets:
            raise ConfigurationError.from_context(
                "Unknown secret: {}".format(key)
            )
        return self.secrets[key]

    def deployment_hosts(self, names: Optional[List[str]] = None):
        if names:
            unknown = [x for x in names if x not in self.hosts]
            if unknown:
                raise ConfigurationError.from_context(
                    "Unknown host(s): {}".format(", ".join(unknown))
                )
            return [self.hosts[x] for x in names]
        return [h for _, h in sorted(self.hosts.items())]
