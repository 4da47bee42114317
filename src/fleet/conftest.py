import os

import pyrage
import pytest

import fleet.secrets.encryption
from fleet.environment import FleetGraph, SecretDefinition, Settings
from fleet.host import LocalHost


@pytest.fixture(autouse=True)
def ensure_workingdir(request):
    working_dir = os.getcwd()
    yield
    os.chdir(working_dir)


def pytest_assertrepr_compare(op, left, right):
    if left.__class__.__name__ == "Ellipsis":
        return left.compare(right).diff
    elif right.__class__.__name__ == "Ellipsis":
        return right.compare(left).diff


@pytest.fixture(autouse=True)
def output(monkeypatch):
    from fleet import output
    from fleet._output import TestBackend

    backend = TestBackend()
    monkeypatch.setattr(output, "backend", backend)
    return output


@pytest.fixture(autouse=True)
def ensure_no_operator_identity(monkeypatch, tmpdir):
    # Never pick up the keys of whoever runs the tests.
    monkeypatch.setitem(
        os.environ, "FLEET_AGE_IDENTITIES", str(tmpdir / "no-such-identity"))
    monkeypatch.setattr(fleet.secrets.encryption, "identities", None)


@pytest.fixture
def host_identities():
    return {
        name: pyrage.x25519.Identity.generate()
        for name in ["host-a", "host-b", "host-c"]}


@pytest.fixture
def make_graph(tmpdir, host_identities):
    """Build a graph with hosts `host-a` to `host-c` in tmpdir."""

    def make_graph(secrets=(), hosts=None, **settings):
        settings = Settings(**settings)
        hosts = hosts or sorted(host_identities)
        graph_hosts = {}
        for name in hosts:
            identity_file = tmpdir / "{}.key".format(name)
            identity_file.write(str(host_identities[name]) + "\n")
            graph_hosts[name] = LocalHost(name, settings, {
                "key": str(host_identities[name].to_public()),
                "identity": str(identity_file),
                "state_directory": str(tmpdir / name / "state"),
                "secrets_directory": str(tmpdir / name / "secrets")})
        return FleetGraph(str(tmpdir), settings, graph_hosts, secrets)

    return make_graph


@pytest.fixture
def db_password():
    return SecretDefinition(
        "db-password",
        ["host-a"],
        generator="head -c 16 /dev/urandom > $out/secret && "
        "echo SUCCESS > $out/marker")
