import os

import pyrage
import pytest

from fleet import (
    ActivationFailure,
    BuildFailure,
    ConcurrentDeploymentError,
    ConfirmationTimeout,
    DeploymentCancelled,
    StoreInconsistency,
    TransportFailure,
)
from fleet.deploy import Builder, Deployment, HostDeployment, run_steps
from fleet.environment import FleetGraph, SecretDefinition, Settings
from fleet.host import LocalHost
from fleet.remote_core import Agent, AgentError
from fleet.secrets import GENERATED, SecretManager
from fleet.secrets.store import SecretStore
from fleet.state import (
    ACTIVATING,
    AWAITING_CONFIRMATION,
    BUILDING,
    COMMITTED,
    FAILED,
    ROLLED_BACK,
    TRANSFERRING,
    StateJournal,
)
from fleet.tests.ellipsis import Ellipsis

GOOD = "#!/bin/sh\necho up\n"
BROKEN = "#!/bin/sh\necho service failed to start >&2\nexit 3\n"


class AgentRPC(object):
    """Calls the agent in-process instead of over an execnet channel."""

    def __init__(self, host):
        self.host = host

    def setup_output(self, debug):
        pass

    def setup_agent(self, state_directory, secrets_directory, identities,
                    watchdog_timer=None, agent_source=None):
        self.host.agent = Agent(state_directory, secrets_directory,
                                identities, watchdog_timer)
        return state_directory

    def __getattr__(self, name):
        method = getattr(self.host.agent, name)

        def call(*args, **kw):
            try:
                return method(*args, **kw)
            except AgentError as e:
                raise RuntimeError("{}: Remote exception encountered.".format(
                    self.host.fqdn)) from e

        return call


class FakeHost(LocalHost):

    reachable = True
    agent = None

    def connect(self):
        if not self.reachable:
            raise IOError("Connection refused")
        self.channel = object()
        self.rpc = AgentRPC(self)

    def disconnect(self):
        if self.agent is not None:
            self.agent.unlock()
        self.channel = None


def set_image(tmpdir, hostname, image, script=GOOD):
    path = tmpdir / "images" / image
    activate = path / "bin" / "activate"
    activate.ensure()
    activate.write(script)
    activate.chmod(0o755)
    (tmpdir / "{}.image".format(hostname)).write(str(path) + "\n")
    return str(path)


@pytest.fixture
def make_fleet(tmpdir, host_identities, monkeypatch):
    monkeypatch.setattr("fleet.deploy.backoff", lambda tries, cancelled: None)

    def make_fleet(secrets=(), hosts=("host-a", "host-b"), unreachable=(),
                   host_config=None, **settings):
        options = dict(
            build_command="cat {{ project }}/{{ name }}.image",
            health_command="true",
            watchdog_timer="none",
            confirm_timeout=5.0,
            poll_interval=0.01,
            connect_attempts=2)
        options.update(settings)
        settings = Settings(**options)
        graph_hosts = {}
        for name in hosts:
            identity_file = tmpdir / "{}.key".format(name)
            identity_file.write(str(host_identities[name]) + "\n")
            config = {
                "key": str(host_identities[name].to_public()),
                "identity": str(identity_file),
                "state_directory": str(tmpdir / name / "state"),
                "secrets_directory": str(tmpdir / name / "secrets")}
            config.update((host_config or {}).get(name, {}))
            host = FakeHost(name, settings, config)
            host.reachable = name not in unreachable
            graph_hosts[name] = host
            set_image(tmpdir, name, "{}-1".format(name))
        return FleetGraph(str(tmpdir), settings, graph_hosts, secrets)

    return make_fleet


def deploy(graph, hosts=None):
    deployment = Deployment(graph.base_dir, hosts=hosts, graph=graph)
    deployment.load()
    deployment.recover()
    deployment.deploy()
    return deployment


def states(deployment):
    return {
        name: hd.state.state if hd.state else None
        for name, hd in deployment.results.items()}


def agent_for(graph, hostname):
    host = graph.hosts[hostname]
    return Agent(host.state_directory, host.secrets_directory,
                 [host.identity])


def test_deploy_commits_all_hosts(make_fleet):
    graph = make_fleet()
    deployment = deploy(graph)
    assert {"host-a": COMMITTED, "host-b": COMMITTED} == states(deployment)
    assert [] == deployment.exceptions
    for hostname in ["host-a", "host-b"]:
        agent = agent_for(graph, hostname)
        assert 1 == agent.current_generation()
        assert 1 == agent.default_generation()
        assert "confirmed" == agent.watchdog_status()["state"]
    history = StateJournal(graph.base_dir).history("host-a")
    assert [COMMITTED] == [s.state for s in history]
    assert ["Planned", BUILDING, TRANSFERRING, ACTIVATING,
            AWAITING_CONFIRMATION, COMMITTED] == [
                x["state"] for x in history[0].history]


def test_activation_failure_rolls_back_to_previous(make_fleet, tmpdir):
    graph = make_fleet(hosts=["host-a"])
    deploy(graph)
    set_image(tmpdir, "host-a", "host-a-2", BROKEN)
    deployment = deploy(graph)
    host_deployment = deployment.results["host-a"]
    assert ROLLED_BACK == host_deployment.state.state
    assert 2 == host_deployment.state.generation
    assert 1 == host_deployment.state.previous_generation
    assert isinstance(host_deployment.error, ActivationFailure)
    assert "service failed to start" == host_deployment.error.details
    agent = agent_for(graph, "host-a")
    assert 1 == agent.current_generation()
    assert 1 == agent.default_generation()
    assert "reverted" == agent.watchdog_status()["state"]


def test_unhealthy_host_times_out_and_rolls_back(make_fleet, tmpdir):
    graph = make_fleet(hosts=["host-a"])
    deploy(graph)
    graph.hosts["host-a"].health_command = "echo degraded; false"
    graph.settings.confirm_timeout = 0.0
    set_image(tmpdir, "host-a", "host-a-2")
    deployment = deploy(graph)
    host_deployment = deployment.results["host-a"]
    assert ROLLED_BACK == host_deployment.state.state
    assert isinstance(host_deployment.error, ConfirmationTimeout)
    assert "degraded" == host_deployment.error.details
    agent = agent_for(graph, "host-a")
    assert 1 == agent.current_generation()
    assert "confirmation timeout" == agent.watchdog_status()["reason"]


def test_first_deployment_without_confirmation_leaves_no_generation(
        make_fleet):
    graph = make_fleet(
        hosts=["host-a"], host_config={"host-a": {"health_command": "false"}},
        confirm_timeout=0.0)
    deployment = deploy(graph)
    assert {"host-a": ROLLED_BACK} == states(deployment)
    assert agent_for(graph, "host-a").current_generation() is None


def test_unreachable_host_fails_others_commit(make_fleet):
    graph = make_fleet(unreachable=["host-b"])
    deployment = deploy(graph)
    assert {"host-a": COMMITTED, "host-b": FAILED} == states(deployment)
    error = deployment.results["host-b"].error
    assert isinstance(error, TransportFailure)
    assert "connect failed after 2 attempt(s): OSError: Connection refused" == (
        str(error))
    assert [error] == deployment.exceptions
    # Nothing was activated on the unreachable host.
    assert not os.path.exists(graph.hosts["host-b"].state_directory)


def test_build_failure_fails_host(make_fleet, tmpdir):
    graph = make_fleet(hosts=["host-a"])
    (tmpdir / "host-a.image").remove()
    deployment = deploy(graph)
    assert {"host-a": FAILED} == states(deployment)
    error = deployment.results["host-a"].error
    assert isinstance(error, BuildFailure)
    assert 1 == error.returncode


def test_builder_renders_host_data(make_fleet):
    graph = make_fleet(
        hosts=["host-a"],
        host_config={"host-a": {"data-role": "db"}},
        build_command="nix build .#{{ name }}-{{ data.role }}-{{ system }}")
    builder = Builder(graph)
    assert "nix build .#host-a-db-x86_64-linux" == builder.command(
        graph.hosts["host-a"])


def test_concurrent_deployment_of_host_is_refused(make_fleet):
    graph = make_fleet(hosts=["host-a"])
    StateJournal(graph.base_dir).begin("other-run", "host-a")
    deployment = Deployment(graph.base_dir, graph=graph)
    deployment.load()
    deployment.deploy()
    host_deployment = deployment.results["host-a"]
    assert host_deployment.state is None
    assert isinstance(host_deployment.error, ConcurrentDeploymentError)
    assert agent_for(graph, "host-a").current_generation() is None


def test_cancelled_deployment_does_not_activate(make_fleet):
    graph = make_fleet()
    deployment = Deployment(graph.base_dir, graph=graph)
    deployment.load()
    deployment.cancel()
    deployment.deploy()
    assert {"host-a": FAILED, "host-b": FAILED} == states(deployment)
    assert isinstance(
        deployment.results["host-a"].error, DeploymentCancelled)
    assert "cancelled" == deployment.results["host-a"].state.reason


def test_cancel_lets_activating_host_finish(make_fleet, monkeypatch):
    graph = make_fleet(jobs=1)
    deployment = Deployment(graph.base_dir, graph=graph)
    deployment.load()
    activate = HostDeployment.activate

    def cancel_during_activation(self, generation, document=None):
        deployment.cancel()
        return activate(self, generation, document)

    monkeypatch.setattr(HostDeployment, "activate", cancel_during_activation)
    deployment.deploy()
    # Hosts are deployed one at a time in name order.
    assert {"host-a": COMMITTED, "host-b": FAILED} == states(deployment)
    assert deployment.results["host-a"].error is None
    assert 1 == agent_for(graph, "host-a").default_generation()
    assert isinstance(
        deployment.results["host-b"].error, DeploymentCancelled)
    assert BUILDING not in [
        x["state"] for x in deployment.results["host-b"].state.history]
    assert "cancelled" == deployment.results["host-b"].state.reason


def test_ignored_hosts_are_skipped(make_fleet, output):
    graph = make_fleet(host_config={"host-b": {"ignore": "True"}})
    deployment = deploy(graph)
    assert {"host-a": COMMITTED} == states(deployment)
    assert "host-b: Skipping (host ignored)" in output.backend.output


def test_deploy_installs_secrets_for_owners(make_fleet, db_password,
                                            host_identities):
    graph = make_fleet(secrets=[db_password])
    manager = SecretManager(graph)
    try:
        assert GENERATED == manager.update(db_password).action
    finally:
        manager.close()
    deployment = deploy(graph)
    assert {"host-a": COMMITTED, "host-b": COMMITTED} == states(deployment)

    stored = SecretStore(graph.base_dir).get(db_password.key)
    plaintext = pyrage.decrypt(
        stored.parts["secret"].recipients["host-a"],
        [host_identities["host-a"]])
    path = os.path.join(
        graph.hosts["host-a"].secrets_directory, "db-password", "secret")
    with open(path, "rb") as f:
        assert plaintext == f.read()
    # host-b does not own the secret.
    assert [] == os.listdir(graph.hosts["host-b"].secrets_directory)


def test_owner_with_invalid_key_does_not_block_other_owners(
        make_fleet, host_identities, output):
    shared = SecretDefinition(
        "db-password", ["host-a", "host-b"],
        generator="head -c 16 /dev/urandom > $out/secret && "
        "echo SUCCESS > $out/marker")
    graph = make_fleet(secrets=[shared])
    graph.hosts["host-b"].key = "age1invalid"
    manager = SecretManager(graph)
    try:
        outcome = manager.update(shared)
    finally:
        manager.close()
    assert GENERATED == outcome.action
    assert ["host-b"] == [e.affected_hostname for e in outcome.errors]

    deployment = deploy(graph)
    assert {"host-a": COMMITTED, "host-b": FAILED} == states(deployment)
    error = deployment.results["host-b"].error
    assert isinstance(error, StoreInconsistency)
    assert "missing host-b" in str(error)
    assert ("host-a: db-password is not encrypted for host-b, run "
            "`fleet secrets regenerate`" in output.backend.output)

    stored = SecretStore(graph.base_dir).get(shared.key)
    path = os.path.join(
        graph.hosts["host-a"].secrets_directory, "db-password", "secret")
    with open(path, "rb") as f:
        assert pyrage.decrypt(
            stored.parts["secret"].recipients["host-a"],
            [host_identities["host-a"]]) == f.read()
    assert agent_for(graph, "host-b").current_generation() is None


def test_deploy_refuses_missing_secret(make_fleet, db_password):
    graph = make_fleet(hosts=["host-a"], secrets=[db_password])
    deployment = deploy(graph)
    assert {"host-a": FAILED} == states(deployment)
    error = deployment.results["host-a"].error
    assert isinstance(error, StoreInconsistency)
    assert agent_for(graph, "host-a").current_generation() is None


def test_recover_resumes_confirmation(make_fleet, tmpdir):
    graph = make_fleet(hosts=["host-a"])
    deploy(graph)
    # A run that crashed after switching host-a to generation 2.
    agent = agent_for(graph, "host-a")
    generation = agent.prepare_generation(
        set_image(tmpdir, "host-a", "host-a-2"))
    agent.arm_watchdog(generation, 60.0)
    agent.activate(generation, {})
    journal = StateJournal(graph.base_dir)
    state = journal.begin("crashed", "host-a")
    for target in [BUILDING, TRANSFERRING, ACTIVATING, AWAITING_CONFIRMATION]:
        state.transition(target)
    state.generation = generation
    journal.save(state)

    deployment = Deployment(graph.base_dir, graph=graph)
    deployment.load()
    deployment.recover()
    assert {} == journal.active()
    assert COMMITTED == journal.history("host-a")[-1].state
    assert 2 == agent.default_generation()


def test_recover_rolls_back_expired_candidates(make_fleet, tmpdir):
    graph = make_fleet(hosts=["host-a"])
    deploy(graph)
    agent = agent_for(graph, "host-a")
    generation = agent.prepare_generation(
        set_image(tmpdir, "host-a", "host-a-2"))
    agent.arm_watchdog(generation, 0.0)
    agent.activate(generation, {})
    journal = StateJournal(graph.base_dir)
    state = journal.begin("crashed", "host-a")
    for target in [BUILDING, TRANSFERRING, ACTIVATING]:
        state.transition(target)
    state.generation = generation
    journal.save(state)

    deployment = Deployment(graph.base_dir, graph=graph)
    deployment.load()
    deployment.recover()
    assert ROLLED_BACK == journal.history("host-a")[-1].state
    assert 1 == agent.current_generation()


def test_recover_fails_runs_interrupted_before_activation(make_fleet):
    graph = make_fleet(hosts=["host-a"])
    journal = StateJournal(graph.base_dir)
    state = journal.begin("crashed", "host-a")
    state.transition(BUILDING)
    journal.save(state)
    deployment = deploy(graph)
    assert FAILED == journal.history("host-a")[0].state
    assert "interrupted" == journal.history("host-a")[0].reason
    # The host is free for the new run again.
    assert {"host-a": COMMITTED} == states(deployment)


def test_recover_keeps_unreachable_hosts_blocked(make_fleet):
    graph = make_fleet(hosts=["host-a"], unreachable=["host-a"])
    journal = StateJournal(graph.base_dir)
    state = journal.begin("crashed", "host-a")
    for target in [BUILDING, TRANSFERRING, ACTIVATING]:
        state.transition(target)
    journal.save(state)
    deployment = Deployment(graph.base_dir, graph=graph)
    deployment.load()
    deployment.recover()
    assert ACTIVATING == journal.get("host-a").state


def test_rollback_switches_to_existing_generation(make_fleet, tmpdir):
    graph = make_fleet(hosts=["host-a"])
    deploy(graph)
    set_image(tmpdir, "host-a", "host-a-2")
    deploy(graph)
    agent = agent_for(graph, "host-a")
    assert 2 == agent.current_generation()

    deployment = Deployment(graph.base_dir, graph=graph)
    deployment.load()
    deployment.rollback("host-a", 1)
    assert {"host-a": COMMITTED} == states(deployment)
    assert 1 == agent.current_generation()
    assert 1 == agent.default_generation()


def test_rollback_to_unknown_generation_fails(make_fleet):
    graph = make_fleet(hosts=["host-a"])
    deploy(graph)
    deployment = Deployment(graph.base_dir, graph=graph)
    deployment.load()
    deployment.rollback("host-a", 7)
    assert {"host-a": FAILED} == states(deployment)
    assert "Host host-a has no generation 7" == str(deployment.exceptions[0])


def test_run_steps_reports_and_exits(make_fleet, output):
    graph = make_fleet(unreachable=["host-b"])
    deployment = Deployment(graph.base_dir, graph=graph)
    with pytest.raises(SystemExit):
        run_steps(deployment, ["load", "recover", "deploy"], "DEPLOYMENT")
    assert Ellipsis("""\
...
 === Summary ===...
    host-a: Committed generation 1
    host-b: Failed (connect failed after 2 attempt(s): OSError: ...)
Deployment took total=...s deploy=...s
...""") == output.backend.output
    assert "ERROR: host-b: connect failed" in output.backend.output
    assert "DEPLOYMENT FAILED (during deploy)" in output.backend.output
