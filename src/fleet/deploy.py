import asyncio
import random
import signal
import sys
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List

import jinja2

from fleet import (
    ActivationFailure,
    BuildFailure,
    ConfigurationError,
    ConfirmationTimeout,
    ConcurrentDeploymentError,
    DeploymentCancelled,
    TemplatingError,
    TransportFailure,
    prepare_error,
)
from fleet._output import TerminalBackend, output
from fleet.remote_core import WATCHDOG_ARMED, WATCHDOG_CONFIRMED

from .environment import FleetGraph
from .secrets import install_document
from .secrets.store import SecretStore
from .state import (
    ACTIVATED,
    ACTIVATING,
    AWAITING_CONFIRMATION,
    BUILDING,
    COMMITTED,
    FAILED,
    ROLLED_BACK,
    TRANSFERRING,
    StateJournal,
    new_run_id,
)
from .utils import CmdExecutionError, Timer, cmd, locked, notify, self_id

UPLOAD_ATTEMPTS = 3


def backoff(tries, cancelled):
    # Waking up early on cancel, the caller checks the event.
    cancelled.wait(random.randint(1, 2 ** (tries + 1)))


class Builder(object):
    """Runs the configured `build_command` for a host.

    The command is a Jinja2 template with `host`, `name`, `system`, `data`
    and `project` available. The last line it prints is the image path.

    """

    def __init__(self, graph):
        self.graph = graph
        self.template = None
        if graph.settings.build_command:
            try:
                self.template = jinja2.Environment(
                    undefined=jinja2.StrictUndefined).from_string(
                        graph.settings.build_command)
            except jinja2.TemplateError as e:
                raise TemplatingError.from_context(e, "build_command")

    def command(self, host):
        if self.template is None:
            raise ConfigurationError.from_context(
                "No `build_command` configured.", "fleet")
        try:
            return self.template.render(
                host=host,
                name=host.name,
                system=host.system,
                data=host.data,
                project=self.graph.base_dir)
        except jinja2.TemplateError as e:
            raise TemplatingError.from_context(e, "build_command")

    def build(self, host) -> str:
        command = self.command(host)
        try:
            stdout, stderr = cmd(command, cwd=self.graph.base_dir)
        except CmdExecutionError as e:
            raise BuildFailure.from_context(
                host.name, command, e.returncode,
                (e.stdout + e.stderr).strip())
        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise BuildFailure.from_context(
                host.name, command, 0, "The build did not print an image path.")
        return lines[-1]


class HostDeployment(object):
    """One host's way through build, transfer, activation and
    confirmation.

    `generation` switches to an existing generation of the host instead of
    building a new one.

    """

    def __init__(self, deployment, host, generation=None):
        self.deployment = deployment
        self.host = host
        self.settings = deployment.graph.settings
        self.journal = deployment.journal
        self.target_generation = generation
        self.state = None
        self.error = None

    def transition(self, state, reason=None):
        self.state.transition(state, reason)
        self.journal.save(self.state)
        message = state if reason is None else "{} ({})".format(state, reason)
        output.step(self.host.name, message, red=state in (ROLLED_BACK, FAILED))

    def check_cancelled(self):
        if self.deployment.cancelled.is_set():
            raise DeploymentCancelled.from_context(self.host.name)

    def run(self):
        try:
            self.state = self.journal.begin(
                self.deployment.run_id, self.host.name)
        except ConcurrentDeploymentError as e:
            self.error = e
            return None
        if self.target_generation is None:
            self._guarded(self._deploy)
        else:
            self._guarded(self._switch)
        return self.state

    def resume(self, state):
        """Continue waiting for confirmation of a recovered deployment."""
        self.state = state
        if state.state == ACTIVATING:
            self.transition(AWAITING_CONFIRMATION, "recovered")
        self._guarded(lambda: self.await_confirmation(state.generation))
        return self.state

    def _guarded(self, func):
        try:
            func()
        except Exception as e:
            self.error = e
            if self.state.terminal:
                return
            if self.state.state in ACTIVATED:
                if not isinstance(e, (ActivationFailure, ConfirmationTimeout)):
                    self.rollback_host(prepare_error(e))
                self.transition(ROLLED_BACK, str(e))
            else:
                self.transition(FAILED, str(e))

    def _deploy(self):
        self.check_cancelled()
        self.transition(BUILDING)
        image = self.deployment.builder.build(self.host)
        self.state.image = image

        self.check_cancelled()
        self.transition(TRANSFERRING)
        self.connect()
        self.state.previous_generation = self.host.rpc.current_generation()
        target = self.upload(image)
        document = install_document(
            self.deployment.graph, self.deployment.store, self.host.name)
        generation = self.host.rpc.prepare_generation(target)
        self.state.generation = generation
        self.journal.save(self.state)

        self.check_cancelled()
        self.activate(generation, document)
        self.await_confirmation(generation)

    def _switch(self):
        self.connect()
        self.state.previous_generation = self.host.rpc.current_generation()
        known = [g["id"] for g in self.host.rpc.list_generations()]
        if self.target_generation not in known:
            raise ConfigurationError.from_context(
                "Host {} has no generation {}".format(
                    self.host.name, self.target_generation))
        self.state.generation = self.target_generation
        self.journal.save(self.state)
        # The install document stored with the generation is used.
        self.activate(self.target_generation)
        self.await_confirmation(self.target_generation)

    def connect(self):
        attempts = self.settings.connect_attempts
        tries = 0
        while True:
            tries += 1
            self.check_cancelled()
            try:
                self.host.connect()
                self.host.start()
                return
            except Exception as e:
                self.host.disconnect()
                output.step(
                    self.host.name,
                    "Connecting failed ({}/{}): {}".format(
                        tries, attempts, prepare_error(e)),
                    red=True)
                if tries >= attempts:
                    raise TransportFailure.from_context(
                        self.host.name, "connect", tries, e)
            backoff(tries, self.deployment.cancelled)

    def upload(self, image):
        tries = 0
        while True:
            tries += 1
            self.check_cancelled()
            try:
                return self.host.upload(image)
            except Exception as e:
                if tries >= UPLOAD_ATTEMPTS:
                    raise TransportFailure.from_context(
                        self.host.name, "upload", tries, e)
                output.step(
                    self.host.name,
                    "Upload failed ({}/{}): {}".format(
                        tries, UPLOAD_ATTEMPTS, prepare_error(e)),
                    red=True)
            backoff(tries, self.deployment.cancelled)

    def activate(self, generation, document=None):
        self.host.rpc.arm_watchdog(generation, self.settings.watchdog_window)
        self.transition(ACTIVATING)
        result = self.host.rpc.activate(generation, document)
        if result["status"] != "activated":
            raise ActivationFailure.from_context(
                self.host.name, generation, result["output"])
        if result["output"]:
            output.annotate(result["output"], debug=True)
        self.transition(AWAITING_CONFIRMATION)

    def await_confirmation(self, generation):
        timeout = self.settings.confirm_timeout
        deadline = time.time() + timeout
        while True:
            result = self.host.rpc.health_check(self.host.health_command)
            if result["healthy"]:
                break
            if time.time() >= deadline:
                self.rollback_host("confirmation timeout")
                raise ConfirmationTimeout.from_context(
                    self.host.name, generation, timeout, result["output"])
            output.step(self.host.name, "Waiting for health signal ...",
                        debug=True)
            time.sleep(
                max(0, min(self.settings.poll_interval,
                           deadline - time.time())))
        self.host.rpc.confirm()
        self.transition(COMMITTED)

    def rollback_host(self, reason):
        """Revert on the host now instead of waiting for the watchdog."""
        try:
            self.host.rpc.rollback(reason)
        except Exception as e:
            output.step(
                self.host.name,
                "Could not revert, the watchdog will: {}".format(
                    prepare_error(e)),
                red=True)


class Deployment(object):
    """Deploy the fleet, one HostDeployment per host."""

    def __init__(self, base_dir=".", jobs=None, hosts=None, graph=None):
        self.base_dir = base_dir
        self.jobs = jobs
        self.host_names = hosts
        self.graph = graph
        self.run_id = new_run_id()
        self.cancelled = threading.Event()
        self.timer = Timer("deployment")
        self.results: Dict[str, HostDeployment] = {}
        self.exceptions: List[Exception] = []

    def load(self):
        output.section("Preparing")
        if self.graph is None:
            output.step("main", "Loading fleet configuration ...")
            self.graph = FleetGraph.load(self.base_dir)
        if self.graph.exceptions:
            self.exceptions.extend(self.graph.exceptions)
            return
        self.jobs = self.jobs or self.graph.settings.jobs
        output.step("main", "Number of jobs: {}".format(self.jobs), debug=True)
        output.step("main", "Run id: {}".format(self.run_id), debug=True)
        self.store = SecretStore(self.graph.base_dir)
        self.journal = StateJournal(self.graph.base_dir)
        self.builder = Builder(self.graph)
        self.hosts = self.graph.deployment_hosts(self.host_names)

    def cancel(self):
        if self.cancelled.is_set():
            return
        output.step(
            "main",
            "Cancelling: hosts that are activating will finish ...",
            red=True)
        self.cancelled.set()

    def handle_interrupt(self, signum, frame):
        # A second interrupt aborts immediately.
        signal.signal(signal.SIGINT, signal.default_int_handler)
        self.cancel()

    def recover(self):
        """Resolve deployments that a crashed run left unfinished."""
        active = self.journal.active()
        if not active:
            return
        output.section("Recovering interrupted deployments")
        for hostname, state in sorted(active.items()):
            if state.state not in ACTIVATED:
                state.transition(FAILED, "interrupted")
                self.journal.save(state)
                output.step(hostname, "Interrupted during {}".format(
                    state.history[-2]["state"]), red=True)
                continue
            host = self.graph.hosts.get(hostname)
            if host is None:
                state.transition(ROLLED_BACK, "host no longer configured")
                self.journal.save(state)
                continue
            try:
                self._reconcile(host, state)
            finally:
                host.disconnect()

    def _reconcile(self, host, state):
        try:
            host.connect()
            host.start()
            status = host.rpc.watchdog_status()
        except Exception as e:
            output.step(
                host.name,
                "Unreachable, deployment {} stays {}: {}".format(
                    state.run_id, state.state, prepare_error(e)),
                red=True)
            return
        host_deployment = HostDeployment(self, host)
        host_deployment.state = state
        ours = status.get("candidate") == state.generation
        if (ours and status["state"] == WATCHDOG_ARMED
                and not status["expired"]
                and status["current"] == state.generation):
            output.step(host.name, "Resuming confirmation of generation "
                        "{}".format(state.generation))
            host_deployment.resume(state)
            if host_deployment.error is not None:
                self.exceptions.append(host_deployment.error)
        elif ours and status["state"] == WATCHDOG_CONFIRMED:
            if state.state == ACTIVATING:
                host_deployment.transition(AWAITING_CONFIRMATION, "recovered")
            host_deployment.transition(COMMITTED, "recovered")
        else:
            if status["state"] == WATCHDOG_ARMED:
                host_deployment.rollback_host("interrupted deployment")
            host_deployment.transition(
                ROLLED_BACK, "interrupted, reverted by the watchdog")

    def deploy_host(self, host, generation=None) -> HostDeployment:
        host_deployment = HostDeployment(self, host, generation)
        self.results[host.name] = host_deployment
        try:
            host_deployment.run()
        finally:
            host.disconnect()
        return host_deployment

    async def _deploy_hosts(self, hosts):
        loop = asyncio.get_running_loop()
        with ThreadPoolExecutor(self.jobs) as pool:
            await asyncio.gather(*[
                loop.run_in_executor(pool, self.deploy_host, host)
                for host in hosts])

    def deploy(self):
        output.section("Deploying")
        hosts = []
        for host in self.hosts:
            if host.ignore:
                output.step(host.name, "Skipping (host ignored)", red=True)
                continue
            hosts.append(host)
        with self.timer.step("deploy"):
            asyncio.run(self._deploy_hosts(hosts))
        self.summarize()
        self.exceptions.extend(
            hd.error for _, hd in sorted(self.results.items())
            if hd.error is not None)

    def rollback(self, hostname, generation):
        host = self.graph.deployment_hosts([hostname])[0]
        output.section("Switching {} to generation {}".format(
            hostname, generation))
        host_deployment = self.deploy_host(host, generation)
        self.summarize()
        if host_deployment.error is not None:
            self.exceptions.append(host_deployment.error)

    def summarize(self):
        output.section("Summary")
        for name, host_deployment in sorted(self.results.items()):
            state = host_deployment.state
            if state is None:
                output.tabular(
                    name, "not started: {}".format(host_deployment.error),
                    red=True)
                continue
            message = state.state
            if state.generation is not None:
                message += " generation {}".format(state.generation)
            if state.reason:
                message += " ({})".format(state.reason)
            if state.state == COMMITTED:
                output.tabular(name, message, green=True)
            else:
                output.tabular(name, message, red=True)
        output.annotate(
            "Deployment took {}".format(self.timer.humanize("total", "deploy")))

    def disconnect(self):
        output.step("main", "Disconnecting from hosts ...", debug=True)
        if self.graph is None:
            return
        for host in list(self.graph.hosts.values()):
            host.disconnect()


def run_steps(deployment, steps, action):
    for step in steps:
        try:
            getattr(deployment, step)()
        except Exception as e:
            deployment.exceptions.append(e)

        if not deployment.exceptions:
            continue

        deployment.exceptions.sort(
            key=lambda x: getattr(x, "sort_key", (-99,)))

        exception = ""
        for exception in deployment.exceptions:
            output.line("")
            if hasattr(exception, "report"):
                exception.report()
            else:
                output.error("Unexpected exception")
                tb = traceback.TracebackException.from_exception(exception)
                for line in tb.format():
                    output.line("\t" + line.strip(), red=True)

        summary = "{} FAILED (during {})".format(action, step)
        output.section(summary, red=True)
        notify(summary, str(exception))
        sys.exit(1)


def main(jobs=None, hosts=None, **kw):
    output.backend = TerminalBackend()
    output.line(self_id())
    with locked(".fleet-lock"):
        deployment = Deployment(".", jobs, hosts)
        previous = signal.signal(signal.SIGINT, deployment.handle_interrupt)
        try:
            run_steps(deployment, ["load", "recover", "deploy"], "DEPLOYMENT")
        finally:
            signal.signal(signal.SIGINT, previous)
            deployment.disconnect()
    output.section("DEPLOYMENT FINISHED", green=True)
    notify("DEPLOYMENT SUCCEEDED", ", ".join(sorted(deployment.results)))
