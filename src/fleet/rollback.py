import datetime

from fleet import TransportFailure
from fleet._output import TerminalBackend, output

from .deploy import Deployment, run_steps
from .utils import locked, notify, self_id


class Rollback(Deployment):
    """Switch one host to a generation it already has, or list them."""

    def __init__(self, hostname, generation=None, base_dir="."):
        super(Rollback, self).__init__(base_dir, jobs=1, hosts=[hostname])
        self.hostname = hostname
        self.generation = generation

    def list(self):
        host = self.hosts[0]
        output.section("Generations of {}".format(host.name))
        try:
            host.connect()
            host.start()
            generations = host.rpc.list_generations()
            status = host.rpc.watchdog_status()
        except Exception as e:
            raise TransportFailure.from_context(host.name, "connect", 1, e)
        finally:
            host.disconnect()
        for generation in generations:
            flags = [
                name for name in ("current", "default") if generation[name]]
            created = datetime.datetime.fromtimestamp(
                generation["created_at"]).strftime("%Y-%m-%d %H:%M:%S")
            message = "{} {}".format(created, generation["image"])
            if flags:
                message += " ({})".format(", ".join(flags))
            output.tabular(
                str(generation["id"]), message, green="current" in flags)
        output.tabular("Watchdog", status["state"])
        if status["state"] == "armed":
            output.tabular(
                "Candidate",
                "{} (expired: {})".format(
                    status["candidate"], status["expired"]),
                red=True)

    def switch(self):
        self.rollback(self.hostname, self.generation)


def main(hostname, generation=None, **kw):
    output.backend = TerminalBackend()
    output.line(self_id())
    with locked(".fleet-lock"):
        rollback = Rollback(hostname, generation)
        if generation is None:
            steps, action = ["load", "list"], "LISTING"
        else:
            steps, action = ["load", "recover", "switch"], "ROLLBACK"
        try:
            run_steps(rollback, steps, action)
        finally:
            rollback.disconnect()
    output.section("{} FINISHED".format(action), green=True)
    if generation is not None:
        notify("ROLLBACK SUCCEEDED", "{} is at generation {}".format(
            hostname, generation))
