# This module is sent to the hosts verbatim and must not cause non-stdlib
# imports at module level.
import argparse
import base64
import fcntl
import grp
import json
import os
import os.path
import pwd
import shutil
import subprocess
import sys
import tempfile
import time
import traceback

# Satisfy flake8 and support testing.
try:
    channel
except NameError:
    channel = None

agent = None

WATCHDOG_IDLE = "idle"
WATCHDOG_ARMED = "armed"
WATCHDOG_CONFIRMED = "confirmed"
WATCHDOG_REVERTED = "reverted"

# The output class should really live in _output. However, to support
# bootstrapping we define it here and then re-import in the _output module.


class Output(object):
    """Manage the output of various parts of fleet to achieve
    consistency wrt to formatting and display.
    """

    enable_debug = False

    def __init__(self, backend):
        self.backend = backend

    def line(self, message, debug=False, **format):
        if debug and not self.enable_debug:
            return
        self.backend.line(message, **format)

    def annotate(self, message, debug=False, **format):
        if debug and not self.enable_debug:
            return
        lines = message.split("\n")
        message = "\n".join(lines)
        self.line(message, **format)

    def tabular(self, key, value, separator=": ", debug=False, **kw):
        if debug and not self.enable_debug:
            return
        message = key.rjust(10) + separator + value
        self.annotate(message, **kw)

    def section(self, title, debug=False, **format):
        if debug and not self.enable_debug:
            return
        _format = {"bold": True}
        _format.update(format)
        self.backend.sep("=", title, **_format)

    def sep(self, sep, title, **format):
        return self.backend.sep(sep, title, **format)

    def step(self, context, message, debug=False, **format):
        if debug and not self.enable_debug:
            return
        _format = {"bold": True}
        _format.update(format)
        self.line("{}: {}".format(context, message), **_format)

    def error(self, message, exc_info=None, debug=False):
        if debug and not self.enable_debug:
            return
        self.step("ERROR", message, red=True)
        if exc_info:
            if self.enable_debug:
                out = traceback.format_exception(*exc_info)
            else:
                etype, value, _ = exc_info
                out = traceback.format_exception_only(etype, value)
            out = "".join(out)
            out = "      " + out.replace("\n", "\n      ") + "\n"
            self.backend.write(out, red=True)


class NullBackend(object):

    def line(self, message, **format):
        pass

    def sep(self, sep, title, **format):
        pass

    def write(self, content, **format):
        pass


class ChannelBackend(object):

    def __init__(self, channel):
        self.channel = channel

    def _send(self, output_cmd, *args, **kw):
        self.channel.send(("fleet-output", output_cmd, args, kw))

    def line(self, message, **format):
        self._send("line", message, **format)

    def sep(self, sep, title, **format):
        self._send("sep", sep, title, **format)

    def write(self, content, **format):
        self._send("write", content, **format)


output = Output(NullBackend())


class AgentError(Exception):

    def __init__(self, message):
        super(AgentError, self).__init__(message)
        self.message = message

    def report(self):
        output.error(self.message)


class CmdError(Exception):

    def __init__(self, cmd, returncode, stdout, stderr):
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def details(self):
        return "\n".join(
            x.decode("utf-8", errors="replace").strip()
            for x in (self.stdout, self.stderr)
            if x and x.strip())

    def report(self):
        output.error(self.cmd)
        output.tabular("Return code", str(self.returncode), red=True)
        output.line("STDOUT", red=True)
        output.annotate(self.stdout.decode("utf-8", errors="replace"))
        output.line("STDERR", red=True)
        output.annotate(self.stderr.decode("utf-8", errors="replace"))


def cmd(c, acceptable_returncodes=[0], env=None):
    process_env = os.environ.copy()
    process_env.update(env or {})
    process = subprocess.Popen(["LANG=C LC_ALL=C LANGUAGE=C {}".format(c)],
                               stdout=subprocess.PIPE,
                               stderr=subprocess.PIPE,
                               stdin=subprocess.PIPE,
                               env=process_env,
                               shell=True)
    stdout, stderr = process.communicate()
    # We do not have enough knowledge here to decode so we keep
    # stdout and stderr as byte strings for now.
    if process.returncode not in acceptable_returncodes:
        raise CmdError(c, process.returncode, stdout, stderr)
    return stdout, stderr


def write_atomic(path, data, mode=0o600, uid=-1, gid=-1):
    fd, tmp = tempfile.mkstemp(dir=os.path.dirname(path), prefix=".fleet-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        if uid != -1 or gid != -1:
            os.chown(tmp, uid, gid)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def write_json(path, data):
    write_atomic(
        path,
        json.dumps(data, indent=2, sort_keys=True).encode("utf-8"),
        0o644)


def read_json(path, default=None):
    if not os.path.exists(path):
        return default
    with open(path, "r") as f:
        return json.load(f)


def read_bytes(path):
    if not os.path.exists(path):
        return None
    with open(path, "rb") as f:
        return f.read()


def replace_symlink(target, path):
    tmp = path + ".new"
    if os.path.lexists(tmp):
        os.unlink(tmp)
    os.symlink(target, tmp)
    os.replace(tmp, path)


def load_identities(paths):
    import pyrage

    identities = []
    for path in paths:
        path = os.path.expanduser(path)
        if not os.path.exists(path):
            continue
        with open(path, "rb") as f:
            data = f.read()
        if b"AGE-SECRET-KEY-" in data:
            for line in data.decode("ascii").splitlines():
                line = line.strip()
                if line.startswith("AGE-SECRET-KEY-"):
                    identities.append(pyrage.x25519.Identity.from_str(line))
        else:
            identities.append(pyrage.ssh.Identity.from_buffer(data))
    return identities


def parse_recipient(key):
    import pyrage

    key = key.strip()
    if key.startswith("age1"):
        return pyrage.x25519.Recipient.from_str(key)
    if key.startswith("ssh-"):
        return pyrage.ssh.Recipient.from_str(key)
    raise ValueError("Unsupported recipient key: {}".format(key[:24]))


class Watchdog(object):
    """Arm/confirm/expire state of a provisional generation.

    The deadline is stored as an absolute timestamp so that a check after a
    restart or a reboot reaches the same decision as one before.

    """

    def __init__(self, path, clock=time.time):
        self.path = path
        self.clock = clock

    def load(self):
        return read_json(self.path, {"state": WATCHDOG_IDLE})

    def arm(self, previous, candidate, window):
        now = self.clock()
        data = {
            "state": WATCHDOG_ARMED,
            "previous": previous,
            "candidate": candidate,
            "armed_at": now,
            "deadline": now + window}
        write_json(self.path, data)
        return data

    def expired(self, data=None):
        if data is None:
            data = self.load()
        return (data["state"] == WATCHDOG_ARMED
                and self.clock() >= data["deadline"])

    def confirm(self):
        data = self.load()
        if data["state"] != WATCHDOG_ARMED:
            raise AgentError("Cannot confirm: watchdog is {}.".format(
                data["state"]))
        if self.expired(data):
            raise AgentError(
                "Cannot confirm generation {}: the watchdog window has "
                "expired.".format(data["candidate"]))
        data["state"] = WATCHDOG_CONFIRMED
        data["confirmed_at"] = self.clock()
        write_json(self.path, data)
        return data

    def revert(self, reason, **extra):
        data = self.load()
        data.update(extra)
        data["state"] = WATCHDOG_REVERTED
        data["reverted_at"] = self.clock()
        data["reason"] = reason
        write_json(self.path, data)
        return data

    def status(self):
        data = self.load()
        data["expired"] = self.expired(data)
        return data


class Agent(object):
    """Host side of a deployment.

    Layout below the state directory:

        generations/<n>               symlink to the image of generation n
        generations/<n>.secrets.json  install document of generation n
        current                       the running generation
        default                       the committed boot target
        oneshot                       provisional boot target, consumed
                                      by the next boot
        watchdog.json                 watchdog state
        agent.json                    settings for `fleet-agent`

    """

    def __init__(self, state_directory, secrets_directory, identities=(),
                 watchdog_timer=None, clock=time.time):
        self.state_directory = state_directory
        self.secrets_directory = secrets_directory
        self.identity_paths = list(identities)
        self.watchdog_timer = watchdog_timer
        self.generations_directory = os.path.join(
            state_directory, "generations")
        self.images_directory = os.path.join(state_directory, "images")
        for directory in [self.generations_directory, self.images_directory]:
            os.makedirs(directory, exist_ok=True)
        self.watchdog = Watchdog(
            os.path.join(state_directory, "watchdog.json"), clock)
        self._identities = None
        self._lockfile = None

    @classmethod
    def from_state_directory(cls, state_directory):
        settings = read_json(os.path.join(state_directory, "agent.json"))
        if settings is None:
            raise AgentError(
                "No agent settings found in {}.".format(state_directory))
        return cls(state_directory, settings["secrets_directory"],
                   settings["identities"], settings["watchdog_timer"])

    def save_settings(self):
        write_json(
            os.path.join(self.state_directory, "agent.json"), {
                "secrets_directory": self.secrets_directory,
                "identities": self.identity_paths,
                "watchdog_timer": self.watchdog_timer})

    def ping(self):
        return "pong"

    def lock(self):
        if self._lockfile is not None:
            return "OK"
        lockfile = open(os.path.join(self.state_directory, "agent.lock"), "a+")
        try:
            fcntl.lockf(lockfile, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            lockfile.close()
            raise AgentError(
                "Another fleet deployment holds the lock on this host.")
        self._lockfile = lockfile
        return "OK"

    def unlock(self):
        if self._lockfile is not None:
            self._lockfile.close()
            self._lockfile = None

    # Generations

    def generation_path(self, generation):
        return os.path.join(self.generations_directory, str(generation))

    def _document_path(self, generation):
        return self.generation_path(generation) + ".secrets.json"

    def _link(self, name):
        return os.path.join(self.state_directory, name)

    def _set_link(self, name, generation):
        replace_symlink(
            os.path.join("generations", str(generation)), self._link(name))

    def _clear_link(self, name):
        if os.path.lexists(self._link(name)):
            os.unlink(self._link(name))

    def _generation_of(self, name):
        path = self._link(name)
        if not os.path.islink(path):
            return None
        return int(os.path.basename(os.readlink(path)))

    def _generation_ids(self):
        return sorted(
            int(x) for x in os.listdir(self.generations_directory)
            if x.isdigit())

    def current_generation(self):
        return self._generation_of("current")

    def default_generation(self):
        return self._generation_of("default")

    def boot_generation(self):
        oneshot = self._generation_of("oneshot")
        if oneshot is not None:
            return oneshot
        return self.default_generation()

    def list_generations(self):
        current = self.current_generation()
        default = self.default_generation()
        result = []
        for generation in self._generation_ids():
            path = self.generation_path(generation)
            result.append({
                "id": generation,
                "image": os.readlink(path),
                "created_at": os.lstat(path).st_mtime,
                "current": generation == current,
                "default": generation == default})
        return result

    def has_image(self, name):
        return os.path.isdir(os.path.join(self.images_directory, name))

    def prepare_generation(self, image):
        if not os.path.isdir(image):
            raise AgentError("Image not found: {}".format(image))
        ids = self._generation_ids()
        generation = ids[-1] + 1 if ids else 1
        os.symlink(image, self.generation_path(generation))
        output.line(
            "Prepared generation {} from {}".format(generation, image),
            debug=True)
        return generation

    # Watchdog protocol

    def arm_watchdog(self, candidate, window):
        if candidate not in self._generation_ids():
            raise AgentError("Unknown generation: {}".format(candidate))
        state = self.watchdog.load()
        if state["state"] == WATCHDOG_ARMED:
            if not self.watchdog.expired(state):
                raise AgentError(
                    "Generation {} is still awaiting confirmation.".format(
                        state["candidate"]))
            # Nobody ran the check yet, the unconfirmed candidate must not
            # become the fallback.
            self._revert(state, "confirmation window elapsed")
        previous = self.current_generation()
        data = self.watchdog.arm(previous, candidate, window)
        if self.watchdog_timer == "systemd":
            self._schedule_check(candidate, window)
        return data

    def activate(self, generation, document=None):
        data = self.watchdog.load()
        if (data["state"] != WATCHDOG_ARMED
                or data["candidate"] != generation):
            raise AgentError(
                "Generation {} has not been armed.".format(generation))
        if document is None:
            document = read_json(self._document_path(generation), {})
        else:
            write_json(self._document_path(generation), document)
        self._set_link("oneshot", generation)
        self._set_link("current", generation)
        try:
            self.install_secrets(document)
            log = self._run_activation(generation)
        except CmdError as e:
            return self._failed_activation(data, e.details)
        except Exception as e:
            return self._failed_activation(
                data, "{}: {}".format(e.__class__.__name__, e))
        return {
            "status": "activated",
            "generation": generation,
            "previous": data["previous"],
            "output": log}

    def _failed_activation(self, data, details):
        self._revert(data, "activation failed")
        return {
            "status": "failed",
            "generation": data["candidate"],
            "previous": data["previous"],
            "output": details}

    def _run_activation(self, generation, required=True):
        script = os.path.join(self.generation_path(generation), "bin",
                              "activate")
        if not os.path.exists(script):
            if not required:
                return ""
            raise AgentError("Activation script missing: {}".format(script))
        stdout, _ = cmd(script, env={"FLEET_GENERATION": str(generation)})
        return stdout.decode("utf-8", errors="replace")

    def _revert(self, data, reason):
        previous = data["previous"]
        extra = {}
        self._clear_link("oneshot")
        if previous is None:
            self._clear_link("current")
        else:
            self._set_link("current", previous)
            self._set_link("default", previous)
            try:
                self.install_secrets(
                    read_json(self._document_path(previous), {}))
                self._run_activation(previous, required=False)
            except CmdError as e:
                e.report()
                extra["revert_error"] = e.details
        self._cancel_check(data["candidate"])
        output.line("Reverted generation {} to {}: {}".format(
            data["candidate"], previous, reason))
        return self.watchdog.revert(reason, **extra)

    def health_check(self, command):
        try:
            stdout, stderr = cmd(command)
        except CmdError as e:
            return {"healthy": False, "output": e.details}
        return {
            "healthy": True,
            "output": (stdout + stderr).decode("utf-8", "replace").strip()}

    def confirm(self):
        data = self.watchdog.confirm()
        self._set_link("default", data["candidate"])
        self._clear_link("oneshot")
        self._cancel_check(data["candidate"])
        return data

    def rollback(self, reason="rollback requested"):
        data = self.watchdog.load()
        if data["state"] != WATCHDOG_ARMED:
            raise AgentError("Nothing to roll back: watchdog is {}.".format(
                data["state"]))
        return self._revert(data, reason)

    def check_watchdog(self, boot=False):
        if boot:
            booted = self.boot_generation()
            self._clear_link("oneshot")
            if booted is None:
                self._clear_link("current")
            else:
                self._set_link("current", booted)
        data = self.watchdog.load()
        if data["state"] != WATCHDOG_ARMED:
            return self.watchdog.status()
        if boot and self.current_generation() != data["candidate"]:
            return self._revert(data, "candidate did not come up after boot")
        if self.watchdog.expired(data):
            return self._revert(data, "confirmation window elapsed")
        if boot and self.watchdog_timer == "systemd":
            # Transient timers do not survive a reboot.
            remaining = int(data["deadline"] - self.watchdog.clock()) + 1
            self._schedule_check(data["candidate"], remaining)
        return self.watchdog.status()

    def watchdog_status(self):
        status = self.watchdog.status()
        status["current"] = self.current_generation()
        status["default"] = self.default_generation()
        return status

    def _schedule_check(self, candidate, window):
        script = os.path.join(self.state_directory, "fleet-agent.py")
        cmd("systemd-run --unit=fleet-watchdog-{candidate} "
            "--on-active={window}s {python} {script} watchdog-check "
            "--state-directory {state}".format(
                candidate=candidate,
                window=int(window),
                python=sys.executable,
                script=script,
                state=self.state_directory))

    def _cancel_check(self, candidate):
        if self.watchdog_timer != "systemd":
            return
        cmd("systemctl stop fleet-watchdog-{}.timer".format(candidate),
            acceptable_returncodes=[0, 5])

    # Secrets

    @property
    def identities(self):
        if self._identities is None:
            self._identities = load_identities(self.identity_paths)
        if not self._identities:
            raise AgentError("No usable identity found in: {}".format(
                ", ".join(self.identity_paths)))
        return self._identities

    def decrypt(self, ciphertext):
        import pyrage

        try:
            return pyrage.decrypt(ciphertext, self.identities)
        except pyrage.DecryptError as e:
            raise AgentError("Could not decrypt secret: {}".format(e))

    def reencrypt(self, ciphertext, recipients):
        """Encrypt a part we hold for further recipients.

        `recipients` is a list of key lists, one ciphertext is returned per
        list. The plaintext does not leave this host.

        """
        import pyrage

        plaintext = self.decrypt(base64.b64decode(ciphertext))
        result = []
        for keys in recipients:
            encrypted = pyrage.encrypt(
                plaintext, [parse_recipient(key) for key in keys])
            result.append(base64.b64encode(encrypted).decode("ascii"))
        return result

    def _ownership(self, owner, group):
        if os.geteuid() != 0:
            return -1, -1
        user = pwd.getpwnam(owner)
        gid = grp.getgrnam(group).gr_gid if group else user.pw_gid
        return user.pw_uid, gid

    def install_secrets(self, document):
        os.makedirs(self.secrets_directory, mode=0o751, exist_ok=True)
        for name, secret in sorted(document.items()):
            self._install_secret(name, secret)
        for name in os.listdir(self.secrets_directory):
            path = os.path.join(self.secrets_directory, name)
            if name in document or not os.path.isdir(path):
                continue
            shutil.rmtree(path)
            output.line("Removed secret {}".format(name))

    def _install_secret(self, name, secret):
        directory = os.path.join(self.secrets_directory, name)
        os.makedirs(directory, mode=0o751, exist_ok=True)
        mode = int(secret.get("mode", "0440"), 8)
        uid, gid = self._ownership(
            secret.get("owner", "root"), secret.get("group"))
        wanted = set()
        changed = False
        for part_name, part in sorted(secret["parts"].items()):
            raw = base64.b64decode(part["raw"])
            data = self.decrypt(raw) if part["encrypted"] else raw
            for path in (part["path"], part["stablePath"]):
                if os.path.dirname(path) != directory:
                    raise AgentError(
                        "Refusing to install {} outside of {}".format(
                            path, directory))
                wanted.add(os.path.basename(path))
                if read_bytes(path) != data:
                    changed = True
                write_atomic(path, data, mode, uid, gid)
        for entry in os.listdir(directory):
            if entry not in wanted:
                os.unlink(os.path.join(directory, entry))
                changed = True
        if changed:
            output.line("Installed secret {}".format(name), debug=True)
            if secret.get("reload"):
                cmd(secret["reload"])


def setup_output(debug):
    output.backend = ChannelBackend(channel)
    output.enable_debug = debug


def setup_agent(state_directory, secrets_directory, identities,
                watchdog_timer=None, agent_source=None):
    global agent
    state_directory = os.path.expanduser(state_directory)
    agent = Agent(state_directory, secrets_directory, identities,
                  watchdog_timer)
    agent.save_settings()
    if agent_source:
        write_atomic(
            os.path.join(state_directory, "fleet-agent.py"),
            agent_source.encode("utf-8"), 0o755)
    return state_directory


def update_environment(env):
    os.environ.update(env)


def whoami():
    return pwd.getpwuid(os.getuid()).pw_name


MODULE_TASKS = (
    "setup_output", "setup_agent", "update_environment", "whoami")


def dispatch(task, args, kw):
    if task in MODULE_TASKS:
        return globals()[task](*args, **kw)
    if agent is None:
        raise AgentError("The agent has not been set up.")
    if task.startswith("_") or not callable(getattr(agent, task, None)):
        raise AgentError("Unknown task: {}".format(task))
    return getattr(agent, task)(*args, **kw)


def agent_main(args=None):
    parser = argparse.ArgumentParser(description="fleet host agent")
    parser.set_defaults(command=None)
    subparsers = parser.add_subparsers()
    for name, help in [
            ("watchdog-check", "Revert an unconfirmed generation if due."),
            ("status", "Show the watchdog state.")]:
        p = subparsers.add_parser(name, help=help)
        p.set_defaults(command=name)
        p.add_argument("--state-directory", default="/var/lib/fleet")
        if name == "watchdog-check":
            p.add_argument(
                "--boot",
                action="store_true",
                help="Run as part of booting the machine.")
    args = parser.parse_args(args)
    if args.command is None:
        parser.print_usage()
        return 1
    instance = Agent.from_state_directory(args.state_directory)
    if args.command == "watchdog-check":
        result = instance.check_watchdog(boot=args.boot)
    else:
        result = instance.watchdog_status()
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(agent_main())


if __name__ == "__channelexec__":
    output = Output(ChannelBackend(channel))
    while not channel.isclosed():
        task, args, kw = channel.receive()
        try:
            result = dispatch(task, args, kw)
            channel.send(("fleet-result", result))
        except Exception as e:
            # Duck-typed: the fleet package is not available on the host.
            if hasattr(e, "report"):
                e.report()
                channel.send(("fleet-error", None))
            else:
                tb = traceback.format_exc()
                channel.send(("fleet-unknown-error", tb))
