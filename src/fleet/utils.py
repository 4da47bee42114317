import contextlib
import fcntl
import os
import subprocess
import sys
import time

import importlib_metadata

from fleet import DeploymentError, FileLockedError, output


def self_id():
    template = "fleet/{version} ({python}, {system})"
    system = os.uname()
    system = " ".join([system[0], system[2], system[4]])
    version = importlib_metadata.version("fleet")
    python = sys.implementation.name
    python += " {0}.{1}.{2}-{3}{4}".format(*sys.version_info)
    return template.format(**locals())


@contextlib.contextmanager
def locked(filename):
    # XXX can we make this not leave files around?
    with open(filename, "a+") as lockfile:
        try:
            fcntl.lockf(lockfile, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except IOError:
            raise FileLockedError.from_context(filename)
        # publishing the process id comes handy for debugging
        lockfile.seek(0)
        lockfile.truncate()
        print(os.getpid(), file=lockfile)
        lockfile.flush()
        yield
        lockfile.seek(0)
        lockfile.truncate()


def notify_send(title, description):
    subprocess.call(["notify-send", title, description])


def notify_macosx(title, description):
    subprocess.call([
        "osascript",
        "-e",
        'display notification "{}" with title "{}"'.format(description, title),
    ])


def notify_none(title, description):
    pass


try:
    subprocess.check_output(["which", "osascript"], stderr=subprocess.STDOUT)
    notify = notify_macosx
except (subprocess.CalledProcessError, OSError):
    try:
        subprocess.check_output(["which", "notify-send"],
                                stderr=subprocess.STDOUT)
        notify = notify_send
    except (subprocess.CalledProcessError, OSError):
        notify = notify_none


class CmdExecutionError(DeploymentError, RuntimeError):

    def __init__(self, cmd, returncode, stdout, stderr):
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.args = (cmd, returncode, stdout, stderr)

    def __str__(self):
        return "Command `{}` exited with {}".format(self.cmd, self.returncode)

    def report(self):
        output.error(self.cmd)
        output.tabular("Return code", str(self.returncode), red=True)
        output.line("STDOUT", red=True)
        output.annotate(self.stdout)
        output.line("STDERR", red=True)
        output.annotate(self.stderr)


def cmd(cmd,
        ignore_returncode=False,
        env=None,
        cwd=None,
        acceptable_returncodes=[0],
        encoding="utf-8"):
    if not isinstance(cmd, str):
        # We use `shell=True`, so the command needs to be a single string and
        # we need to pay attention to shell quoting.
        quoted_args = []
        for arg in cmd:
            arg = arg.replace("'", "\\'")
            if " " in arg:
                arg = "'{}'".format(arg)
            quoted_args.append(arg)
        cmd = " ".join(quoted_args)
    if env is not None:
        add_to_env = env
        env = os.environ.copy()
        env.update(add_to_env)
    output.annotate("cmd: {}".format(cmd), debug=True)
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.PIPE,
        shell=True,
        cwd=cwd,
        env=env)
    stdout, stderr = process.communicate()
    if encoding is not None:
        stdout = stdout.decode(encoding, errors="replace")
        stderr = stderr.decode(encoding, errors="replace")
    if process.returncode not in acceptable_returncodes:
        if not ignore_returncode:
            raise CmdExecutionError(cmd, process.returncode, stdout, stderr)
    return stdout, stderr


class Timer(object):
    """Measure named steps of a run."""

    def __init__(self, note):
        self.note = note
        self.started = time.time()
        self.durations = {}

    @contextlib.contextmanager
    def step(self, name):
        started = time.time()
        try:
            yield
        finally:
            self.durations[name] = time.time() - started
            output.annotate(
                "{} {} took {:.2f}s".format(
                    self.note, name, self.durations[name]),
                debug=True)

    def humanize(self, *steps):
        result = []
        for name in steps:
            if name == "total":
                duration = time.time() - self.started
            elif name in self.durations:
                duration = self.durations[name]
            else:
                continue
            result.append("{}={:.2f}s".format(name, duration))
        return " ".join(result)
