import os
import os.path
from typing import Optional

import jinja2

from ._output import output

with open(os.path.dirname(__file__) + "/version.txt") as f:
    __version__ = f.read().strip()

# Configure `remote-pdb` to be used with `breakpoint()` in Python 3.7+:
os.environ["PYTHONBREAKPOINT"] = "remote_pdb.set_trace"
if not os.environ.get("REMOTE_PDB_HOST", None):
    os.environ["REMOTE_PDB_HOST"] = "127.0.0.1"
if not os.environ.get("REMOTE_PDB_PORT", None):
    os.environ["REMOTE_PDB_PORT"] = "4444"


def prepare_error(error):
    return f"{error.__class__.__name__}: {error}"


class ReportingException(Exception):
    """Exceptions that support user-readable reporting."""

    affected_hostname: Optional[str] = None
    sort_key = (50,)

    def __str__(self):
        raise NotImplementedError()

    def report(self):
        raise NotImplementedError()


class FileLockedError(ReportingException):
    """A file is already locked and we do not want to block."""

    filename: str

    @classmethod
    def from_context(cls, filename):
        self = cls()
        self.filename = filename
        return self

    def __str__(self):
        return "File already locked: {}. Is another fleet running?".format(
            self.filename)

    def report(self):
        output.error(str(self))


class ConfigurationError(ReportingException):
    """Indicates that the fleet configuration is not usable."""

    message: str
    section: Optional[str]

    @property
    def sort_key(self):
        return (0, self.message)

    @classmethod
    def from_context(cls, message, section=None):
        self = cls()
        self.message = message
        self.section = section
        return self

    def __str__(self):
        return str(self.message)

    def report(self):
        message = self.message
        if self.section:
            message = "[{}]: {}".format(self.section, message)
        output.error(message)


class DuplicateHostError(ConfigurationError):
    @property
    def sort_key(self):
        return (0,)

    @classmethod
    def from_context(cls, hostname):
        self = cls()
        self.message = "Duplicate host: " + hostname
        self.section = None
        self.affected_hostname = hostname
        return self

    def report(self):
        output.error(
            "Duplicate definition of host: {}".format(self.affected_hostname)
        )


class UnknownHostError(ConfigurationError):
    """A secret refers to a host that is not part of the fleet."""

    @property
    def sort_key(self):
        return (1, self.section, self.affected_hostname)

    @classmethod
    def from_context(cls, section, hostname):
        self = cls()
        self.section = section
        self.affected_hostname = hostname
        self.message = "Unknown host: {}".format(hostname)
        return self

    def report(self):
        output.error("Reference to unknown host")
        output.tabular("Section", self.section, red=True)
        output.tabular("Host", self.affected_hostname, red=True)


class MissingOwnersError(ConfigurationError):
    """A secret with encrypted parts has nobody to encrypt them for."""

    @property
    def sort_key(self):
        return (1, self.section)

    @classmethod
    def from_context(cls, section):
        self = cls()
        self.section = section
        self.message = "Secret has encrypted parts but no owners."
        return self

    def report(self):
        output.error(self.message)
        output.tabular("Section", self.section, red=True)
        output.tabular(
            "Hint",
            "Add `owners = <host>, ...` or remove `private_parts`.",
            red=True,
        )


class TemplatingError(ReportingException):
    """An error occured while rendering a template."""

    sort_key = (0,)

    @classmethod
    def from_context(cls, exception, template_identifier):
        self = cls()
        self.exception_str = prepare_error(exception)
        self.template_identifier = template_identifier
        # if exception is instance of jinja2.TemplateSyntaxError
        # there is some magic in jinja2 that makes the __str__ method
        # less capable, if exception.translated is set to True
        if isinstance(exception, jinja2.TemplateSyntaxError):
            exception.translated = False
            self.exception_str = str(exception)
            exception.translated = True
        return self

    def __str__(self):
        return (
            "An error occured while rendering a template "
            f"({self.template_identifier}): {self.exception_str}"
        )

    def report(self):
        output.error(str(self))


class GenerationFailure(ReportingException):
    """A generator could not produce a secret.

    The previously stored ciphertext of the secret stays valid.

    """

    secret: str
    reason: str
    details: str

    @property
    def sort_key(self):
        return (10, self.secret)

    @classmethod
    def from_context(cls, secret, reason, details=""):
        self = cls()
        self.secret = secret
        self.reason = reason
        self.details = details
        return self

    def __str__(self):
        return f"Generating `{self.secret}` failed: {self.reason}"

    def report(self):
        output.error(f"Generating secret `{self.secret}` failed")
        output.tabular("Reason", self.reason, red=True)
        if self.details:
            output.tabular("Output", self.details, separator=":\n")


class EncryptionFailure(ReportingException):
    """A recipient key is unavailable or invalid.

    The host is left out of the secret's recipients until its key is fixed.

    """

    secret: str
    error: str

    @property
    def sort_key(self):
        return (20, self.secret, self.affected_hostname)

    @classmethod
    def from_context(cls, secret, hostname, error):
        self = cls()
        self.secret = secret
        self.affected_hostname = hostname
        self.error = error if isinstance(error, str) else prepare_error(error)
        return self

    def __str__(self):
        return (
            f"Could not encrypt `{self.secret}` for "
            f"{self.affected_hostname}: {self.error}"
        )

    def report(self):
        output.error(f"Host excluded from secret `{self.secret}`")
        output.tabular("Host", self.affected_hostname, red=True)
        output.tabular("Error", self.error, red=True)


class StoreInconsistency(ReportingException):
    """Stored ciphertext does not match the secret's owners."""

    secret: str
    problem: str

    @property
    def sort_key(self):
        return (30, self.secret)

    @classmethod
    def from_context(cls, secret, problem, hostname=None):
        self = cls()
        self.secret = secret
        self.problem = problem
        self.affected_hostname = hostname
        return self

    def __str__(self):
        return f"Secret `{self.secret}` is inconsistent: {self.problem}"

    def report(self):
        output.error(str(self))
        if self.affected_hostname:
            output.tabular("Host", self.affected_hostname, red=True)
        output.tabular(
            "Hint", "Run `fleet secrets regenerate` and retry.", red=True
        )


class StoreConflict(ReportingException):
    """A secret was changed concurrently while being updated."""

    secret: str
    expected: Optional[int]
    actual: Optional[int]

    @property
    def sort_key(self):
        return (30, self.secret)

    @classmethod
    def from_context(cls, secret, expected, actual):
        self = cls()
        self.secret = secret
        self.expected = expected
        self.actual = actual
        return self

    def __str__(self):
        return (
            f"Secret `{self.secret}` was modified concurrently "
            f"(expected revision {self.expected}, found {self.actual})"
        )

    def report(self):
        output.error(str(self))


class DeploymentError(ReportingException):
    """Indicates that a deployment failed.."""

    sort_key = (100,)

    def __str__(self):
        return "The deployment encountered an error."

    def report(self):
        pass


class BuildFailure(DeploymentError):
    """The build collaborator did not produce a system image."""

    @property
    def sort_key(self):
        return (100, self.affected_hostname)

    @classmethod
    def from_context(cls, hostname, command, returncode, details):
        self = cls()
        self.affected_hostname = hostname
        self.command = command
        self.returncode = returncode
        self.details = details
        return self

    def __str__(self):
        return f"build failed with exit code {self.returncode}"

    def report(self):
        output.error(f"{self.affected_hostname}: building the image failed")
        output.tabular("Command", self.command, red=True)
        output.tabular("Exit code", str(self.returncode), red=True)
        if self.details:
            output.tabular("Output", self.details, separator=":\n")


class TransportFailure(DeploymentError):
    """A host could not be reached or the image could not be copied."""

    @property
    def sort_key(self):
        return (110, self.affected_hostname)

    @classmethod
    def from_context(cls, hostname, action, attempts, error):
        self = cls()
        self.affected_hostname = hostname
        self.action = action
        self.attempts = attempts
        self.error = prepare_error(error)
        return self

    def __str__(self):
        return (
            f"{self.action} failed after {self.attempts} attempt(s): "
            f"{self.error}"
        )

    def report(self):
        output.error(f"{self.affected_hostname}: {self.action} failed")
        output.tabular("Attempts", str(self.attempts), red=True)
        output.tabular("Error", self.error, red=True)


class ActivationFailure(DeploymentError):
    """The activation script failed and the host reverted itself."""

    @property
    def sort_key(self):
        return (120, self.affected_hostname)

    @classmethod
    def from_context(cls, hostname, generation, details):
        self = cls()
        self.affected_hostname = hostname
        self.generation = generation
        self.details = details
        return self

    def __str__(self):
        return f"activation of generation {self.generation} failed"

    def report(self):
        output.error(
            f"{self.affected_hostname}: activating generation "
            f"{self.generation} failed, host reverted"
        )
        if self.details:
            output.tabular("Output", self.details, separator=":\n")


class ConfirmationTimeout(DeploymentError):
    """The host did not become healthy within the watchdog window."""

    @property
    def sort_key(self):
        return (120, self.affected_hostname)

    @classmethod
    def from_context(cls, hostname, generation, timeout, details=""):
        self = cls()
        self.affected_hostname = hostname
        self.generation = generation
        self.timeout = timeout
        self.details = details
        return self

    def __str__(self):
        return (
            f"generation {self.generation} not confirmed within "
            f"{self.timeout}s"
        )

    def report(self):
        output.error(
            f"{self.affected_hostname}: no health signal within "
            f"{self.timeout}s, generation {self.generation} reverted"
        )
        if self.details:
            output.tabular("Last check", self.details, separator=":\n")


class ConcurrentDeploymentError(DeploymentError):
    """A host already has a deployment in flight."""

    @property
    def sort_key(self):
        return (90, self.affected_hostname)

    @classmethod
    def from_context(cls, hostname, run_id, state):
        self = cls()
        self.affected_hostname = hostname
        self.run_id = run_id
        self.state = state
        return self

    def __str__(self):
        return (
            f"deployment {self.run_id} is still {self.state} on "
            f"{self.affected_hostname}"
        )

    def report(self):
        output.error(
            f"{self.affected_hostname}: refusing to start a second deployment"
        )
        output.tabular("Active run", self.run_id, red=True)
        output.tabular("State", self.state, red=True)


class DeploymentCancelled(DeploymentError):
    """The operator cancelled the deployment before this host activated."""

    @property
    def sort_key(self):
        return (130, self.affected_hostname)

    @classmethod
    def from_context(cls, hostname):
        self = cls()
        self.affected_hostname = hostname
        return self

    def __str__(self):
        return "cancelled"

    def report(self):
        output.step(self.affected_hostname, "Cancelled", red=True)
