import ast
import inspect
import os
import os.path
import sys

import execnet

from fleet import output, remote_core

# Keys in os.environ which get propagated to the remote side:
REMOTE_OS_ENV_KEYS = (
    'REMOTE_PDB_HOST',
    'REMOTE_PDB_PORT',
)


class RPCWrapper(object):

    def __init__(self, host):
        self.host = host

    def __getattr__(self, name):

        def call(*args, **kw):
            output.annotate(
                "rpc {}: {}(*{}, **{})".format(self.host.fqdn, name, args, kw),
                debug=True)
            self.host.channel.send((name, args, kw))
            while True:
                message = self.host.channel.receive()
                output.annotate(
                    "{}: message: {}".format(self.host.fqdn, message),
                    debug=True)
                type = message[0]
                if type == "fleet-result":
                    return message[1]
                elif type == "fleet-output":
                    _, output_cmd, args, kw = message
                    getattr(output, output_cmd)(*args, **kw)
                elif type == "fleet-unknown-error":
                    output.error(message[1])
                    raise RuntimeError(
                        "{}: Remote exception encountered.".format(
                            self.host.fqdn))
                elif type == "fleet-error":
                    # Remote put out the details already.
                    raise RuntimeError(
                        "{}: Remote exception encountered.".format(
                            self.host.fqdn))
                else:
                    raise RuntimeError("{}: Unknown message type {}".format(
                        self.host.fqdn, type))

        return call


class Host(object):
    """A machine of the fleet and the channel to its agent."""

    ignore = False
    gateway = None
    channel = None

    def __init__(self, name, settings, config={}):
        self.name = name
        self.settings = settings
        self.rpc = RPCWrapper(self)

        self.address = config.get("address", name)
        self.key = config.get("key")
        self.system = config.get("system", settings.system)
        self.python = config.get("python", settings.python)
        self.service_user = config.get("service_user", settings.service_user)
        self.state_directory = config.get(
            "state_directory", settings.state_directory)
        self.secrets_directory = config.get(
            "secrets_directory", settings.secrets_directory)
        self.identity = config.get("identity", settings.identity)
        self.health_command = config.get(
            "health_command", settings.health_command)
        self.watchdog_timer = config.get(
            "watchdog_timer", settings.watchdog_timer)
        self.ignore = ast.literal_eval(config.get("ignore", "False"))

        self.data = {}
        for key, value in list(config.items()):
            if key.startswith("data-"):
                key = key.replace("data-", "", 1)
                self.data[key] = value

    def __repr__(self):
        return "<{} {}>".format(self.__class__.__name__, self.name)

    @property
    def fqdn(self):
        return self.address

    @property
    def connected(self):
        return self.channel is not None

    def start(self):
        """Set up the agent on a freshly connected channel."""
        output.step(self.name, "Bootstrapping agent ...", debug=True)
        self.rpc.setup_output(output.enable_debug)
        self.remote_state_directory = self.rpc.setup_agent(
            self.state_directory,
            self.secrets_directory,
            [x.strip() for x in self.identity.split(",")],
            None if self.watchdog_timer == "none" else self.watchdog_timer,
            inspect.getsource(remote_core),
        )
        self.rpc.lock()

    def upload(self, image):
        raise NotImplementedError()

    def disconnect(self):
        if self.gateway is not None:
            self.gateway.exit()
        self.gateway = None
        self.channel = None


class LocalHost(Host):
    """The machine fleet runs on, reached through a subprocess."""

    def connect(self):
        self.gateway = execnet.makegateway("popen//python={}".format(
            sys.executable))
        self.channel = self.gateway.remote_exec(remote_core)

    def upload(self, image):
        # The image is already where the agent can see it.
        return image


class RemoteHost(Host):

    def connect(self):
        if self.gateway:
            output.annotate("Disconnecting ...", debug=True)
            self.disconnect()

        output.annotate("Connecting ...", debug=True)
        # Call sudo, ensuring:
        # - no password will ever be asked (fail instead)
        # - we ensure a consistent set of environment variables
        #   irregardless of the local configuration of env_reset, etc.

        CONDITIONAL_SUDO = """\
if [ -n "$ZSH_VERSION" ]; then setopt SH_WORD_SPLIT; fi;
if [ \"$USER\" = \"{user}\" ]; then \
pre=\"\"; else pre=\"sudo -ni -u {user}\"; fi; $pre\
""".format(user=self.service_user)

        spec = "ssh={fqdn}//python={sudo} {interpreter}".format(
            fqdn=self.fqdn,
            sudo=CONDITIONAL_SUDO,
            interpreter=self.python)
        if os.path.exists("ssh_config"):
            spec += "//ssh_config=ssh_config"
        self.gateway = execnet.makegateway(spec)
        try:
            self.channel = self.gateway.remote_exec(remote_core)
        except IOError:
            raise RuntimeError(
                "Could not start the fleet agent on host `{}`. "
                "The output above may contain more information. ".format(
                    self.fqdn))

        output.annotate("Connected ...", debug=True)

    def start(self):
        super(RemoteHost, self).start()
        env = {
            key: os.environ.get(key)
            for key in REMOTE_OS_ENV_KEYS if os.environ.get(key)}
        if env:
            self.rpc.update_environment(env)

    def upload(self, image):
        name = os.path.basename(image.rstrip("/"))
        target = os.path.join(self.remote_state_directory, "images", name)
        if self.rpc.has_image(name):
            output.step(self.name, "Image already present", debug=True)
            return target
        output.step(self.name, "Uploading {} ...".format(name))
        rsync = execnet.RSync(image)
        rsync.add_target(self.gateway, target)
        rsync.send()
        return target
