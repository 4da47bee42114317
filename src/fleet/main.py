import argparse
import sys
import textwrap
from typing import Optional

import fleet
import fleet.deploy
import fleet.rollback
import fleet.secrets.manage
from fleet._output import TerminalBackend, output


def generation(value):
    if value == "list":
        return None
    return int(value)


def main(args: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(
        description=(
            "fleet v{}: secrets and watchdog-protected deployments for "
            "a fleet of machines"
        ).format(fleet.__version__),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.set_defaults(func=parser.print_usage)

    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug mode."
    )

    subparsers = parser.add_subparsers()

    # Deploy
    p = subparsers.add_parser("deploy", help="Deploy the fleet.")
    p.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Number of hosts deployed in parallel. "
        "Overrides the `jobs` setting of fleet.cfg.",
    )
    p.add_argument(
        "--hosts",
        nargs="+",
        default=None,
        metavar="HOST",
        help="Only deploy these hosts.",
    )
    p.set_defaults(func=fleet.deploy.main)

    # Rollback
    p = subparsers.add_parser(
        "rollback",
        help=textwrap.dedent(
            """
            List the generations of a host or switch it to one of them. The
            switch is protected by the watchdog like a deployment."""
        ),
    )
    p.add_argument("hostname", help="The host to roll back.")
    p.add_argument(
        "generation",
        nargs="?",
        default=None,
        type=generation,
        help="Generation to switch to, `list` (default) to list them.",
    )
    p.set_defaults(func=fleet.rollback.main)

    # SECRETS
    secrets = subparsers.add_parser(
        "secrets",
        help=textwrap.dedent(
            """
            Manage the encrypted secrets of the fleet. Secrets are encrypted
            with age for the host keys of their owners."""
        ),
    )
    secrets.set_defaults(func=secrets.print_usage)

    sp = secrets.add_subparsers()

    p = sp.add_parser(
        "list", help="Give a summary of secrets and who has access."
    )
    p.set_defaults(func=fleet.secrets.manage.summary)

    p = sp.add_parser(
        "regenerate",
        help="Regenerate or reencrypt secrets whose definition changed.",
    )
    p.add_argument(
        "secrets",
        nargs="*",
        metavar="SECRET",
        help="`NAME` or `HOST:NAME`. All secrets if not given.",
    )
    p.add_argument(
        "--hosts",
        nargs="+",
        default=(),
        metavar="HOST",
        help="Only update secrets owned by these hosts.",
    )
    p.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Regenerate managed secrets even if they are up to date.",
    )
    p.set_defaults(func=fleet.secrets.manage.regenerate)

    p = sp.add_parser(
        "read", help="Decrypt a secret part with your identity to stdout."
    )
    p.add_argument("secret", help="`NAME` or `HOST:NAME`.")
    p.add_argument("--part", default="secret", help="The part to show.")
    p.set_defaults(func=fleet.secrets.manage.read)

    p = sp.add_parser(
        "add", help="Store content for a secret without generator."
    )
    p.add_argument("secret", help="`NAME` or `HOST:NAME`.")
    p.add_argument(
        "--part",
        dest="parts",
        action="append",
        default=[],
        metavar="NAME=FILE",
        help="Read a part from FILE. Single part secrets read stdin "
        "if no part is given.",
    )
    p.set_defaults(func=fleet.secrets.manage.add)

    p = sp.add_parser(
        "add-owner", help="Make a host an owner of a shared secret."
    )
    p.add_argument("secret", help="The shared secret.")
    p.add_argument("hostname", help="The new owner.")
    p.set_defaults(func=fleet.secrets.manage.add_owner)

    p = sp.add_parser(
        "remove-owner", help="Remove an owner from a shared secret."
    )
    p.add_argument("secret", help="The shared secret.")
    p.add_argument("hostname", help="The owner to remove.")
    p.set_defaults(func=fleet.secrets.manage.remove_owner)

    args = parser.parse_args(args)

    # Consume global arguments
    output.enable_debug = args.debug

    # Pass over to function
    if args.func.__name__ == "print_usage":
        args.func()
        sys.exit(1)

    output.backend = TerminalBackend()

    func_args = dict(args._get_kwargs())
    del func_args["func"]
    del func_args["debug"]
    try:
        return args.func(**func_args)
    except fleet.ReportingException as e:
        # Nicer error reporting for non-deployment commands.
        e.report()
        return 1
