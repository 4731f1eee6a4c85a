#!/usr/bin/env python3
"""OpenClaw deployment manager: CLI entrypoint."""

import argparse

from clawcontrol.commands.access import register_access_commands
from clawcontrol.commands.deploy import register_deploy_command
from clawcontrol.commands.deployment import register_deployment_commands
from clawcontrol.logging_setup import setup_cli_logging
from clawcontrol.provisioning.tunnel import TunnelRegistry


def main():
    parser = argparse.ArgumentParser(description="Provision and manage OpenClaw servers")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register_deployment_commands(subparsers)
    register_deploy_command(subparsers)
    register_access_commands(subparsers)

    args = parser.parse_args()
    setup_cli_logging(verbose=args.verbose)
    # One registry per process; handlers drain it before their event loop closes
    args.tunnels = TunnelRegistry()
    args.func(args)


if __name__ == "__main__":
    main()
