"""Deployment CRUD commands: new, list, fork, destroy."""

import asyncio
import logging
import sys

from clawcontrol.config import (
    DeploymentConfig,
    create_deployment,
    fork_deployment,
    get_deployment_dir,
    list_deployments,
    read_deployment_config,
)
from clawcontrol.deploy.orchestrate import destroy_deployment
from clawcontrol.deploy.state import read_state
from clawcontrol.errors import ClawControlError, ValidationError
from clawcontrol.provisioning.hetzner import DEFAULT_IMAGE, DEFAULT_LOCATION, DEFAULT_SERVER_TYPE

logger = logging.getLogger(__name__)


def _provider_params(args) -> dict:
    params = {}
    for key in ("server_type", "location", "image"):
        value = getattr(args, key, None)
        if value is not None:
            params[key] = value
    return params


# ── CLI handlers ───────────────────────────────────────────────────


def handle_new(args):
    """CLI handler for 'new'."""
    params = {
        "server_type": DEFAULT_SERVER_TYPE,
        "location": DEFAULT_LOCATION,
        "image": DEFAULT_IMAGE,
        **_provider_params(args),
    }
    try:
        config = create_deployment(DeploymentConfig(name=args.name, provider_params=params))
    except ValidationError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    logger.info(f"Deployment directory: {get_deployment_dir(config.name)}")
    logger.info(f"Run 'clawcontrol deploy {config.name}' to provision it.")


def handle_list(args):
    """CLI handler for 'list'."""
    names = list_deployments()
    if not names:
        logger.info("No deployments.")
        return
    for name in names:
        try:
            config = read_deployment_config(name)
            state = read_state(name)
        except ValidationError as e:
            logger.info(f"{name:<24} (unreadable: {e})")
            continue
        ip = state.server_ip or "-"
        steps = f"{len(state.checkpoints)} steps"
        logger.info(f"{name:<24} {config.provider:<8} {state.status:<12} {ip:<16} {steps}")


def handle_fork(args):
    """CLI handler for 'fork'."""
    try:
        base = read_deployment_config(args.source)
        changes = {}
        overrides = _provider_params(args)
        if overrides:
            changes["provider_params"] = {**base.provider_params, **overrides}
        config = fork_deployment(args.source, args.name, **changes)
    except ValidationError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    logger.info(f"Forked '{args.source}' into '{config.name}'.")


def handle_destroy(args):
    """CLI handler for 'destroy'."""
    asyncio.run(_handle_destroy(args))


async def _handle_destroy(args):
    if not args.yes:
        answer = await asyncio.to_thread(
            input, f"Destroy deployment '{args.name}' and delete its server? This cannot be undone. [y/N] "
        )
        if answer.strip().lower() not in ("y", "yes"):
            logger.info("Aborted.")
            return
    try:
        await destroy_deployment(args.name, tunnels=args.tunnels)
    except ClawControlError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    finally:
        await args.tunnels.stop_all()
    logger.info(f"Deployment '{args.name}' destroyed.")


# ── Registration ───────────────────────────────────────────────────


def _add_server_args(parser, defaults):
    suffix = " (default: {})" if defaults else " (default: inherit)"
    parser.add_argument(
        "--server-type",
        default=None,
        help="Hetzner server type" + suffix.format(DEFAULT_SERVER_TYPE),
    )
    parser.add_argument(
        "--location",
        default=None,
        help="Hetzner location" + suffix.format(DEFAULT_LOCATION),
    )
    parser.add_argument(
        "--image",
        default=None,
        help="Server image" + suffix.format(DEFAULT_IMAGE),
    )


def register_deployment_commands(subparsers):
    """Register new, list, fork and destroy."""
    parser = subparsers.add_parser("new", help="Create a deployment (config + SSH keys)")
    parser.add_argument("name", help="Deployment name (lowercase letters, digits, hyphens)")
    _add_server_args(parser, defaults=True)
    parser.set_defaults(func=handle_new)

    parser = subparsers.add_parser("list", help="List deployments and their status")
    parser.set_defaults(func=handle_list)

    parser = subparsers.add_parser("fork", help="Create a new deployment from an existing one's config")
    parser.add_argument("source", help="Existing deployment to copy")
    parser.add_argument("name", help="Name of the new deployment")
    _add_server_args(parser, defaults=False)
    parser.set_defaults(func=handle_fork)

    parser = subparsers.add_parser("destroy", help="Delete the server and all local files of a deployment")
    parser.add_argument("name", help="Deployment name")
    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    parser.set_defaults(func=handle_destroy)
