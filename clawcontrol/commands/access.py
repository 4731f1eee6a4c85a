"""Day-2 access commands: status, logs, dashboard."""

import asyncio
import logging
import sys
import webbrowser

from clawcontrol.config import read_deployment_config
from clawcontrol.deploy.daemon import (
    check_health,
    get_daemon_logs,
    get_dashboard_url,
    local_dashboard_url,
    stream_daemon_logs,
)
from clawcontrol.deploy.state import DEPLOYED, read_state
from clawcontrol.errors import ClawControlError
from clawcontrol.provisioning.ssh import connect_to_deployment
from clawcontrol.provisioning.tunnel import DEFAULT_REMOTE_PORT

logger = logging.getLogger(__name__)


def _load_deployed(name):
    """Return the state of a deployed deployment, exiting with an error otherwise."""
    try:
        read_deployment_config(name)
        state = read_state(name)
    except ClawControlError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    if state.status != DEPLOYED or not state.server_ip:
        logger.error(f"Deployment '{name}' is not deployed (status: {state.status}).")
        sys.exit(1)
    return state


# ── CLI handlers ───────────────────────────────────────────────────


def handle_status(args):
    """CLI handler for 'status'."""
    asyncio.run(_handle_status(args))


async def _handle_status(args):
    try:
        config = read_deployment_config(args.name)
        state = read_state(args.name)
    except ClawControlError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    logger.info(f"Deployment: {config.name} ({config.provider})")
    logger.info(f"Status:     {state.status}")
    logger.info(f"Server:     {state.instance_id or '-'} @ {state.server_ip or '-'}")
    logger.info(f"Tailscale:  {state.overlay_ip or '-'}")
    if state.deployed_at:
        logger.info(f"Deployed:   {state.deployed_at}")
    if state.last_error:
        logger.info(f"Last error: {state.last_error} (step '{state.failed_step}')")
    logger.info("Checkpoints:")
    for checkpoint in state.checkpoints:
        logger.info(f"  {checkpoint.timestamp}  {checkpoint.id}")

    if args.check and state.server_ip:
        health = await check_health(args.name, state.server_ip)
        logger.info(f"SSH:        {'ok' if health['ssh_connectable'] else 'unreachable'}")
        logger.info(f"Daemon:     {'running' if health['daemon_running'] else 'not running'}")


def handle_logs(args):
    """CLI handler for 'logs'."""
    try:
        asyncio.run(_handle_logs(args))
    except KeyboardInterrupt:
        pass


async def _handle_logs(args):
    state = _load_deployed(args.name)
    try:
        async with await connect_to_deployment(args.name, state.server_ip) as session:
            if args.follow:
                await stream_daemon_logs(session, lambda line: logger.info(line), lines=args.lines)
            else:
                logger.info(await get_daemon_logs(session, lines=args.lines))
    except ClawControlError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


def handle_dashboard(args):
    """CLI handler for 'dashboard'."""
    try:
        asyncio.run(_handle_dashboard(args))
    except KeyboardInterrupt:
        logger.info("\nTunnel closed.")


async def _handle_dashboard(args):
    state = _load_deployed(args.name)
    tunnels = args.tunnels
    try:
        tunnel = await tunnels.start(args.name, state.server_ip, DEFAULT_REMOTE_PORT)
        if state.access_token:
            url = local_dashboard_url(tunnel, token=state.access_token)
        else:
            async with await connect_to_deployment(args.name, state.server_ip) as session:
                url = local_dashboard_url(tunnel, remote_url=await get_dashboard_url(session))

        logger.info(f"Dashboard: {url}")
        logger.info("Press Ctrl-C to close the tunnel.")
        if not args.no_browser:
            webbrowser.open(url)
        await tunnel.process.wait()
        logger.warning(f"Tunnel exited (code {tunnel.process.returncode}).")
    except ClawControlError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    finally:
        await tunnels.stop_all()


# ── Registration ───────────────────────────────────────────────────


def register_access_commands(subparsers):
    """Register status, logs and dashboard."""
    parser = subparsers.add_parser("status", help="Show deployment status and checkpoints")
    parser.add_argument("name", help="Deployment name")
    parser.add_argument("--check", action="store_true", help="Also probe SSH and the daemon")
    parser.set_defaults(func=handle_status)

    parser = subparsers.add_parser("logs", help="Show OpenClaw daemon logs")
    parser.add_argument("name", help="Deployment name")
    parser.add_argument("-n", "--lines", type=int, default=100, help="Number of lines (default: 100)")
    parser.add_argument("-f", "--follow", action="store_true", help="Stream new log lines")
    parser.set_defaults(func=handle_logs)

    parser = subparsers.add_parser("dashboard", help="Open the OpenClaw dashboard through an SSH tunnel")
    parser.add_argument("name", help="Deployment name")
    parser.add_argument("--no-browser", action="store_true", help="Print the URL instead of opening a browser")
    parser.set_defaults(func=handle_dashboard)
