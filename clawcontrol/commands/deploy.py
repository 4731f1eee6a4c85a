"""Deploy command: run (or resume) the provisioning pipeline on a plain terminal."""

import asyncio
import logging
import sys
import webbrowser

from clawcontrol.deploy.orchestrate import run_deployment
from clawcontrol.errors import ClawControlError, DeploymentError

logger = logging.getLogger(__name__)


class TerminalCallbacks:
    """The four orchestrator callbacks, answered on stdin/stdout.

    Interactive terminal requests run ``ssh -t`` in the foreground, so the
    user's own terminal becomes the remote session until they exit it.
    """

    def __init__(self, assume_yes=False, open_browser=True):
        self.assume_yes = assume_yes
        self.open_browser = open_browser

    def on_progress(self, percent, message):
        logger.info(f"[{percent:3d}%] {message}")

    async def on_confirm(self, request):
        logger.info(request.message)
        if self.assume_yes:
            return True
        answer = await asyncio.to_thread(input, "Continue? [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    def on_open_url(self, url):
        logger.info(f"\nOpen this URL to continue:\n  {url}\n")
        if self.open_browser:
            webbrowser.open(url)

    async def on_spawn_terminal(self, request):
        logger.info("\nInteractive setup required. Follow the prompts, then exit the session.\n")
        process = await asyncio.create_subprocess_exec(*request.argv)
        code = await process.wait()
        if code != 0:
            logger.warning(f"Interactive session exited with code {code}.")
        return True


# ── CLI handlers ───────────────────────────────────────────────────


def handle_deploy(args):
    """CLI handler for 'deploy'."""
    asyncio.run(_handle_deploy(args))


async def _handle_deploy(args):
    callbacks = TerminalCallbacks(assume_yes=args.yes, open_browser=not args.no_browser)
    try:
        state = await run_deployment(
            args.name,
            callbacks.on_progress,
            callbacks.on_confirm,
            callbacks.on_open_url,
            callbacks.on_spawn_terminal,
        )
    except DeploymentError as e:
        logger.error(f"\nDeployment failed at step '{e.checkpoint}': {e.cause}")
        logger.error(f"Fix the problem and run 'clawcontrol deploy {args.name}' again to resume.")
        sys.exit(1)
    except ClawControlError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    finally:
        await args.tunnels.stop_all()

    logger.info("")
    logger.info(f"Deployment: {args.name}")
    logger.info(f"Status:     {state.status}")
    logger.info(f"Server IP:  {state.server_ip}")
    if state.overlay_ip:
        logger.info(f"Tailscale:  {state.overlay_ip}")
    logger.info(f"\nOpen the dashboard with 'clawcontrol dashboard {args.name}'.")


# ── Registration ───────────────────────────────────────────────────


def register_deploy_command(subparsers):
    """Register the deploy subcommand."""
    parser = subparsers.add_parser("deploy", help="Provision a deployment (resumes after failures)")
    parser.add_argument("name", help="Deployment name")
    parser.add_argument("-y", "--yes", action="store_true", help="Answer yes to confirmation prompts")
    parser.add_argument("--no-browser", action="store_true", help="Print URLs instead of opening a browser")
    parser.set_defaults(func=handle_deploy)
