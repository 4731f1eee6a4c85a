"""Day-2 operations on the OpenClaw daemon of a deployed server."""

import logging
import re
from urllib.parse import quote, urlsplit, urlunsplit

from clawcontrol.errors import CommandError, SSHConnectionError, UnexpectedStateError

logger = logging.getLogger(__name__)

DAEMON_UNIT = "openclaw"
GATEWAY_PORT = 18789
NVM_PREFIX = "source ~/.nvm/nvm.sh &&"

_URL_RE = re.compile(r"https?://\S+")


async def is_daemon_running(session) -> bool:
    result = await session.exec(f"systemctl is-active {DAEMON_UNIT}")
    return result.stdout.strip() == "active"


async def verify_daemon(session) -> None:
    """Raise UnexpectedStateError (with recent journal lines) unless the unit is active."""
    if await is_daemon_running(session):
        return
    logs = await session.exec(f"journalctl -u {DAEMON_UNIT} -n 30 --no-pager || true")
    raise UnexpectedStateError(
        f"OpenClaw daemon is not running. Logs: {logs.stdout or logs.stderr}",
        state="inactive",
    )


async def get_daemon_logs(session, lines=100) -> str:
    return await session.run_checked(
        f"journalctl -u {DAEMON_UNIT} -n {int(lines)} --no-pager",
        "Failed to read OpenClaw logs",
    )


async def stream_daemon_logs(session, on_line, lines=50) -> int:
    """Follow the journal, calling ``on_line`` per line until the channel closes."""
    buffered = {"out": ""}

    def _on_stdout(chunk):
        buffered["out"] += chunk
        *complete, buffered["out"] = buffered["out"].split("\n")
        for line in complete:
            on_line(line)

    def _on_stderr(chunk):
        logger.warning(chunk.rstrip())

    code = await session.exec_stream(
        f"journalctl -u {DAEMON_UNIT} -n {int(lines)} -f --no-pager",
        _on_stdout,
        _on_stderr,
    )
    if buffered["out"]:
        on_line(buffered["out"])
    return code


async def restart_daemon(session) -> None:
    await session.run_checked(f"systemctl restart {DAEMON_UNIT}", "Failed to restart OpenClaw daemon")


async def get_dashboard_url(session) -> str:
    """URL printed by ``openclaw dashboard`` on the server (includes the auth token)."""
    output = await session.run_checked(f"{NVM_PREFIX} openclaw dashboard", "Failed to get dashboard URL")
    match = _URL_RE.search(output)
    if not match:
        raise UnexpectedStateError(f"No dashboard URL in output: {output.strip()!r}")
    return match.group(0)


def local_dashboard_url(tunnel, token=None, remote_url=None) -> str:
    """Dashboard URL reachable through *tunnel*, cached on the tunnel.

    Built from the stored access *token* when there is one; otherwise the
    host:port of *remote_url* is rewritten to the tunnel's local end.
    """
    if tunnel.dashboard_url:
        return tunnel.dashboard_url
    if token:
        url = f"http://127.0.0.1:{tunnel.local_port}/?token={quote(token, safe='')}"
    elif remote_url:
        parts = urlsplit(remote_url)
        url = urlunsplit(("http", f"127.0.0.1:{tunnel.local_port}", parts.path or "/", parts.query, parts.fragment))
    else:
        raise ValueError("Either token or remote_url is required")
    tunnel.dashboard_url = url
    return url


async def check_health(name, server_ip, connect=None) -> dict:
    """Best-effort health probe: can we SSH in, and is the daemon active?"""
    if connect is None:
        from clawcontrol.provisioning.ssh import connect_to_deployment as connect

    health = {"ssh_connectable": False, "daemon_running": False}
    try:
        session = await connect(name, server_ip)
    except SSHConnectionError as e:
        logger.warning(f"SSH to {server_ip} failed: {e}")
        return health
    health["ssh_connectable"] = True
    try:
        health["daemon_running"] = await is_daemon_running(session)
    except (SSHConnectionError, CommandError) as e:
        logger.warning(f"Daemon check on {server_ip} failed: {e}")
    finally:
        await session.disconnect()
    return health
