"""Local SSH port-forward tunnels, at most one live tunnel per deployment.

Create a single TunnelRegistry at process start, pass it to whatever needs
tunnels, and call ``stop_all()`` on shutdown.
"""

import asyncio
import logging
import socket
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from clawcontrol.config import get_ssh_key_path
from clawcontrol.errors import PortRangeError, SSHConnectionError
from clawcontrol.provisioning.ssh_transport import DEFAULT_USER, forward_args

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_PORT = 18789
PORT_SCAN_WINDOW = 100
SETTLE_INTERVAL = 2.5
STOP_TIMEOUT = 5.0


@dataclass
class ActiveTunnel:
    deployment: str
    remote_host: str
    remote_port: int
    local_port: int
    process: object = field(repr=False)
    dashboard_url: str | None = None
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    _stderr_task: asyncio.Task | None = field(default=None, repr=False, compare=False)

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


def is_port_available(port, host="127.0.0.1") -> bool:
    """True if *port* can be bound on *host* right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(start_port, window=PORT_SCAN_WINDOW, exclude=(), probe=is_port_available) -> int:
    """First bindable port in ``[start_port, start_port + window)`` not in *exclude*."""
    for port in range(start_port, start_port + window):
        if port in exclude:
            continue
        if probe(port):
            return port
    raise PortRangeError(f"No available port found in range {start_port}-{start_port + window - 1}")


async def _spawn_ssh(*argv):
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


class TunnelRegistry:
    """Process-wide table of ActiveTunnel entries keyed by deployment name.

    Args:
        spawn: coroutine ``spawn(*argv) -> process``; defaults to asyncio subprocess.
        key_path: callable mapping a deployment name to its private key path.
        probe: callable ``probe(port) -> bool`` used by the port scan.
    """

    def __init__(
        self,
        spawn=None,
        key_path=get_ssh_key_path,
        probe=is_port_available,
        settle_interval=SETTLE_INTERVAL,
        window=PORT_SCAN_WINDOW,
        user=DEFAULT_USER,
    ):
        self._spawn = spawn or _spawn_ssh
        self._key_path = key_path
        self._probe = probe
        self.settle_interval = settle_interval
        self.window = window
        self.user = user
        self._tunnels: dict[str, ActiveTunnel] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Ports handed out but possibly not yet bound by ssh
        self._reserved: set[int] = set()

    def _purge(self, name):
        tunnel = self._tunnels.get(name)
        if tunnel is not None and not tunnel.alive:
            logger.info(f"Tunnel for '{name}' exited (code {tunnel.process.returncode}); removing.")
            del self._tunnels[name]
            self._reserved.discard(tunnel.local_port)
            return None
        return tunnel

    def get(self, name) -> ActiveTunnel | None:
        """Live tunnel for *name*, or None (dead entries are dropped)."""
        return self._purge(name)

    def list_active(self) -> list[ActiveTunnel]:
        for name in list(self._tunnels):
            self._purge(name)
        return list(self._tunnels.values())

    async def start(self, name, remote_host, remote_port=DEFAULT_REMOTE_PORT) -> ActiveTunnel:
        """Return the live tunnel for *name*, spawning one if needed.

        Raises:
            PortRangeError: no free local port in the scan window.
            SSHConnectionError: the forwarder exited during the settle interval.
        """
        async with self._locks[name]:
            existing = self._purge(name)
            if existing is not None:
                return existing

            local_port = find_available_port(remote_port, self.window, exclude=self._reserved, probe=self._probe)
            self._reserved.add(local_port)
            argv = forward_args(f"{self.user}@{remote_host}", self._key_path(name), local_port, remote_port)
            try:
                process = await self._spawn(*argv)
                await asyncio.sleep(self.settle_interval)
            except BaseException:
                self._reserved.discard(local_port)
                raise

            if process.returncode is not None:
                self._reserved.discard(local_port)
                detail = await _read_stderr(process)
                raise SSHConnectionError(
                    f"SSH tunnel to {remote_host} failed to establish (exit {process.returncode}). "
                    f"Check that the server is reachable.{' ' + detail if detail else ''}"
                )

            tunnel = ActiveTunnel(
                deployment=name,
                remote_host=remote_host,
                remote_port=remote_port,
                local_port=local_port,
                process=process,
            )
            if getattr(process, "stderr", None) is not None:
                tunnel._stderr_task = asyncio.create_task(_drain_stderr(name, process.stderr))
            self._tunnels[name] = tunnel
            logger.info(f"Tunnel for '{name}': 127.0.0.1:{local_port} -> {remote_host}:{remote_port}")
            return tunnel

    async def stop(self, name) -> None:
        """Terminate and forget the tunnel for *name*. No-op if there is none."""
        lock = self._locks.get(name)
        if lock is not None and not lock.locked():
            del self._locks[name]
        tunnel = self._tunnels.pop(name, None)
        if tunnel is None:
            return
        self._reserved.discard(tunnel.local_port)
        await _terminate(tunnel.process)
        if tunnel._stderr_task is not None:
            tunnel._stderr_task.cancel()
        logger.info(f"Tunnel for '{name}' stopped.")

    async def stop_all(self) -> None:
        for name in list(self._tunnels):
            await self.stop(name)


async def _terminate(process):
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
    except TimeoutError:
        process.kill()
        await process.wait()


async def _drain_stderr(name, stream):
    """Keep reading a live forwarder's stderr so the pipe never fills."""
    while True:
        line = await stream.readline()
        if not line:
            return
        logger.debug(f"[tunnel {name}] {line.decode(errors='replace').rstrip()}")


async def _read_stderr(process) -> str:
    stderr = getattr(process, "stderr", None)
    if stderr is None:
        return ""
    try:
        data = await asyncio.wait_for(stderr.read(), timeout=1.0)
    except TimeoutError:
        return ""
    return data.decode(errors="replace").strip()
