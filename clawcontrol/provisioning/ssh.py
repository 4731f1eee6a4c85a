"""SSH session manager: one asyncssh connection per target host.

Service class pattern: host, user and key are bound at construction,
not passed on every call.

Example:
    >>> session = SSHSession("203.0.113.7", key_pair.private_key)
    >>> await session.connect()            # retries automatically
    >>> result = await session.exec("uptime")
    >>> await session.disconnect()

As context manager:
    >>> async with SSHSession(host, key) as s:
    ...     await s.run_checked("apt-get update")
"""

import asyncio
import contextlib
import logging
import os
import shutil
from dataclasses import dataclass

import asyncssh

from clawcontrol.config import get_ssh_key_path, load_deployment_keys
from clawcontrol.errors import CommandError, PollTimeoutError, SSHConnectionError, ValidationError
from clawcontrol.provisioning.ssh_transport import DEFAULT_USER, interactive_args

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0
KEEPALIVE_INTERVAL = 10.0
KEEPALIVE_COUNT_MAX = 3
DUMB_TERM_SIZE = (120, 40)
_READ_CHUNK = 4096


@dataclass
class CommandResult:
    """Captured output of one remote command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _exit_code(completed) -> int:
    # returncode is -signal when the remote process was killed
    code = completed.returncode
    return code if code is not None else -1


class SSHSession:
    """Async SSH session with connect-retry, exec, streaming exec and shells.

    Keepalive probes are sent every ``keepalive_interval`` seconds; after
    ``keepalive_count_max`` unanswered probes asyncssh closes the connection,
    so in-flight operations fail with SSHConnectionError instead of hanging.
    """

    def __init__(
        self,
        host,
        private_key,
        username=DEFAULT_USER,
        port=22,
        connect_timeout=CONNECT_TIMEOUT,
        keepalive_interval=KEEPALIVE_INTERVAL,
        keepalive_count_max=KEEPALIVE_COUNT_MAX,
        connector=None,
    ):
        self.host = host
        self.username = username
        self.port = port
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.keepalive_count_max = keepalive_count_max
        self._private_key = private_key
        self._connector = connector or asyncssh.connect
        self._conn = None

    def __repr__(self):
        state = "connected" if self.is_connected else "disconnected"
        return f"<SSHSession {self.username}@{self.host}:{self.port} {state}>"

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *_):
        await self.disconnect()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    # ── connection lifecycle ─────────────────────────────────────

    def _client_key(self):
        try:
            return asyncssh.import_private_key(self._private_key)
        except asyncssh.KeyImportError as e:
            raise ValidationError(f"Invalid SSH private key: {e}") from e

    async def connect(self, attempts=3, delay=5.0) -> None:
        """Connect, retrying up to *attempts* times with *delay* seconds between tries."""
        if self._conn is not None:
            return

        client_key = self._client_key()
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                self._conn = await self._connector(
                    self.host,
                    port=self.port,
                    username=self.username,
                    client_keys=[client_key],
                    known_hosts=None,
                    connect_timeout=self.connect_timeout,
                    keepalive_interval=self.keepalive_interval,
                    keepalive_count_max=self.keepalive_count_max,
                )
                logger.debug(f"SSH connected to {self.username}@{self.host}:{self.port}")
                return
            except (OSError, asyncssh.Error) as e:
                last_error = e
                logger.warning(f"SSH connect to {self.host} failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await asyncio.sleep(delay)

        raise SSHConnectionError(
            f"Failed to connect to {self.host} after {attempts} attempts: {last_error}",
            cause=last_error,
        )

    async def disconnect(self) -> None:
        """Close the connection. Safe to call repeatedly."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(conn.wait_closed(), timeout=5.0)
        logger.debug(f"SSH disconnected from {self.host}")

    def _require_connection(self):
        if self._conn is None:
            raise SSHConnectionError(f"SSH not connected to {self.host}. Call connect() first.")
        return self._conn

    def _lost(self, command, error):
        # The transport is unusable after a channel-level failure; forget it so
        # a later connect() starts over.
        self._conn = None
        return SSHConnectionError(f"SSH connection to {self.host} lost while running '{command}': {error}", cause=error)

    # ── command execution ────────────────────────────────────────

    async def exec(self, command, timeout=None) -> CommandResult:
        """Run *command* to completion and capture its output."""
        conn = self._require_connection()
        try:
            completed = await conn.run(command, check=False, timeout=timeout)
        except TimeoutError as e:
            raise PollTimeoutError(f"Command timed out after {timeout}s: {command}") from e
        except (OSError, asyncssh.Error) as e:
            raise self._lost(command, e) from e
        return CommandResult(
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
            exit_code=_exit_code(completed),
        )

    async def run_checked(self, command, error_message=None, timeout=None) -> str:
        """Run *command* and return stdout, raising CommandError on non-zero exit."""
        result = await self.exec(command, timeout=timeout)
        if not result.ok:
            raise CommandError(
                error_message or f"Command failed ({result.exit_code})",
                command=command,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result.stdout

    async def exec_stream(self, command, on_stdout, on_stderr, timeout=None) -> int:
        """Run *command*, delivering output chunks to the callbacks as they arrive.

        Returns:
            The remote exit code.
        """
        conn = self._require_connection()

        async def _pump(stream, callback):
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                callback(_text(chunk))

        try:
            async with conn.create_process(command) as process:
                await asyncio.wait_for(
                    asyncio.gather(
                        _pump(process.stdout, on_stdout),
                        _pump(process.stderr, on_stderr),
                    ),
                    timeout=timeout,
                )
                completed = await process.wait()
        except TimeoutError as e:
            raise PollTimeoutError(f"Command timed out after {timeout}s: {command}") from e
        except (OSError, asyncssh.Error) as e:
            raise self._lost(command, e) from e
        return _exit_code(completed)

    async def shell(self, interactive=True, term_size=None):
        """Open a shell channel and hand it to the caller.

        ``interactive=True`` requests a full PTY sized to the local terminal
        for human use; ``interactive=False`` requests a ``dumb`` terminal for
        programmatic line injection. The returned asyncssh process exposes
        ``stdin``/``stdout``/``stderr`` streams; the caller owns both ends
        until the channel or the connection closes.
        """
        conn = self._require_connection()
        if interactive:
            term_type = os.environ.get("TERM") or "xterm-256color"
            size = term_size or tuple(shutil.get_terminal_size())
        else:
            term_type = "dumb"
            size = term_size or DUMB_TERM_SIZE
        try:
            return await conn.create_process(term_type=term_type, term_size=size)
        except (OSError, asyncssh.Error) as e:
            raise self._lost("<shell>", e) from e


# ── Helpers ───────────────────────────────────────────────────────


async def check_ssh(host, private_key, connector=None) -> bool:
    """Single connect attempt plus ``echo ok``; True if both succeed."""
    session = SSHSession(host, private_key, connector=connector)
    try:
        await session.connect(attempts=1, delay=0)
        result = await session.exec("echo ok")
        return result.ok and result.stdout.strip() == "ok"
    except (SSHConnectionError, PollTimeoutError):
        return False
    finally:
        await session.disconnect()


async def wait_for_ssh(host, private_key, timeout=180, interval=5, connector=None) -> None:
    """Poll SSH connectivity until success.

    Raises:
        PollTimeoutError: SSH did not come up within *timeout* seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempt = 0
    while True:
        attempt += 1
        if await check_ssh(host, private_key, connector=connector):
            logger.info(f"SSH is ready on {host} (attempt {attempt}).")
            return
        if loop.time() + interval > deadline:
            break
        await asyncio.sleep(interval)

    raise PollTimeoutError(f"SSH not available on {host} after {timeout}s")


async def connect_to_deployment(name, server_ip, **kwargs) -> SSHSession:
    """Open a connected session to a deployment's server using its stored key."""
    key_pair = load_deployment_keys(name)
    session = SSHSession(server_ip, key_pair.private_key, **kwargs)
    await session.connect()
    return session


def ssh_command(name, server_ip, remote_command=None) -> list[str]:
    """argv for a human-driven ``ssh`` to a deployment (``-t`` when a command is given)."""
    return interactive_args(f"{DEFAULT_USER}@{server_ip}", get_ssh_key_path(name), remote_command)
