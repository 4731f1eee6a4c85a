"""Tests for day-2 daemon operations."""

import asyncio
from types import SimpleNamespace

import pytest
from conftest import FakeSession, fail, ok

from clawcontrol.deploy.daemon import (
    check_health,
    get_daemon_logs,
    get_dashboard_url,
    is_daemon_running,
    local_dashboard_url,
    restart_daemon,
    stream_daemon_logs,
)
from clawcontrol.errors import CommandError, SSHConnectionError, UnexpectedStateError


@pytest.mark.parametrize(
    "stdout, expected",
    [("active\n", True), ("inactive\n", False), ("failed\n", False), ("", False)],
)
def test_is_daemon_running_exact_match(stdout, expected):
    session = FakeSession({"systemctl is-active": ok(stdout)})
    assert asyncio.run(is_daemon_running(session)) is expected


def test_get_daemon_logs():
    session = FakeSession({"journalctl": ok("line 1\nline 2\n")})
    assert asyncio.run(get_daemon_logs(session, lines=20)) == "line 1\nline 2\n"
    assert session.commands == ["journalctl -u openclaw -n 20 --no-pager"]


def test_stream_daemon_logs_splits_lines():
    class ChunkedSession(FakeSession):
        async def exec_stream(self, command, on_stdout, on_stderr, timeout=None):
            self.commands.append(command)
            for chunk in ["first li", "ne\nsecond line\nthi", "rd"]:
                on_stdout(chunk)
            return 0

    session = ChunkedSession()
    lines = []
    code = asyncio.run(stream_daemon_logs(session, lines.append, lines=10))

    assert code == 0
    assert lines == ["first line", "second line", "third"]
    assert "-f" in session.commands[0].split()


def test_restart_daemon_failure():
    session = FakeSession({"systemctl restart": fail("Unit openclaw.service not found.", 5)})
    with pytest.raises(CommandError, match="not found"):
        asyncio.run(restart_daemon(session))


def test_get_dashboard_url():
    output = "Dashboard ready:\n  http://127.0.0.1:18789/?token=abc123\n"
    session = FakeSession({"openclaw dashboard": ok(output)})
    assert asyncio.run(get_dashboard_url(session)) == "http://127.0.0.1:18789/?token=abc123"


def test_get_dashboard_url_missing():
    session = FakeSession({"openclaw dashboard": ok("gateway not running\n")})
    with pytest.raises(UnexpectedStateError):
        asyncio.run(get_dashboard_url(session))


# ── local_dashboard_url ─────────────────────────────────────────


def _tunnel(port=18790):
    return SimpleNamespace(local_port=port, dashboard_url=None)


def test_local_dashboard_url_from_token():
    tunnel = _tunnel()
    assert local_dashboard_url(tunnel, token="a/b+c") == "http://127.0.0.1:18790/?token=a%2Fb%2Bc"
    assert tunnel.dashboard_url == "http://127.0.0.1:18790/?token=a%2Fb%2Bc"


def test_local_dashboard_url_rewrites_remote():
    tunnel = _tunnel(18791)
    url = local_dashboard_url(tunnel, remote_url="http://127.0.0.1:18789/chat?token=xyz")
    assert url == "http://127.0.0.1:18791/chat?token=xyz"


def test_local_dashboard_url_is_cached():
    tunnel = _tunnel()
    first = local_dashboard_url(tunnel, token="one")
    assert local_dashboard_url(tunnel, token="two") == first


def test_local_dashboard_url_needs_input():
    with pytest.raises(ValueError):
        local_dashboard_url(_tunnel())


# ── check_health ────────────────────────────────────────────────


def test_check_health_running():
    session = FakeSession({"systemctl is-active": ok("active\n")})

    async def connect(name, server_ip):
        return session

    health = asyncio.run(check_health("demo", "1.2.3.4", connect=connect))
    assert health == {"ssh_connectable": True, "daemon_running": True}
    assert session.disconnects == 1


def test_check_health_unreachable():
    async def connect(name, server_ip):
        raise SSHConnectionError("refused")

    health = asyncio.run(check_health("demo", "1.2.3.4", connect=connect))
    assert health == {"ssh_connectable": False, "daemon_running": False}
