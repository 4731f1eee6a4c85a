"""Shared pytest fixtures for all test modules."""

import os
import subprocess
import sys

import pytest

import clawcontrol.redact as redact_module
from clawcontrol.config import DeploymentConfig, create_deployment
from clawcontrol.errors import CommandError
from clawcontrol.provisioning.gateway import CreatedInstance, InstanceInfo, ProviderGateway
from clawcontrol.provisioning.ssh import CommandResult

PROJECT_ROOT = os.path.normpath(os.path.join(os.path.dirname(__file__), ".."))


@pytest.fixture(scope="session")
def project_root():
    """Absolute path to the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Point CLAWCONTROL_HOME at a fresh temp directory."""
    path = tmp_path / "clawhome"
    monkeypatch.setenv("CLAWCONTROL_HOME", str(path))
    return path


@pytest.fixture
def run_cli(project_root, home):
    """Return a callable that invokes the clawcontrol CLI as a subprocess."""

    def _run(*args, input=None):
        env = {**os.environ, "CLAWCONTROL_HOME": str(home)}
        result = subprocess.run(
            [sys.executable, "-m", "clawcontrol.clawcontrol", *args],
            capture_output=True,
            text=True,
            cwd=project_root,
            env=env,
            input=input,
        )
        return result.returncode, result.stdout, result.stderr

    return _run


@pytest.fixture
def demo(home):
    """A created deployment named 'demo' (config, keys, initial state)."""
    return create_deployment(DeploymentConfig(name="demo", provider_params={"api_key": "test-token-123456"}))


@pytest.fixture(autouse=True)
def _clear_registered_secrets():
    yield
    redact_module._registered.clear()
    redact_module._patterns = None


# ── Fakes ─────────────────────────────────────────────────────────


class FakeSession:
    """Scripted stand-in for SSHSession.

    ``responses`` maps a command substring to a CommandResult (or a
    callable returning one); the first matching key wins. Unmatched
    commands succeed with empty output.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.commands = []
        self.connected = True
        self.disconnects = 0

    @property
    def is_connected(self):
        return self.connected

    async def connect(self, attempts=3, delay=5.0):
        self.connected = True

    async def disconnect(self):
        self.connected = False
        self.disconnects += 1

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_):
        await self.disconnect()

    async def exec(self, command, timeout=None):
        self.commands.append(command)
        for key, response in self.responses.items():
            if key in command:
                return response() if callable(response) else response
        return CommandResult("", "", 0)

    async def run_checked(self, command, error_message=None, timeout=None):
        result = await self.exec(command, timeout=timeout)
        if not result.ok:
            raise CommandError(error_message or "failed", command, result.exit_code, result.stdout, result.stderr)
        return result.stdout

    async def exec_stream(self, command, on_stdout, on_stderr, timeout=None):
        result = await self.exec(command, timeout=timeout)
        if result.stdout:
            on_stdout(result.stdout)
        if result.stderr:
            on_stderr(result.stderr)
        return result.exit_code

    def ran(self, fragment):
        return [c for c in self.commands if fragment in c]


@pytest.fixture
def fake_session():
    return FakeSession()


class FakeGateway(ProviderGateway):
    """In-memory provider; ``status`` is what every get_instance reports."""

    name = "fake"
    TERMINAL_STATES = frozenset({"off"})

    def __init__(self, existing=None, status="running", public_ip="203.0.113.7"):
        self.existing = existing
        self.status = status
        self.public_ip = public_ip
        self.created = []
        self.deleted = []
        self.keys = []
        self.operations = []
        self.deleted_keys = []

    async def create_instance(self, spec):
        self.created.append(spec)
        return CreatedInstance("42", "op-1")

    async def get_instance(self, instance_id):
        return InstanceInfo(instance_id, self.status, public_ip=self.public_ip)

    async def find_instance(self, name):
        return self.existing

    async def get_operation(self, operation_id):
        self.operations.append(operation_id)
        return "success"

    async def delete_instance(self, instance_id):
        self.deleted.append(instance_id)

    async def ensure_ssh_key(self, name, public_key):
        self.keys.append((name, public_key))
        return "7"

    async def delete_ssh_key(self, name):
        self.deleted_keys.append(name)
        return True

    async def validate_credentials(self):
        return True


def ok(stdout=""):
    return CommandResult(stdout, "", 0)


def fail(stderr="error", code=1):
    return CommandResult("", stderr, code)
