"""Tests for the ProviderGateway polling contract."""

import asyncio

import pytest

from clawcontrol.errors import PollTimeoutError, UnexpectedStateError
from clawcontrol.provisioning.gateway import CreatedInstance, InstanceInfo, ProviderGateway


class ScriptedGateway(ProviderGateway):
    """Returns queued statuses; the last one repeats forever."""

    name = "scripted"
    TERMINAL_STATES = frozenset({"off"})

    def __init__(self, statuses=(), operations=()):
        self.statuses = list(statuses)
        self.operations = list(operations)
        self.instance_polls = 0
        self.operation_polls = 0

    def _next(self, queue):
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def create_instance(self, spec):
        return CreatedInstance("1", "op-1")

    async def get_instance(self, instance_id):
        self.instance_polls += 1
        status = self._next(self.statuses)
        if status is None:
            return None
        return InstanceInfo(instance_id, status, public_ip="5.6.7.8")

    async def find_instance(self, name):
        return None

    async def get_operation(self, operation_id):
        self.operation_polls += 1
        return self._next(self.operations)

    async def delete_instance(self, instance_id):
        pass

    async def ensure_ssh_key(self, name, public_key):
        return "k1"

    async def delete_ssh_key(self, name):
        return False

    async def validate_credentials(self):
        return True


# ── wait_until_running ──────────────────────────────────────────


def test_wait_until_running_success():
    gw = ScriptedGateway(["initializing", None, "starting", "running"])
    info = asyncio.run(gw.wait_until_running("1", timeout=5, poll_interval=0.001))
    assert info.status == "running"
    assert info.public_ip == "5.6.7.8"
    assert gw.instance_polls == 4


def test_wait_until_running_terminal_state():
    gw = ScriptedGateway(["starting", "off"])
    with pytest.raises(UnexpectedStateError) as exc_info:
        asyncio.run(gw.wait_until_running("1", timeout=5, poll_interval=0.001))
    assert exc_info.value.state == "off"


def test_wait_until_running_timeout():
    gw = ScriptedGateway(["starting"])
    with pytest.raises(PollTimeoutError, match="did not start"):
        asyncio.run(gw.wait_until_running("1", timeout=0.05, poll_interval=0.01))
    assert gw.instance_polls >= 2


def test_poll_timeout_is_builtin_timeout():
    gw = ScriptedGateway(["starting"])
    with pytest.raises(TimeoutError):
        asyncio.run(gw.wait_until_running("1", timeout=0, poll_interval=0.01))
    assert gw.instance_polls == 1


# ── wait_for_operation ──────────────────────────────────────────


def test_wait_for_operation_success():
    gw = ScriptedGateway(operations=["running", "running", "success"])
    asyncio.run(gw.wait_for_operation("op-1", timeout=5, poll_interval=0.001))
    assert gw.operation_polls == 3


def test_wait_for_operation_error():
    gw = ScriptedGateway(operations=["running", "error"])
    with pytest.raises(UnexpectedStateError, match="op-1 failed"):
        asyncio.run(gw.wait_for_operation("op-1", timeout=5, poll_interval=0.001))


def test_wait_for_operation_timeout():
    gw = ScriptedGateway(operations=["running"])
    with pytest.raises(PollTimeoutError):
        asyncio.run(gw.wait_for_operation("op-1", timeout=0.03, poll_interval=0.01))
