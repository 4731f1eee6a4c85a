"""Tests for deployment state persistence and status transitions."""

import json

import pytest

from clawcontrol.config import get_state_path
from clawcontrol.deploy.state import (
    DEPLOYED,
    FAILED,
    INITIALIZED,
    PROVISIONING,
    DeploymentState,
    read_state,
    reset_state,
    write_state,
)
from clawcontrol.errors import UnexpectedStateError, ValidationError


def test_missing_state_reads_as_initialized(home):
    state = read_state("ghost")
    assert state.status == INITIALIZED
    assert state.checkpoints == []


def test_write_and_read_round_trip(home):
    state = DeploymentState()
    state.transition(PROVISIONING)
    state.add_checkpoint("create-instance")
    state.server_ip = "203.0.113.7"
    state.access_token = "tok"
    write_state("demo", state)

    loaded = read_state("demo")
    assert loaded.status == PROVISIONING
    assert loaded.completed_steps == ["create-instance"]
    assert loaded.server_ip == "203.0.113.7"
    assert loaded.access_token == "tok"


def test_state_file_uses_camel_case_keys(home):
    state = DeploymentState(server_ip="1.2.3.4", overlay_ip="100.64.0.1", last_error="boom")
    write_state("demo", state)
    with open(get_state_path("demo")) as f:
        raw = json.load(f)
    assert raw["serverIp"] == "1.2.3.4"
    assert raw["overlayIp"] == "100.64.0.1"
    assert raw["lastError"] == "boom"
    assert "updatedAt" in raw and "deployedAt" in raw


def test_write_state_stamps_updated_at(home):
    state = DeploymentState(updated_at="2000-01-01T00:00:00+00:00")
    write_state("demo", state)
    assert state.updated_at != "2000-01-01T00:00:00+00:00"


def test_duplicate_checkpoint_rejected():
    state = DeploymentState()
    state.add_checkpoint("a")
    with pytest.raises(UnexpectedStateError):
        state.add_checkpoint("a")
    assert state.completed_steps == ["a"]


@pytest.mark.parametrize(
    "path",
    [
        [PROVISIONING, DEPLOYED],
        [PROVISIONING, FAILED],
        [PROVISIONING, FAILED, PROVISIONING, DEPLOYED],
    ],
)
def test_valid_transitions(path):
    state = DeploymentState()
    for status in path:
        state.transition(status)
    assert state.status == path[-1]


@pytest.mark.parametrize(
    "start, target",
    [
        (INITIALIZED, DEPLOYED),
        (INITIALIZED, FAILED),
        (DEPLOYED, PROVISIONING),
        (DEPLOYED, FAILED),
        (FAILED, DEPLOYED),
    ],
)
def test_invalid_transitions(start, target):
    state = DeploymentState(status=start)
    with pytest.raises(UnexpectedStateError):
        state.transition(target)


def test_corrupt_state_file(home):
    write_state("demo", DeploymentState())
    with open(get_state_path("demo"), "w") as f:
        f.write("{not json")
    with pytest.raises(ValidationError, match="Corrupt"):
        read_state("demo")


@pytest.mark.parametrize(
    "raw",
    [
        [],
        {"status": "exploded"},
        {"status": "failed", "checkpoints": "nope"},
        {"status": "failed", "checkpoints": [{"timestamp": "x"}]},
        {"status": "failed", "checkpoints": [{"id": "a"}, {"id": "a"}]},
    ],
)
def test_malformed_state_rejected(raw):
    with pytest.raises(ValidationError):
        DeploymentState.from_dict(raw)


def test_reset_state(home):
    state = DeploymentState(status=FAILED, server_ip="1.2.3.4")
    state.add_checkpoint("create-instance")
    write_state("demo", state)

    reset_state("demo")
    fresh = read_state("demo")
    assert fresh.status == INITIALIZED
    assert fresh.checkpoints == []
    assert fresh.server_ip is None
