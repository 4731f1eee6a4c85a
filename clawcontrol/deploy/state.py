"""Persisted deployment state: status, checkpoints, discovered metadata.

The state file is rewritten in full on every update (temp file + rename),
never patched in place.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone

from clawcontrol.config import get_state_path
from clawcontrol.errors import UnexpectedStateError, ValidationError

logger = logging.getLogger(__name__)

INITIALIZED = "initialized"
PROVISIONING = "provisioning"
DEPLOYED = "deployed"
FAILED = "failed"
STATUSES = (INITIALIZED, PROVISIONING, DEPLOYED, FAILED)

# failed -> provisioning is the resume edge
_TRANSITIONS = {
    INITIALIZED: {PROVISIONING},
    PROVISIONING: {DEPLOYED, FAILED},
    FAILED: {PROVISIONING},
    DEPLOYED: set(),
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Checkpoint:
    id: str
    timestamp: str


@dataclass
class DeploymentState:
    """Mutable run state. Only the orchestrator writes it."""

    status: str = INITIALIZED
    checkpoints: list[Checkpoint] = field(default_factory=list)
    instance_id: str | None = None
    server_ip: str | None = None
    overlay_ip: str | None = None
    access_token: str | None = None
    deployed_at: str | None = None
    last_error: str | None = None
    failed_step: str | None = None
    updated_at: str = field(default_factory=utc_now)

    @property
    def completed_steps(self) -> list[str]:
        return [c.id for c in self.checkpoints]

    def has_checkpoint(self, step_id: str) -> bool:
        return any(c.id == step_id for c in self.checkpoints)

    def add_checkpoint(self, step_id: str) -> Checkpoint:
        """Append a checkpoint; ids are unique within the list."""
        if self.has_checkpoint(step_id):
            raise UnexpectedStateError(f"Checkpoint '{step_id}' already recorded", state=step_id)
        checkpoint = Checkpoint(id=step_id, timestamp=utc_now())
        self.checkpoints.append(checkpoint)
        return checkpoint

    def transition(self, new_status: str) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise UnexpectedStateError(f"Invalid status transition {self.status} -> {new_status}", state=self.status)
        self.status = new_status

    # ── serialization ────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "checkpoints": [{"id": c.id, "timestamp": c.timestamp} for c in self.checkpoints],
            "instanceId": self.instance_id,
            "serverIp": self.server_ip,
            "overlayIp": self.overlay_ip,
            "accessToken": self.access_token,
            "deployedAt": self.deployed_at,
            "lastError": self.last_error,
            "failedStep": self.failed_step,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d) -> "DeploymentState":
        if not isinstance(d, dict):
            raise ValidationError("State must be a JSON object")
        status = d.get("status")
        if status not in STATUSES:
            raise ValidationError(f"Invalid status '{status}'")
        raw_checkpoints = d.get("checkpoints", [])
        if not isinstance(raw_checkpoints, list):
            raise ValidationError("'checkpoints' must be a list")
        checkpoints = []
        seen = set()
        for item in raw_checkpoints:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                raise ValidationError(f"Malformed checkpoint: {item!r}")
            if item["id"] in seen:
                raise ValidationError(f"Duplicate checkpoint '{item['id']}'")
            seen.add(item["id"])
            checkpoints.append(Checkpoint(id=item["id"], timestamp=str(item.get("timestamp", ""))))
        return cls(
            status=status,
            checkpoints=checkpoints,
            instance_id=d.get("instanceId"),
            server_ip=d.get("serverIp"),
            overlay_ip=d.get("overlayIp"),
            access_token=d.get("accessToken"),
            deployed_at=d.get("deployedAt"),
            last_error=d.get("lastError"),
            failed_step=d.get("failedStep"),
            updated_at=d.get("updatedAt") or utc_now(),
        )


def read_state(name: str) -> DeploymentState:
    """Load the state file; a missing file reads as a fresh state."""
    path = get_state_path(name)
    if not os.path.exists(path):
        return DeploymentState()
    try:
        with open(path) as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Corrupt state file {path}: {e}") from e
    return DeploymentState.from_dict(raw)


def write_state(name: str, state: DeploymentState) -> DeploymentState:
    """Stamp ``updated_at`` and atomically replace the state file."""
    path = get_state_path(name)
    state.updated_at = utc_now()
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(state.to_dict(), f, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise
    return state


def reset_state(name: str) -> DeploymentState:
    """Explicit reset back to ``initialized`` (used before recreating a server)."""
    logger.info(f"Resetting state for '{name}'.")
    return write_state(name, DeploymentState())
