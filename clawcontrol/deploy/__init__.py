"""Deploy library: state persistence, provisioning steps, orchestration, day-2 ops."""

from clawcontrol.deploy.daemon import (
    check_health,
    get_daemon_logs,
    get_dashboard_url,
    is_daemon_running,
    local_dashboard_url,
    restart_daemon,
    stream_daemon_logs,
)
from clawcontrol.deploy.interaction import PENDING, ConfirmRequest, TerminalRequest
from clawcontrol.deploy.orchestrate import destroy_deployment, run_deployment, run_steps
from clawcontrol.deploy.state import DeploymentState, read_state, reset_state, write_state
from clawcontrol.deploy.steps import DEFAULT_STEPS, Step

__all__ = [
    "PENDING",
    "ConfirmRequest",
    "TerminalRequest",
    "DeploymentState",
    "read_state",
    "write_state",
    "reset_state",
    "Step",
    "DEFAULT_STEPS",
    "run_steps",
    "run_deployment",
    "destroy_deployment",
    "is_daemon_running",
    "get_daemon_logs",
    "stream_daemon_logs",
    "restart_daemon",
    "get_dashboard_url",
    "local_dashboard_url",
    "check_health",
]
