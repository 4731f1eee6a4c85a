"""Error taxonomy shared by provisioning, orchestration and tunnels."""


class ClawControlError(Exception):
    """Base class for all clawcontrol errors."""


class SSHConnectionError(ClawControlError, ConnectionError):
    """SSH transport could not be established or was lost."""

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class CommandError(ClawControlError):
    """A required remote command exited non-zero."""

    def __init__(self, message, command="", exit_code=None, stdout="", stderr=""):
        detail = (stderr or stdout).strip()
        super().__init__(f"{message}: {detail}" if detail else message)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class PollTimeoutError(ClawControlError, TimeoutError):
    """A bounded wait was exceeded."""


class UnexpectedStateError(ClawControlError):
    """Observed remote or provider state is outside the expected set."""

    def __init__(self, message, state=None):
        super().__init__(message)
        self.state = state


class ValidationError(ClawControlError, ValueError):
    """Malformed persisted state or configuration."""


class PortRangeError(ClawControlError):
    """No free local port inside the scan window."""


class ProviderAPIError(ClawControlError):
    """Error response from a cloud provider API."""

    def __init__(self, code, message, status_code=None):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.status_code = status_code

    @property
    def is_unauthorized(self) -> bool:
        return self.code == "unauthorized"


class DeploymentError(ClawControlError):
    """A provisioning step failed; ``checkpoint`` is the step to resume from."""

    def __init__(self, checkpoint, cause):
        super().__init__(f"Step '{checkpoint}' failed: {cause}")
        self.checkpoint = checkpoint
        self.cause = cause


class InteractionDeclined(ClawControlError):
    """The user answered no to a confirmation the pipeline required."""
