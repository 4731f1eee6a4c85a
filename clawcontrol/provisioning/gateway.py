"""Provider gateway: abstract cloud instance lifecycle with bounded polling.

Concrete providers implement the request methods; this base class owns the
polling contract so every provider times out the same way.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from clawcontrol.errors import PollTimeoutError, UnexpectedStateError

logger = logging.getLogger(__name__)


def ssh_key_name(deployment) -> str:
    """Name a deployment's public key is registered under at the provider."""
    return f"clawcontrol-{deployment}"


@dataclass
class InstanceSpec:
    """Provider-neutral request for a new server."""

    name: str
    server_type: str
    image: str
    location: str
    ssh_key_ids: list = field(default_factory=list)
    labels: dict = field(default_factory=dict)


@dataclass
class CreatedInstance:
    instance_id: str
    operation_id: str | None = None
    public_ip: str | None = None


@dataclass
class InstanceInfo:
    instance_id: str
    status: str
    public_ip: str | None = None
    name: str | None = None


class ProviderGateway(ABC):
    """Base class for cloud providers.

    Subclasses set ``RUNNING_STATE`` / ``TERMINAL_STATES`` and the operation
    status names, and implement the abstract request methods.
    """

    name = "provider"
    RUNNING_STATE = "running"
    TERMINAL_STATES: frozenset = frozenset()
    OPERATION_SUCCESS = "success"
    OPERATION_ERROR = "error"

    @abstractmethod
    async def create_instance(self, spec: InstanceSpec) -> CreatedInstance:
        """Request a new instance; returns before it is running."""

    @abstractmethod
    async def get_instance(self, instance_id) -> InstanceInfo | None:
        """Current instance info, or None if the provider does not know it."""

    @abstractmethod
    async def find_instance(self, name) -> InstanceInfo | None:
        """Look an instance up by name."""

    @abstractmethod
    async def get_operation(self, operation_id) -> str:
        """Status string of a long-running operation."""

    @abstractmethod
    async def delete_instance(self, instance_id) -> None:
        ...

    @abstractmethod
    async def ensure_ssh_key(self, name, public_key) -> str:
        """Register *public_key* unless already present; return its provider id."""

    @abstractmethod
    async def delete_ssh_key(self, name) -> bool:
        """Remove the key registered as *name*; False if there was none."""

    @abstractmethod
    async def validate_credentials(self) -> bool:
        ...

    async def wait_until_running(self, instance_id, timeout=120, poll_interval=3) -> InstanceInfo:
        """Poll until the instance reports the running state.

        Raises:
            UnexpectedStateError: the instance reached a terminal non-running state.
            PollTimeoutError: still not running after *timeout* seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        status = None
        while True:
            info = await self.get_instance(instance_id)
            if info is None:
                logger.warning(f"Instance {instance_id} not found, still waiting...")
            else:
                if info.status != status:
                    logger.info(f"Instance {instance_id} status: {info.status}")
                status = info.status
                if status == self.RUNNING_STATE:
                    return info
                if status in self.TERMINAL_STATES:
                    raise UnexpectedStateError(f"Instance {instance_id} entered unexpected state: {status}", state=status)
            if loop.time() + poll_interval > deadline:
                break
            await asyncio.sleep(poll_interval)

        raise PollTimeoutError(f"Instance {instance_id} did not start within {timeout}s (last: '{status}')")

    async def wait_for_operation(self, operation_id, timeout=300, poll_interval=2) -> None:
        """Poll a long-running operation until success.

        Raises:
            UnexpectedStateError: the operation finished with an error.
            PollTimeoutError: not finished after *timeout* seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        status = None
        while True:
            status = await self.get_operation(operation_id)
            if status == self.OPERATION_SUCCESS:
                return
            if status == self.OPERATION_ERROR:
                raise UnexpectedStateError(f"Operation {operation_id} failed", state=status)
            if loop.time() + poll_interval > deadline:
                break
            await asyncio.sleep(poll_interval)

        raise PollTimeoutError(f"Operation {operation_id} did not complete within {timeout}s (last: '{status}')")


def get_gateway(config) -> ProviderGateway:
    """Build the gateway for a DeploymentConfig's provider."""
    from clawcontrol.config import resolve_api_key
    from clawcontrol.provisioning.hetzner import HetznerGateway

    if config.provider == "hetzner":
        return HetznerGateway(resolve_api_key(config))
    raise ValueError(f"Unknown provider: {config.provider}")
