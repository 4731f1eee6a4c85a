"""Deploy orchestration: run_deployment, run_steps, destroy_deployment.

One generic runner walks a list of Step descriptors, skipping every step
already in the checkpoint list and persisting the state after each new
checkpoint, so an interrupted run resumes where it stopped.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field

from clawcontrol.config import (
    DeploymentConfig,
    delete_deployment,
    load_deployment_keys,
    read_deployment_config,
)
from clawcontrol.deploy.interaction import ConfirmRequest, TerminalRequest, dispatch
from clawcontrol.deploy.state import (
    DEPLOYED,
    FAILED,
    PROVISIONING,
    DeploymentState,
    read_state,
    utc_now,
    write_state,
)
from clawcontrol.deploy.steps import DEFAULT_STEPS
from clawcontrol.errors import DeploymentError, UnexpectedStateError, ValidationError
from clawcontrol.provisioning.gateway import get_gateway, ssh_key_name
from clawcontrol.provisioning.ssh import connect_to_deployment, ssh_command, wait_for_ssh

logger = logging.getLogger(__name__)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _terminal_script(command) -> str:
    return (
        f"{command}; echo; echo '=== Setup complete! Close this window to continue. ==='; "
        "read -p 'Press Enter to close...'"
    )


@dataclass
class RunContext:
    """Everything a step may touch during one run.

    Discovered metadata lives on ``state`` and is persisted with every
    checkpoint. The gateway, key pair and SSH session are created lazily.
    """

    name: str
    config: DeploymentConfig
    state: DeploymentState
    on_progress: object = None
    on_confirm: object = None
    on_open_url: object = None
    on_spawn_terminal: object = None
    connect: object = connect_to_deployment
    wait_ssh: object = wait_for_ssh
    current_step: str | None = None
    _gateway: object = field(default=None, repr=False)
    _keys: object = field(default=None, repr=False)
    _session: object = field(default=None, repr=False)

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = get_gateway(self.config)
        return self._gateway

    @property
    def key_pair(self):
        if self._keys is None:
            self._keys = load_deployment_keys(self.name)
        return self._keys

    @property
    def public_key(self) -> str:
        return self.key_pair.public_key

    def _server_ip(self) -> str:
        if not self.state.server_ip:
            raise UnexpectedStateError("No server IP recorded; the server has not been created yet")
        return self.state.server_ip

    async def session(self):
        """The run's single SSH session, (re)connected on demand."""
        if self._session is None or not self._session.is_connected:
            self._session = await self.connect(self.name, self._server_ip())
        return self._session

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.disconnect()

    async def wait_ssh_ready(self, timeout) -> None:
        await self.wait_ssh(self._server_ip(), self.key_pair.private_key, timeout=timeout)

    def persist(self) -> None:
        write_state(self.name, self.state)

    async def progress(self, percent, message) -> None:
        logger.debug(f"[{percent:3d}%] {message}")
        if self.on_progress is not None:
            await _maybe_await(self.on_progress(percent, message))

    async def confirm(self, message) -> bool:
        if self.on_confirm is None:
            raise UnexpectedStateError(f"Confirmation required but no handler is attached: {message}")
        return bool(await dispatch(self.on_confirm, ConfirmRequest(self.name, message=message)))

    async def open_url(self, url) -> None:
        if self.on_open_url is not None:
            await _maybe_await(self.on_open_url(url))

    async def interactive(self, command):
        """Hand *command* to the user in a real terminal; returns once they are done."""
        if self.on_spawn_terminal is None:
            raise UnexpectedStateError(f"Interactive terminal required but no handler is attached: {command}")
        script = _terminal_script(command)
        request = TerminalRequest(self.name, command=script, argv=ssh_command(self.name, self._server_ip(), script))
        return await dispatch(self.on_spawn_terminal, request)


def _check_step_ids(steps) -> None:
    seen = set()
    for step in steps:
        if step.id in seen:
            raise ValidationError(f"Duplicate step id '{step.id}'")
        seen.add(step.id)


async def run_steps(ctx: RunContext, steps) -> None:
    """Run every step not yet checkpointed, checkpointing each one on success.

    Raises:
        DeploymentError: a step failed; its ``checkpoint`` is the failed step id.
    """
    total = len(steps)
    for ordinal, step in enumerate(steps, start=1):
        percent = int(ordinal / total * 100)
        if ctx.state.has_checkpoint(step.id):
            logger.debug(f"Skipping '{step.id}' (already completed).")
            await ctx.progress(percent, f"{step.description} (already done)")
            continue

        ctx.current_step = step.id
        logger.info(f"Step {ordinal}/{total}: {step.description}...")
        try:
            if step.check is not None and await step.check(ctx):
                logger.info(f"'{step.id}' already satisfied on the server.")
            else:
                await step.action(ctx)
        except Exception as e:
            raise DeploymentError(step.id, e) from e

        ctx.state.add_checkpoint(step.id)
        ctx.persist()
        ctx.current_step = None
        await ctx.progress(percent, step.description)


def _record_failure(name, state: DeploymentState, step_id, error) -> None:
    if state.status == PROVISIONING:
        state.transition(FAILED)
    state.last_error = str(error) or type(error).__name__
    state.failed_step = step_id
    write_state(name, state)


async def run_deployment(
    name,
    on_progress,
    on_confirm,
    on_open_url,
    on_spawn_terminal,
    *,
    gateway=None,
    steps=None,
    connect=None,
    wait_ssh=None,
) -> DeploymentState:
    """Provision *name*, resuming after its last checkpoint.

    Callbacks:
        on_progress(percent, message): called after every step.
        on_confirm(request): ConfirmRequest; return a bool or resolve it later.
        on_open_url(url): a URL the user has to visit (overlay login).
        on_spawn_terminal(request): TerminalRequest; an async callback completes
            once the user is done, or returns PENDING and resolves it later.

    Returns the final DeploymentState. A deployment that is already
    ``deployed`` is returned untouched.

    Raises:
        DeploymentError: a step failed; the state is ``failed`` and the run
            can be resumed by calling this again.
    """
    config = read_deployment_config(name)
    state = read_state(name)
    if state.status == DEPLOYED:
        logger.info(f"Deployment '{name}' is already deployed.")
        return state

    steps = DEFAULT_STEPS if steps is None else steps
    _check_step_ids(steps)

    # A stale 'provisioning' status means an earlier run died mid-step
    if state.status != PROVISIONING:
        state.transition(PROVISIONING)
    state.last_error = None
    state.failed_step = None
    write_state(name, state)

    ctx = RunContext(
        name=name,
        config=config,
        state=state,
        on_progress=on_progress,
        on_confirm=on_confirm,
        on_open_url=on_open_url,
        on_spawn_terminal=on_spawn_terminal,
        connect=connect or connect_to_deployment,
        wait_ssh=wait_ssh or wait_for_ssh,
        _gateway=gateway,
    )
    if state.checkpoints:
        logger.info(f"Resuming '{name}' after {len(state.checkpoints)} completed step(s).")

    try:
        await run_steps(ctx, steps)
    except DeploymentError as e:
        logger.error(f"Deployment '{name}' failed at '{e.checkpoint}': {e.cause}")
        _record_failure(name, state, e.checkpoint, e.cause)
        raise
    except (Exception, asyncio.CancelledError) as e:
        logger.error(f"Deployment '{name}' interrupted during '{ctx.current_step}'.")
        _record_failure(name, state, ctx.current_step, e)
        raise
    finally:
        await ctx.close()

    state.transition(DEPLOYED)
    state.deployed_at = utc_now()
    write_state(name, state)
    logger.info(f"Deployment '{name}' is live.")
    await ctx.progress(100, "Deployment complete")
    return state


async def destroy_deployment(name, gateway=None, tunnels=None) -> None:
    """Stop the tunnel, delete the provider server and key (if any) and remove all local files.

    Without a recorded server and without an explicit *gateway* the provider
    is not contacted; a key left behind is replaced on the next create.
    """
    config = read_deployment_config(name)
    state = read_state(name)

    if tunnels is not None:
        await tunnels.stop(name)

    if state.instance_id or gateway is not None:
        gateway = gateway or get_gateway(config)
        if state.instance_id:
            await gateway.delete_instance(state.instance_id)
            logger.info(f"Server {state.instance_id} deleted.")
        await gateway.delete_ssh_key(ssh_key_name(name))
    else:
        logger.info(f"No server recorded for '{name}'; removing local files only.")

    delete_deployment(name)
