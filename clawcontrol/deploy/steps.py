"""The fixed provisioning pipeline: one Step descriptor per checkpoint.

Every step is check-then-act: ``check`` returns True when the target
condition already holds on the server (the action is then skipped), and
every ``action`` tolerates a previous partial run.
"""

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Awaitable, Callable

from clawcontrol.config import deep_merge
from clawcontrol.deploy.daemon import GATEWAY_PORT, NVM_PREFIX, is_daemon_running, verify_daemon
from clawcontrol.errors import CommandError, InteractionDeclined, PollTimeoutError, UnexpectedStateError
from clawcontrol.provisioning.gateway import InstanceSpec, ssh_key_name
from clawcontrol.provisioning.hetzner import DEFAULT_IMAGE, DEFAULT_LOCATION, DEFAULT_SERVER_TYPE
from clawcontrol.redact import register_secret

logger = logging.getLogger(__name__)

APT_ENV = "DEBIAN_FRONTEND=noninteractive"
CONFIG_DIR = "~/.openclaw"
CONFIG_PATH = f"{CONFIG_DIR}/openclaw.json"
CHROME_PATH = "/usr/bin/google-chrome"
SWAP_SIZE = "4G"

SSH_READY_TIMEOUT = 180
OVERLAY_AUTH_TIMEOUT = 300
OVERLAY_AUTH_INTERVAL = 5


@dataclass(frozen=True)
class Step:
    """One checkpointed unit of the pipeline."""

    id: str
    description: str
    action: Callable[..., Awaitable[None]]
    check: Callable[..., Awaitable[bool]] | None = None


# ── 1. create-instance ────────────────────────────────────────────


async def _instance_ready(ctx) -> bool:
    if not ctx.state.instance_id:
        return False
    info = await ctx.gateway.get_instance(ctx.state.instance_id)
    if info is None or info.status != ctx.gateway.RUNNING_STATE or not info.public_ip:
        return False
    ctx.state.server_ip = info.public_ip
    return True


async def create_instance(ctx) -> None:
    gateway = ctx.gateway
    params = ctx.config.provider_params
    server_type = params.get("server_type", DEFAULT_SERVER_TYPE)
    location = params.get("location", DEFAULT_LOCATION)
    image = params.get("image", DEFAULT_IMAGE)

    existing = None
    if ctx.state.instance_id:
        existing = await gateway.get_instance(ctx.state.instance_id)
    if existing is None:
        existing = await gateway.find_instance(ctx.name)

    if existing is not None:
        logger.info(f"Reusing existing server '{ctx.name}' (id={existing.instance_id}).")
        instance_id = existing.instance_id
        ctx.state.instance_id = instance_id
    else:
        confirmed = await ctx.confirm(
            f"Create a {server_type} server in {location} ({image}) for '{ctx.name}'?\n"
            f"This will incur charges on your {gateway.name} account."
        )
        if not confirmed:
            raise InteractionDeclined("Server creation cancelled by user")

        key_id = await gateway.ensure_ssh_key(ssh_key_name(ctx.name), ctx.public_key)
        created = await gateway.create_instance(
            InstanceSpec(
                name=ctx.name,
                server_type=server_type,
                image=image,
                location=location,
                ssh_key_ids=[key_id],
                labels={"managed-by": "clawcontrol"},
            )
        )
        instance_id = created.instance_id
        # Record the id before waiting so an interrupted run does not orphan the server
        ctx.state.instance_id = instance_id
        ctx.persist()
        if created.operation_id:
            await gateway.wait_for_operation(created.operation_id)

    info = await gateway.wait_until_running(instance_id)
    if not info.public_ip:
        raise UnexpectedStateError(f"Server {instance_id} is running but has no public IPv4")
    ctx.state.server_ip = info.public_ip
    logger.info(f"Server {instance_id} is running at {info.public_ip}.")


# ── 2. wait-ssh-ready ─────────────────────────────────────────────


async def wait_ssh_ready(ctx) -> None:
    await ctx.wait_ssh_ready(timeout=SSH_READY_TIMEOUT)


# ── 3. configure-swap ─────────────────────────────────────────────


async def _swap_active(ctx) -> bool:
    session = await ctx.session()
    result = await session.exec("swapon --show")
    return "/swapfile" in result.stdout


async def configure_swap(ctx) -> None:
    session = await ctx.session()
    commands = [
        f"[ -f /swapfile ] || fallocate -l {SWAP_SIZE} /swapfile",
        "chmod 600 /swapfile",
        "mkswap /swapfile",
        "swapon /swapfile",
        "grep -q '^/swapfile ' /etc/fstab || echo '/swapfile none swap sw 0 0' >> /etc/fstab",
        "sysctl vm.swappiness=100",
        "grep -q '^vm.swappiness' /etc/sysctl.conf || echo 'vm.swappiness=100' >> /etc/sysctl.conf",
    ]
    for cmd in commands:
        await session.run_checked(cmd, "Failed to setup swap")

    verify = await session.exec("free -h | grep -i swap")
    if "4.0G" not in verify.stdout and "4G" not in verify.stdout:
        raise UnexpectedStateError(f"Swap verification failed: {verify.stdout.strip()}")


# ── 4. update-packages ────────────────────────────────────────────


async def update_packages(ctx) -> None:
    session = await ctx.session()
    await session.run_checked(f"{APT_ENV} apt-get update", "Failed to update package lists")
    await session.run_checked(f"{APT_ENV} apt-get upgrade -y", "Failed to upgrade packages")
    await session.run_checked(
        f"{APT_ENV} apt-get install -y curl wget git build-essential",
        "Failed to install essential packages",
    )


# ── 5. install-runtime ────────────────────────────────────────────


async def _node_installed(ctx) -> bool:
    session = await ctx.session()
    result = await session.exec("source ~/.nvm/nvm.sh 2>/dev/null && node --version")
    return result.ok and result.stdout.strip().startswith("v")


async def install_runtime(ctx) -> None:
    session = await ctx.session()

    nvm = await session.exec("source ~/.nvm/nvm.sh 2>/dev/null && nvm --version")
    if not (nvm.ok and nvm.stdout.strip()):
        await session.run_checked(
            "curl -o- https://raw.githubusercontent.com/nvm-sh/nvm/v0.40.1/install.sh | bash",
            "Failed to install NVM",
        )
        await session.exec(
            "grep -q 'NVM_DIR' ~/.bashrc || {"
            " echo 'export NVM_DIR=\"$HOME/.nvm\"' >> ~/.bashrc;"
            " echo '[ -s \"$NVM_DIR/nvm.sh\" ] && . \"$NVM_DIR/nvm.sh\"' >> ~/.bashrc;"
            " }"
        )

    await session.run_checked(f"{NVM_PREFIX} nvm install --lts", "Failed to install Node.js LTS")
    await session.run_checked(f"{NVM_PREFIX} nvm alias default 'lts/*'", "Failed to set default Node.js version")

    if not await _node_installed(ctx):
        raise UnexpectedStateError("Node.js installation verification failed")


# ── 6. install-package-manager ────────────────────────────────────


async def _pnpm_installed(ctx) -> bool:
    session = await ctx.session()
    result = await session.exec(f"{NVM_PREFIX} pnpm --version")
    return result.ok and bool(result.stdout.strip())


async def install_package_manager(ctx) -> None:
    session = await ctx.session()
    await session.run_checked(f"{NVM_PREFIX} npm install -g pnpm", "Failed to install pnpm")
    if not await _pnpm_installed(ctx):
        raise UnexpectedStateError("pnpm installation verification failed")


# ── 7. install-browser-dependency ─────────────────────────────────


async def _chrome_installed(ctx) -> bool:
    session = await ctx.session()
    result = await session.exec("which google-chrome")
    return result.ok and "google-chrome" in result.stdout


async def install_browser(ctx) -> None:
    session = await ctx.session()
    await session.run_checked(
        "wget -q https://dl.google.com/linux/direct/google-chrome-stable_current_amd64.deb -O /tmp/chrome.deb",
        "Failed to download Google Chrome",
    )
    await session.run_checked(f"{APT_ENV} apt-get install -y /tmp/chrome.deb", "Failed to install Google Chrome")
    await session.exec("rm -f /tmp/chrome.deb")
    await session.run_checked("google-chrome --version", "Google Chrome installation verification failed")


# ── 8. install-application ────────────────────────────────────────


async def _app_installed(ctx) -> bool:
    session = await ctx.session()
    result = await session.exec(f"{NVM_PREFIX} openclaw --version")
    return result.ok and bool(result.stdout.strip())


async def install_application(ctx) -> None:
    session = await ctx.session()
    await session.run_checked(f"{NVM_PREFIX} curl -fsSL https://openclaw.ai/install.sh | bash", "Failed to install OpenClaw")
    await session.run_checked(f"{NVM_PREFIX} openclaw --version", "OpenClaw installation verification failed")


# ── 9. write-application-config ───────────────────────────────────


def build_app_config(token, overrides=None) -> dict:
    """OpenClaw config: browser + gateway sections, *overrides* merged on top."""
    config = {
        "browser": {
            "enabled": True,
            "remoteCdpTimeoutMs": 15000,
            "remoteCdpHandshakeTimeoutMs": 3000,
            "defaultProfile": "openclaw",
            "color": "#FF4500",
            "headless": True,
            "noSandbox": True,
            "attachOnly": False,
            "executablePath": CHROME_PATH,
            "profiles": {
                "openclaw": {"cdpPort": 18800, "color": "#FF4500"},
            },
        },
        "gateway": {
            "port": GATEWAY_PORT,
            "mode": "local",
            "bind": "loopback",
            "auth": {"mode": "token", "token": token},
            "tailscale": {"mode": "serve", "resetOnExit": False},
        },
    }
    overrides = overrides or {}
    for section in ("browser", "gateway"):
        if isinstance(overrides.get(section), dict):
            config[section] = deep_merge(config[section], overrides[section])
    return config


async def _read_remote_config(ctx) -> dict | None:
    session = await ctx.session()
    result = await session.exec(f"cat {CONFIG_PATH}")
    if not result.ok:
        return None
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError:
        return None


async def _app_config_written(ctx) -> bool:
    remote = await _read_remote_config(ctx)
    if not remote or "browser" not in remote:
        return False
    token = ((remote.get("gateway") or {}).get("auth") or {}).get("token")
    if not token:
        return False
    ctx.state.access_token = token
    register_secret(token)
    return True


async def write_app_config(ctx) -> None:
    session = await ctx.session()
    token = ctx.state.access_token or secrets.token_urlsafe(32)
    register_secret(token)
    config_json = json.dumps(build_app_config(token, ctx.config.app_config), indent=2)

    await session.run_checked(f"mkdir -p {CONFIG_DIR}", "Failed to create OpenClaw config directory")
    await session.run_checked(
        f"cat > {CONFIG_PATH} << 'EOFCONFIG'\n{config_json}\nEOFCONFIG",
        "Failed to write OpenClaw configuration",
    )
    ctx.state.access_token = token

    if not await _app_config_written(ctx):
        raise UnexpectedStateError("OpenClaw configuration verification failed")


# ── 10. install-overlay-network-agent ─────────────────────────────


async def _tailscale_installed(ctx) -> bool:
    session = await ctx.session()
    result = await session.exec("which tailscale")
    return result.ok and "tailscale" in result.stdout


async def install_overlay_agent(ctx) -> None:
    session = await ctx.session()
    await session.run_checked("curl -fsSL https://tailscale.com/install.sh | sh", "Failed to install Tailscale")
    await session.exec("systemctl enable tailscaled")
    await session.exec("systemctl start tailscaled")
    await session.run_checked("tailscale --version", "Tailscale installation verification failed")


# ── 11. authenticate-overlay-network ──────────────────────────────


async def tailscale_online(session) -> bool:
    result = await session.exec("tailscale status --json")
    if not result.ok:
        return False
    try:
        status = json.loads(result.stdout)
    except json.JSONDecodeError:
        return False
    return status.get("BackendState") == "Running" and bool((status.get("Self") or {}).get("Online"))


async def get_tailscale_auth_url(session) -> str | None:
    """Login URL printed by ``tailscale up``/``login``, or None if none appeared."""
    for cmd in (
        "timeout 10 tailscale up 2>&1 | grep -oP 'https://[^\\s]+' | head -1",
        "tailscale login 2>&1 | grep -oP 'https://[^\\s]+' | head -1",
    ):
        result = await session.exec(cmd)
        url = result.stdout.strip()
        if url.startswith("https://"):
            return url
    return None


async def wait_for_tailscale_auth(session, timeout=OVERLAY_AUTH_TIMEOUT, interval=OVERLAY_AUTH_INTERVAL) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await tailscale_online(session):
            return
        if loop.time() + interval > deadline:
            break
        await asyncio.sleep(interval)
    raise PollTimeoutError(f"Tailscale authentication timed out after {timeout}s")


async def _overlay_authenticated(ctx) -> bool:
    return await tailscale_online(await ctx.session())


async def authenticate_overlay(ctx) -> None:
    session = await ctx.session()
    url = await get_tailscale_auth_url(session)
    if url is None:
        raise UnexpectedStateError("Could not obtain a Tailscale login URL")
    logger.info(f"Authenticate this server with Tailscale: {url}")
    await ctx.open_url(url)
    await wait_for_tailscale_auth(session, timeout=OVERLAY_AUTH_TIMEOUT, interval=OVERLAY_AUTH_INTERVAL)


# ── 12. expose-service ────────────────────────────────────────────


async def _overlay_ip(session) -> str:
    output = await session.run_checked("tailscale ip -4", "Failed to get Tailscale IP")
    lines = output.strip().splitlines()
    if not lines:
        raise UnexpectedStateError("Tailscale reported no IPv4 address")
    return lines[0].strip()


async def _service_exposed(ctx) -> bool:
    session = await ctx.session()
    result = await session.exec("tailscale serve status")
    if not (result.ok and str(GATEWAY_PORT) in result.stdout):
        return False
    ctx.state.overlay_ip = await _overlay_ip(session)
    return True


async def expose_service(ctx) -> None:
    session = await ctx.session()
    ctx.state.overlay_ip = await _overlay_ip(session)
    await session.run_checked(f"tailscale serve --bg {GATEWAY_PORT}", "Failed to configure Tailscale serve")


# ── 13. verify-daemon ─────────────────────────────────────────────


async def _daemon_active(ctx) -> bool:
    return await is_daemon_running(await ctx.session())


async def verify_daemon_step(ctx) -> None:
    # Onboarding asks for credentials, so a human drives it in a real terminal
    await ctx.interactive(f"{NVM_PREFIX} openclaw onboard --install-daemon")
    try:
        await verify_daemon(await ctx.session())
    except CommandError as e:
        raise UnexpectedStateError(f"Could not verify OpenClaw daemon: {e}") from e


DEFAULT_STEPS = [
    Step("create-instance", "Creating server", create_instance, _instance_ready),
    Step("wait-ssh-ready", "Waiting for SSH", wait_ssh_ready),
    Step("configure-swap", "Configuring swap", configure_swap, _swap_active),
    Step("update-packages", "Updating system packages", update_packages),
    Step("install-runtime", "Installing Node.js runtime", install_runtime, _node_installed),
    Step("install-package-manager", "Installing pnpm", install_package_manager, _pnpm_installed),
    Step("install-browser-dependency", "Installing Google Chrome", install_browser, _chrome_installed),
    Step("install-application", "Installing OpenClaw", install_application, _app_installed),
    Step("write-application-config", "Writing OpenClaw configuration", write_app_config, _app_config_written),
    Step("install-overlay-network-agent", "Installing Tailscale", install_overlay_agent, _tailscale_installed),
    Step("authenticate-overlay-network", "Authenticating Tailscale", authenticate_overlay, _overlay_authenticated),
    Step("expose-service", "Exposing gateway over Tailscale", expose_service, _service_exposed),
    Step("verify-daemon", "Verifying OpenClaw daemon", verify_daemon_step, _daemon_active),
]
