"""Deployment configuration: on-disk layout, validation, create/fork/delete."""

import dataclasses
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone

import yaml

from clawcontrol.errors import ValidationError
from clawcontrol.provisioning.keys import (
    PRIVATE_KEY_NAME,
    PUBLIC_KEY_NAME,
    generate_key_pair,
    load_key_pair,
    save_key_pair,
)

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("hetzner",)
MAX_NAME_LENGTH = 63
# RFC 1123 label, required by Hetzner server names
_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


# ── Paths ─────────────────────────────────────────────────────────


def get_home_dir() -> str:
    """Root directory for all clawcontrol data ($CLAWCONTROL_HOME or ~/.clawcontrol)."""
    return os.path.expanduser(os.environ.get("CLAWCONTROL_HOME") or "~/.clawcontrol")


def get_deployments_dir() -> str:
    return os.path.join(get_home_dir(), "deployments")


def get_deployment_dir(name: str) -> str:
    return os.path.join(get_deployments_dir(), name)


def get_config_path(name: str) -> str:
    return os.path.join(get_deployment_dir(name), "config.yaml")


def get_state_path(name: str) -> str:
    return os.path.join(get_deployment_dir(name), "state.json")


def get_ssh_dir(name: str) -> str:
    return os.path.join(get_deployment_dir(name), "ssh")


def get_ssh_key_path(name: str) -> str:
    return os.path.join(get_ssh_dir(name), PRIVATE_KEY_NAME)


def get_ssh_pub_key_path(name: str) -> str:
    return os.path.join(get_ssh_dir(name), PUBLIC_KEY_NAME)


# ── Config record ─────────────────────────────────────────────────


@dataclass(frozen=True)
class DeploymentConfig:
    """Immutable deployment definition. Edits go through fork_deployment()."""

    name: str
    provider: str = "hetzner"
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    provider_params: dict = field(default_factory=dict)
    app_config: dict | None = None

    @classmethod
    def from_dict(cls, d) -> "DeploymentConfig":
        """Build a config from a parsed YAML mapping, raising ValidationError on bad shape."""
        if not isinstance(d, dict):
            raise ValidationError("Deployment config must be a mapping")
        if not isinstance(d.get("name"), str):
            raise ValidationError("Deployment config is missing 'name'")
        provider_params = d.get("provider_params") or {}
        if not isinstance(provider_params, dict):
            raise ValidationError("'provider_params' must be a mapping")
        app_config = d.get("app_config")
        if app_config is not None and not isinstance(app_config, dict):
            raise ValidationError("'app_config' must be a mapping")
        config = cls(
            name=d["name"],
            provider=d.get("provider", "hetzner"),
            created_at=str(d.get("created_at") or datetime.now(timezone.utc).isoformat()),
            provider_params=provider_params,
            app_config=app_config,
        )
        if config.provider not in SUPPORTED_PROVIDERS:
            raise ValidationError(f"Unknown provider '{config.provider}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}")
        return config

    def to_dict(self) -> dict:
        d = dataclasses.asdict(self)
        if d["app_config"] is None:
            del d["app_config"]
        return d


def validate_deployment_name(name: str, check_exists=True) -> None:
    """Raise ValidationError unless *name* is a usable, unused deployment name."""
    if not name or not name.strip():
        raise ValidationError("Deployment name cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Deployment name must be {MAX_NAME_LENGTH} characters or less")
    if not _NAME_PATTERN.match(name):
        raise ValidationError(
            "Deployment name must contain only lowercase letters, numbers, and hyphens, "
            "and must start and end with a letter or number"
        )
    if check_exists and deployment_exists(name):
        raise ValidationError(f"Deployment '{name}' already exists")


# ── CRUD ──────────────────────────────────────────────────────────


def deployment_exists(name: str) -> bool:
    return os.path.exists(get_config_path(name))


def list_deployments() -> list[str]:
    """Names of all deployments that have a config file, sorted."""
    root = get_deployments_dir()
    if not os.path.isdir(root):
        return []
    return sorted(n for n in os.listdir(root) if os.path.isfile(get_config_path(n)))


def create_deployment(config: DeploymentConfig) -> DeploymentConfig:
    """Validate, then lay out the deployment directory with keys and initial state."""
    from clawcontrol.deploy.state import DeploymentState, write_state

    validate_deployment_name(config.name)
    # Round-trip through from_dict so bad providers/params fail before anything is written
    config = DeploymentConfig.from_dict(config.to_dict())

    os.makedirs(get_deployment_dir(config.name))
    with open(get_config_path(config.name), "w") as f:
        yaml.safe_dump(config.to_dict(), f, sort_keys=False)

    save_key_pair(get_ssh_dir(config.name), generate_key_pair(f"clawcontrol-{config.name}"))
    write_state(config.name, DeploymentState())

    logger.info(f"Created deployment '{config.name}' ({config.provider}).")
    return config


def read_deployment_config(name: str) -> DeploymentConfig:
    path = get_config_path(name)
    if not os.path.exists(path):
        raise ValidationError(f"Deployment '{name}' not found")
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValidationError(f"Error parsing config for '{name}': {e}") from e
    return DeploymentConfig.from_dict(raw)


def fork_deployment(source: str, new_name: str, **changes) -> DeploymentConfig:
    """Create *new_name* from *source*'s config with *changes* applied.

    The fork gets its own key pair and a fresh state; *source* is untouched.
    """
    base = read_deployment_config(source)
    changes.pop("created_at", None)
    forked = dataclasses.replace(
        base,
        name=new_name,
        created_at=datetime.now(timezone.utc).isoformat(),
        **changes,
    )
    return create_deployment(forked)


def delete_deployment(name: str) -> None:
    """Remove the deployment directory (config, state and keys)."""
    path = get_deployment_dir(name)
    if not os.path.exists(path):
        raise ValidationError(f"Deployment '{name}' not found")
    shutil.rmtree(path)
    logger.info(f"Deleted deployment '{name}'.")


def load_deployment_keys(name: str):
    """Return the deployment's SSHKeyPair, raising ValidationError if absent."""
    key_pair = load_key_pair(get_ssh_dir(name))
    if key_pair is None:
        raise ValidationError(f"No SSH keys found for deployment '{name}'")
    return key_pair


def resolve_api_key(config: DeploymentConfig) -> str:
    """Return the provider credential from provider_params or the environment."""
    api_key = config.provider_params.get("api_key") or os.environ.get("HETZNER_API_TOKEN")
    if not api_key:
        raise ValidationError("Hetzner API token required. Set provider_params.api_key or HETZNER_API_TOKEN.")
    return api_key


def deep_merge(base, override):
    """Recursive dict merge. Override wins for scalars."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result
