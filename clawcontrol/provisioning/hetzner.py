"""Hetzner Cloud provider: servers, SSH keys and actions via the REST API."""

import logging

import httpx

from clawcontrol.errors import ProviderAPIError
from clawcontrol.provisioning.gateway import (
    CreatedInstance,
    InstanceInfo,
    InstanceSpec,
    ProviderGateway,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.hetzner.cloud/v1"
DEFAULT_SERVER_TYPE = "cpx11"
DEFAULT_LOCATION = "nbg1"
DEFAULT_IMAGE = "ubuntu-24.04"
REQUEST_TIMEOUT = 60


def _key_body(public_key: str) -> str:
    """``type base64`` part of an authorized_keys line (comment dropped)."""
    return " ".join(public_key.strip().split()[:2])


def _server_info(server: dict) -> InstanceInfo:
    ipv4 = ((server.get("public_net") or {}).get("ipv4") or {}).get("ip")
    return InstanceInfo(
        instance_id=str(server["id"]),
        status=server.get("status", ""),
        public_ip=ipv4,
        name=server.get("name"),
    )


class HetznerGateway(ProviderGateway):
    """Hetzner Cloud gateway.

    Args:
        api_key: project API token, sent as a bearer credential.
        transport: optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    name = "hetzner"
    RUNNING_STATE = "running"
    TERMINAL_STATES = frozenset({"off", "deleting"})
    OPERATION_SUCCESS = "success"
    OPERATION_ERROR = "error"

    def __init__(self, api_key, api_url=DEFAULT_API_URL, transport=None):
        self.api_key = api_key
        self.api_url = api_url
        self._transport = transport

    # ── API helpers ──────────────────────────────────────────────

    async def _api_request(self, method, path, data=None, params=None) -> dict:
        """Make an authenticated request; map error bodies to ProviderAPIError."""
        url = f"{self.api_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=REQUEST_TIMEOUT) as client:
                resp = await client.request(method, url, json=data, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderAPIError("network_error", f"{method} {path}: {e}") from e

        if resp.status_code == 204 or not resp.content:
            body = {}
        else:
            try:
                body = resp.json()
            except ValueError:
                body = {}

        if resp.is_error:
            error = body.get("error") or {}
            raise ProviderAPIError(
                error.get("code", "unknown"),
                error.get("message", f"Hetzner API returned HTTP {resp.status_code}"),
                status_code=resp.status_code,
            )
        return body

    # ── SSH keys ─────────────────────────────────────────────────

    async def list_ssh_keys(self) -> list[dict]:
        return (await self._api_request("GET", "/ssh_keys")).get("ssh_keys", [])

    async def ensure_ssh_key(self, name, public_key) -> str:
        """Reuse a key with the same content, else register it as *name*.

        Key names are unique per project, so a stale key left under *name*
        by an earlier deployment of the same name is replaced.
        """
        wanted = _key_body(public_key)
        keys = await self.list_ssh_keys()
        for key in keys:
            if _key_body(key.get("public_key", "")) == wanted:
                logger.info(f"SSH key already registered (id={key['id']}).")
                return str(key["id"])

        for key in keys:
            if key.get("name") == name:
                logger.info(f"Replacing stale SSH key '{name}' (id={key['id']}).")
                await self._api_request("DELETE", f"/ssh_keys/{key['id']}")

        logger.info(f"Registering SSH key '{name}' on Hetzner...")
        result = await self._api_request("POST", "/ssh_keys", {"name": name, "public_key": public_key.strip()})
        key_id = str(result["ssh_key"]["id"])
        logger.info(f"SSH key registered (id={key_id}).")
        return key_id

    async def delete_ssh_key(self, name) -> bool:
        result = await self._api_request("GET", "/ssh_keys", params={"name": name})
        keys = result.get("ssh_keys", [])
        for key in keys:
            await self._api_request("DELETE", f"/ssh_keys/{key['id']}")
            logger.info(f"SSH key '{name}' deleted (id={key['id']}).")
        return bool(keys)

    # ── Servers ──────────────────────────────────────────────────

    async def create_instance(self, spec: InstanceSpec) -> CreatedInstance:
        data = {
            "name": spec.name,
            "server_type": spec.server_type,
            "image": spec.image,
            "location": spec.location,
            "ssh_keys": [int(k) if str(k).isdigit() else k for k in spec.ssh_key_ids],
            "start_after_create": True,
        }
        if spec.labels:
            data["labels"] = spec.labels
        result = await self._api_request("POST", "/servers", data)
        server = result["server"]
        action = result.get("action") or {}
        info = _server_info(server)
        logger.info(f"Server requested (id={info.instance_id}, action={action.get('id')}).")
        return CreatedInstance(
            instance_id=info.instance_id,
            operation_id=str(action["id"]) if action.get("id") is not None else None,
            public_ip=info.public_ip,
        )

    async def get_instance(self, instance_id) -> InstanceInfo | None:
        try:
            result = await self._api_request("GET", f"/servers/{instance_id}")
        except ProviderAPIError as e:
            if e.code == "not_found":
                return None
            raise
        return _server_info(result["server"])

    async def find_instance(self, name) -> InstanceInfo | None:
        result = await self._api_request("GET", "/servers", params={"name": name})
        servers = result.get("servers", [])
        return _server_info(servers[0]) if servers else None

    async def delete_instance(self, instance_id) -> None:
        logger.info(f"Deleting Hetzner server '{instance_id}'...")
        await self._api_request("DELETE", f"/servers/{instance_id}")

    # ── Actions ──────────────────────────────────────────────────

    async def get_operation(self, operation_id) -> str:
        result = await self._api_request("GET", f"/actions/{operation_id}")
        return result["action"]["status"]

    # ── Validation ───────────────────────────────────────────────

    async def validate_credentials(self) -> bool:
        """True if the token works, False if Hetzner answers ``unauthorized``."""
        try:
            await self._api_request("GET", "/servers")
            return True
        except ProviderAPIError as e:
            if e.is_unauthorized:
                return False
            raise
