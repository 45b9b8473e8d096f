"""Async client for the Hetzner Cloud API.

Only the endpoints the control plane needs are wrapped: servers, SSH keys,
networks, firewalls and actions. Mutating calls return an action that has to
be polled with wait_for_action() before the change is guaranteed visible.

Environment / settings:
- HETZNER_API_TOKEN (cloud.api_token): project API token
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
from pydantic import BaseModel, Field

from .settings import get_setting

logger = logging.getLogger(__name__)

HETZNER_API_BASE = "https://api.hetzner.cloud/v1"

DEFAULT_ACTION_TIMEOUT = 300.0
DEFAULT_ACTION_INTERVAL = 2.0
DEFAULT_RUNNING_TIMEOUT = 300.0
DEFAULT_RUNNING_INTERVAL = 3.0


class HetznerAPIError(RuntimeError):
    """Non-2xx response from the cloud API."""

    def __init__(self, message: str, code: str = "unknown", status_code: int = 0):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class ActionFailedError(RuntimeError):
    def __init__(self, message: str, code: str = "unknown"):
        super().__init__(f"Action failed: {message}")
        self.code = code


class CloudTimeoutError(TimeoutError):
    pass


class CloudConfigError(RuntimeError):
    pass


# ── Response models ──────────────────────────────────────────────────────────


class IPAddress(BaseModel):
    ip: str


class PublicNet(BaseModel):
    ipv4: IPAddress | None = None
    ipv6: IPAddress | None = None


class PrivateNet(BaseModel):
    network: int
    ip: str
    alias_ips: list[str] = Field(default_factory=list)
    mac_address: str = ""


class CloudServer(BaseModel):
    id: int
    name: str
    status: str
    public_net: PublicNet = Field(default_factory=PublicNet)
    private_net: list[PrivateNet] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    created: str | None = None

    @property
    def public_ipv4(self) -> str | None:
        return self.public_net.ipv4.ip if self.public_net.ipv4 else None

    def private_ip_on(self, network_id: int) -> str | None:
        for net in self.private_net:
            if net.network == network_id:
                return net.ip
        return None


class ActionError(BaseModel):
    code: str = "unknown"
    message: str = "Unknown error"


class CloudAction(BaseModel):
    id: int
    command: str = ""
    status: str  # running | success | error
    progress: int = 0
    started: str | None = None
    finished: str | None = None
    error: ActionError | None = None


class SSHKey(BaseModel):
    id: int
    name: str
    fingerprint: str = ""
    public_key: str
    labels: dict[str, str] = Field(default_factory=dict)


class NetworkRoute(BaseModel):
    destination: str
    gateway: str


class Subnet(BaseModel):
    type: str
    ip_range: str
    network_zone: str
    gateway: str | None = None


class CloudNetwork(BaseModel):
    id: int
    name: str
    ip_range: str
    subnets: list[Subnet] = Field(default_factory=list)
    routes: list[NetworkRoute] = Field(default_factory=list)
    servers: list[int] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)


class FirewallRule(BaseModel):
    direction: str
    protocol: str
    port: str | None = None
    source_ips: list[str] = Field(default_factory=list)
    destination_ips: list[str] = Field(default_factory=list)
    description: str | None = None


class CloudFirewall(BaseModel):
    id: int
    name: str
    rules: list[FirewallRule] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)


class CreateServerResult(BaseModel):
    server: CloudServer
    action: CloudAction
    root_password: str | None = None


def _public_key_body(public_key: str) -> str:
    """Key type and material without the trailing comment."""
    return " ".join(public_key.strip().split()[:2])


# ── Client ───────────────────────────────────────────────────────────────────


class HetznerClient:
    """Thin typed wrapper over the Hetzner Cloud REST API. No automatic retries."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = HETZNER_API_BASE,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = token
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        ) as client:
            resp = await client.request(method, path, headers=headers, json=json_body, params=params)

        if resp.status_code == 204 or not resp.content:
            data: dict[str, Any] = {}
        else:
            try:
                data = resp.json()
            except ValueError:
                data = {}

        if resp.status_code >= 400:
            err = data.get("error") or {}
            raise HetznerAPIError(
                err.get("message") or f"Hetzner API error (HTTP {resp.status_code})",
                code=err.get("code") or "unknown",
                status_code=resp.status_code,
            )
        return data

    # servers

    async def create_server(
        self,
        *,
        name: str,
        server_type: str,
        image: str,
        location: str | None = None,
        ssh_keys: list[int | str] | None = None,
        labels: dict[str, str] | None = None,
        user_data: str | None = None,
        start_after_create: bool = True,
        public_net: dict[str, bool] | None = None,
        networks: list[int] | None = None,
    ) -> CreateServerResult:
        body: dict[str, Any] = {
            "name": name,
            "server_type": server_type,
            "image": image,
            "start_after_create": start_after_create,
        }
        optional = {
            "location": location,
            "ssh_keys": ssh_keys,
            "labels": labels,
            "user_data": user_data,
            "public_net": public_net,
            "networks": networks,
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        data = await self._request("POST", "/servers", json_body=body)
        return CreateServerResult.model_validate(data)

    async def get_server(self, server_id: int) -> CloudServer:
        data = await self._request("GET", f"/servers/{server_id}")
        return CloudServer.model_validate(data["server"])

    async def delete_server(self, server_id: int) -> CloudAction:
        data = await self._request("DELETE", f"/servers/{server_id}")
        return CloudAction.model_validate(data["action"])

    async def list_servers(
        self, *, label_selector: str | None = None, name: str | None = None
    ) -> list[CloudServer]:
        params = {}
        if label_selector:
            params["label_selector"] = label_selector
        if name:
            params["name"] = name
        data = await self._request("GET", "/servers", params=params or None)
        return [CloudServer.model_validate(s) for s in data.get("servers", [])]

    async def _server_action(self, server_id: int, action: str, body: dict | None = None) -> CloudAction:
        data = await self._request("POST", f"/servers/{server_id}/actions/{action}", json_body=body)
        return CloudAction.model_validate(data["action"])

    async def power_on_server(self, server_id: int) -> CloudAction:
        return await self._server_action(server_id, "poweron")

    async def power_off_server(self, server_id: int) -> CloudAction:
        return await self._server_action(server_id, "poweroff")

    async def reboot_server(self, server_id: int) -> CloudAction:
        return await self._server_action(server_id, "reboot")

    # ssh keys

    async def create_ssh_key(
        self, name: str, public_key: str, labels: dict[str, str] | None = None
    ) -> SSHKey:
        body: dict[str, Any] = {"name": name, "public_key": public_key}
        if labels:
            body["labels"] = labels
        data = await self._request("POST", "/ssh_keys", json_body=body)
        return SSHKey.model_validate(data["ssh_key"])

    async def get_ssh_key(self, key_id: int) -> SSHKey:
        data = await self._request("GET", f"/ssh_keys/{key_id}")
        return SSHKey.model_validate(data["ssh_key"])

    async def get_ssh_key_by_name(self, name: str) -> SSHKey | None:
        data = await self._request("GET", "/ssh_keys", params={"name": name})
        for key in data.get("ssh_keys", []):
            if key.get("name") == name:
                return SSHKey.model_validate(key)
        return None

    async def list_ssh_keys(self) -> list[SSHKey]:
        data = await self._request("GET", "/ssh_keys")
        return [SSHKey.model_validate(k) for k in data.get("ssh_keys", [])]

    async def delete_ssh_key(self, key_id: int) -> None:
        await self._request("DELETE", f"/ssh_keys/{key_id}")

    async def get_or_create_ssh_key(self, name: str, public_key: str) -> SSHKey:
        """Reuse a key with the same name or the same key material, else upload it.

        The provider rejects duplicate public keys under a different name, so a
        match on material (comment ignored) is returned as-is.
        """
        existing = await self.get_ssh_key_by_name(name)
        if existing:
            return existing

        wanted = _public_key_body(public_key)
        for key in await self.list_ssh_keys():
            if _public_key_body(key.public_key) == wanted:
                logger.info(f"Reusing SSH key {key.name} ({key.id}) with matching key material")
                return key

        logger.info(f"Uploading SSH key {name}")
        return await self.create_ssh_key(name, public_key)

    # networks

    async def create_network(
        self,
        *,
        name: str,
        ip_range: str,
        subnets: list[dict[str, str]] | None = None,
        labels: dict[str, str] | None = None,
    ) -> CloudNetwork:
        body: dict[str, Any] = {"name": name, "ip_range": ip_range}
        if subnets:
            body["subnets"] = subnets
        if labels:
            body["labels"] = labels
        data = await self._request("POST", "/networks", json_body=body)
        return CloudNetwork.model_validate(data["network"])

    async def get_network(self, network_id: int) -> CloudNetwork:
        data = await self._request("GET", f"/networks/{network_id}")
        return CloudNetwork.model_validate(data["network"])

    async def get_network_by_name(self, name: str) -> CloudNetwork | None:
        data = await self._request("GET", "/networks", params={"name": name})
        for net in data.get("networks", []):
            if net.get("name") == name:
                return CloudNetwork.model_validate(net)
        return None

    async def delete_network(self, network_id: int) -> None:
        await self._request("DELETE", f"/networks/{network_id}")

    async def attach_server_to_network(
        self, server_id: int, network_id: int, ip: str | None = None
    ) -> CloudAction:
        body: dict[str, Any] = {"network": network_id}
        if ip:
            body["ip"] = ip
        return await self._server_action(server_id, "attach_to_network", body)

    async def detach_server_from_network(self, server_id: int, network_id: int) -> CloudAction:
        return await self._server_action(server_id, "detach_from_network", {"network": network_id})

    async def add_network_route(self, network_id: int, destination: str, gateway: str) -> CloudAction:
        data = await self._request(
            "POST",
            f"/networks/{network_id}/actions/add_route",
            json_body={"destination": destination, "gateway": gateway},
        )
        return CloudAction.model_validate(data["action"])

    async def delete_network_route(
        self, network_id: int, destination: str, gateway: str
    ) -> CloudAction:
        data = await self._request(
            "POST",
            f"/networks/{network_id}/actions/delete_route",
            json_body={"destination": destination, "gateway": gateway},
        )
        return CloudAction.model_validate(data["action"])

    # firewalls

    async def create_firewall(
        self,
        *,
        name: str,
        rules: list[dict[str, Any]],
        labels: dict[str, str] | None = None,
    ) -> CloudFirewall:
        body: dict[str, Any] = {"name": name, "rules": rules}
        if labels:
            body["labels"] = labels
        data = await self._request("POST", "/firewalls", json_body=body)
        return CloudFirewall.model_validate(data["firewall"])

    async def get_firewall(self, firewall_id: int) -> CloudFirewall:
        data = await self._request("GET", f"/firewalls/{firewall_id}")
        return CloudFirewall.model_validate(data["firewall"])

    async def get_firewall_by_name(self, name: str) -> CloudFirewall | None:
        data = await self._request("GET", "/firewalls", params={"name": name})
        for fw in data.get("firewalls", []):
            if fw.get("name") == name:
                return CloudFirewall.model_validate(fw)
        return None

    async def delete_firewall(self, firewall_id: int) -> None:
        await self._request("DELETE", f"/firewalls/{firewall_id}")

    async def apply_firewall_to_server(self, firewall_id: int, server_id: int) -> list[CloudAction]:
        data = await self._request(
            "POST",
            f"/firewalls/{firewall_id}/actions/apply_to_resources",
            json_body={"apply_to": [{"type": "server", "server": {"id": server_id}}]},
        )
        return [CloudAction.model_validate(a) for a in data.get("actions", [])]

    # actions

    async def get_action(self, action_id: int) -> CloudAction:
        data = await self._request("GET", f"/actions/{action_id}")
        return CloudAction.model_validate(data["action"])

    async def wait_for_action(
        self,
        action_id: int,
        *,
        timeout: float = DEFAULT_ACTION_TIMEOUT,
        interval: float = DEFAULT_ACTION_INTERVAL,
    ) -> CloudAction:
        deadline = time.monotonic() + timeout
        while True:
            action = await self.get_action(action_id)
            if action.status == "success":
                return action
            if action.status == "error":
                err = action.error or ActionError()
                raise ActionFailedError(err.message, code=err.code)
            if time.monotonic() >= deadline:
                raise CloudTimeoutError(f"Timeout waiting for action {action_id} to complete")
            await asyncio.sleep(interval)

    async def wait_for_server_running(
        self,
        server_id: int,
        *,
        timeout: float = DEFAULT_RUNNING_TIMEOUT,
        interval: float = DEFAULT_RUNNING_INTERVAL,
    ) -> CloudServer:
        """Poll until the server is running.

        A server observed as ``off`` gets exactly one power-on attempt; a
        failing power-on is logged and polling continues. ``unknown`` is fatal.
        """
        deadline = time.monotonic() + timeout
        powered_on = False
        while True:
            server = await self.get_server(server_id)
            if server.status == "running":
                return server
            if server.status == "unknown":
                raise HetznerAPIError(
                    f"Server {server_id} entered unexpected status: unknown", code="unknown_status"
                )
            if server.status == "off" and not powered_on:
                powered_on = True
                logger.info(f"Server {server_id} is off, attempting to power on")
                try:
                    await self.power_on_server(server_id)
                except HetznerAPIError as e:
                    logger.warning(f"Failed to power on server {server_id}: {e}")
            if time.monotonic() >= deadline:
                raise CloudTimeoutError(f"Timeout waiting for server {server_id} to start")
            await asyncio.sleep(interval)


_client: HetznerClient | None = None


def get_cloud_client() -> HetznerClient:
    """Process-wide client built lazily from the cloud.api_token setting."""
    global _client
    if _client is None:
        token = get_setting("cloud.api_token")
        if not token:
            raise CloudConfigError("HETZNER_API_TOKEN is not set")
        _client = HetznerClient(token)
    return _client


def reset_cloud_client() -> None:
    global _client
    _client = None
