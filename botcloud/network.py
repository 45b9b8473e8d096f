"""Shared private network and firewall for bot VMs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .hetzner import CloudFirewall, CloudNetwork, HetznerAPIError, HetznerClient, get_cloud_client

logger = logging.getLogger(__name__)

NETWORK_NAME = "botcloud-private"
NETWORK_IP_RANGE = "10.0.0.0/16"
# One subnet over the whole range so gateway IPs like 10.0.1.254 are attachable
SUBNET_IP_RANGE = "10.0.0.0/16"
NETWORK_ZONE = "eu-central"
FIREWALL_NAME = "botcloud-bots"
SERVICE_LABEL = "botcloud"

BACKEND_PRIVATE_IP = "10.0.0.2"
BACKEND_HOSTNAME = "botcloud-backend.internal"
CONFIG_API_PORT = 8443

FIREWALL_RULES = [
    {
        "description": "Allow SSH",
        "direction": "in",
        "source_ips": ["0.0.0.0/0", "::/0"],
        "protocol": "tcp",
        "port": "22",
    },
    {
        "description": "Allow ping from private network",
        "direction": "in",
        "source_ips": [NETWORK_IP_RANGE],
        "protocol": "icmp",
    },
    {
        "description": "Allow private network traffic",
        "direction": "in",
        "source_ips": [NETWORK_IP_RANGE],
        "protocol": "tcp",
        "port": "1-65535",
    },
]

T = TypeVar("T")


class NetworkAttachError(RuntimeError):
    pass


@dataclass
class NetworkInfrastructure:
    network: CloudNetwork
    firewall: CloudFirewall


async def _get_or_create(
    kind: str,
    lookup: Callable[[], Awaitable[T | None]],
    create: Callable[[], Awaitable[T]],
) -> T:
    """Look up by name, create if missing.

    Two callers can both miss the lookup. The provider enforces unique names,
    so the loser gets uniqueness_error and re-reads the winner's resource.
    """
    existing = await lookup()
    if existing is not None:
        return existing

    logger.info(f"Creating {kind}")
    try:
        return await create()
    except HetznerAPIError as e:
        if e.code != "uniqueness_error" and e.status_code != 409:
            raise
        logger.info(f"{kind} was created concurrently, re-reading it")
        existing = await lookup()
        if existing is None:
            raise
        return existing


async def get_or_create_network(client: HetznerClient | None = None) -> CloudNetwork:
    client = client or get_cloud_client()
    network = await _get_or_create(
        f"network {NETWORK_NAME}",
        lambda: client.get_network_by_name(NETWORK_NAME),
        lambda: client.create_network(
            name=NETWORK_NAME,
            ip_range=NETWORK_IP_RANGE,
            labels={"service": SERVICE_LABEL},
            subnets=[
                {"type": "cloud", "ip_range": SUBNET_IP_RANGE, "network_zone": NETWORK_ZONE}
            ],
        ),
    )
    logger.debug(f"Using network {network.name} ({network.id})")
    return network


async def get_or_create_firewall(client: HetznerClient | None = None) -> CloudFirewall:
    client = client or get_cloud_client()
    firewall = await _get_or_create(
        f"firewall {FIREWALL_NAME}",
        lambda: client.get_firewall_by_name(FIREWALL_NAME),
        lambda: client.create_firewall(
            name=FIREWALL_NAME, rules=FIREWALL_RULES, labels={"service": SERVICE_LABEL}
        ),
    )
    logger.debug(f"Using firewall {firewall.name} ({firewall.id})")
    return firewall


async def get_or_create_network_infrastructure(
    client: HetznerClient | None = None,
) -> NetworkInfrastructure:
    client = client or get_cloud_client()
    network = await get_or_create_network(client)
    firewall = await get_or_create_firewall(client)
    return NetworkInfrastructure(network=network, firewall=firewall)


async def attach_server_to_infrastructure(
    server_id: int,
    *,
    skip_firewall: bool = False,
    ip: str | None = None,
    client: HetznerClient | None = None,
) -> str:
    """Attach a server to the private network (and firewall). Returns its private IP."""
    client = client or get_cloud_client()
    infra = await get_or_create_network_infrastructure(client)

    action = await client.attach_server_to_network(server_id, infra.network.id, ip=ip)
    await client.wait_for_action(action.id)
    logger.info(f"Server {server_id} attached to network {infra.network.id}")

    if not skip_firewall:
        actions = await client.apply_firewall_to_server(infra.firewall.id, server_id)
        if actions:
            await client.wait_for_action(actions[0].id)
        logger.info(f"Firewall {infra.firewall.id} applied to server {server_id}")

    server = await client.get_server(server_id)
    private_ip = server.private_ip_on(infra.network.id)
    if not private_ip:
        raise NetworkAttachError(f"Server {server_id} not found in network {infra.network.id}")

    logger.info(f"Server {server_id} assigned private IP {private_ip}")
    return private_ip
