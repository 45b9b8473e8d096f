"""NAT gateway pool: placement, provisioning, and per-gateway bot counters."""

from __future__ import annotations

import logging

from .cloud_init import generate_nat_gateway_cloud_init
from .db_models import NatGateway, utcnow
from .hetzner import HetznerClient, SSHKey, get_cloud_client
from .network import (
    SERVICE_LABEL,
    attach_server_to_infrastructure,
    get_or_create_network,
)
from .settings import get_setting, get_setting_int
from .storage import nat_gateway_store

logger = logging.getLogger(__name__)

FIRST_GATEWAY_IP = "10.0.0.254"
DEFAULT_ROUTE = "0.0.0.0/0"


class NatGatewayError(RuntimeError):
    pass


def gateway_ip_for(number: int) -> str:
    """Private IP of gateway ``gw-<number>``: 10.0.0.254, 10.0.1.254, ..."""
    if number == 1:
        return FIRST_GATEWAY_IP
    return f"10.0.{number - 1}.254"


async def _resolve_ssh_key(client: HetznerClient) -> SSHKey:
    public_key = get_setting("cloud.ssh_public_key")
    name = get_setting("cloud.ssh_key_name")
    if public_key:
        return await client.get_or_create_ssh_key(name, public_key)

    existing = await client.get_ssh_key_by_name(name)
    if existing:
        return existing
    keys = await client.list_ssh_keys()
    if keys:
        return keys[0]
    raise NatGatewayError("No SSH key found for NAT gateway provisioning")


async def provision_nat_gateway(
    name: str, private_ip: str, *, client: HetznerClient | None = None
) -> NatGateway:
    """Create, attach, and route a gateway VM.

    On any error the row is marked failed and a VM already created is deleted.
    """
    client = client or get_cloud_client()
    logger.info(f"Provisioning NAT gateway {name} at {private_ip}")

    gateway = nat_gateway_store.create(
        NatGateway(
            name=name,
            private_ip=private_ip,
            cloud_server_id="pending",
            status="provisioning",
            max_bots=get_setting_int("nat.max_bots", fallback=100),
        )
    )

    server_id = None
    try:
        ssh_key = await _resolve_ssh_key(client)
        result = await client.create_server(
            name=f"{SERVICE_LABEL}-nat-{name}",
            server_type=get_setting("nat.server_type"),
            image=get_setting("cloud.image"),
            location=get_setting("cloud.location"),
            ssh_keys=[ssh_key.id],
            labels={"service": SERVICE_LABEL, "role": "nat-gateway", "gateway_name": name},
            user_data=generate_nat_gateway_cloud_init(),
        )
        server_id = result.server.id
        nat_gateway_store.update(gateway.id, cloud_server_id=str(server_id))
        logger.info(f"NAT gateway server {server_id} created, waiting for action {result.action.id}")
        await client.wait_for_action(result.action.id)
        running = await client.wait_for_server_running(server_id)
        public_ip = running.public_ipv4
        logger.info(f"NAT gateway server {server_id} running at public IP {public_ip}")

        await attach_server_to_infrastructure(server_id, ip=private_ip, client=client)

        network = await get_or_create_network(client)
        if not any(route.destination == DEFAULT_ROUTE for route in network.routes):
            logger.info(f"Adding default route via {private_ip} to network {network.id}")
            action = await client.add_network_route(network.id, DEFAULT_ROUTE, private_ip)
            await client.wait_for_action(action.id)

        updated = nat_gateway_store.update(
            gateway.id,
            public_ip=public_ip,
            status="active",
            health_status="healthy",
            last_health_check_at=utcnow(),
        )
    except Exception:
        logger.exception(f"NAT gateway {name} provisioning failed")
        nat_gateway_store.update(gateway.id, status="failed")
        if server_id is not None:
            try:
                await client.delete_server(server_id)
                logger.info(f"Deleted server {server_id} of failed NAT gateway {name}")
            except Exception as e:
                logger.error(f"Failed to delete server {server_id} of NAT gateway {name}: {e}")
        raise

    logger.info(f"NAT gateway {name} provisioned")
    return updated


def get_active_nat_gateway() -> NatGateway | None:
    """Least-loaded active gateway that still has capacity, or None."""
    return nat_gateway_store.least_loaded_available()


async def ensure_nat_gateway(*, client: HetznerClient | None = None) -> NatGateway:
    existing = get_active_nat_gateway()
    if existing:
        return existing

    number = nat_gateway_store.count() + 1
    return await provision_nat_gateway(f"gw-{number}", gateway_ip_for(number), client=client)


def get_nat_gateway_by_id(gateway_id: str) -> NatGateway | None:
    return nat_gateway_store.get(gateway_id)


def increment_bot_count(gateway_id: str) -> bool:
    changed = nat_gateway_store.increment_bot_count(gateway_id)
    if not changed:
        logger.warning(f"NAT gateway {gateway_id} is full or missing, bot count unchanged")
    return changed


def decrement_bot_count(gateway_id: str) -> bool:
    return nat_gateway_store.decrement_bot_count(gateway_id)


def cleanup_failed_gateways() -> list[NatGateway]:
    removed = nat_gateway_store.delete_unusable()
    for gateway in removed:
        logger.info(f"Deleted NAT gateway record {gateway.name} ({gateway.status})")
    return removed
