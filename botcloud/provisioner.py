"""Bot VM lifecycle: provision, deprovision, stop, restart.

provision_bot() is the create path of the state machine

    starting -> running | failed

Every step that can fail is named, so a failure log says where the run
stopped. Public functions return result objects instead of raising.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from . import litellm
from .ca import generate_bot_certificate_from_ca
from .cloud_init import CloudInitOptions, generate_cloud_init_with_certs
from .db_models import BotInstance, NatGateway
from .encryption import decrypt, encrypt
from .hetzner import CloudServer, HetznerAPIError, HetznerClient, get_cloud_client
from .nat_gateway import (
    NatGatewayError,
    decrement_bot_count,
    ensure_nat_gateway,
    increment_bot_count,
)
from .network import SERVICE_LABEL, attach_server_to_infrastructure
from .settings import get_setting, get_setting_bool, get_setting_int
from .storage import bot_store

logger = logging.getLogger(__name__)

RESTART_TIMEOUT = 60.0
RESTART_INTERVAL = 2.0


class ProvisionStateError(RuntimeError):
    """The bot is not in a state that allows the requested transition."""


class BotNotFoundError(LookupError):
    pass


@dataclass
class ProvisionResult:
    success: bool
    server_id: int | None = None
    server_ip: str | None = None
    private_ip: str | None = None
    error: str | None = None
    # not_found | invalid_state | failed
    error_code: str | None = None


@dataclass
class LifecycleResult:
    success: bool
    error: str | None = None
    # False when a restart was issued but the server did not report running in time
    settled: bool = True


def server_name_for(bot_id: str) -> str:
    return f"{SERVICE_LABEL}-{bot_id[:8]}"


def claim_for_provisioning(bot_id: str) -> BotInstance:
    """Atomically take ownership of a bot in ``starting`` for one provisioning run.

    A bot that already has a server, or that another run has claimed, is
    rejected.
    """
    if not bot_store.claim_for_provisioning(bot_id):
        bot = bot_store.get(bot_id)
        if bot is None:
            raise BotNotFoundError(f"Bot {bot_id} not found")
        if bot.status != "starting":
            raise ProvisionStateError(f"Bot is not in starting state (current: {bot.status})")
        if bot.cloud_server_id:
            raise ProvisionStateError(f"Bot already has server {bot.cloud_server_id}")
        raise ProvisionStateError("Bot is already being provisioned")
    return bot_store.get(bot_id)


async def _cleanup_failed_server(client: HetznerClient, server_id: int | None) -> None:
    if server_id is None:
        return
    try:
        await client.delete_server(server_id)
        logger.info(f"Cleaned up failed server {server_id}")
    except Exception as e:
        logger.error(f"Failed to clean up server {server_id}: {e}")


async def _cleanup_proxy_key(bot_id: str, key: str | None) -> None:
    if not key:
        return
    try:
        await litellm.delete_bot_key(key)
        logger.info(f"Deleted LiteLLM key for bot {bot_id}")
    except Exception as e:
        logger.error(f"Failed to delete LiteLLM key for bot {bot_id}: {e}")


async def provision_bot(
    bot_id: str,
    *,
    client: HetznerClient | None = None,
    nat_enabled: bool | None = None,
) -> ProvisionResult:
    """Create, attach and boot the VM for a bot in ``starting``.

    On failure the VM and proxy key created by this run are removed and the
    bot is marked ``failed``. Shared network, firewall and gateway state is
    left alone.
    """
    try:
        bot = claim_for_provisioning(bot_id)
    except BotNotFoundError as e:
        return ProvisionResult(success=False, error=str(e), error_code="not_found")
    except ProvisionStateError as e:
        return ProvisionResult(success=False, error=str(e), error_code="invalid_state")

    if nat_enabled is None:
        nat_enabled = get_setting_bool("nat.enabled")

    step = "init"
    created_server_id: int | None = None
    proxy_key: str | None = None
    try:
        client = client or get_cloud_client()
        logger.info(f"Starting provisioning for bot {bot.id} ({bot.name})")

        gateway: NatGateway | None = None
        if nat_enabled:
            step = "nat_gateway"
            gateway = await ensure_nat_gateway(client=client)
            logger.info(f"Bot {bot.id} will route through NAT gateway {gateway.name} ({gateway.private_ip})")

        step = "certificate"
        bundle = generate_bot_certificate_from_ca(bot.id)
        client_key_encrypted = encrypt(bundle.private_key)

        step = "proxy_key"
        if litellm.is_configured():
            try:
                proxy_key = await litellm.create_bot_key(bot.id, bot.user_id)
            except Exception as e:
                logger.warning(f"LiteLLM key creation failed for bot {bot.id}, continuing without it: {e}")
        else:
            logger.info("LiteLLM is not configured, bot will use direct API keys")

        step = "ssh_key"
        public_key = get_setting("cloud.ssh_public_key")
        if not public_key:
            raise ProvisionStateError("HETZNER_SSH_PUBLIC_KEY is required to provision bots")
        ssh_key = await client.get_or_create_ssh_key(get_setting("cloud.ssh_key_name"), public_key)
        logger.info(f"Using SSH key {ssh_key.name} ({ssh_key.id})")

        step = "cloud_init"
        gateway_token = secrets.token_hex(32)
        user_data = generate_cloud_init_with_certs(
            CloudInitOptions(
                bot_id=bot.id,
                bot_name=bot.name,
                client_cert=bundle.certificate,
                client_key=bundle.private_key,
                ca_cert=bundle.ca_certificate,
                gateway_token=gateway_token,
                nat_gateway_ip=gateway.private_ip if gateway else None,
            )
        )

        step = "create_server"
        created = await client.create_server(
            name=server_name_for(bot.id),
            server_type=get_setting("cloud.server_type"),
            image=get_setting("cloud.image"),
            location=get_setting("cloud.location"),
            ssh_keys=[ssh_key.id],
            labels={"bot_id": bot.id, "user_id": bot.user_id, "service": SERVICE_LABEL},
            user_data=user_data,
            public_net={"enable_ipv4": False, "enable_ipv6": False} if gateway else None,
        )
        created_server_id = created.server.id
        logger.info(f"Server {created_server_id} created, waiting for action {created.action.id}")
        await client.wait_for_action(
            created.action.id,
            timeout=get_setting_int("provision.action_timeout_seconds", fallback=300),
        )

        # Without a public interface the VM cannot finish booting until it is on the network
        step = "attach_network"
        private_ip = await attach_server_to_infrastructure(
            created_server_id, skip_firewall=gateway is not None, client=client
        )

        step = "wait_running"
        running = await client.wait_for_server_running(
            created_server_id,
            timeout=get_setting_int("provision.running_timeout_seconds", fallback=300),
        )
        server_ip = running.public_ipv4
        logger.info(f"Server {created_server_id} is running (public={server_ip}, private={private_ip})")

        if gateway:
            step = "gateway_counter"
            if not increment_bot_count(gateway.id):
                logger.error(f"NAT gateway {gateway.id} had no free slot for bot {bot.id}")
                raise NatGatewayError(f"NAT gateway {gateway.name} filled up during provisioning")

        step = "persist"
        bot_store.update(
            bot.id,
            status="running",
            cloud_server_id=str(created_server_id),
            private_ip=private_ip,
            client_cert=bundle.certificate,
            client_key_encrypted=client_key_encrypted,
            gateway_token_encrypted=encrypt(gateway_token),
            litellm_key_encrypted=encrypt(proxy_key) if proxy_key else None,
            nat_gateway_id=gateway.id if gateway else None,
            error=None,
            provisioning_started_at=None,
        )
    except Exception as e:
        message = str(e) or e.__class__.__name__
        logger.error(f"Provisioning failed for bot {bot_id} at step {step}: {message}")
        if client is not None:
            await _cleanup_failed_server(client, created_server_id)
        await _cleanup_proxy_key(bot_id, proxy_key)
        try:
            bot_store.update(
                bot_id, status="failed", error=f"{step}: {message}", provisioning_started_at=None
            )
        except Exception as update_error:
            logger.error(f"Failed to mark bot {bot_id} as failed: {update_error}")
        return ProvisionResult(
            success=False, server_id=created_server_id, error=message, error_code="failed"
        )

    return ProvisionResult(
        success=True, server_id=created_server_id, server_ip=server_ip, private_ip=private_ip
    )


def _server_id_of(bot: BotInstance) -> int:
    try:
        return int(bot.cloud_server_id or "")
    except ValueError as exc:
        raise ProvisionStateError(f"Invalid server ID: {bot.cloud_server_id}") from exc


async def deprovision_bot(bot_id: str, *, client: HetznerClient | None = None) -> LifecycleResult:
    """Delete the bot's VM, release its gateway slot, and mark it stopped."""
    try:
        bot = bot_store.get(bot_id)
        if bot is None:
            raise BotNotFoundError(f"Bot {bot_id} not found")
        if not bot.cloud_server_id:
            logger.info(f"Bot {bot_id} has no server to deprovision")
            return LifecycleResult(success=True)

        server_id = _server_id_of(bot)
        client = client or get_cloud_client()
        try:
            await client.delete_server(server_id)
        except HetznerAPIError as e:
            if e.status_code != 404:
                raise
            logger.info(f"Server {server_id} for bot {bot_id} was already gone")
        logger.info(f"Deleted server {server_id} for bot {bot_id}")

        if bot.nat_gateway_id:
            decrement_bot_count(bot.nat_gateway_id)

        bot_store.update(
            bot_id,
            status="stopped",
            cloud_server_id=None,
            private_ip=None,
            nat_gateway_id=None,
        )
    except Exception as e:
        logger.error(f"Deprovisioning failed for bot {bot_id}: {e}")
        return LifecycleResult(success=False, error=str(e))

    if bot.litellm_key_encrypted:
        try:
            await _cleanup_proxy_key(bot_id, decrypt(bot.litellm_key_encrypted))
            bot_store.update(bot_id, litellm_key_encrypted=None)
        except Exception as e:
            logger.warning(f"Could not release LiteLLM key for bot {bot_id}: {e}")
    return LifecycleResult(success=True)


def _require_running(bot_id: str) -> tuple[BotInstance, int]:
    bot = bot_store.get(bot_id)
    if bot is None:
        raise BotNotFoundError(f"Bot {bot_id} not found")
    if bot.status != "running":
        raise ProvisionStateError(f"Cannot change bot in '{bot.status}' state")
    if not bot.cloud_server_id:
        raise ProvisionStateError("Bot has no associated server")
    return bot, _server_id_of(bot)


async def stop_bot(bot_id: str, *, client: HetznerClient | None = None) -> LifecycleResult:
    """Power off a running bot's VM. Raises BotNotFoundError / ProvisionStateError."""
    _, server_id = _require_running(bot_id)
    client = client or get_cloud_client()
    await client.power_off_server(server_id)
    bot_store.update(bot_id, status="stopped")
    logger.info(f"Bot {bot_id} stopped (server {server_id})")
    return LifecycleResult(success=True)


async def restart_bot(
    bot_id: str,
    *,
    client: HetznerClient | None = None,
    timeout: float = RESTART_TIMEOUT,
    interval: float = RESTART_INTERVAL,
) -> LifecycleResult:
    """Reboot a running bot. If it does not come back in time it stays ``starting``."""
    _, server_id = _require_running(bot_id)
    client = client or get_cloud_client()
    await client.reboot_server(server_id)
    if not bot_store.transition_status(bot_id, "running", "starting"):
        raise ProvisionStateError("Bot changed state during restart")

    try:
        await client.wait_for_server_running(server_id, timeout=timeout, interval=interval)
    except Exception as e:
        logger.warning(f"Timed out waiting for server {server_id} to restart, leaving bot {bot_id} as starting: {e}")
        return LifecycleResult(success=True, settled=False)

    bot_store.update(bot_id, status="running")
    return LifecycleResult(success=True)


async def retry_provision(bot_id: str, *, client: HetznerClient | None = None) -> ProvisionResult:
    """Reset a failed or stopped bot to ``starting`` and provision it again.

    A stopped bot may still own a powered-off server; it is deleted first.
    """
    bot = bot_store.get(bot_id)
    if bot is not None and bot.status in ("failed", "stopped") and bot.cloud_server_id:
        released = await deprovision_bot(bot_id, client=client)
        if not released.success:
            return ProvisionResult(success=False, error=released.error, error_code="failed")

    reset = bot_store.transition_status(
        bot_id,
        ("failed", "stopped"),
        "starting",
        cloud_server_id=None,
        private_ip=None,
        error=None,
        provisioning_started_at=None,
    )
    if not reset:
        bot = bot_store.get(bot_id)
        if bot is None:
            return ProvisionResult(success=False, error=f"Bot {bot_id} not found", error_code="not_found")
        return ProvisionResult(
            success=False,
            error=f"Bot must be failed or stopped to retry (current: {bot.status})",
            error_code="invalid_state",
        )
    return await provision_bot(bot_id, client=client)


async def get_server_status(bot_id: str, *, client: HetznerClient | None = None) -> CloudServer | None:
    bot = bot_store.get(bot_id)
    if bot is None or not bot.cloud_server_id:
        return None
    try:
        server_id = int(bot.cloud_server_id)
        return await (client or get_cloud_client()).get_server(server_id)
    except Exception as e:
        logger.debug(f"Server status lookup failed for bot {bot_id}: {e}")
        return None
