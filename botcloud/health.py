"""Health checks against a bot's agent gateway over the private network."""

from __future__ import annotations

import logging
import os
import ssl
import tempfile
from datetime import datetime, timezone

import httpx
from pydantic import BaseModel

from .ca import get_active_ca
from .cloud_init import GATEWAY_PORT
from .db_models import BotInstance
from .encryption import decrypt

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT = 5.0


class BotHealthStatus(BaseModel):
    status: str  # healthy | unhealthy | unreachable
    gateway: bool
    agent_service: str  # active | inactive | unknown
    uptime: str | None = None
    last_checked: str
    error: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unreachable(error: str) -> BotHealthStatus:
    return BotHealthStatus(
        status="unreachable",
        gateway=False,
        agent_service="unknown",
        last_checked=_now(),
        error=error,
    )


def _classify(resp: httpx.Response) -> BotHealthStatus:
    if resp.status_code != 200:
        return BotHealthStatus(
            status="unhealthy",
            gateway=True,
            agent_service="inactive",
            last_checked=_now(),
            error=f"HTTP {resp.status_code}",
        )
    uptime = None
    try:
        payload = resp.json()
        if isinstance(payload, dict) and payload.get("uptime") is not None:
            uptime = str(payload["uptime"])
    except ValueError:
        pass
    return BotHealthStatus(
        status="healthy", gateway=True, agent_service="active", uptime=uptime, last_checked=_now()
    )


async def _check(url: str, **client_kwargs) -> BotHealthStatus:
    try:
        async with httpx.AsyncClient(timeout=HEALTH_CHECK_TIMEOUT, **client_kwargs) as client:
            resp = await client.get(url)
    except httpx.TimeoutException:
        return _unreachable("Connection timeout")
    except httpx.HTTPError as e:
        return _unreachable(str(e) or e.__class__.__name__)
    return _classify(resp)


async def check_bot_health(private_ip: str) -> BotHealthStatus:
    """Plain HTTP check of ``/health`` on the gateway port. Never raises."""
    return await _check(f"http://{private_ip}:{GATEWAY_PORT}/health")


def _client_ssl_context(bot: BotInstance, ca_cert: str) -> ssl.SSLContext:
    context = ssl.create_default_context(cadata=ca_cert)
    # Bots are addressed by IP, which is not in their certificate
    context.check_hostname = False
    fd, path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(bot.client_cert or "")
            f.write("\n")
            f.write(decrypt(bot.client_key_encrypted or ""))
        context.load_cert_chain(path)
    finally:
        os.unlink(path)
    return context


async def check_bot_health_mtls(private_ip: str, bot: BotInstance) -> BotHealthStatus:
    """Same check over HTTPS, presenting the bot's own client certificate."""
    try:
        context = _client_ssl_context(bot, get_active_ca().ca_cert)
    except Exception as e:
        logger.warning(f"Could not build mTLS context for bot {bot.id}: {e}")
        return _unreachable(f"mTLS setup failed: {e}")
    return await _check(f"https://{private_ip}:{GATEWAY_PORT}/health", verify=context)


async def health_for_record(bot: BotInstance) -> BotHealthStatus:
    """Health for a stored bot; skips the network when it cannot be up."""
    if bot.status != "running":
        return _unreachable(f"Bot is {bot.status}")
    if not bot.private_ip:
        return _unreachable("No private IP assigned")
    return await check_bot_health(bot.private_ip)
