"""Authentication for the orchestrator API.

Every route sits behind a shared internal secret. Routes acting on behalf of
a dashboard user additionally carry the user id resolved by the front-end's
auth layer, which must own the bot.
"""

import hmac
import logging

from fastapi import Header, HTTPException

from .db_models import BotInstance
from .settings import get_setting
from .storage import bot_store

logger = logging.getLogger(__name__)


def check_internal_secret(provided: str | None) -> bool:
    """Constant-time compare against ``provision.secret``. An unset secret matches nothing."""
    expected = get_setting("provision.secret")
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


async def verify_internal_secret(x_provision_secret: str | None = Header(None)) -> None:
    """FastAPI dependency guarding every ``/api`` route.

    Raises:
        HTTPException: 401 if the header is missing or wrong
    """
    if not check_internal_secret(x_provision_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def require_user_id(x_user_id: str | None = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def get_bot_or_404(bot_id: str) -> BotInstance:
    bot = bot_store.get(bot_id)
    if bot is None:
        raise HTTPException(status_code=404, detail="Bot not found")
    return bot


def require_bot_owner(bot: BotInstance, user_id: str) -> None:
    """Raise 403 unless *user_id* owns *bot*."""
    if bot.user_id != user_id:
        logger.warning(f"User {user_id} denied access to bot {bot.id}")
        raise HTTPException(status_code=403, detail="Forbidden")


def get_owned_bot(bot_id: str, user_id: str) -> BotInstance:
    bot = get_bot_or_404(bot_id)
    require_bot_owner(bot, user_id)
    return bot
