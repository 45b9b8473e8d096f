"""Per-bot virtual keys on the LiteLLM proxy.

Bots never see a provider API key when the proxy is configured; they get a
proxy key scoped to their bot id so spend can be attributed.
"""

from __future__ import annotations

import logging

import httpx

from .settings import get_setting

logger = logging.getLogger(__name__)

ALLOWED_MODELS = [
    "claude-sonnet-4",
    "claude-sonnet-4-20250514",
    "anthropic/claude-sonnet-4-20250514",
]


class LiteLLMError(RuntimeError):
    pass


def is_configured() -> bool:
    return bool(get_setting("litellm.master_key"))


def _headers() -> dict[str, str]:
    master_key = get_setting("litellm.master_key")
    if not master_key:
        raise LiteLLMError("LITELLM_MASTER_KEY not configured")
    return {"Authorization": f"Bearer {master_key}", "Content-Type": "application/json"}


def _base_url() -> str:
    return get_setting("litellm.base_url").rstrip("/")


async def create_bot_key(bot_id: str, user_id: str) -> str:
    """Create a proxy key for *bot_id* and return the key token."""
    payload = {
        "key_name": f"bot-{bot_id}",
        "user_id": user_id,
        "metadata": {
            "bot_id": bot_id,
            "user_id": user_id,
            "spend_logs_metadata": {"bot_id": bot_id, "user_id": user_id},
        },
        "models": ALLOWED_MODELS,
        "max_budget": None,
        "budget_duration": None,
    }
    async with httpx.AsyncClient(timeout=15.0) as client:
        resp = await client.post(f"{_base_url()}/key/generate", headers=_headers(), json=payload)
    if resp.status_code >= 400:
        raise LiteLLMError(f"Failed to create LiteLLM key: HTTP {resp.status_code} {resp.text[:200]}")
    key = resp.json().get("key")
    if not key:
        raise LiteLLMError("LiteLLM response did not include a key")
    logger.info(f"Created LiteLLM key for bot {bot_id}")
    return key


async def delete_bot_key(key: str) -> None:
    async with httpx.AsyncClient(timeout=15.0) as client:
        resp = await client.post(f"{_base_url()}/key/delete", headers=_headers(), json={"keys": [key]})
    if resp.status_code >= 400:
        raise LiteLLMError(f"Failed to delete LiteLLM key: HTTP {resp.status_code} {resp.text[:200]}")
