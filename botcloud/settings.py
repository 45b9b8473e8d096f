"""DB-backed settings with env-var fallback for botcloud.

Resolution order: DB value > env var > default.
All settings are defined in SETTING_DEFS. Values are cached in memory
with a short TTL to avoid repeated DB reads.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlmodel import select

from .database import get_db
from .db_models import Setting

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingDef:
    """Definition of a single setting."""

    key: str
    env_var: str
    default: str
    is_secret: bool
    description: str
    group: str  # e.g. "cloud", "nat", "config_api"


# ── Registry ─────────────────────────────────────────────────────────────────

SETTING_DEFS: dict[str, SettingDef] = {}


def _reg(key: str, env_var: str, default: str, is_secret: bool, description: str, group: str):
    SETTING_DEFS[key] = SettingDef(key, env_var, default, is_secret, description, group)


# Cloud provider
_reg("cloud.api_token", "HETZNER_API_TOKEN", "", True, "Hetzner Cloud API token", "cloud")
_reg(
    "cloud.ssh_public_key",
    "HETZNER_SSH_PUBLIC_KEY",
    "",
    False,
    "Management SSH public key installed on every VM",
    "cloud",
)
_reg(
    "cloud.ssh_key_name",
    "HETZNER_SSH_KEY_NAME",
    "botcloud-master",
    False,
    "Name of the management SSH key in the cloud project",
    "cloud",
)
_reg("cloud.server_type", "HETZNER_SERVER_TYPE", "cx23", False, "Server type for bot VMs", "cloud")
_reg("cloud.location", "HETZNER_LOCATION", "nbg1", False, "Location for new VMs", "cloud")
_reg("cloud.image", "HETZNER_IMAGE", "ubuntu-22.04", False, "OS image for new VMs", "cloud")

# NAT gateways
_reg(
    "nat.enabled",
    "NAT_GATEWAY_ENABLED",
    "false",
    False,
    "If true, bots get no public interface and egress through a NAT gateway",
    "nat",
)
_reg(
    "nat.max_bots",
    "NAT_GATEWAY_MAX_BOTS",
    "100",
    False,
    "Maximum bots routed through a single NAT gateway",
    "nat",
)
_reg(
    "nat.server_type",
    "NAT_GATEWAY_SERVER_TYPE",
    "cax11",
    False,
    "Server type for NAT gateway VMs",
    "nat",
)

# mTLS config API
_reg(
    "config_api.host",
    "CONFIG_API_HOST",
    "0.0.0.0",
    False,
    "Bind address for the mTLS config API",
    "config_api",
)
_reg("config_api.port", "CONFIG_API_PORT", "8443", False, "Port for the mTLS config API", "config_api")
_reg(
    "config_api.hostname",
    "CONFIG_API_HOSTNAME",
    "botcloud-backend.internal",
    False,
    "DNS name placed in the config API server certificate",
    "config_api",
)

# LLM proxy
_reg(
    "litellm.base_url",
    "LITELLM_BASE_URL",
    "http://127.0.0.1:4000",
    False,
    "Admin URL of the LLM proxy",
    "litellm",
)
_reg(
    "litellm.public_url",
    "LITELLM_PUBLIC_URL",
    "http://10.0.0.2:4000",
    False,
    "LLM proxy URL as seen from bot VMs",
    "litellm",
)
_reg("litellm.master_key", "LITELLM_MASTER_KEY", "", True, "LLM proxy master key", "litellm")

# Provisioning
_reg(
    "provision.secret",
    "PROVISION_SECRET",
    "",
    True,
    "Shared secret required on internal provisioning routes",
    "provision",
)
_reg(
    "provision.action_timeout_seconds",
    "PROVISION_ACTION_TIMEOUT_SECONDS",
    "300",
    False,
    "Seconds to wait for a cloud action to finish",
    "provision",
)
_reg(
    "provision.running_timeout_seconds",
    "PROVISION_RUNNING_TIMEOUT_SECONDS",
    "300",
    False,
    "Seconds to wait for a new server to reach running",
    "provision",
)
_reg(
    "agent.default_model",
    "AGENT_DEFAULT_MODEL",
    "anthropic/claude-sonnet-4-20250514",
    False,
    "Model used when a bot has no primary model set",
    "agent",
)
_reg(
    "agent.pairing_secret",
    "BOTCLOUD_PAIRING_SECRET",
    "",
    True,
    "Shared secret presented to the pairing helper on bot VMs",
    "agent",
)


# ── Cached DB overrides ──────────────────────────────────────────────────────

CACHE_TTL_SECONDS = 5.0
_overrides: dict[str, str] = {}
_loaded_at: float | None = None


def _load_overrides() -> dict[str, str]:
    """Non-empty DB values keyed by setting, reloaded at most every few seconds."""
    global _overrides, _loaded_at
    now = time.monotonic()
    if _loaded_at is not None and now - _loaded_at < CACHE_TTL_SECONDS:
        return _overrides
    try:
        with get_db() as session:
            _overrides = {row.key: row.value for row in session.exec(select(Setting)) if row.value}
    except Exception as e:
        # Tables may not exist yet before init_db()
        logger.debug(f"Settings table unavailable, using env and defaults: {e}")
        _overrides = {}
    _loaded_at = now
    return _overrides


def invalidate_cache() -> None:
    """Make the next lookup re-read the DB."""
    global _loaded_at
    _loaded_at = None


def _definition(key: str) -> SettingDef:
    try:
        return SETTING_DEFS[key]
    except KeyError:
        raise KeyError(f"Unknown setting: {key}") from None


def _resolve(key: str) -> tuple[str, str]:
    """(value, source) for *key*; source is 'db', 'env' or 'default'."""
    defn = _definition(key)
    db_value = _load_overrides().get(key)
    if db_value:
        return db_value, "db"
    env_value = os.environ.get(defn.env_var, "")
    if env_value:
        return env_value, "env"
    return defn.default, "default"


# ── Accessors ────────────────────────────────────────────────────────────────


def get_setting(key: str) -> str:
    """Effective value of *key*. Empty DB and env values fall through.

    Raises:
        KeyError: if *key* is not registered
    """
    return _resolve(key)[0]


def get_setting_source(key: str) -> str:
    return _resolve(key)[1]


def get_setting_int(key: str, fallback: int | None = None) -> int:
    raw = get_setting(key)
    try:
        return int(raw)
    except ValueError:
        if fallback is None:
            raise
        logger.warning(f"Setting {key}={raw!r} is not an integer, using {fallback}")
        return fallback


def get_setting_bool(key: str) -> bool:
    return get_setting(key).strip().lower() in ("1", "true", "yes", "on")


# ── Writes ───────────────────────────────────────────────────────────────────


def set_setting(key: str, value: str) -> None:
    """Store a DB override for *key*."""
    defn = _definition(key)
    with get_db() as session:
        session.merge(
            Setting(
                key=key,
                value=value,
                is_secret=defn.is_secret,
                updated_at=datetime.now(timezone.utc),
            )
        )
    invalidate_cache()


def delete_setting(key: str) -> bool:
    """Drop the DB override so env/default apply again. False if there was none."""
    _definition(key)
    with get_db() as session:
        row = session.get(Setting, key)
        if row is None:
            return False
        session.delete(row)
    invalidate_cache()
    return True


def clear_settings() -> None:
    """Delete every DB override (tests)."""
    with get_db() as session:
        for row in session.exec(select(Setting)).all():
            session.delete(row)
    invalidate_cache()


# ── Listing ──────────────────────────────────────────────────────────────────


def _mask_secret(value: str) -> str:
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-4:]}"


def _display_value(defn: SettingDef, value: str) -> str:
    return _mask_secret(value) if defn.is_secret and value else value


def list_settings(group: str | None = None) -> list[dict]:
    """Every setting (optionally one group) with its masked value and source."""
    result = []
    for defn in SETTING_DEFS.values():
        if group and defn.group != group:
            continue
        value, source = _resolve(defn.key)
        result.append(
            {
                "key": defn.key,
                "value": _display_value(defn, value),
                "source": source,
                "is_secret": defn.is_secret,
                "description": defn.description,
                "group": defn.group,
                "env_var": defn.env_var,
                "default": defn.default,
            }
        )
    return result


def log_settings_sources() -> None:
    """Log where each setting comes from; called once at startup."""
    for defn in SETTING_DEFS.values():
        value, source = _resolve(defn.key)
        logger.info(f"Setting {defn.key}: source={source}, value={_display_value(defn, value) or '(empty)'}")
