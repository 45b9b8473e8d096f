"""SQLModel database models for botcloud storage.

These models serve as both SQLAlchemy ORM models AND Pydantic models,
eliminating the need for separate data classes.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class BotInstance(SQLModel, table=True):
    """A tenant's bot VM and the secrets needed to talk to it."""

    __tablename__ = "bots"

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    user_id: str = Field(index=True)
    name: str = Field(default="")
    # starting | running | stopped | failed
    status: str = Field(default="starting", index=True)
    cloud_server_id: str | None = None
    private_ip: str | None = None
    client_cert: str | None = None
    client_key_encrypted: str | None = None
    gateway_token_encrypted: str | None = None
    litellm_key_encrypted: str | None = None
    # JSON object {"anthropic": ..., "openai": ...} or a bare Anthropic key, encrypted
    encrypted_api_key: str | None = None
    telegram_bot_token_encrypted: str | None = None
    primary_model: str | None = None
    nat_gateway_id: str | None = Field(default=None, index=True)
    error: str | None = None
    # Set while one provisioning run owns the bot, cleared when it ends
    provisioning_started_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CertificateAuthorityRecord(SQLModel, table=True):
    """Internal CA plus the config API's server certificate."""

    __tablename__ = "certificate_authorities"

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    ca_cert: str
    ca_key_encrypted: str
    server_cert: str
    server_key_encrypted: str
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


class NatGateway(SQLModel, table=True):
    """Shared egress VM for bots without a public interface."""

    __tablename__ = "nat_gateways"

    id: str = Field(default_factory=generate_uuid, primary_key=True)
    name: str = Field(unique=True, index=True)
    cloud_server_id: str = Field(default="pending")
    private_ip: str
    public_ip: str | None = None
    # provisioning | active | inactive | failed
    status: str = Field(default="provisioning", index=True)
    bot_count: int = Field(default=0)
    max_bots: int = Field(default=100)
    health_status: str = Field(default="unknown")
    last_health_check_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Setting(SQLModel, table=True):
    """Key-value settings stored in DB (overrides env vars)."""

    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str = Field(default="")
    is_secret: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow)
