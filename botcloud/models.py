"""Request and response models for the orchestrator API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    status: str = "healthy"
    timestamp: datetime


class ProvisionRequest(BaseModel):
    """Body of ``POST /api/provision``."""

    model_config = ConfigDict(populate_by_name=True)

    bot_id: str = Field(..., alias="botId", min_length=1, description="Bot to provision")


class ProvisionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    server_id: int | None = Field(default=None, alias="serverId")
    server_ip: str | None = Field(default=None, alias="serverIp")
    private_ip: str | None = Field(default=None, alias="privateIp")


class LifecycleResponse(BaseModel):
    success: bool
    status: str
    # False when a restart was issued but the server has not reported running yet
    settled: bool = True
