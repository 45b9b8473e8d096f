"""Botcloud orchestrator - FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Response, WebSocket
from fastapi.responses import JSONResponse

from . import provisioner, proxy
from .auth import (
    check_internal_secret,
    get_bot_or_404,
    get_owned_bot,
    require_user_id,
    verify_internal_secret,
)
from .database import init_db
from .health import BotHealthStatus, health_for_record
from .models import HealthResponse, LifecycleResponse, ProvisionRequest, ProvisionResponse
from .settings import get_setting, log_settings_sources
from .storage import bot_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Database initialized")
    log_settings_sources()
    yield


app = FastAPI(
    title="Botcloud Orchestrator",
    description="Provisioning and lifecycle control plane for isolated bot VMs",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc))


# ==============================================================================
# Provisioning and lifecycle
# ==============================================================================


@app.post(
    "/api/provision",
    response_model=ProvisionResponse,
    response_model_by_alias=True,
    dependencies=[Depends(verify_internal_secret)],
)
async def provision(request: ProvisionRequest):
    """Create the VM for a bot the front-end has just inserted in ``starting``.

    Runs the whole create path in-request; the response arrives once the VM
    is running or the run has been rolled back.
    """
    bot = get_bot_or_404(request.bot_id)
    if bot.status != "starting":
        raise HTTPException(
            status_code=400, detail=f"Bot is not in starting state (current: {bot.status})"
        )

    result = await provisioner.provision_bot(bot.id)
    if result.success:
        return ProvisionResponse(
            success=True,
            server_id=result.server_id,
            server_ip=result.server_ip,
            private_ip=result.private_ip,
        )
    if result.error_code == "not_found":
        raise HTTPException(status_code=404, detail="Bot not found")
    if result.error_code == "invalid_state":
        raise HTTPException(status_code=400, detail=result.error)
    return JSONResponse(status_code=500, content={"error": result.error or "Provisioning failed"})


@app.post(
    "/api/bots/{bot_id}/deprovision",
    response_model=LifecycleResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def deprovision(bot_id: str):
    get_bot_or_404(bot_id)
    result = await provisioner.deprovision_bot(bot_id)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or "Deprovisioning failed")
    return LifecycleResponse(success=True, status=bot_store.get(bot_id).status)


@app.post(
    "/api/bots/{bot_id}/stop",
    response_model=LifecycleResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def stop(bot_id: str, user_id: str = Depends(require_user_id)):
    get_owned_bot(bot_id, user_id)
    try:
        await provisioner.stop_bot(bot_id)
    except provisioner.ProvisionStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except provisioner.BotNotFoundError:
        raise HTTPException(status_code=404, detail="Bot not found")
    except Exception as e:
        logger.error(f"Failed to stop bot {bot_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to stop bot")
    return LifecycleResponse(success=True, status="stopped")


@app.post(
    "/api/bots/{bot_id}/restart",
    response_model=LifecycleResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def restart(bot_id: str, user_id: str = Depends(require_user_id)):
    get_owned_bot(bot_id, user_id)
    try:
        result = await provisioner.restart_bot(bot_id)
    except provisioner.ProvisionStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except provisioner.BotNotFoundError:
        raise HTTPException(status_code=404, detail="Bot not found")
    except Exception as e:
        logger.error(f"Failed to restart bot {bot_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to restart bot")
    return LifecycleResponse(
        success=True,
        status="running" if result.settled else "starting",
        settled=result.settled,
    )


@app.post(
    "/api/bots/{bot_id}/retry",
    response_model=ProvisionResponse,
    response_model_by_alias=True,
    dependencies=[Depends(verify_internal_secret)],
)
async def retry(bot_id: str):
    result = await provisioner.retry_provision(bot_id)
    if result.success:
        return ProvisionResponse(
            success=True,
            server_id=result.server_id,
            server_ip=result.server_ip,
            private_ip=result.private_ip,
        )
    if result.error_code == "not_found":
        raise HTTPException(status_code=404, detail="Bot not found")
    if result.error_code == "invalid_state":
        raise HTTPException(status_code=400, detail=result.error)
    return JSONResponse(status_code=500, content={"error": result.error or "Provisioning failed"})


# ==============================================================================
# Dashboard access to running bots
# ==============================================================================


@app.get(
    "/api/bots/{bot_id}/health",
    response_model=BotHealthStatus,
    dependencies=[Depends(verify_internal_secret)],
)
async def bot_health(bot_id: str, user_id: str = Depends(require_user_id)):
    bot = get_owned_bot(bot_id, user_id)
    return await health_for_record(bot)


@app.get("/api/bots/{bot_id}/ws-auth", dependencies=[Depends(verify_internal_secret)])
async def ws_auth(bot_id: str, user_id: str = Depends(require_user_id)):
    """Edge proxies call this before upgrading; the private IP comes back as a header."""
    bot = get_owned_bot(bot_id, user_id)
    if not bot.private_ip:
        return Response(content="Bot not provisioned", status_code=503)
    if bot.status != "running":
        return Response(content="Bot not running", status_code=503)
    return Response(content="OK", status_code=200, headers={"X-Bot-Private-IP": bot.private_ip})


@app.get("/api/bots/{bot_id}/ui", dependencies=[Depends(verify_internal_secret)])
@app.get("/api/bots/{bot_id}/ui/{path:path}", dependencies=[Depends(verify_internal_secret)])
async def bot_ui(bot_id: str, path: str = "", user_id: str = Depends(require_user_id)):
    bot = get_owned_bot(bot_id, user_id)
    if bot.status != "running":
        raise HTTPException(status_code=503, detail=f"Bot is {bot.status}, cannot access UI")
    if not bot.private_ip:
        raise HTTPException(status_code=503, detail="Bot has no private IP")

    try:
        result = await proxy.proxy_ui_request(bot, path)
    except Exception as e:
        logger.error(f"UI proxy to bot {bot_id} failed: {e}")
        return JSONResponse(status_code=502, content={"error": "Failed to connect to bot UI"})
    return Response(content=result.body, status_code=result.status, headers=result.headers)


async def _authorize_websocket(websocket: WebSocket, bot_id: str):
    """Bot for an owner's WebSocket, or None after closing the socket."""
    if not check_internal_secret(websocket.headers.get("x-provision-secret")):
        await websocket.close(code=1008)
        return None
    bot = bot_store.get(bot_id)
    user_id = websocket.headers.get("x-user-id")
    if bot is None or not user_id or bot.user_id != user_id:
        await websocket.close(code=1008)
        return None
    if bot.status != "running" or not bot.private_ip:
        await websocket.close(code=1013)
        return None
    return bot


@app.websocket("/ws/bots/{bot_id}/")
async def bot_gateway_ws(websocket: WebSocket, bot_id: str):
    bot = await _authorize_websocket(websocket, bot_id)
    if bot is None:
        return
    await websocket.accept()
    await proxy.relay_websocket(websocket, proxy.gateway_ws_url(bot.private_ip))


@app.websocket("/ws/bots/{bot_id}/pair")
async def bot_pairing_ws(websocket: WebSocket, bot_id: str):
    bot = await _authorize_websocket(websocket, bot_id)
    if bot is None:
        return
    await websocket.accept()
    secret = get_setting("agent.pairing_secret")
    headers = {"X-Pairing-Secret": secret} if secret else None
    await proxy.relay_websocket(websocket, proxy.pairing_ws_url(bot.private_ip), headers=headers)


# Run with: uvicorn botcloud.main:app --host 0.0.0.0 --port 8080
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8080)
