"""Tests for the orchestrator HTTP API."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from starlette.websockets import WebSocketDisconnect

from botcloud.encryption import encrypt
from botcloud.provisioner import LifecycleResult, ProvisionResult, ProvisionStateError
from botcloud.storage import bot_store


def _headers(secret, user_id=None):
    headers = {"X-Provision-Secret": secret}
    if user_id:
        headers["X-User-Id"] = user_id
    return headers


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


# ── Internal secret ──────────────────────────────────────────────────────────


def test_unset_secret_rejects_everything(client, bot_factory):
    bot = bot_factory()
    response = client.post("/api/provision", json={"botId": bot.id}, headers={"X-Provision-Secret": ""})
    assert response.status_code == 401
    assert client.post("/api/provision", json={"botId": bot.id}).status_code == 401


def test_wrong_secret(client, provision_secret, bot_factory):
    bot = bot_factory()
    response = client.post("/api/provision", json={"botId": bot.id}, headers=_headers("nope"))
    assert response.status_code == 401


# ── Provision ────────────────────────────────────────────────────────────────


def test_provision_unknown_bot(client, provision_secret):
    response = client.post("/api/provision", json={"botId": "missing"}, headers=_headers(provision_secret))
    assert response.status_code == 404


def test_provision_wrong_state(client, provision_secret, bot_factory):
    bot = bot_factory(status="running")
    response = client.post("/api/provision", json={"botId": bot.id}, headers=_headers(provision_secret))
    assert response.status_code == 400
    assert "starting" in response.json()["detail"]


def test_provision_bot_with_server_rejected(client, provision_secret, bot_factory):
    bot = bot_factory(cloud_server_id="42")
    response = client.post("/api/provision", json={"botId": bot.id}, headers=_headers(provision_secret))
    assert response.status_code == 400
    assert "already has server" in response.json()["detail"]


def test_provision_missing_bot_id(client, provision_secret):
    response = client.post("/api/provision", json={}, headers=_headers(provision_secret))
    assert response.status_code == 422


def test_provision_success(client, provision_secret, bot_factory):
    bot = bot_factory()
    result = ProvisionResult(success=True, server_id=77, server_ip="203.0.113.9", private_ip="10.0.0.4")
    with patch("botcloud.main.provisioner.provision_bot", new=AsyncMock(return_value=result)) as run:
        response = client.post("/api/provision", json={"botId": bot.id}, headers=_headers(provision_secret))
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "serverId": 77,
        "serverIp": "203.0.113.9",
        "privateIp": "10.0.0.4",
    }
    run.assert_awaited_once_with(bot.id)


def test_provision_failure(client, provision_secret, bot_factory):
    bot = bot_factory()
    result = ProvisionResult(success=False, error="attach failed", error_code="failed")
    with patch("botcloud.main.provisioner.provision_bot", new=AsyncMock(return_value=result)):
        response = client.post("/api/provision", json={"botId": bot.id}, headers=_headers(provision_secret))
    assert response.status_code == 500
    assert response.json() == {"error": "attach failed"}


def test_provision_end_to_end(client, provision_secret, bot_factory, fake_cloud, active_ca):
    from botcloud.settings import set_setting

    set_setting("cloud.ssh_public_key", "ssh-ed25519 AAAA test@botcloud")
    bot = bot_factory()
    with patch("botcloud.provisioner.get_cloud_client", return_value=fake_cloud), patch(
        "botcloud.provisioner.get_setting_bool", return_value=False
    ):
        response = client.post("/api/provision", json={"botId": bot.id}, headers=_headers(provision_secret))
    assert response.status_code == 200
    assert response.json()["privateIp"] == "10.0.0.3"
    assert bot_store.get(bot.id).status == "running"


# ── Lifecycle ────────────────────────────────────────────────────────────────


def test_stop_requires_owner(client, provision_secret, bot_factory):
    bot = bot_factory(status="running", cloud_server_id="5")
    response = client.post(f"/api/bots/{bot.id}/stop", headers=_headers(provision_secret, "intruder"))
    assert response.status_code == 403


def test_stop_requires_user_header(client, provision_secret, bot_factory):
    bot = bot_factory(status="running", cloud_server_id="5")
    response = client.post(f"/api/bots/{bot.id}/stop", headers=_headers(provision_secret))
    assert response.status_code == 401


def test_stop(client, provision_secret, bot_factory):
    bot = bot_factory(status="running", cloud_server_id="5")
    with patch("botcloud.main.provisioner.stop_bot", new=AsyncMock(return_value=LifecycleResult(True))):
        response = client.post(f"/api/bots/{bot.id}/stop", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 200
    assert response.json()["status"] == "stopped"


def test_stop_wrong_state(client, provision_secret, bot_factory):
    bot = bot_factory(status="failed")
    with patch(
        "botcloud.main.provisioner.stop_bot",
        new=AsyncMock(side_effect=ProvisionStateError("Cannot change bot in 'failed' state")),
    ):
        response = client.post(f"/api/bots/{bot.id}/stop", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 400


def test_restart_unsettled(client, provision_secret, bot_factory):
    bot = bot_factory(status="running", cloud_server_id="5")
    result = LifecycleResult(success=True, settled=False)
    with patch("botcloud.main.provisioner.restart_bot", new=AsyncMock(return_value=result)):
        response = client.post(f"/api/bots/{bot.id}/restart", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 200
    assert response.json() == {"success": True, "status": "starting", "settled": False}


def test_deprovision(client, provision_secret, bot_factory, fake_cloud):
    bot = bot_factory(status="running", cloud_server_id="999")
    with patch("botcloud.provisioner.get_cloud_client", return_value=fake_cloud):
        response = client.post(f"/api/bots/{bot.id}/deprovision", headers=_headers(provision_secret))
    assert response.status_code == 200
    assert response.json()["status"] == "stopped"


def test_deprovision_unknown(client, provision_secret):
    response = client.post("/api/bots/missing/deprovision", headers=_headers(provision_secret))
    assert response.status_code == 404


def test_retry_invalid_state(client, provision_secret, bot_factory):
    bot = bot_factory(status="starting")
    response = client.post(f"/api/bots/{bot.id}/retry", headers=_headers(provision_secret))
    assert response.status_code == 400


# ── Health, ws-auth, UI ──────────────────────────────────────────────────────


def test_bot_health_not_running(client, provision_secret, bot_factory):
    bot = bot_factory(status="stopped")
    response = client.get(f"/api/bots/{bot.id}/health", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 200
    assert response.json()["status"] == "unreachable"
    assert response.json()["error"] == "Bot is stopped"


def test_bot_health_forbidden(client, provision_secret, bot_factory):
    bot = bot_factory()
    response = client.get(f"/api/bots/{bot.id}/health", headers=_headers(provision_secret, "user-2"))
    assert response.status_code == 403


def test_ws_auth(client, provision_secret, bot_factory):
    running = bot_factory(status="running", private_ip="10.0.0.8")
    response = client.get(f"/api/bots/{running.id}/ws-auth", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 200
    assert response.headers["X-Bot-Private-IP"] == "10.0.0.8"

    stopped = bot_factory(status="stopped", private_ip="10.0.0.9")
    response = client.get(f"/api/bots/{stopped.id}/ws-auth", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 503

    unprovisioned = bot_factory(status="running")
    response = client.get(
        f"/api/bots/{unprovisioned.id}/ws-auth", headers=_headers(provision_secret, "user-1")
    )
    assert response.status_code == 503


def test_ui_not_running(client, provision_secret, bot_factory):
    bot = bot_factory(status="starting")
    response = client.get(f"/api/bots/{bot.id}/ui/", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 503
    assert response.json()["detail"] == "Bot is starting, cannot access UI"


def test_ui_proxies_assets(client, provision_secret, bot_factory, mock_httpx):
    bot = bot_factory(status="running", private_ip="10.0.0.8", gateway_token_encrypted=encrypt("t"))
    mock_httpx(lambda request: httpx.Response(200, content=b"x=1"))
    response = client.get(f"/api/bots/{bot.id}/ui/assets/app.js", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 200
    assert response.content == b"x=1"
    assert response.headers["content-type"] == "application/javascript"


def test_ui_root_is_rewritten(client, provision_secret, bot_factory, mock_httpx):
    bot = bot_factory(status="running", private_ip="10.0.0.8", gateway_token_encrypted=encrypt("t"))
    mock_httpx(lambda request: httpx.Response(200, text="<html><head></head></html>"))
    response = client.get(f"/api/bots/{bot.id}/ui", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 200
    assert response.headers["x-frame-options"] == "SAMEORIGIN"
    assert f"/ws/bots/{bot.id}/" in response.text


def test_ui_upstream_failure_is_502(client, provision_secret, bot_factory, mock_httpx):
    bot = bot_factory(status="running", private_ip="10.0.0.8")

    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    mock_httpx(handler)
    response = client.get(f"/api/bots/{bot.id}/ui/", headers=_headers(provision_secret, "user-1"))
    assert response.status_code == 502
    assert response.json() == {"error": "Failed to connect to bot UI"}


# ── WebSockets ───────────────────────────────────────────────────────────────


class EchoUpstream:
    """Stands in for a websockets client connection; echoes what it is sent."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._queue = None

    def _q(self):
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def send(self, message):
        self.sent.append(message)
        await self._q().put(message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._q().get()
        return f"echo:{message}"

    async def close(self):
        self.closed = True


def test_websocket_relay(client, provision_secret, bot_factory):
    bot = bot_factory(status="running", private_ip="10.0.0.8")
    upstream = EchoUpstream()
    with patch("botcloud.proxy.websockets.connect", new=AsyncMock(return_value=upstream)) as connect:
        with client.websocket_connect(
            f"/ws/bots/{bot.id}/", headers=_headers(provision_secret, "user-1")
        ) as ws:
            ws.send_text("hello")
            assert ws.receive_text() == "echo:hello"
    assert connect.await_args.args[0] == "ws://10.0.0.8:18789/"
    assert upstream.sent == ["hello"]


def test_pairing_relay_sends_secret(client, provision_secret, bot_factory):
    from botcloud.settings import set_setting

    set_setting("agent.pairing_secret", "pair-secret")
    bot = bot_factory(status="running", private_ip="10.0.0.8")
    upstream = EchoUpstream()
    with patch("botcloud.proxy.websockets.connect", new=AsyncMock(return_value=upstream)) as connect:
        with client.websocket_connect(
            f"/ws/bots/{bot.id}/pair", headers=_headers(provision_secret, "user-1")
        ) as ws:
            ws.send_text('{"type": "cancel"}')
            assert ws.receive_text() == 'echo:{"type": "cancel"}'
    assert connect.await_args.args[0] == "ws://10.0.0.8:18790/"
    assert connect.await_args.kwargs["additional_headers"] == {"X-Pairing-Secret": "pair-secret"}


def test_websocket_rejects_other_user(client, provision_secret, bot_factory):
    bot = bot_factory(status="running", private_ip="10.0.0.8")
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/bots/{bot.id}/", headers=_headers(provision_secret, "user-2")):
            pass


def test_websocket_rejects_bad_secret(client, provision_secret, bot_factory):
    bot = bot_factory(status="running", private_ip="10.0.0.8")
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/bots/{bot.id}/", headers=_headers("wrong", "user-1")):
            pass
