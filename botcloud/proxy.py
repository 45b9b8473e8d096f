"""Reverse proxy from the dashboard to a bot's control UI.

The UI is served by the agent gateway on the bot's private IP. HTML is
rewritten so asset URLs and WebSocket connections come back through this
service instead of pointing at an address the browser cannot reach.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from dataclasses import dataclass, field

import httpx
import websockets
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed, WebSocketException

from .cloud_init import GATEWAY_PORT, PAIRING_PORT
from .db_models import BotInstance
from .encryption import decrypt

logger = logging.getLogger(__name__)

PROXY_TIMEOUT = 10.0
ASSET_CACHE_CONTROL = "public, max-age=31536000, immutable"
NO_CACHE = "no-store"

CONTENT_TYPES = {
    ".js": "application/javascript",
    ".css": "text/css",
    ".html": "text/html",
    ".json": "application/json",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
}

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


class BotProxyError(RuntimeError):
    pass


@dataclass
class ProxyResult:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


async def proxy_to_bot(private_ip: str, path: str, *, port: int = GATEWAY_PORT) -> ProxyResult:
    """GET *path* from the bot's gateway. Raises BotProxyError on timeout or connection failure."""
    url = f"http://{private_ip}:{port}{path or '/'}"
    try:
        async with httpx.AsyncClient(timeout=PROXY_TIMEOUT) as client:
            resp = await client.get(url, headers={"Host": f"{private_ip}:{port}"})
    except httpx.TimeoutException as e:
        raise BotProxyError("Request timeout") from e
    except httpx.HTTPError as e:
        raise BotProxyError(str(e) or e.__class__.__name__) from e

    headers = {k.lower(): v for k, v in resp.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}
    return ProxyResult(status=resp.status_code, headers=headers, body=resp.content)


def get_content_type(path: str) -> str:
    for suffix, content_type in CONTENT_TYPES.items():
        if path.endswith(suffix):
            return content_type
    return "application/octet-stream"


def _ws_override_script(bot_id: str, gateway_token: str) -> str:
    # json.dumps yields valid JS string literals; "</" is split so it cannot close the tag
    token_js = json.dumps(gateway_token).replace("</", "<\\/")
    ws_path_js = json.dumps(f"/ws/bots/{bot_id}/")
    return f"""
<script>
  window.__BOTCLOUD_CONFIG__ = {{
    gatewayToken: {token_js},
    wsUrl: {ws_path_js}
  }};
  window.__CLAWDBOT_CONTROL_UI_BASE_PATH__ = "";

  (function() {{
    var OriginalWebSocket = window.WebSocket;
    window.WebSocket = function(url, protocols) {{
      if (url.indexOf(':{GATEWAY_PORT}') !== -1 || /^wss?:\\/\\/[^/]+\\/?$/.test(url)) {{
        var scheme = window.location.protocol === 'https:' ? 'wss:' : 'ws:';
        url = scheme + '//' + window.location.host + {ws_path_js};
      }}
      return new OriginalWebSocket(url, protocols);
    }};
    window.WebSocket.prototype = OriginalWebSocket.prototype;
    window.WebSocket.CONNECTING = OriginalWebSocket.CONNECTING;
    window.WebSocket.OPEN = OriginalWebSocket.OPEN;
    window.WebSocket.CLOSING = OriginalWebSocket.CLOSING;
    window.WebSocket.CLOSED = OriginalWebSocket.CLOSED;
  }})();
</script>
"""


def rewrite_html_for_proxy(html: str, bot_id: str, gateway_token: str) -> str:
    """Point relative assets at the proxy route and redirect the UI's WebSockets."""
    base = f"/api/bots/{bot_id}/ui"
    modified = html.replace("./assets/", f"{base}/assets/")
    modified = modified.replace("./favicon.ico", f"{base}/favicon.ico")
    return modified.replace("</head>", _ws_override_script(bot_id, gateway_token) + "</head>", 1)


def cache_control_for(path: str) -> str:
    return ASSET_CACHE_CONTROL if path.startswith("/assets/") else NO_CACHE


def gateway_token_for(bot: BotInstance) -> str:
    return decrypt(bot.gateway_token_encrypted) if bot.gateway_token_encrypted else ""


async def proxy_ui_request(bot: BotInstance, path: str) -> ProxyResult:
    """Fetch a UI path for a running bot and apply rewriting and caching rules.

    The root request carries the gateway token in its query string so the
    UI can authenticate to its own gateway.
    """
    path = "/" + path.lstrip("/")
    token = gateway_token_for(bot)
    fetch_path = f"/?token={urllib.parse.quote(token, safe='')}" if path == "/" else path

    result = await proxy_to_bot(bot.private_ip, fetch_path)

    content_type = result.headers.get("content-type", "")
    if "text/html" in content_type or path == "/":
        html = result.body.decode("utf-8", errors="replace")
        return ProxyResult(
            status=result.status,
            headers={
                "content-type": "text/html; charset=utf-8",
                "x-frame-options": "SAMEORIGIN",
                "cache-control": NO_CACHE,
            },
            body=rewrite_html_for_proxy(html, bot.id, token).encode("utf-8"),
        )

    return ProxyResult(
        status=result.status,
        headers={"content-type": get_content_type(path), "cache-control": cache_control_for(path)},
        body=result.body,
    )


def gateway_ws_url(private_ip: str, path: str = "/") -> str:
    return f"ws://{private_ip}:{GATEWAY_PORT}{path}"


def pairing_ws_url(private_ip: str) -> str:
    return f"ws://{private_ip}:{PAIRING_PORT}/"


async def relay_websocket(
    websocket: WebSocket, target_url: str, headers: dict[str, str] | None = None
) -> None:
    """Pump frames both ways between an accepted client socket and *target_url*.

    Returns when either side closes.
    """
    try:
        upstream = await websockets.connect(
            target_url, additional_headers=headers, open_timeout=PROXY_TIMEOUT
        )
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        logger.warning(f"WebSocket upstream {target_url} unavailable: {e}")
        await websocket.close(code=1011, reason="Bot unreachable")
        return

    async def client_to_upstream():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                await upstream.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])

    async def upstream_to_client():
        async for message in upstream:
            if isinstance(message, bytes):
                await websocket.send_bytes(message)
            else:
                await websocket.send_text(message)

    tasks = [
        asyncio.create_task(client_to_upstream()),
        asyncio.create_task(upstream_to_client()),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, (WebSocketDisconnect, ConnectionClosed)):
                logger.warning(f"WebSocket relay to {target_url} ended with error: {exc}")
    finally:
        for task in tasks:
            task.cancel()
        await upstream.close()
        if websocket.client_state != WebSocketState.DISCONNECTED:
            await websocket.close()
