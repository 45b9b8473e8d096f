"""mTLS config delivery for bot VMs.

Bots call ``GET /config`` on the private network presenting the client
certificate issued at provisioning. The bot id comes only from the verified
certificate CN; there is no other credential on this endpoint.

Run with ``python -m botcloud.config_api``.
"""

from __future__ import annotations

import http.server
import json
import logging
import os
import socketserver
import ssl
import tempfile
import urllib.parse

from .ca import ActiveCA, get_active_ca
from .certificates import der_to_pem, extract_bot_id_from_cert, verify_certificate
from .db_models import BotInstance
from .encryption import decrypt
from .settings import get_setting, get_setting_int
from .storage import bot_store

logger = logging.getLogger(__name__)

CONFIG_PATH = "/config"
API_KEY_PROVIDERS = ("anthropic", "openai")


def _decode_api_keys(stored: str) -> dict[str, str]:
    """Stored value is a JSON object of provider keys or a bare Anthropic key."""
    plaintext = decrypt(stored)
    try:
        parsed = json.loads(plaintext)
    except ValueError:
        return {"anthropic": plaintext}
    if not isinstance(parsed, dict):
        return {"anthropic": plaintext}
    return {k: v for k, v in parsed.items() if k in API_KEY_PROVIDERS and isinstance(v, str) and v}


def build_bot_config(bot: BotInstance) -> dict:
    """Runtime config document for *bot* with every secret decrypted."""
    config: dict = {
        "agent": {"model": bot.primary_model or get_setting("agent.default_model")},
        "channels": {},
        "apiKeys": {},
    }

    if bot.litellm_key_encrypted:
        config["proxy"] = {
            "baseUrl": get_setting("litellm.public_url"),
            "apiKey": decrypt(bot.litellm_key_encrypted),
        }
    elif bot.encrypted_api_key:
        config["apiKeys"] = _decode_api_keys(bot.encrypted_api_key)

    if bot.telegram_bot_token_encrypted:
        config["channels"]["telegram"] = {"botToken": decrypt(bot.telegram_bot_token_encrypted)}

    if bot.gateway_token_encrypted:
        config["gatewayToken"] = decrypt(bot.gateway_token_encrypted)

    return config


def authenticate_peer(peer_cert_der: bytes | None, ca_cert_pem: str) -> str | None:
    """Bot id for a CA-signed ``bot-<id>`` client certificate, else None."""
    if not peer_cert_der:
        return None
    try:
        cert_pem = der_to_pem(peer_cert_der)
    except ValueError:
        return None
    if not verify_certificate(cert_pem, ca_cert_pem):
        return None
    return extract_bot_id_from_cert(cert_pem)


def handle_config_request(
    peer_cert_der: bytes | None, method: str, path: str
) -> tuple[int, dict]:
    """Route one request. Returns (status, JSON body)."""
    try:
        ca = get_active_ca()
        bot_id = authenticate_peer(peer_cert_der, ca.ca_cert)
        if not bot_id:
            return 401, {"error": "Unauthorized"}

        if method != "GET" or urllib.parse.urlsplit(path).path != CONFIG_PATH:
            return 404, {"error": "Not found"}

        bot = bot_store.get(bot_id)
        if bot is None:
            logger.info(f"Config requested for unknown bot {bot_id}")
            return 404, {"error": "Bot not found"}

        config = build_bot_config(bot)
    except Exception:
        logger.exception("Failed to deliver config")
        return 500, {"error": "Internal server error"}

    logger.info(f"Config delivered to bot {bot_id}")
    return 200, config


class ConfigAPIHandler(http.server.BaseHTTPRequestHandler):
    """Request handler; the socket is already TLS-wrapped with client certs required."""

    server_version = "botcloud-config"

    def log_message(self, format, *args):
        logger.debug(f"mTLS: {format % args}")

    def _send_json(self, code: int, data: dict):
        content = json.dumps(data).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(content)))
        self.end_headers()
        self.wfile.write(content)

    def _peer_cert(self) -> bytes | None:
        getpeercert = getattr(self.connection, "getpeercert", None)
        if getpeercert is None:
            return None
        return getpeercert(binary_form=True)

    def _handle(self):
        status, body = handle_config_request(self._peer_cert(), self.command, self.path)
        self._send_json(status, body)

    do_GET = _handle
    do_POST = _handle
    do_PUT = _handle
    do_DELETE = _handle


def create_ssl_context(ca: ActiveCA) -> ssl.SSLContext:
    """Server context presenting the config API cert and requiring CA-signed clients."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_verify_locations(cadata=ca.ca_cert)

    # load_cert_chain only reads from disk
    fd, path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(ca.server_cert)
            f.write("\n")
            f.write(ca.server_key)
        context.load_cert_chain(path)
    finally:
        os.unlink(path)
    return context


class ThreadedHTTPSServer(socketserver.ThreadingMixIn, http.server.HTTPServer):
    daemon_threads = True


def create_mtls_server(host: str | None = None, port: int | None = None) -> ThreadedHTTPSServer:
    """Bind the config API. Raises CANotInitializedError if no CA exists."""
    host = host or get_setting("config_api.host")
    port = port if port is not None else get_setting_int("config_api.port", fallback=8443)

    context = create_ssl_context(get_active_ca())
    server = ThreadedHTTPSServer((host, port), ConfigAPIHandler)
    # Handshake runs on first read, inside the handler thread
    server.socket = context.wrap_socket(
        server.socket, server_side=True, do_handshake_on_connect=False
    )
    return server


def serve() -> None:
    server = create_mtls_server()
    host, port = server.server_address[:2]
    logger.info(f"mTLS config API listening on {host}:{port}")
    try:
        server.serve_forever()
    finally:
        server.server_close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    from .database import init_db

    init_db()
    serve()
