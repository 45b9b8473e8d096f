"""WhatsApp pairing helper that runs on the bot VM.

Listens on the pairing port and, for each WebSocket client, drives the agent
CLI through the channel login flow, forwarding the terminal QR code and
progress as JSON frames. Run with ``python -m botcloud.pairing_agent``.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import os

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .cloud_init import AGENT_CONFIG_PATH, PAIRING_PORT

logger = logging.getLogger(__name__)

AGENT_CLI = "clawdbot"
PAIRING_SECRET_ENV = "BOTCLOUD_PAIRING_SECRET"
QR_BLOCK_CHARS = ("█", "▀", "▄")
QR_BOTTOM_ROW = "█▄▄▄▄▄▄▄█"
QR_MAX_LINES = 25
QR_START_MARKER = "Scan this QR"
SUCCESS_MARKERS = ("paired", "connected", "logged in")
ERROR_MARKERS = ("error", "failed")

app = FastAPI(title="Botcloud Pairing Agent")


class QRAccumulator:
    """Turns chunks of login stdout into outbound frames.

    The CLI prints the QR code as rows of block characters spread over
    several writes; rows are buffered until the bottom finder pattern shows
    up or the buffer is taller than any QR code.
    """

    def __init__(self):
        self.buffer = ""

    def feed(self, text: str) -> dict | None:
        lowered = text.lower()
        if any(marker in lowered for marker in SUCCESS_MARKERS):
            return {"type": "paired", "success": True}

        if QR_START_MARKER in text:
            self.buffer = ""
            return None

        if any(ch in text for ch in QR_BLOCK_CHARS):
            self.buffer += text
            if QR_BOTTOM_ROW in self.buffer or len(self.buffer.split("\n")) > QR_MAX_LINES:
                return {"type": "qr", "code": self.buffer.strip()}
            return None

        if any(marker in lowered for marker in ERROR_MARKERS):
            return {"type": "error", "message": text.strip()}
        return None


def is_already_paired(channels_output: str) -> bool:
    lowered = channels_output.lower()
    return "whatsapp" in lowered and "linked" in lowered


def _cli_env() -> dict[str, str]:
    return {**os.environ, "CLAWDBOT_CONFIG_PATH": AGENT_CONFIG_PATH}


async def _run_cli(*args: str) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_exec(
        AGENT_CLI,
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=_cli_env(),
    )
    stdout, _ = await proc.communicate()
    return proc.returncode, stdout.decode(errors="replace")


async def _send(websocket: WebSocket, frame_type: str, **data) -> None:
    await websocket.send_text(json.dumps({"type": frame_type, **data}))


async def _pump_stdout(proc: asyncio.subprocess.Process, websocket: WebSocket) -> bool:
    """Forward login output as frames. Returns True once pairing succeeded."""
    accumulator = QRAccumulator()
    while True:
        chunk = await proc.stdout.read(4096)
        if not chunk:
            return False
        text = chunk.decode(errors="replace")
        logger.debug(f"stdout: {text[:100]}")
        frame = accumulator.feed(text)
        if frame is None:
            continue
        await websocket.send_text(json.dumps(frame))
        if frame["type"] == "qr":
            logger.info("Sent QR code to client")
        elif frame["type"] == "paired":
            proc.kill()
            return True


async def _pump_stderr(proc: asyncio.subprocess.Process, websocket: WebSocket) -> None:
    while True:
        chunk = await proc.stderr.read(4096)
        if not chunk:
            return
        text = chunk.decode(errors="replace")
        logger.info(f"stderr: {text.strip()}")
        await _send(websocket, "log", message=text.strip())


async def _watch_client(proc: asyncio.subprocess.Process, websocket: WebSocket) -> None:
    """Kill the login process on a cancel frame or when the client goes away."""
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                continue
            if isinstance(message, dict) and message.get("type") == "cancel":
                logger.info("Pairing cancelled by client")
                break
    except WebSocketDisconnect:
        logger.info("Client disconnected")
    if proc.returncode is None:
        proc.kill()


def _authorized(websocket: WebSocket) -> bool:
    secret = os.environ.get(PAIRING_SECRET_ENV, "")
    if not secret:
        return True
    provided = websocket.headers.get("x-pairing-secret", "")
    return hmac.compare_digest(provided, secret)


@app.websocket("/")
async def pair(websocket: WebSocket):
    if not _authorized(websocket):
        logger.warning("Unauthorized pairing connection attempt")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    logger.info("WebSocket connection established, starting pairing")
    try:
        await _send(websocket, "status", message="Checking WhatsApp connection status...")
        code, output = await _run_cli("channels", "list")
        logger.info(f"channels list exited with code {code}: {output[:200]}")
        if is_already_paired(output):
            await _send(websocket, "paired", success=True, alreadyPaired=True)
            return

        await _send(websocket, "status", message="Configuring WhatsApp channel...")
        code, _ = await _run_cli("channels", "add", "--channel", "whatsapp")
        if code != 0:
            logger.warning(f"channels add exited with code {code}, trying login anyway")

        await _send(websocket, "status", message="Starting WhatsApp pairing...")
        proc = await asyncio.create_subprocess_exec(
            AGENT_CLI,
            "channels",
            "login",
            "--channel",
            "whatsapp",
            "--verbose",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_cli_env(),
        )
        watcher = asyncio.create_task(_watch_client(proc, websocket))
        try:
            paired, _ = await asyncio.gather(_pump_stdout(proc, websocket), _pump_stderr(proc, websocket))
            returncode = await proc.wait()
        finally:
            watcher.cancel()
            if proc.returncode is None:
                proc.kill()

        logger.info(f"Pairing process exited with code {returncode}")
        if paired:
            return
        if returncode == 0:
            await _send(websocket, "complete", success=True)
        else:
            await _send(websocket, "error", message=f"Process exited with code {returncode}")
    except WebSocketDisconnect:
        logger.info("Client disconnected during pairing")
    except FileNotFoundError:
        logger.error(f"{AGENT_CLI} is not installed")
        await _send(websocket, "error", message=f"{AGENT_CLI} is not installed")
    finally:
        if websocket.client_state != WebSocketState.DISCONNECTED:
            await websocket.close()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=PAIRING_PORT)
