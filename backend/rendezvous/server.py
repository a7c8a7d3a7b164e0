"""
Relay Server - WebSocket rendezvous for Galaxy Transfer devices.

Each device keeps one WebSocket open under its identity. The server
refuses a second registration for the same identity, opens channels
between registered identities and forwards channel traffic verbatim.
"""

import asyncio
import json
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from config import RELAY_HOST, RELAY_PORT
from rendezvous.protocol import CONFLICT_CLOSE_CODE, Op, unpack_binary

logger = logging.getLogger(__name__)


class RelayHub:
    """Registered devices and the channels open between them."""

    def __init__(self) -> None:
        self._clients: dict[str, WebSocket] = {}
        self._channels: dict[str, tuple[str, str]] = {}  # id -> (dialer, target)
        self._lock = asyncio.Lock()

    async def attach(self, identity: str, websocket: WebSocket) -> bool:
        """Register ``identity``; False if it is already taken."""
        async with self._lock:
            if identity in self._clients:
                return False
            self._clients[identity] = websocket
        logger.info(f"Registered {identity}. Total: {len(self._clients)}")
        return True

    async def detach(self, identity: str, websocket: WebSocket) -> None:
        """Drop a registration and close every channel it took part in."""
        async with self._lock:
            if self._clients.get(identity) is not websocket:
                return
            del self._clients[identity]
            orphaned = [
                (channel_id, ends)
                for channel_id, ends in self._channels.items()
                if identity in ends
            ]
            for channel_id, _ in orphaned:
                del self._channels[channel_id]

        for channel_id, ends in orphaned:
            other = ends[1] if ends[0] == identity else ends[0]
            await self._send_json(other, {"op": Op.CLOSE, "channel": channel_id})
        logger.info(f"Unregistered {identity}. Total: {len(self._clients)}")

    async def handle_text(self, identity: str, text: str) -> None:
        try:
            message = json.loads(text)
            op = message["op"]
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.debug(f"Ignoring malformed frame from {identity}")
            return

        if op == Op.DIAL:
            await self._dial(identity, message.get("to", ""), message.get("channel", ""))
        elif op == Op.DATA:
            channel_id = message.get("channel", "")
            other = self._other_end(channel_id, identity)
            if other:
                await self._send_json(other, {
                    "op": Op.DATA,
                    "channel": channel_id,
                    "text": message.get("text", ""),
                })
        elif op == Op.CLOSE:
            channel_id = message.get("channel", "")
            other = self._other_end(channel_id, identity)
            if other:
                self._channels.pop(channel_id, None)
                await self._send_json(other, {"op": Op.CLOSE, "channel": channel_id})
        else:
            logger.debug(f"Unknown op {op!r} from {identity}")

    async def handle_binary(self, identity: str, frame: bytes) -> None:
        try:
            channel_id, _ = unpack_binary(frame)
        except ValueError:
            logger.debug(f"Ignoring short binary frame from {identity}")
            return
        other = self._other_end(channel_id, identity)
        websocket = self._clients.get(other) if other else None
        if websocket is None:
            return
        try:
            await websocket.send_bytes(frame)
        except Exception as e:
            logger.debug(f"Failed to forward chunk to {other}: {e}")

    async def _dial(self, identity: str, target: str, channel_id: str) -> None:
        if not channel_id or channel_id in self._channels:
            return
        if target == identity or target not in self._clients:
            await self._send_json(identity, {"op": Op.UNAVAILABLE, "channel": channel_id})
            return

        self._channels[channel_id] = (identity, target)
        # Dialer learns about the channel before the target can answer on it
        await self._send_json(identity, {"op": Op.OPEN, "channel": channel_id})
        await self._send_json(target, {
            "op": Op.INCOMING,
            "from": identity,
            "channel": channel_id,
        })

    def _other_end(self, channel_id: str, identity: str) -> str | None:
        ends = self._channels.get(channel_id)
        if not ends or identity not in ends:
            return None
        return ends[1] if ends[0] == identity else ends[0]

    async def _send_json(self, identity: str, message: dict) -> None:
        websocket = self._clients.get(identity)
        if websocket is None:
            return
        try:
            await websocket.send_text(json.dumps(message))
        except Exception as e:
            logger.debug(f"Failed to send {message['op']} to {identity}: {e}")


def create_relay_app() -> FastAPI:
    """Build a relay application with its own hub."""
    app = FastAPI(title="Galaxy Transfer Relay")
    hub = RelayHub()
    app.state.hub = hub

    @app.websocket("/relay/{identity}")
    async def relay_endpoint(websocket: WebSocket, identity: str):
        await websocket.accept()
        if not await hub.attach(identity, websocket):
            await websocket.send_text(json.dumps({"op": Op.CONFLICT}))
            await websocket.close(code=CONFLICT_CLOSE_CODE)
            return

        await websocket.send_text(
            json.dumps({"op": Op.REGISTERED, "identity": identity})
        )
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("text") is not None:
                    await hub.handle_text(identity, message["text"])
                elif message.get("bytes") is not None:
                    await hub.handle_binary(identity, message["bytes"])
        except WebSocketDisconnect:
            pass
        finally:
            await hub.detach(identity, websocket)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_relay_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(app, host=RELAY_HOST, port=RELAY_PORT, log_level="info")
