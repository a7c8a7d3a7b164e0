"""
WebSocket relay client.

Implements the ``Rendezvous`` contract against ``rendezvous.server``:
one WebSocket per registered identity, multiplexing every channel.
"""

import asyncio
import json
import logging

import aiohttp

from config import DIAL_TIMEOUT, RELAY_URL
from errors import PeerUnavailable, RegistrationConflict, TransportError
from rendezvous.base import (
    Channel,
    IncomingCallback,
    LostCallback,
    Message,
    Rendezvous,
    message_size,
)
from rendezvous.protocol import Op, new_channel_id, pack_binary, unpack_binary

logger = logging.getLogger(__name__)


class RelayChannel(Channel):
    """A channel multiplexed over the relay WebSocket."""

    def __init__(self, client: "RelayRendezvous", channel_id: str, remote_identity: str):
        super().__init__(remote_identity)
        self.channel_id = channel_id
        self._client = client

    def _transmit(self, data: Message) -> None:
        self._client._enqueue(self, data)

    def _close_remote(self) -> None:
        self._client._closed_locally(self)


class RelayRendezvous(Rendezvous):
    """Registers with a relay server over aiohttp WebSockets."""

    def __init__(
        self,
        url: str = RELAY_URL,
        heartbeat: float = 20.0,
        dial_timeout: float = DIAL_TIMEOUT,
    ) -> None:
        self._url = url.rstrip("/")
        self._heartbeat = heartbeat
        self._dial_timeout = dial_timeout
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._outgoing: asyncio.Queue = asyncio.Queue()
        self._channels: dict[str, RelayChannel] = {}
        self._dials: dict[str, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()
        self._on_incoming: IncomingCallback | None = None
        self._on_lost: LostCallback | None = None
        self._closing = False

    async def register(
        self,
        identity: str,
        on_incoming: IncomingCallback,
        on_lost: LostCallback,
    ) -> str:
        await self._teardown()
        self._session = aiohttp.ClientSession()
        try:
            ws = await self._session.ws_connect(
                f"{self._url}/relay/{identity}", heartbeat=self._heartbeat
            )
            reply = await ws.receive()
        except (aiohttp.ClientError, OSError) as e:
            await self._teardown()
            raise TransportError(f"Relay unreachable: {e}") from e
        except asyncio.CancelledError:
            await self._teardown()
            raise

        if reply.type != aiohttp.WSMsgType.TEXT:
            await ws.close()
            await self._teardown()
            raise TransportError("Relay closed the connection during registration")

        try:
            op = json.loads(reply.data).get("op")
        except (json.JSONDecodeError, AttributeError):
            op = None
        if op == Op.CONFLICT:
            await ws.close()
            await self._teardown()
            raise RegistrationConflict(identity)
        if op != Op.REGISTERED:
            await ws.close()
            await self._teardown()
            raise TransportError(f"Unexpected relay reply: {reply.data!r}")

        self._ws = ws
        self._on_incoming = on_incoming
        self._on_lost = on_lost
        self._closing = False
        self._outgoing = asyncio.Queue()
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._writer_task = asyncio.create_task(self._write_loop(ws))
        logger.info(f"Registered with relay {self._url} as {identity}")
        return identity

    async def dial(self, identity: str) -> Channel:
        if self._ws is None:
            raise TransportError("Not registered with the relay")

        channel = RelayChannel(self, new_channel_id(), identity)
        future = asyncio.get_running_loop().create_future()
        self._dials[channel.channel_id] = future
        # Registered up front so frames racing the "open" reply are kept
        self._channels[channel.channel_id] = channel
        self._outgoing.put_nowait((
            json.dumps({"op": Op.DIAL, "to": identity, "channel": channel.channel_id}),
            None,
            0,
        ))
        try:
            opened = await asyncio.wait_for(future, timeout=self._dial_timeout)
        except asyncio.TimeoutError as e:
            self._channels.pop(channel.channel_id, None)
            raise TransportError(f"Relay did not answer dial to {identity}") from e
        finally:
            self._dials.pop(channel.channel_id, None)

        if not opened:
            self._channels.pop(channel.channel_id, None)
            raise PeerUnavailable(identity)
        return channel

    async def unregister(self) -> None:
        self._closing = True
        for channel in list(self._channels.values()):
            channel.close()
        await self._teardown()

    # --- internals ---

    def _enqueue(self, channel: RelayChannel, data: Message) -> None:
        if isinstance(data, str):
            frame = json.dumps({"op": Op.DATA, "channel": channel.channel_id, "text": data})
        else:
            frame = pack_binary(channel.channel_id, bytes(data))
        self._outgoing.put_nowait((frame, channel, message_size(data)))

    def _closed_locally(self, channel: RelayChannel) -> None:
        self._channels.pop(channel.channel_id, None)
        if self._ws is not None:
            self._outgoing.put_nowait((
                json.dumps({"op": Op.CLOSE, "channel": channel.channel_id}),
                None,
                0,
            ))

    async def _write_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            frame, channel, nbytes = await self._outgoing.get()
            try:
                if isinstance(frame, bytes):
                    await ws.send_bytes(frame)
                else:
                    await ws.send_str(frame)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.warning(f"Relay write failed: {e}")
                await ws.close()
                return
            if channel is not None:
                channel._flushed(nbytes)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._handle_binary(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Relay socket error: {ws.exception()}")
                    break
        except aiohttp.ClientError as e:
            logger.warning(f"Relay read failed: {e}")

        if not self._closing:
            await self._lost(TransportError("Lost connection to relay"))

    def _handle_text(self, text: str) -> None:
        try:
            message = json.loads(text)
            op = message["op"]
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.debug("Ignoring malformed relay frame")
            return

        channel_id = message.get("channel", "")
        if op in (Op.OPEN, Op.UNAVAILABLE):
            future = self._dials.get(channel_id)
            if future and not future.done():
                future.set_result(op == Op.OPEN)
        elif op == Op.INCOMING:
            channel = RelayChannel(self, channel_id, message.get("from", ""))
            self._channels[channel_id] = channel
            if self._on_incoming is not None:
                self._spawn(self._on_incoming(channel))
        elif op == Op.DATA:
            channel = self._channels.get(channel_id)
            if channel:
                channel._deliver(message.get("text", ""))
        elif op == Op.CLOSE:
            channel = self._channels.pop(channel_id, None)
            if channel:
                channel._remote_closed()

    def _handle_binary(self, frame: bytes) -> None:
        try:
            channel_id, payload = unpack_binary(frame)
        except ValueError:
            logger.debug("Ignoring short binary relay frame")
            return
        channel = self._channels.get(channel_id)
        if channel:
            channel._deliver(payload)

    async def _lost(self, exc: Exception) -> None:
        logger.warning(f"Relay registration lost: {exc}")
        for channel in list(self._channels.values()):
            channel._fail(exc)
        self._channels.clear()
        for future in self._dials.values():
            if not future.done():
                future.set_exception(TransportError(str(exc)))
        on_lost = self._on_lost
        self._ws = None
        if self._writer_task:
            self._writer_task.cancel()
        if on_lost is not None:
            await on_lost(exc)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        for task in (self._reader_task, self._writer_task):
            if task and task is not current:
                task.cancel()
        self._reader_task = self._writer_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
