"""
Chunked file transfer over paired connections.

Sending: ``file-start``, then the file as ordered binary chunks, then
``file-end``. Chunk frames carry no file id; the receiver attaches each
chunk to the one inbound transfer still short of its declared count,
so a connection never has more than one file in flight per direction.
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Sequence

from config import CHUNK_SIZE, DEFAULT_MIME_TYPE, HIGH_WATER_MARK
from errors import ChannelClosedError, ConnectionClosedError, FileReadError, TransferError
from events import (
    EventBus,
    EventType,
    FileCompleteEvent,
    FileSentEvent,
    ProgressEvent,
    TransferDirection,
    TransferStartedEvent,
)
from session.manager import ConnectionManager
from session.messages import FileAbort, FileEnd, FileStart
from session.models import Connection, ConnectionState
from transfer.models import InboundTransfer, OutboundTransfer

logger = logging.getLogger(__name__)


def chunk_count(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Number of chunks needed for ``size`` bytes (ceiling division)."""
    return (size + chunk_size - 1) // chunk_size


def percent(done: int, total: int) -> int:
    """Whole percent complete; 100 only once every chunk is done."""
    if total <= 0:
        return 100
    return done * 100 // total


class TransferEngine:
    """Sends and reassembles files on connections owned by the manager."""

    def __init__(
        self,
        manager: ConnectionManager,
        events: EventBus,
        chunk_size: int = CHUNK_SIZE,
        high_water: int = HIGH_WATER_MARK,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._manager = manager
        self._events = events
        self._chunk_size = chunk_size
        self._high_water = high_water
        manager.on_message(self.handle_message)
        manager.on_close(self._connection_closed)

    # --- sending ---

    async def send(
        self, identity: str, files: Sequence[str | Path]
    ) -> list[OutboundTransfer]:
        """Send ``files`` to a paired device, one after another.

        A file that cannot be read is reported as an error event and
        skipped. Raises ``ConnectionClosedError`` if the connection goes
        away before every file has been sent.
        """
        connection = self._manager.get_paired(identity)
        if connection is None:
            raise TransferError(f"Not paired with {identity}", TransferError.NOT_PAIRED)

        done: list[OutboundTransfer] = []
        async with connection.send_lock:
            for path in files:
                if connection.state != ConnectionState.PAIRED:
                    raise ConnectionClosedError(connection.identity)
                try:
                    done.append(await self._send_file(connection, Path(path)))
                except FileReadError as e:
                    logger.error(f"Send error for {path}: {e}")
                    await self._events.error(str(e))
        return done

    async def _send_file(self, connection: Connection, path: Path) -> OutboundTransfer:
        try:
            size = path.stat().st_size
            handle = open(path, "rb")
        except OSError as e:
            raise FileReadError(str(path), e) from e

        transfer = OutboundTransfer(
            file_id=connection.next_file_id(),
            name=path.name,
            size=size,
            mime_type=mimetypes.guess_type(path.name)[0] or DEFAULT_MIME_TYPE,
            chunk_count=chunk_count(size, self._chunk_size),
            to_identity=connection.identity,
        )
        connection.sending = transfer
        try:
            with handle:
                await self._stream(connection, transfer, handle, path)
        finally:
            connection.sending = None
        return transfer

    async def _stream(self, connection: Connection, transfer: OutboundTransfer, handle, path: Path) -> None:
        self._send(connection, FileStart(
            file_id=transfer.file_id,
            name=transfer.name,
            size=transfer.size,
            mime_type=transfer.mime_type,
            chunk_count=transfer.chunk_count,
        ))
        logger.info(
            f"Sending '{transfer.name}' ({transfer.size} bytes, "
            f"{transfer.chunk_count} chunks) to {connection.identity}"
        )
        await self._events.emit(EventType.TRANSFER_STARTED, TransferStartedEvent(
            file_id=transfer.file_id,
            name=transfer.name,
            size=transfer.size,
            direction=TransferDirection.SENDING,
        ))

        for index in range(transfer.chunk_count):
            offset = index * self._chunk_size
            length = min(self._chunk_size, transfer.size - offset)
            try:
                chunk = await asyncio.to_thread(handle.read, length)
            except OSError as e:
                self._abort(connection, transfer)
                raise FileReadError(str(path), e) from e
            if len(chunk) != length:
                self._abort(connection, transfer)
                raise FileReadError(str(path), EOFError("file shrank while sending"))

            self._send(connection, chunk)
            transfer.sent += 1
            await self._progress(transfer, transfer.sent, TransferDirection.SENDING)
            await self._wait_for_room(connection)

        self._send(connection, FileEnd(file_id=transfer.file_id))
        if transfer.chunk_count == 0:
            await self._progress(transfer, 0, TransferDirection.SENDING)
        logger.info(f"Sent '{transfer.name}' to {connection.identity}")
        await self._events.emit(EventType.FILE_SENT, FileSentEvent(
            file_id=transfer.file_id,
            name=transfer.name,
            size=transfer.size,
            to_identity=connection.identity,
        ))

    async def _wait_for_room(self, connection: Connection) -> None:
        """Backpressure: hold off while the channel buffer is over the mark."""
        channel = connection.channel
        if channel.queued_bytes > self._high_water:
            logger.debug(
                f"Channel to {connection.identity} has {channel.queued_bytes} bytes queued, pausing"
            )
            await channel.wait_drained(self._high_water)
        if connection.state == ConnectionState.CLOSED or channel.closed:
            raise ConnectionClosedError(connection.identity)

    def _send(self, connection: Connection, message) -> None:
        if connection.state == ConnectionState.CLOSED or connection.channel is None:
            raise ConnectionClosedError(connection.identity)
        data = message if isinstance(message, bytes) else message.to_wire()
        try:
            connection.channel.send(data)
        except ChannelClosedError as e:
            raise ConnectionClosedError(connection.identity) from e

    def _abort(self, connection: Connection, transfer: OutboundTransfer) -> None:
        try:
            self._send(connection, FileAbort(file_id=transfer.file_id))
        except ConnectionClosedError:
            pass

    # --- receiving ---

    async def handle_message(self, connection: Connection, message) -> None:
        if not isinstance(message, (bytes, FileStart, FileEnd, FileAbort)):
            return
        if connection.state != ConnectionState.PAIRED:
            logger.debug(f"Ignoring transfer frame from unpaired {connection.identity}")
            return

        if isinstance(message, bytes):
            await self._on_chunk(connection, message)
        elif isinstance(message, FileStart):
            await self._on_file_start(connection, message)
        elif isinstance(message, FileEnd):
            await self._on_file_end(connection, message)
        else:
            await self._on_file_abort(connection, message)

    async def _on_file_start(self, connection: Connection, message: FileStart) -> None:
        transfer = InboundTransfer(
            file_id=message.file_id,
            name=message.name,
            size=message.size,
            mime_type=message.mime_type,
            chunk_count=message.chunk_count,
            from_identity=connection.identity,
        )
        connection.inbound[transfer.file_id] = transfer
        logger.info(f"Receiving '{transfer.name}' ({transfer.size} bytes) from {connection.identity}")
        await self._events.emit(EventType.TRANSFER_STARTED, TransferStartedEvent(
            file_id=transfer.file_id,
            name=transfer.name,
            size=transfer.size,
            direction=TransferDirection.RECEIVING,
        ))

    async def _on_chunk(self, connection: Connection, chunk: bytes) -> None:
        transfer = next(
            (t for t in connection.inbound.values() if not t.complete), None
        )
        if transfer is None:
            logger.warning(f"Dropping chunk from {connection.identity}: no transfer in progress")
            return
        transfer.chunks.append(chunk)
        transfer.received += 1
        await self._progress(transfer, transfer.received, TransferDirection.RECEIVING)

    async def _on_file_end(self, connection: Connection, message: FileEnd) -> None:
        transfer = connection.inbound.pop(message.file_id, None)
        if transfer is None:
            logger.debug(f"file-end for unknown file {message.file_id}")
            return

        payload = b"".join(transfer.chunks)
        if not transfer.complete or len(payload) != transfer.size:
            logger.error(
                f"Incomplete '{transfer.name}' from {connection.identity}: "
                f"{transfer.received}/{transfer.chunk_count} chunks, {len(payload)}/{transfer.size} bytes"
            )
            await self._events.error(f"Transfer of '{transfer.name}' arrived incomplete")
            return

        if transfer.chunk_count == 0:
            await self._progress(transfer, 0, TransferDirection.RECEIVING)
        logger.info(f"Received '{transfer.name}' from {connection.identity}")
        await self._events.emit(EventType.FILE_COMPLETE, FileCompleteEvent(
            file_id=transfer.file_id,
            name=transfer.name,
            size=transfer.size,
            mime_type=transfer.mime_type,
            payload=payload,
            from_identity=connection.identity,
        ))

    async def _on_file_abort(self, connection: Connection, message: FileAbort) -> None:
        transfer = connection.inbound.pop(message.file_id, None)
        if transfer is None:
            return
        logger.warning(f"{connection.identity} aborted '{transfer.name}'")
        await self._events.error(f"Transfer of '{transfer.name}' was aborted by the sender")

    def _connection_closed(self, connection: Connection) -> None:
        if connection.inbound:
            logger.info(
                f"Dropping {len(connection.inbound)} incomplete transfer(s) from {connection.identity}"
            )
            connection.inbound.clear()

    async def _progress(self, transfer, done: int, direction: TransferDirection) -> None:
        await self._events.emit(EventType.PROGRESS, ProgressEvent(
            file_id=transfer.file_id,
            name=transfer.name,
            done=done,
            total=transfer.chunk_count,
            percent=percent(done, transfer.chunk_count),
            direction=direction,
        ))
