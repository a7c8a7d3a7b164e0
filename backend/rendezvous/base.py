"""
Boundary contract for the rendezvous collaborator.

The engine only ever sees a ``Rendezvous`` (register / dial) and the
``Channel`` objects it yields: reliable, ordered, message-oriented
duplex pipes to one remote identity.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Union

from errors import ChannelClosedError, ChannelError

logger = logging.getLogger(__name__)

Message = Union[str, bytes]

_CLOSED = object()


class Channel(ABC):
    """One open channel to a remote identity.

    Messages are consumed by iterating the channel; iteration ends when
    the channel closes and raises ``ChannelError`` if it failed.
    """

    def __init__(self, remote_identity: str) -> None:
        self.remote_identity = remote_identity
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._error: Exception | None = None
        self._queued = 0
        self._flow = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queued_bytes(self) -> int:
        """Advisory count of bytes accepted by ``send`` but not yet flushed."""
        return self._queued

    def send(self, data: Message) -> None:
        """Queue a text or binary message for delivery."""
        if self._closed:
            raise ChannelClosedError(f"Channel to {self.remote_identity} is closed")
        self._queued += message_size(data)
        self._transmit(data)

    def close(self) -> None:
        """Close locally and tell the remote side."""
        if self._closed:
            return
        self._shutdown()
        self._close_remote()

    async def wait_drained(self, high_water: int) -> None:
        """Suspend until ``queued_bytes <= high_water`` or the channel closes."""
        while not self._closed and self._queued > high_water:
            self._flow.clear()
            await self._flow.wait()

    async def receive(self) -> Message:
        """Next inbound message. Raises ``ChannelClosedError`` once closed."""
        item = await self._inbox.get()
        if item is _CLOSED:
            # Leave the marker for any later receive() call
            self._inbox.put_nowait(_CLOSED)
            if self._error is not None:
                raise ChannelError(str(self._error)) from self._error
            raise ChannelClosedError(f"Channel to {self.remote_identity} is closed")
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> Message:
        try:
            return await self.receive()
        except ChannelClosedError:
            raise StopAsyncIteration

    # --- hooks for implementations ---

    @abstractmethod
    def _transmit(self, data: Message) -> None:
        """Hand ``data`` to the transport; call ``_flushed`` once written."""

    @abstractmethod
    def _close_remote(self) -> None:
        """Notify the remote end that we closed."""

    def _flushed(self, nbytes: int) -> None:
        self._queued = max(0, self._queued - nbytes)
        self._flow.set()

    def _deliver(self, data: Message) -> None:
        if not self._closed:
            self._inbox.put_nowait(data)

    def _remote_closed(self) -> None:
        self._shutdown()

    def _fail(self, exc: Exception) -> None:
        if self._closed:
            return
        logger.warning(f"Channel to {self.remote_identity} failed: {exc}")
        self._error = exc
        self._shutdown()

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(_CLOSED)
        self._flow.set()


def message_size(data: Message) -> int:
    if isinstance(data, str):
        return len(data.encode("utf-8"))
    return len(data)


IncomingCallback = Callable[[Channel], Awaitable[None]]
LostCallback = Callable[[Exception], Awaitable[None]]


class Rendezvous(ABC):
    """Registers this device's identity and yields channels to others."""

    @abstractmethod
    async def register(
        self,
        identity: str,
        on_incoming: IncomingCallback,
        on_lost: LostCallback,
    ) -> str:
        """Register ``identity`` and return the identity the service assigned.

        Raises ``RegistrationConflict`` if the identity is taken and
        ``TransportError`` on network/server failure. ``on_incoming`` is
        awaited for every channel a remote peer opens to us; ``on_lost``
        when the registration dies after succeeding.
        """

    @abstractmethod
    async def dial(self, identity: str) -> Channel:
        """Open a channel to ``identity`` or raise ``PeerUnavailable``."""

    @abstractmethod
    async def unregister(self) -> None:
        """Drop the registration and close every channel."""
