"""
In-process rendezvous hub.

Several ``MemoryRendezvous`` endpoints sharing one ``MemoryHub`` can
register, dial each other and exchange messages on the running event
loop. The hub also lets callers inject registration failures and
liveness loss, and each channel can hold its outbound buffer to
simulate a slow network.
"""

import asyncio
import logging
from collections import deque

from errors import PeerUnavailable, RegistrationConflict, TransportError
from rendezvous.base import (
    Channel,
    IncomingCallback,
    LostCallback,
    Message,
    Rendezvous,
    message_size,
)

logger = logging.getLogger(__name__)


class MemoryChannel(Channel):
    """One end of an in-memory channel pair."""

    def __init__(self, remote_identity: str) -> None:
        super().__init__(remote_identity)
        self.peer: "MemoryChannel | None" = None
        self._outbox: deque = deque()
        self._held = False
        self._flush_scheduled = False

    @classmethod
    def pair(cls, a: str, b: str) -> tuple["MemoryChannel", "MemoryChannel"]:
        """Return ``(end held by a, end held by b)``."""
        at_a, at_b = cls(remote_identity=b), cls(remote_identity=a)
        at_a.peer, at_b.peer = at_b, at_a
        return at_a, at_b

    def hold(self) -> None:
        """Stop flushing; sent bytes accumulate in ``queued_bytes``."""
        self._held = True

    def release(self) -> None:
        self._held = False
        self._schedule_flush()

    def fail(self, exc: Exception) -> None:
        """Simulate a transport error on this end."""
        self._fail(exc)
        if self.peer:
            self.peer._remote_closed()

    def _transmit(self, data: Message) -> None:
        self._outbox.append(data)
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_scheduled or self._held:
            return
        self._flush_scheduled = True
        asyncio.get_running_loop().call_soon(self._flush)

    def _flush(self, force: bool = False) -> None:
        self._flush_scheduled = False
        while self._outbox and (force or not self._held):
            data = self._outbox.popleft()
            if self.peer:
                self.peer._deliver(data)
            self._flushed(message_size(data))

    def _close_remote(self) -> None:
        self._flush(force=True)
        if self.peer:
            self.peer._remote_closed()


class MemoryHub:
    """Shared registry standing in for the signaling server."""

    def __init__(self) -> None:
        self._endpoints: dict[str, object] = {}
        self.fail_registrations = 0  # next N register calls raise TransportError

    def claim(self, identity: str) -> None:
        """Occupy ``identity`` so the next registration for it conflicts."""
        self._endpoints[identity] = object()

    def is_registered(self, identity: str) -> bool:
        return identity in self._endpoints

    def drop(self, identity: str) -> None:
        """Simulate the registration for ``identity`` dying."""
        endpoint = self._endpoints.pop(identity, None)
        if isinstance(endpoint, MemoryRendezvous):
            logger.info(f"Dropping registration for {identity}")
            endpoint._lose(TransportError("Lost connection to rendezvous server"))

    def _register(self, identity: str, endpoint: "MemoryRendezvous") -> None:
        if self.fail_registrations > 0:
            self.fail_registrations -= 1
            raise TransportError("Rendezvous server unreachable")
        holder = self._endpoints.get(identity)
        if holder is not None and holder is not endpoint:
            raise RegistrationConflict(identity)
        self._endpoints[identity] = endpoint

    def _unregister(self, identity: str, endpoint: "MemoryRendezvous") -> None:
        if self._endpoints.get(identity) is endpoint:
            del self._endpoints[identity]

    def _lookup(self, identity: str) -> "MemoryRendezvous | None":
        endpoint = self._endpoints.get(identity)
        return endpoint if isinstance(endpoint, MemoryRendezvous) else None


class MemoryRendezvous(Rendezvous):
    """One device's view of a ``MemoryHub``."""

    def __init__(self, hub: MemoryHub) -> None:
        self.hub = hub
        self.identity: str | None = None
        self.dial_count = 0
        self.register_attempts: list[str] = []
        self.channels: list[MemoryChannel] = []
        self._on_incoming: IncomingCallback | None = None
        self._on_lost: LostCallback | None = None
        self._tasks: set[asyncio.Task] = set()

    async def register(
        self,
        identity: str,
        on_incoming: IncomingCallback,
        on_lost: LostCallback,
    ) -> str:
        await asyncio.sleep(0)
        self.register_attempts.append(identity)
        self.hub._register(identity, self)
        self.identity = identity
        self._on_incoming = on_incoming
        self._on_lost = on_lost
        return identity

    async def dial(self, identity: str) -> Channel:
        self.dial_count += 1
        await asyncio.sleep(0)
        if self.identity is None:
            raise TransportError("Not registered")
        target = self.hub._lookup(identity)
        if target is None:
            logger.debug(f"Dial to unregistered {identity}")
            raise PeerUnavailable(identity)

        local, remote = MemoryChannel.pair(self.identity, identity)
        self.channels.append(local)
        target.channels.append(remote)
        target._spawn(target._on_incoming(remote))
        return local

    async def unregister(self) -> None:
        if self.identity is not None:
            self.hub._unregister(self.identity, self)
        self.identity = None
        for channel in self.channels:
            channel.close()
        self.channels.clear()

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _lose(self, exc: Exception) -> None:
        self.identity = None
        if self._on_lost is not None:
            self._spawn(self._on_lost(exc))
