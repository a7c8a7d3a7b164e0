"""
Connection Lifecycle Manager.

Keeps this device registered with the rendezvous service (retrying
with backoff and regenerating the identity when needed), opens and
accepts channels, and owns the set of live connections. Every inbound
message is routed to the handlers registered with ``on_message``.
"""

import asyncio
import logging

from errors import (
    ChannelClosedError,
    ChannelError,
    DialError,
    RegistrationConflict,
    RendezvousError,
    TransportError,
)
from events import EventBus, EventType, SessionStatus
from identity.identity import IdentityService, normalize_identity
from identity.trust import TrustStore
from rendezvous.base import Channel, Rendezvous
from session.messages import PairRequest, parse_control
from session.models import (
    Connection,
    ConnectionInfo,
    ConnectionState,
    RetryPolicy,
    SessionState,
)

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Registration lifecycle plus the active connection set."""

    def __init__(
        self,
        rendezvous: Rendezvous,
        identity_service: IdentityService,
        trust_store: TrustStore,
        events: EventBus,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._rendezvous = rendezvous
        self._identity = identity_service
        self._trust = trust_store
        self._events = events
        self._policy = retry_policy or RetryPolicy()
        self._state = SessionState.UNREGISTERED
        self._connections: dict[str, Connection] = {}
        self._readers: set[asyncio.Task] = set()
        self._bringup_task: asyncio.Task | None = None
        self._message_handlers: list = []  # async fn(connection, message)
        self._close_handlers: list = []  # fn(connection)

    # --- wiring ---

    def on_message(self, handler) -> None:
        """Register ``async fn(connection, message)`` for every inbound frame.

        ``message`` is a parsed control model or the raw ``bytes`` of a chunk.
        """
        self._message_handlers.append(handler)

    def on_close(self, handler) -> None:
        """Register ``fn(connection)`` called when a connection goes away."""
        self._close_handlers.append(handler)

    # --- registration lifecycle ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def local_identity(self) -> str:
        return self._identity.current_identity()

    def start(self) -> None:
        """Begin bring-up in the background. No-op while one is running."""
        if self._bringup_task and not self._bringup_task.done():
            return
        if self._state == SessionState.ONLINE:
            return
        self._state = SessionState.REGISTERING
        self._bringup_task = asyncio.create_task(self._bring_up())

    async def wait_ready(self) -> SessionState:
        """Wait for the current bring-up to finish and return the outcome."""
        if self._bringup_task is not None:
            await asyncio.shield(self._bringup_task)
        return self._state

    async def stop(self) -> None:
        """Cancel bring-up, close every connection and unregister."""
        if self._bringup_task and not self._bringup_task.done():
            self._bringup_task.cancel()
            try:
                await self._bringup_task
            except asyncio.CancelledError:
                pass
        self._bringup_task = None

        for connection in list(self._connections.values()):
            connection.close()
            await self._connection_closed(connection)
        for task in list(self._readers):
            task.cancel()
        self._readers.clear()

        try:
            await self._rendezvous.unregister()
        except RendezvousError as e:
            logger.warning(f"Unregister failed: {e}")
        self._state = SessionState.UNREGISTERED
        logger.info("Connection manager stopped")

    async def restart(self) -> None:
        """Explicit recovery after the session went offline."""
        await self.stop()
        self.start()

    async def _bring_up(self) -> None:
        await self._events.status(
            SessionStatus.RECONNECTING
            if self._state == SessionState.RECONNECTING
            else SessionStatus.CONNECTING
        )

        if await self._register_round():
            return

        identity = self._identity.regenerate_identity()
        logger.warning(f"Bring-up failed, starting over as {identity}")
        await self._events.status(SessionStatus.CONNECTING)
        if await self._register_round():
            return

        self._state = SessionState.EXHAUSTED
        logger.error("Could not register with the rendezvous service, giving up")
        await self._events.status(SessionStatus.OFFLINE)
        await self._events.error("Could not connect to the network")

    async def _register_round(self) -> bool:
        """One bring-up round with the retry budget. True once online."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._policy.window
        failures = 0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("Bring-up window elapsed")
                return False

            identity = self._identity.current_identity()
            try:
                assigned = await asyncio.wait_for(
                    self._rendezvous.register(
                        identity, self._accept_incoming, self._registration_lost
                    ),
                    timeout=min(self._policy.register_timeout, remaining),
                )
            except RegistrationConflict:
                # Free retry: only the time window bounds conflicts
                new_identity = self._identity.regenerate_identity()
                logger.warning(f"Identity {identity} taken, retrying as {new_identity}")
                continue
            except (TransportError, asyncio.TimeoutError) as e:
                failures += 1
                if failures > self._policy.max_retries:
                    logger.warning(f"Retry budget exhausted after {failures} failures")
                    return False
                delay = self._policy.delay(failures)
                if loop.time() + delay >= deadline:
                    logger.warning("Bring-up window elapsed")
                    return False
                self._state = SessionState.RECONNECTING
                logger.info(
                    f"Registration failed ({e or 'timeout'}), retry {failures} in {delay:.1f}s"
                )
                await self._events.status(SessionStatus.RECONNECTING)
                await asyncio.sleep(delay)
                continue

            if assigned != identity:
                logger.warning(f"Rendezvous assigned {assigned} instead of {identity}")
                assigned = self._identity.adopt_identity(assigned)
            self._state = SessionState.ONLINE
            logger.info(f"Online as {assigned}")
            await self._events.status(SessionStatus.ONLINE)
            await self._events.peer(EventType.READY, assigned)
            return True

    async def _registration_lost(self, exc: Exception) -> None:
        if self._state != SessionState.ONLINE:
            return
        logger.warning(f"Lost rendezvous registration: {exc}")
        self._state = SessionState.RECONNECTING
        self._bringup_task = asyncio.create_task(self._bring_up())

    # --- connections ---

    def get(self, identity: str) -> Connection | None:
        return self._connections.get(normalize_identity(identity))

    def get_paired(self, identity: str) -> Connection | None:
        connection = self.get(identity)
        if connection and connection.state == ConnectionState.PAIRED:
            return connection
        return None

    def connections(self) -> list[ConnectionInfo]:
        return [
            ConnectionInfo(
                identity=c.identity,
                state=c.state,
                outbound=c.outbound,
                trusted=self._trust.is_trusted(c.identity),
                awaiting_decision=c.awaiting_decision,
                sending=c.sending.name if c.sending else None,
            )
            for c in self._connections.values()
        ]

    def connected_peers(self) -> list[str]:
        return [
            c.identity
            for c in self._connections.values()
            if c.state == ConnectionState.PAIRED
        ]

    def is_connected(self, identity: str) -> bool:
        return self.get_paired(identity) is not None

    async def dial(self, identity: str) -> Connection:
        """Open a channel to ``identity`` and send a pairing request."""
        identity = normalize_identity(identity)
        if identity == self.local_identity:
            raise DialError(DialError.SELF_DIAL, identity)
        existing = self._connections.get(identity)
        if existing and existing.is_open:
            raise DialError(DialError.DUPLICATE, identity)
        if self._state != SessionState.ONLINE:
            raise DialError(DialError.NOT_READY, identity)

        connection = Connection(identity, outbound=True)
        self._connections[identity] = connection
        logger.info(f"Dialing {identity}")
        try:
            channel = await self._rendezvous.dial(identity)
        except RendezvousError as e:
            connection.state = ConnectionState.CLOSED
            if self._connections.get(identity) is connection:
                del self._connections[identity]
            logger.info(f"Dial to {identity} failed: {e}")
            raise

        if not connection.is_open:
            # disconnect() while the dial was in flight
            channel.close()
            raise DialError(DialError.NOT_READY, identity)

        connection.channel = channel
        self._start_reader(connection)
        request = PairRequest(
            sender=self.local_identity,
            claims_trusted=self._trust.is_trusted(identity),
        )
        channel.send(request.to_wire())
        connection.state = ConnectionState.PENDING
        return connection

    async def disconnect(self, identity: str) -> None:
        """Close the connection to ``identity`` if there is one."""
        connection = self.get(identity)
        if connection is None:
            return
        logger.info(f"Disconnecting {connection.identity}")
        connection.close()
        if connection.channel is None:
            await self._connection_closed(connection)

    def send_control(self, connection: Connection, message) -> None:
        """Send a control model on ``connection``'s channel."""
        if connection.channel is None:
            raise ChannelClosedError(f"No channel to {connection.identity}")
        connection.channel.send(message.to_wire())

    def discard(self, connection: Connection, grace: float = 0.0) -> None:
        """Forget ``connection`` now and close its channel after ``grace`` seconds."""
        if self._connections.get(connection.identity) is connection:
            del self._connections[connection.identity]
        connection.state = ConnectionState.CLOSED
        connection.pairing_request = None
        for handler in self._close_handlers:
            handler(connection)

        channel = connection.channel
        if channel is None:
            return
        if grace > 0:
            asyncio.get_running_loop().call_later(grace, channel.close)
        else:
            channel.close()

    async def _accept_incoming(self, channel: Channel) -> None:
        identity = normalize_identity(channel.remote_identity)
        existing = self._connections.get(identity)
        if existing and existing.is_open:
            logger.warning(f"Refusing second channel from {identity}")
            channel.close()
            return

        logger.info(f"Incoming channel from {identity}")
        connection = Connection(identity, outbound=False, channel=channel)
        self._connections[identity] = connection
        self._start_reader(connection)

    def _start_reader(self, connection: Connection) -> None:
        task = asyncio.create_task(self._read_loop(connection))
        self._readers.add(task)
        task.add_done_callback(self._readers.discard)

    async def _read_loop(self, connection: Connection) -> None:
        try:
            async for message in connection.channel:
                if connection.state == ConnectionState.CLOSED:
                    # Discarded; wait for the channel itself to go away
                    continue
                await self._dispatch(connection, message)
        except ChannelError as e:
            if self._connections.get(connection.identity) is connection:
                await self._events.error(f"Connection to {connection.identity} failed: {e}")
        await self._connection_closed(connection)

    async def _dispatch(self, connection: Connection, message) -> None:
        if isinstance(message, str):
            parsed = parse_control(message)
            if parsed is None:
                logger.debug(f"Discarding unparseable frame from {connection.identity}")
                return
        else:
            parsed = bytes(message)

        if connection.state == ConnectionState.INCOMING and not isinstance(parsed, PairRequest):
            logger.warning(
                f"Protocol violation from {connection.identity}: expected pair-request"
            )
            connection.close()
            return

        for handler in self._message_handlers:
            try:
                await handler(connection, parsed)
            except Exception as e:
                logger.error(f"Message handler error for {connection.identity}: {e}", exc_info=True)

    async def _connection_closed(self, connection: Connection) -> None:
        connection.state = ConnectionState.CLOSED
        connection.pairing_request = None
        for handler in self._close_handlers:
            handler(connection)

        if self._connections.get(connection.identity) is connection:
            del self._connections[connection.identity]
            logger.info(f"Disconnected from {connection.identity}")
            await self._events.peer(EventType.DISCONNECTED, connection.identity)
