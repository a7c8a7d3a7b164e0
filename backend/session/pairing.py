"""
Pairing Handshake.

A connection may only carry files once both sides agree to pair.
Devices already in the trust store (or that claim mutual trust) are
accepted straight away; anyone else waits for the user to decide.
"""

import logging
import time

from config import REJECT_GRACE_DELAY
from errors import ChannelClosedError, PairingError
from events import EventBus, EventType
from identity.trust import TrustStore
from session.manager import ConnectionManager
from session.messages import PairAccept, PairReject, PairRequest
from session.models import Connection, ConnectionState, PairingRequest

logger = logging.getLogger(__name__)


class PairingHandshake:
    """Request / accept / reject protocol on top of a fresh connection."""

    def __init__(
        self,
        manager: ConnectionManager,
        trust_store: TrustStore,
        events: EventBus,
        reject_grace: float = REJECT_GRACE_DELAY,
    ) -> None:
        self._manager = manager
        self._trust = trust_store
        self._events = events
        self._reject_grace = reject_grace
        manager.on_message(self.handle_message)

    async def handle_message(self, connection: Connection, message) -> None:
        if isinstance(message, PairRequest):
            await self._on_request(connection, message)
        elif isinstance(message, PairAccept):
            await self._on_accept(connection)
        elif isinstance(message, PairReject):
            await self._on_reject(connection)

    def pending_requests(self) -> list[PairingRequest]:
        requests = []
        for info in self._manager.connections():
            if info.awaiting_decision:
                connection = self._manager.get(info.identity)
                requests.append(connection.pairing_request)
        return requests

    async def accept(self, identity: str) -> None:
        """Accept a pending request from an untrusted device."""
        connection = self._pending(identity)
        try:
            self._manager.send_control(
                connection, PairAccept(sender=self._manager.local_identity)
            )
        except ChannelClosedError as e:
            raise PairingError(f"Connection to {connection.identity} closed") from e
        await self._pair(connection, EventType.CONNECTED)

    async def reject(self, identity: str) -> None:
        """Refuse a pending request and drop the connection."""
        connection = self._pending(identity)
        try:
            self._manager.send_control(connection, PairReject())
        except ChannelClosedError:
            pass
        logger.info(f"Rejected pairing with {connection.identity}")
        # Give the reject frame time to flush before tearing the channel down
        self._manager.discard(connection, grace=self._reject_grace)

    def _pending(self, identity: str) -> Connection:
        connection = self._manager.get(identity)
        if connection is None or not connection.awaiting_decision:
            raise PairingError(f"No pending pairing request from {identity}")
        return connection

    async def _on_request(self, connection: Connection, message: PairRequest) -> None:
        if connection.state not in (ConnectionState.DIALING, ConnectionState.INCOMING):
            logger.debug(f"Ignoring pair-request from {connection.identity} in {connection.state.value}")
            return

        if self._trust.is_trusted(connection.identity) or message.claims_trusted:
            self._manager.send_control(
                connection, PairAccept(sender=self._manager.local_identity)
            )
            await self._pair(connection, EventType.CONNECTED)
            return

        connection.state = ConnectionState.PENDING
        connection.pairing_request = PairingRequest(
            identity=connection.identity, received_at=time.time()
        )
        logger.info(f"Pairing request from untrusted device {connection.identity}")
        await self._events.peer(EventType.PAIRING_REQUEST, connection.identity)

    async def _on_accept(self, connection: Connection) -> None:
        if not self._awaiting_reply(connection):
            logger.debug(f"Ignoring stale pair-accept from {connection.identity}")
            return
        await self._pair(connection, EventType.PAIRED)

    async def _on_reject(self, connection: Connection) -> None:
        if not self._awaiting_reply(connection):
            logger.debug(f"Ignoring stale pair-reject from {connection.identity}")
            return
        logger.info(f"{connection.identity} rejected our pairing request")
        self._manager.discard(connection)
        await self._events.peer(EventType.REJECTED, connection.identity)

    @staticmethod
    def _awaiting_reply(connection: Connection) -> bool:
        return connection.outbound and connection.state in (
            ConnectionState.DIALING,
            ConnectionState.PENDING,
        )

    async def _pair(self, connection: Connection, event_type: EventType) -> None:
        connection.state = ConnectionState.PAIRED
        connection.pairing_request = None
        self._trust.save_trusted(connection.identity)
        logger.info(f"Paired with {connection.identity}")
        await self._events.peer(event_type, connection.identity)
