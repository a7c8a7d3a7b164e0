"""
Peer session: one device's identity, connections, pairing and transfers.

Everything hangs off an explicit ``PeerSession`` so several devices can
live in one process (tests run two or three against a shared in-memory
hub).
"""

import logging
from pathlib import Path
from typing import Sequence

from config import CHUNK_SIZE, CONFIG_DIR, HIGH_WATER_MARK, REJECT_GRACE_DELAY
from events import EventBus
from identity.identity import IdentityService
from identity.models import TrustedDevice
from identity.trust import TrustStore
from rendezvous.base import Rendezvous
from session.manager import ConnectionManager
from session.models import Connection, ConnectionInfo, RetryPolicy, SessionState
from session.pairing import PairingHandshake
from transfer.engine import TransferEngine
from transfer.models import OutboundTransfer

logger = logging.getLogger(__name__)


class PeerSession:
    """Builds and owns the engine components for one device."""

    def __init__(
        self,
        rendezvous: Rendezvous,
        config_dir: Path | str = CONFIG_DIR,
        retry_policy: RetryPolicy | None = None,
        chunk_size: int = CHUNK_SIZE,
        high_water: int = HIGH_WATER_MARK,
        reject_grace: float = REJECT_GRACE_DELAY,
    ) -> None:
        self.events = EventBus()
        self.identity = IdentityService(config_dir)
        self.trust_store = TrustStore(config_dir)
        self.connections = ConnectionManager(
            rendezvous, self.identity, self.trust_store, self.events, retry_policy
        )
        self.pairing = PairingHandshake(
            self.connections, self.trust_store, self.events, reject_grace
        )
        self.transfers = TransferEngine(
            self.connections, self.events, chunk_size, high_water
        )

    async def __aenter__(self) -> "PeerSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def start(self) -> None:
        logger.info(f"Starting peer session as {self.current_identity()}")
        self.connections.start()

    async def stop(self) -> None:
        await self.connections.stop()

    async def restart(self) -> None:
        await self.connections.restart()

    async def wait_ready(self) -> SessionState:
        return await self.connections.wait_ready()

    @property
    def state(self) -> SessionState:
        return self.connections.state

    def current_identity(self) -> str:
        return self.identity.current_identity()

    # --- connections & pairing ---

    async def dial(self, identity: str) -> Connection:
        return await self.connections.dial(identity)

    async def disconnect(self, identity: str) -> None:
        await self.connections.disconnect(identity)

    async def accept_pairing(self, identity: str) -> None:
        await self.pairing.accept(identity)

    async def reject_pairing(self, identity: str) -> None:
        await self.pairing.reject(identity)

    def connection_list(self) -> list[ConnectionInfo]:
        return self.connections.connections()

    def connected_peers(self) -> list[str]:
        return self.connections.connected_peers()

    def is_connected(self, identity: str) -> bool:
        return self.connections.is_connected(identity)

    # --- trusted devices ---

    def trusted_devices(self) -> list[TrustedDevice]:
        return self.trust_store.devices()

    def remove_trusted(self, identity: str) -> None:
        self.trust_store.remove_trusted(identity)

    # --- transfers ---

    async def send_files(
        self, identity: str, files: Sequence[str | Path]
    ) -> list[OutboundTransfer]:
        return await self.transfers.send(identity, files)
