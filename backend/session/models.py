"""State models for the peer session."""

import asyncio
import time
from enum import Enum

from pydantic import BaseModel

from config import (
    BRINGUP_WINDOW,
    MAX_RETRIES,
    REGISTER_TIMEOUT,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
)
from rendezvous.base import Channel


class SessionState(str, Enum):
    """Registration state of the local device."""
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    ONLINE = "online"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"


class ConnectionState(str, Enum):
    DIALING = "dialing"
    INCOMING = "incoming"
    PENDING = "pending"
    PAIRED = "paired"
    CLOSED = "closed"


class RetryPolicy(BaseModel):
    """Bring-up retry budget and backoff schedule."""
    max_retries: int = MAX_RETRIES
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = RETRY_MAX_DELAY
    register_timeout: float = REGISTER_TIMEOUT
    window: float = BRINGUP_WINDOW

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))


class PairingRequest(BaseModel):
    """An untrusted peer waiting for the user to accept or reject it."""
    identity: str
    received_at: float


class ConnectionInfo(BaseModel):
    """Read-only view of a connection for the API layer."""
    identity: str
    state: ConnectionState
    outbound: bool
    trusted: bool
    awaiting_decision: bool
    sending: str | None = None  # name of the file going out right now


class Connection:
    """One remote identity's channel and the state riding on it."""

    def __init__(self, identity: str, outbound: bool, channel: Channel | None = None):
        self.identity = identity
        self.outbound = outbound
        self.channel = channel
        self.state = ConnectionState.DIALING if outbound else ConnectionState.INCOMING
        self.pairing_request: PairingRequest | None = None
        # Held for the whole of a send() so files never interleave
        self.send_lock = asyncio.Lock()
        self.sending = None  # OutboundTransfer in flight
        self.inbound: dict = {}  # file_id -> InboundTransfer
        self._file_seq = 0

    @property
    def is_open(self) -> bool:
        return self.state != ConnectionState.CLOSED

    @property
    def awaiting_decision(self) -> bool:
        return self.state == ConnectionState.PENDING and self.pairing_request is not None

    def next_file_id(self) -> str:
        """Unique for the lifetime of this connection."""
        self._file_seq += 1
        return f"f{int(time.time() * 1000)}_{self._file_seq}"

    def close(self) -> None:
        self.state = ConnectionState.CLOSED
        self.pairing_request = None
        if self.channel is not None:
            self.channel.close()

    def __repr__(self) -> str:
        return f"<Connection {self.identity} {self.state.value}>"
