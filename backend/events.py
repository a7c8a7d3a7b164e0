"""
Event surface raised by the engine for the UI layer.

Any number of observers may subscribe; each receives
``(event_type, payload)`` where ``payload`` is one of the models below.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STATUS = "status"
    READY = "ready"
    PAIRING_REQUEST = "pairing_request"
    CONNECTED = "connected"
    PAIRED = "paired"
    REJECTED = "rejected"
    DISCONNECTED = "disconnected"
    TRANSFER_STARTED = "transfer_started"
    PROGRESS = "progress"
    FILE_COMPLETE = "file_complete"
    FILE_SENT = "file_sent"
    ERROR = "error"


class SessionStatus(str, Enum):
    """Coarse status shown to the user."""
    CONNECTING = "connecting"
    ONLINE = "online"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


# --- Payloads ---

class StatusEvent(BaseModel):
    status: SessionStatus


class PeerEvent(BaseModel):
    """Used for ready, pairing_request, connected, paired, rejected, disconnected."""
    identity: str


class TransferStartedEvent(BaseModel):
    file_id: str
    name: str
    size: int
    direction: TransferDirection


class ProgressEvent(BaseModel):
    file_id: str
    name: str
    done: int
    total: int
    percent: int
    direction: TransferDirection


class FileCompleteEvent(BaseModel):
    file_id: str
    name: str
    size: int
    mime_type: str
    payload: bytes
    from_identity: str


class FileSentEvent(BaseModel):
    file_id: str
    name: str
    size: int
    to_identity: str


class ErrorEvent(BaseModel):
    message: str


EventCallback = Callable[[EventType, BaseModel], Awaitable[None]]


class EventBus:
    """Fan-out of engine events to registered async observers."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventCallback, frozenset | None]] = []

    def subscribe(
        self, callback: EventCallback, types: Iterable[EventType] | None = None
    ) -> Callable[[], None]:
        """Register ``async fn(event_type, payload)``.

        ``types`` limits delivery to the given event types. Returns a
        function that removes the subscription.
        """
        entry = (callback, frozenset(types) if types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def emit(self, event_type: EventType, payload: BaseModel) -> None:
        """Deliver an event to every interested subscriber."""
        for callback, types in list(self._subscribers):
            if types is not None and event_type not in types:
                continue
            try:
                await callback(event_type, payload)
            except Exception as e:
                logger.error(f"Event callback error on {event_type.value}: {e}")

    # Convenience wrappers keep call sites short

    async def status(self, status: SessionStatus) -> None:
        await self.emit(EventType.STATUS, StatusEvent(status=status))

    async def peer(self, event_type: EventType, identity: str) -> None:
        await self.emit(event_type, PeerEvent(identity=identity))

    async def error(self, message: str) -> None:
        await self.emit(EventType.ERROR, ErrorEvent(message=message))
