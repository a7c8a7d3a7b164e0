"""Framing shared by the relay server and the relay client.

Text frames are JSON envelopes with an ``op`` field. Binary frames are
the 32-byte ASCII channel id followed by the raw payload.
"""

import uuid

CHANNEL_ID_SIZE = 32

# Close code sent by the server when an identity is already registered
CONFLICT_CLOSE_CODE = 4009


class Op:
    # server -> client
    REGISTERED = "registered"
    CONFLICT = "conflict"
    OPEN = "open"
    UNAVAILABLE = "unavailable"
    INCOMING = "incoming"
    # both directions
    DATA = "data"
    CLOSE = "close"
    # client -> server
    DIAL = "dial"


def new_channel_id() -> str:
    return uuid.uuid4().hex


def pack_binary(channel_id: str, payload: bytes) -> bytes:
    """Prefix ``payload`` with its channel id."""
    raw_id = channel_id.encode("ascii")
    if len(raw_id) != CHANNEL_ID_SIZE:
        raise ValueError(f"Channel id must be {CHANNEL_ID_SIZE} characters")
    return raw_id + payload


def unpack_binary(frame: bytes) -> tuple[str, bytes]:
    """Split a binary frame into ``(channel_id, payload)``."""
    if len(frame) < CHANNEL_ID_SIZE:
        raise ValueError("Binary frame shorter than channel id")
    channel_id = frame[:CHANNEL_ID_SIZE].decode("ascii")
    return channel_id, frame[CHANNEL_ID_SIZE:]
