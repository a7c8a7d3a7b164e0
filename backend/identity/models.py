"""Pydantic models for device identity and trust."""

from pydantic import BaseModel


class IdentityRecord(BaseModel):
    """This device's persisted rendezvous identity."""
    identity: str
    created_at: float  # Unix timestamp


class TrustedDevice(BaseModel):
    """A remote device that completed a pairing handshake with us."""
    identity: str
    name: str
    first_paired: float  # Unix timestamp
