"""Pydantic models for file transfer."""

from pydantic import BaseModel, Field


class OutboundTransfer(BaseModel):
    """The file currently being sent on one connection."""
    file_id: str
    name: str
    size: int
    mime_type: str
    chunk_count: int
    to_identity: str
    sent: int = 0


class InboundTransfer(BaseModel):
    """A file being reassembled from chunks on one connection."""
    file_id: str
    name: str
    size: int
    mime_type: str
    chunk_count: int
    from_identity: str
    received: int = 0
    chunks: list[bytes] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.received >= self.chunk_count


class TransferRequest(BaseModel):
    """API body for sending files to a paired device."""
    identity: str
    file_paths: list[str]
