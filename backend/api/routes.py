"""REST API routes for Galaxy Transfer."""

import asyncio
import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import DialError, PairingError, PeerUnavailable, RendezvousError, TransferError
from identity.identity import normalize_identity
from session.peer import PeerSession
from transfer.models import TransferRequest
from transfer.storage import ReceivedFileWriter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_session: PeerSession | None = None
_writer: ReceivedFileWriter | None = None
_tasks: set[asyncio.Task] = set()


def init_routes(session: PeerSession, writer: ReceivedFileWriter) -> None:
    """Inject service dependencies into the routes module."""
    global _session, _writer
    _session = session
    _writer = writer


# --- Session ---

@router.get("/identity")
async def get_identity():
    return {
        "identity": _session.current_identity(),
        "state": _session.state.value,
    }


@router.post("/session/restart")
async def restart_session():
    """Manual recovery once automatic retries have given up."""
    await _session.restart()
    return {"status": "restarting"}


# --- Trusted devices ---

@router.get("/devices")
async def list_devices():
    connected = set(_session.connected_peers())
    return {
        "devices": [
            {**d.model_dump(), "connected": d.identity in connected}
            for d in _session.trusted_devices()
        ]
    }


@router.delete("/devices/{identity}")
async def remove_device(identity: str):
    identity = normalize_identity(identity)
    await _session.disconnect(identity)
    _session.remove_trusted(identity)
    return {"status": "removed"}


# --- Connections ---

class ConnectBody(BaseModel):
    identity: str


@router.get("/connections")
async def list_connections():
    return {"connections": [c.model_dump() for c in _session.connection_list()]}


@router.post("/connections")
async def connect(body: ConnectBody):
    try:
        connection = await _session.dial(body.identity)
    except DialError as e:
        raise HTTPException(status_code=409, detail={"reason": e.reason, "message": str(e)})
    except PeerUnavailable as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RendezvousError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"identity": connection.identity, "state": connection.state.value}


@router.delete("/connections/{identity}")
async def disconnect(identity: str):
    await _session.disconnect(identity)
    return {"status": "disconnected"}


@router.post("/pairing/{identity}/accept")
async def accept_pairing(identity: str):
    try:
        await _session.accept_pairing(identity)
    except PairingError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "accepted"}


@router.post("/pairing/{identity}/reject")
async def reject_pairing(identity: str):
    try:
        await _session.reject_pairing(identity)
    except PairingError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "rejected"}


# --- Transfers ---

@router.post("/transfers")
async def create_transfer(body: TransferRequest):
    """Send files read straight from the host's disk.

    Runs in the background; progress arrives over the WebSocket.
    """
    if not _session.is_connected(body.identity):
        raise HTTPException(status_code=409, detail=f"Not paired with {body.identity}")

    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="No valid files selected")

    task = asyncio.create_task(_send_in_background(body.identity, valid_paths))
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return {"message": f"Queued {len(valid_paths)} file(s) for transfer"}


async def _send_in_background(identity: str, paths: list[str]) -> None:
    try:
        await _session.send_files(identity, paths)
    except TransferError as e:
        logger.error(f"Transfer to {identity} failed: {e}")
        await _session.events.error(str(e))


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {"save_dir": _writer.save_dir}


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        try:
            _writer.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(status_code=400, detail=f"Invalid directory: {e}")
    return {"status": "updated"}
