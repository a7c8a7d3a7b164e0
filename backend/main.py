"""
Galaxy Transfer — FastAPI application entry point.

Starts the peer session on startup, serves the REST API and the
WebSocket event stream for the UI.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import EventBroadcaster
from config import API_HOST, API_PORT, DEFAULT_SAVE_DIR, RELAY_URL
from rendezvous.relay import RelayRendezvous
from session.peer import PeerSession
from transfer.storage import ReceivedFileWriter

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Services ---
peer_session = PeerSession(RelayRendezvous(RELAY_URL))
file_writer = ReceivedFileWriter(peer_session.events, DEFAULT_SAVE_DIR)
ws_broadcaster = EventBroadcaster()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the peer session."""
    logger.info("Starting Galaxy Transfer services...")

    try:
        # Wire up event broadcasting
        peer_session.events.subscribe(ws_broadcaster.handle_event)

        await peer_session.start()
        logger.info(
            f"Galaxy Transfer ready — API: {API_HOST}:{API_PORT}, "
            f"relay: {RELAY_URL}, identity: {peer_session.current_identity()}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down Galaxy Transfer services...")
        await peer_session.stop()


# --- FastAPI app ---
app = FastAPI(
    title="Galaxy Transfer",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(peer_session, file_writer)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_broadcaster.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_broadcaster.disconnect(websocket)
    except Exception:
        await ws_broadcaster.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
