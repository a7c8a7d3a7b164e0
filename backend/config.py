"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
IDENTITY_PREFIX = "GT-"
IDENTITY_LENGTH = 6
# No 0/O or 1/I: codes are read aloud and typed by hand
IDENTITY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

# --- Storage ---
CONFIG_DIR = Path(
    os.environ.get("GALAXY_CONFIG_DIR", Path.home() / ".galaxy-transfer")
)
IDENTITY_FILE = "identity.json"
TRUSTED_DEVICES_FILE = "trusted_devices.json"
DEFAULT_SAVE_DIR = str(
    os.environ.get("GALAXY_SAVE_DIR", Path.home() / "Downloads" / "GalaxyTransfer")
)

# --- Networking ---
API_HOST = os.environ.get("GALAXY_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("GALAXY_API_PORT", "8765"))
RELAY_HOST = "0.0.0.0"
RELAY_PORT = int(os.environ.get("GALAXY_RELAY_PORT", "9000"))
RELAY_URL = os.environ.get("GALAXY_RELAY_URL", f"ws://127.0.0.1:{RELAY_PORT}")

# --- Bring-up ---
REGISTER_TIMEOUT = 8.0  # seconds to wait for a single register result
DIAL_TIMEOUT = 10.0  # seconds to wait for the relay to answer a dial
BRINGUP_WINDOW = 30.0  # seconds before a bring-up round is abandoned
MAX_RETRIES = 5
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_MAX_DELAY = 5.0  # seconds

# --- Pairing ---
REJECT_GRACE_DELAY = 0.5  # seconds before closing a rejected channel

# --- Transfer ---
CHUNK_SIZE = 65536  # 64 KB
HIGH_WATER_MARK = 4 * 1024 * 1024  # 4 MB queued on the channel
DEFAULT_MIME_TYPE = "application/octet-stream"
