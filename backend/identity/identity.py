"""
Identity Service for generating and persisting this device's short code.
"""

import json
import logging
import secrets
import time
from pathlib import Path

from config import (
    CONFIG_DIR,
    IDENTITY_ALPHABET,
    IDENTITY_FILE,
    IDENTITY_LENGTH,
    IDENTITY_PREFIX,
)
from identity.models import IdentityRecord

logger = logging.getLogger(__name__)


def generate_identity(
    alphabet: str = IDENTITY_ALPHABET,
    length: int = IDENTITY_LENGTH,
    prefix: str = IDENTITY_PREFIX,
) -> str:
    """Return a fresh random code such as ``GT-7KQ2XM``."""
    return prefix + "".join(secrets.choice(alphabet) for _ in range(length))


def normalize_identity(text: str) -> str:
    """Canonical form of a user-typed identity."""
    return text.strip().upper()


class IdentityService:
    """Owns the current device identity and keeps it on disk.

    If the identity file cannot be read or written the service keeps
    working with an in-memory identity for the rest of the session.
    """

    def __init__(self, config_dir: Path | str = CONFIG_DIR):
        self._path = Path(config_dir) / IDENTITY_FILE
        self._record: IdentityRecord | None = None
        self.persistent = True

    def current_identity(self) -> str:
        """Return the persisted identity, creating one on first use."""
        if self._record is None:
            self._record = self._load()
        if self._record is None:
            self._record = IdentityRecord(
                identity=generate_identity(), created_at=time.time()
            )
            self._save()
            logger.info(f"Generated device identity {self._record.identity}")
        return self._record.identity

    def regenerate_identity(self) -> str:
        """Discard the current identity and persist a new one."""
        old = self._record.identity if self._record else None
        new = generate_identity()
        while new == old:
            new = generate_identity()
        self._record = IdentityRecord(identity=new, created_at=time.time())
        self._save()
        logger.info(f"Regenerated device identity {old} -> {new}")
        return new

    def adopt_identity(self, identity: str) -> str:
        """Persist an identity handed to us by the rendezvous service."""
        identity = normalize_identity(identity)
        if self._record is None or self._record.identity != identity:
            self._record = IdentityRecord(identity=identity, created_at=time.time())
            self._save()
            logger.info(f"Adopted assigned identity {identity}")
        return identity

    def _load(self) -> IdentityRecord | None:
        if not self._path.exists():
            return None
        try:
            return IdentityRecord(**json.loads(self._path.read_text()))
        except Exception as e:
            logger.warning(f"Failed to load identity from {self._path}: {e}")
            return None

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(self._record.model_dump(), indent=2))
            self.persistent = True
        except OSError as e:
            self.persistent = False
            logger.warning(f"Identity storage unavailable, keeping it in memory: {e}")
