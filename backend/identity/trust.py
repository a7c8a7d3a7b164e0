"""Trust store for devices we have previously paired with."""

import json
import logging
import time
from pathlib import Path
from typing import Optional

from config import CONFIG_DIR, TRUSTED_DEVICES_FILE
from identity.models import TrustedDevice

logger = logging.getLogger(__name__)


class TrustStore:
    """Persists the set of trusted device identities."""

    def __init__(self, config_dir: Path | str = CONFIG_DIR):
        self._store_path = Path(config_dir) / TRUSTED_DEVICES_FILE
        self._devices: dict[str, TrustedDevice] = {}
        self._load()

    def _load(self) -> None:
        if not self._store_path.exists():
            return

        try:
            data = json.loads(self._store_path.read_text())
            for entry in data:
                device = TrustedDevice(**entry)
                self._devices[device.identity] = device
            logger.info(f"Loaded {len(self._devices)} trusted devices.")
        except Exception as e:
            logger.error(f"Failed to load trusted devices: {e}")

    def _save(self) -> None:
        try:
            self._store_path.parent.mkdir(parents=True, exist_ok=True)
            data = [device.model_dump() for device in self._devices.values()]
            self._store_path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            logger.error(f"Failed to save trusted devices: {e}")

    def is_trusted(self, identity: str) -> bool:
        return identity in self._devices

    def get(self, identity: str) -> Optional[TrustedDevice]:
        return self._devices.get(identity)

    def devices(self) -> list[TrustedDevice]:
        """Trusted devices in the order they were first paired."""
        return list(self._devices.values())

    def save_trusted(self, identity: str, name: str | None = None) -> TrustedDevice:
        """Record a paired device. Saving a known identity is a no-op."""
        existing = self._devices.get(identity)
        if existing:
            return existing

        device = TrustedDevice(
            identity=identity,
            name=name or f"Device {len(self._devices) + 1}",
            first_paired=time.time(),
        )
        self._devices[identity] = device
        self._save()
        logger.info(f"Added trusted device: {device.name} ({identity})")
        return device

    def remove_trusted(self, identity: str) -> None:
        if self._devices.pop(identity, None) is not None:
            self._save()
            logger.info(f"Removed trusted device {identity}")
