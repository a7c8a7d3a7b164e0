"""Writes completed inbound files to the save directory."""

import asyncio
import logging
import os
from pathlib import Path

from config import DEFAULT_SAVE_DIR
from events import EventBus, EventType, FileCompleteEvent

logger = logging.getLogger(__name__)


def unique_path(save_dir: str | Path, name: str) -> Path:
    """A path in ``save_dir`` for ``name`` that does not clobber an existing file."""
    safe_name = Path(name).name or "received-file"
    candidate = Path(save_dir) / safe_name
    stem, suffix = candidate.stem, candidate.suffix
    counter = 1
    while candidate.exists():
        candidate = Path(save_dir) / f"{stem} ({counter}){suffix}"
        counter += 1
    return candidate


class ReceivedFileWriter:
    """Subscribes to ``file_complete`` and saves each payload to disk."""

    def __init__(self, events: EventBus, save_dir: str = DEFAULT_SAVE_DIR) -> None:
        self._save_dir = save_dir
        self.saved: list[Path] = []
        events.subscribe(self._on_file_complete, types=[EventType.FILE_COMPLETE])

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    async def _on_file_complete(self, event_type: EventType, event: FileCompleteEvent) -> None:
        os.makedirs(self._save_dir, exist_ok=True)
        path = unique_path(self._save_dir, event.name)
        await asyncio.to_thread(path.write_bytes, event.payload)
        self.saved.append(path)
        logger.info(f"Saved '{event.name}' from {event.from_identity} to {path}")
