import json
import logging
import os
import fcntl
from pathlib import Path
from pydantic import BaseModel, Field
from typing import Dict
from .models import DeviceAttributes
from .config import settings

logger = logging.getLogger(__name__)

class DeviceStore(BaseModel):
    devices: Dict[str, DeviceAttributes] = Field(default_factory=dict)

class StateManager:
    """
    Key/value store of DeviceAttributes keyed by device id, backed by one JSON file.
    Each invocation loads once and saves once; concurrent invocations for the
    same device are last-write-wins.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.state = DeviceStore()
        self.read_only = False
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.debug(f"No state file found at {self.path}, starting empty.")
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
                self.state = DeviceStore(**data)
        except Exception as e:
            logger.error(f"Failed to load state: {e}. Starting fresh.", exc_info=True)

    def load(self, device_id: str) -> DeviceAttributes:
        # Re-read so another worker's last save is visible
        if settings.PERSIST_ENABLED and not self.read_only:
            self._load()
        attrs = self.state.devices.get(device_id)
        if attrs is None:
            return DeviceAttributes()
        return attrs.model_copy(deep=True)

    def save(self, device_id: str, attrs: DeviceAttributes):
        if settings.PERSIST_ENABLED and not self.read_only:
            # Pick up other devices written since our load
            self._load()
        self.state.devices[device_id] = attrs.model_copy(deep=True)
        if not self._write():
            logger.warning(f"State for device {device_id} was not persisted; it lives in memory only")

    def _write(self) -> bool:
        if not settings.PERSIST_ENABLED or self.read_only:
            return True

        tmp_path = self.path.with_suffix('.tmp')
        try:
            # Truncate only once the lock is ours; another writer may be mid-dump
            with os.fdopen(os.open(tmp_path, os.O_WRONLY | os.O_CREAT, 0o644), 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning("Could not acquire lock for state save. Skipping save cycle.")
                    return False

                try:
                    f.truncate(0)
                    json.dump(self.state.model_dump(mode="json"), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.replace(tmp_path, self.path)
            return True

        except OSError as e:
            logger.error(f"Failed to save state to {self.path}: {e}")
            # Keep serving from memory for the rest of this run
            self.read_only = True
            return False

    def active_sessions(self) -> int:
        return sum(1 for a in self.state.devices.values() if a.current_play_session is not None)
