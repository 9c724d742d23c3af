"""Key/value persistence used by the offline sync queue and offline weather store."""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional


logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract string key/value store. Values are replaced wholesale."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """
        Read a value.

        Args:
            key: Storage key

        Returns:
            Stored string, or None if absent
        """
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """
        Replace a value.

        Args:
            key: Storage key
            value: String to store
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """
        Remove a value if present.

        Args:
            key: Storage key
        """
        pass


class MemoryStore(KeyValueStore):
    """In-process store, lost on restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """
    Store persisted to a single JSON file.

    The whole file is rewritten on each change (write to a temporary file,
    then rename) so a crash never leaves a half-written file behind.
    """

    def __init__(self, state_file: str = "state/pending_sync.json"):
        """
        Initialize JSON file store.

        Args:
            state_file: Path to the state file
        """
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._data: Dict[str, str] = {}
        self._load_state()

    def _load_state(self) -> None:
        """Load state from file."""
        if not self.state_file.exists():
            logger.info(f"No existing state file found at {self.state_file}, starting fresh")
            return

        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)

            if not isinstance(data, dict):
                logger.warning(f"State file {self.state_file} is not a JSON object, starting fresh")
                return

            self._data = {str(key): value for key, value in data.items() if isinstance(value, str)}
            logger.info(f"Loaded {len(self._data)} key(s) from {self.state_file}")
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Error loading state file: {type(e).__name__}: {e}, starting fresh")

    def _save_state(self) -> None:
        """Save state to file. Caller holds the lock."""
        tmp_file = self.state_file.with_suffix(self.state_file.suffix + '.tmp')
        try:
            with open(tmp_file, 'w') as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_file, self.state_file)
            logger.debug(f"Saved state to {self.state_file}")
        except OSError as e:
            logger.error(f"Error saving state file {self.state_file}: {type(e).__name__}: {e}")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._save_state()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save_state()
