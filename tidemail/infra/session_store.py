import copy
import json
import logging
import os
import threading

from tidemail.constants import STORAGE_KEY_PREFIX
from tidemail.paths import SESSION_FILE

logger = logging.getLogger(__name__)


class SessionStore:
    """JSON-file store for state that survives a restart but not a sign-out."""

    def __init__(self, path=None, prefix=STORAGE_KEY_PREFIX):
        self.path = path or SESSION_FILE
        self.prefix = prefix
        self._lock = threading.Lock()
        self._data = self._read()

    def _read(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Ignoring session file %s: payload is not a JSON object", self.path)
            return {}
        return payload

    def _write(self):
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2)

    def _key(self, key):
        return f"{self.prefix}{key}"

    def get(self, key, default=None):
        with self._lock:
            return copy.deepcopy(self._data.get(self._key(key), default))

    def set(self, key, value):
        """Store ``value`` under ``key``; falsy values remove the key instead."""
        if not value:
            self.remove(key)
            return
        with self._lock:
            self._data[self._key(key)] = copy.deepcopy(value)
            self._write()

    def remove(self, key):
        with self._lock:
            if self._data.pop(self._key(key), None) is not None:
                self._write()

    def clear(self):
        with self._lock:
            self._data = {}
            if os.path.exists(self.path):
                os.remove(self.path)
