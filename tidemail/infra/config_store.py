import json
import os

from tidemail.constants import BATCH_DELAY_SEC, BATCH_SIZE, DEFAULT_LABEL_ID, DEFAULT_PAGE_SIZE
from tidemail.paths import CLIENT_SECRETS_FILE, CONFIG_DIR, CONFIG_FILE


class Config:
    """Persistent configuration manager."""

    def __init__(self):
        self.load_error = None
        self.data = {
            "client_id": "",
            "client_secret": "",
            "client_secrets_file": CLIENT_SECRETS_FILE,
            "page_size": DEFAULT_PAGE_SIZE,
            "batch_size": BATCH_SIZE,
            "batch_delay_sec": BATCH_DELAY_SEC,
            "http_timeout_sec": None,
            "initial_label_id": DEFAULT_LABEL_ID,
        }
        self.load()

    def load(self):
        self.load_error = None
        if os.path.exists(CONFIG_FILE):
            try:
                with open(CONFIG_FILE, "r", encoding="utf-8") as f:
                    saved = json.load(f)
                if not isinstance(saved, dict):
                    raise ValueError("Config payload must be a JSON object.")
                self.data.update(saved)
            except (OSError, json.JSONDecodeError, TypeError, ValueError) as exc:
                self.load_error = str(exc)

    def save(self):
        os.makedirs(CONFIG_DIR, exist_ok=True)
        with open(CONFIG_FILE, "w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=2)

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value
        self.save()

    def get_int(self, key, default, minimum=1):
        try:
            value = int(self.data.get(key, default))
        except (TypeError, ValueError):
            return default
        return max(minimum, value)

    def get_float(self, key, default, minimum=0.0):
        raw = self.data.get(key, default)
        if raw is None:
            return default
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return default
        return max(minimum, value)
