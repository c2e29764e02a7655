"""Per-device config file holding the server URL and auth token."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:8000"
SERVER_URL_ENV = "HEALTHSYNC_API_URL"

CONFIG_KEYS = ("server_url", "auth_token")


class LocalConfig:
    """JSON config stored at ``<config_dir>/config.json`` with mode 0600."""

    def __init__(self, config_dir: str, default_server_url: str = DEFAULT_SERVER_URL):
        self.config_dir = Path(os.path.expanduser(config_dir))
        self.config_path = self.config_dir / "config.json"
        self.default_server_url = default_server_url

    def _read(self) -> dict:
        if not self.config_path.exists():
            return {}
        try:
            with open(self.config_path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config {self.config_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump(data, f, indent=2)
        os.chmod(self.config_path, 0o600)

    def get(self, key: str) -> Optional[str]:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        if key not in CONFIG_KEYS:
            raise KeyError(key)
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def get_server_url(self) -> str:
        """Server URL: environment override, then config file, then default."""
        env_url = os.environ.get(SERVER_URL_ENV)
        if env_url:
            return env_url
        return self.get("server_url") or self.default_server_url

    def get_auth_token(self) -> Optional[str]:
        return self.get("auth_token")

    def is_logged_in(self) -> bool:
        return self.get_auth_token() is not None
