"""Persistent key/value session file."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

AUTH_TOKEN_KEY = "recon_flow_auth_token"
USER_DATA_KEY = "recon_flow_user_data"


class SessionStore:
    """Small JSON-backed key/value store for the session token and user profile.

    This is the only durable local state; everything else is rebuilt from
    server responses.
    """

    def __init__(self, session_file: Path):
        self.session_file = Path(session_file).expanduser()
        self.values: Dict[str, Any] = {}
        self.load()

    def load(self):
        """Load values from disk; a missing or corrupt file yields an empty session."""
        self.values = {}
        if not self.session_file.exists():
            return

        try:
            with open(self.session_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error reading session file {self.session_file}: {e}")
            return

        if isinstance(data, dict):
            self.values = data
        else:
            logger.warning(f"Ignoring malformed session file {self.session_file}")

    def save(self):
        """Write values to disk atomically."""
        self.session_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.session_file.with_suffix(".tmp")
        with open(tmp_file, "w") as f:
            json.dump(self.values, f, indent=2)
        tmp_file.replace(self.session_file)

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any):
        self.values[key] = value
        self.save()

    def remove(self, key: str):
        if key in self.values:
            del self.values[key]
            self.save()

    def clear(self):
        self.values = {}
        if self.session_file.exists():
            self.session_file.unlink()

    # Well-known keys

    def get_token(self) -> Optional[str]:
        return self.get(AUTH_TOKEN_KEY)

    def get_user(self) -> Optional[Dict[str, Any]]:
        return self.get(USER_DATA_KEY)
