"""
Durable client session identifier.

The session id is created once per profile and kept in a small JSON file,
so it survives process restarts. Deleting the file rotates the id.
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SESSION_KEY = "analytics_session_id"
DEFAULT_SESSION_FILE = Path.home() / ".ztooly" / "analytics_session.json"


class SessionStore:
    """File-backed storage for the analytics session id."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else DEFAULT_SESSION_FILE
        self._session_id: Optional[str] = None
        self._lock = threading.Lock()

    def get_or_create(self) -> str:
        """Return the stored session id, creating and persisting one if absent."""
        with self._lock:
            if self._session_id:
                return self._session_id

            session_id = self._load()
            if not session_id:
                session_id = str(uuid.uuid4())
                self._save(session_id)

            self._session_id = session_id
            return session_id

    def _load(self) -> Optional[str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return None

        value = data.get(SESSION_KEY) if isinstance(data, dict) else None
        return value if isinstance(value, str) and value else None

    def _save(self, session_id: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps({SESSION_KEY: session_id}), encoding="utf-8")
        except OSError as e:
            # Keep the id for this process even if it cannot be persisted
            logger.warning(f"Could not persist session id to {self.path}: {e}")
