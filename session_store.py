"""
Persisted Playwright storage state for the Supabase dashboard.

The snapshot is whatever ``BrowserContext.storage_state()`` returns (cookies
and per-origin local storage). It is only ever written after a successful
login and is read back at the start of every run.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Union

logger = logging.getLogger(__name__)


class SessionStateError(Exception):
    pass


class SessionStateNotFound(SessionStateError):
    pass


class SessionStateCorrupt(SessionStateError):
    pass


class SessionStateStore:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Dict[str, Any]:
        if not self.exists():
            raise SessionStateNotFound(f"No session snapshot at {self.path}")
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise SessionStateCorrupt(f"Unreadable session snapshot: {e}") from e
        if not isinstance(data, dict):
            raise SessionStateCorrupt("Session snapshot is not a JSON object")
        logger.debug(f"Loaded session snapshot ({len(data.get('cookies', []))} cookies)")
        return data

    def save(self, snapshot: Dict[str, Any]) -> None:
        """
        Replace the snapshot atomically.

        The new content goes to a temp file next to the target and is moved
        over it with ``os.replace``, so an interrupted write leaves the old
        snapshot untouched.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".supabase-state-", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        logger.info(f"Session snapshot saved -> {self.path}")
