"""
Session persistence.

Only the chain family and chain id of the last session are ever written.
Addresses, balances and anything signing-related stay in memory.
"""
import os
import json
import stat
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import appdirs
import portalocker
from pydantic import ValidationError

from .models import PersistedSession

logger = logging.getLogger(__name__)


class SessionPersistence(ABC):
    """Abstract storage for the persisted session record"""

    @abstractmethod
    def load(self) -> Optional[PersistedSession]:
        """Return the stored record, or None if there is none or it is unreadable"""
        pass

    @abstractmethod
    def save(self, record: PersistedSession) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class MemorySessionPersistence(SessionPersistence):
    """In-process storage, mainly for tests and short-lived scripts"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Optional[Dict[str, Any]] = dict(initial) if initial else None

    def load(self) -> Optional[PersistedSession]:
        if self._data is None:
            return None
        return _parse_record(self._data)

    def save(self, record: PersistedSession) -> None:
        self._data = record.model_dump(by_alias=True)

    def clear(self) -> None:
        self._data = None


class FileSessionPersistence(SessionPersistence):
    """Thread-safe and process-safe JSON file storage"""

    def __init__(self, path: Optional[str] = None):
        """
        Args:
            path: Optional custom path. Defaults to ``MULTIWALLET_SESSION_PATH``
                or ``session.json`` in the user data directory.
        """
        if path:
            self.path = Path(path)
        else:
            default_path = os.environ.get(
                "MULTIWALLET_SESSION_PATH",
                str(Path(appdirs.user_data_dir("multiwallet")) / "session.json"),
            )
            self.path = Path(default_path)
        self._ensure_dir()

    def _ensure_dir(self) -> None:
        directory = self.path.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            if os.name == 'posix':
                os.chmod(directory, stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR)  # 0700

    def _get_lock_path(self) -> str:
        return str(self.path) + '.lock'

    def load(self) -> Optional[PersistedSession]:
        with portalocker.Lock(self._get_lock_path(), timeout=10):
            try:
                with open(self.path, 'r') as f:
                    data = json.load(f)
            except FileNotFoundError:
                return None
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
                return None
        return _parse_record(data)

    def save(self, record: PersistedSession) -> None:
        with portalocker.Lock(self._get_lock_path(), timeout=10):
            with open(self.path, 'w') as f:
                json.dump(record.model_dump(by_alias=True), f, indent=2)
            if os.name == 'posix':
                os.chmod(self.path, stat.S_IRUSR | stat.S_IWUSR)  # 0600
        logger.debug(f"Saved session record to {self.path}")

    def clear(self) -> None:
        with portalocker.Lock(self._get_lock_path(), timeout=10):
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass


def _parse_record(data: Any) -> Optional[PersistedSession]:
    if not isinstance(data, dict):
        logger.warning(f"Ignoring persisted session of type {type(data).__name__}")
        return None
    try:
        return PersistedSession.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid persisted session: {e.error_count()} validation error(s)")
        return None
