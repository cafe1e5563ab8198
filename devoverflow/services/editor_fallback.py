"""Decides between the rich text editor and the plain-text fallback editor.

The rich editor keeps drafts in two storage areas (persistent and
per-session). When those areas cannot take a small write, or the editor
reports an error, the session switches to the fallback editor. Storage areas
are injected objects exposing ``set_item``, ``remove_item`` and ``keys``.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from devoverflow.services.error_handling import ErrorKind

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 2
QUOTA_TEST_KEY = 'tinymce-quota-test'
QUOTA_TEST_SIZE = 1024
EDITOR_KEY_MARKERS = ('tinymce', 'mce', 'draft')

DEFAULT_ERROR_MESSAGE = "Rich text editor encountered an error"
QUOTA_ERROR_MESSAGE = "Storage quota exceeded - using fallback editor"
LOAD_ERROR_MESSAGE = "Failed to load the rich text editor - using fallback editor"
INIT_ERROR_MESSAGE = "Rich text editor initialization failed - using fallback editor"


class StorageQuotaExceededError(Exception):
    """Raised by a storage area that cannot hold more data."""


class MemoryStorage:
    """Dict-backed storage area with an optional size quota.

    Args:
        quota_bytes: Maximum total size of keys plus values; None is unlimited
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._items: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _size_with(self, key: str, value: str) -> int:
        items = dict(self._items)
        items[key] = value
        return sum(len(k) + len(v) for k, v in items.items())

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            if self.quota_bytes is not None and self._size_with(key, value) > self.quota_bytes:
                raise StorageQuotaExceededError(f"Storage quota exceeded while writing '{key}'")
            self._items[key] = value

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)


@dataclass
class EditorFallbackState:
    """Editor choice for one session."""
    use_fallback: bool = False
    error: Optional[str] = None
    is_storage_available: bool = True
    retry_count: int = 0


def describe_editor_error(error: Any) -> str:
    """Map a raw editor error to the message shown above the fallback editor."""
    message = getattr(error, 'message', None) or (str(error) if error is not None else '')
    message = message.lower()
    if not message:
        return DEFAULT_ERROR_MESSAGE
    if 'quota' in message or 'storage' in message:
        return QUOTA_ERROR_MESSAGE
    if 'network' in message or 'load' in message:
        return LOAD_ERROR_MESSAGE
    if 'initialization' in message or 'init' in message:
        return INIT_ERROR_MESSAGE
    return DEFAULT_ERROR_MESSAGE


class EditorFallback:
    """State machine choosing the rich or the fallback editor.

    Args:
        storage_areas: Storage areas checked and purged (persistent, session)
        error_log: Optional ErrorLogStore receiving editor errors
    """

    def __init__(self, storage_areas: Iterable = (), error_log=None):
        self.storage_areas = list(storage_areas)
        self._error_log = error_log
        self.state = EditorFallbackState()

    @property
    def use_fallback(self) -> bool:
        return self.state.use_fallback

    @property
    def can_retry(self) -> bool:
        return self.state.retry_count < MAX_RETRY_ATTEMPTS and self.state.is_storage_available

    def initialize(self) -> EditorFallbackState:
        """Check storage and purge stale editor state before mounting the editor."""
        if not self.check_storage_quota():
            self.state.use_fallback = True
            self.state.error = QUOTA_ERROR_MESSAGE
            self.state.is_storage_available = False
            if self._error_log is not None:
                self._error_log.log_quota_error("Editor storage quota check failed", 'editor_storage')
        self.clear_editor_storage()
        return self.state

    def check_storage_quota(self) -> bool:
        """Write and remove a 1KB value in every storage area."""
        test_data = 'x' * QUOTA_TEST_SIZE
        try:
            for area in self.storage_areas:
                area.set_item(QUOTA_TEST_KEY, test_data)
                area.remove_item(QUOTA_TEST_KEY)
        except Exception as e:
            logger.warning("Storage quota check failed: %s", e)
            return False
        return True

    def clear_editor_storage(self) -> bool:
        """Remove cached editor entries from every storage area (best effort)."""
        try:
            for area in self.storage_areas:
                stale = [k for k in area.keys() if any(marker in k for marker in EDITOR_KEY_MARKERS)]
                for key in stale:
                    area.remove_item(key)
        except Exception as e:
            logger.warning("Failed to clear editor storage: %s", e)
            return False
        logger.debug("Editor storage cleared")
        return True

    def handle_editor_error(self, error: Any) -> EditorFallbackState:
        """Switch to the fallback editor after an error from the rich editor."""
        logger.error("Rich text editor error detected: %s", error)
        message = describe_editor_error(error)
        if self._error_log is not None:
            cause = error if isinstance(error, BaseException) else None
            if message == QUOTA_ERROR_MESSAGE:
                self._error_log.log_error(ErrorKind.EDITOR_QUOTA_EXCEEDED, message, cause, {"raw": str(error)})
            else:
                self._error_log.log_editor_error(message, cause, {"raw": str(error)})

        self.state.use_fallback = True
        self.state.error = message
        self.state.is_storage_available = self.check_storage_quota()
        self.state.retry_count += 1

        self.clear_editor_storage()
        return self.state

    def reset_fallback(self) -> EditorFallbackState:
        """Return to the rich editor; only for an explicit user retry."""
        self.state.use_fallback = False
        self.state.error = None
        self.state.retry_count = 0
        return self.state

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self.state), "can_retry": self.can_retry}


class EditorSessions:
    """Editor fallback state per editing session.

    Every session gets its own session storage area; the persistent area is
    shared, like browser storage shared by all tabs of one origin. The least
    recently used session is dropped once ``max_sessions`` is exceeded.

    Args:
        persistent_quota_bytes: Quota of the shared persistent area (None is unlimited)
        session_quota_bytes: Quota of each session's own area
        max_sessions: Sessions kept in memory
        error_log: Optional ErrorLogStore handed to every EditorFallback
    """

    def __init__(
        self,
        persistent_quota_bytes: Optional[int] = None,
        session_quota_bytes: Optional[int] = None,
        max_sessions: int = 1000,
        error_log=None
    ):
        self.persistent = MemoryStorage(persistent_quota_bytes)
        self.session_quota_bytes = session_quota_bytes
        self.max_sessions = max_sessions
        self._error_log = error_log
        self._sessions: 'OrderedDict[str, EditorFallback]' = OrderedDict()
        self._lock = threading.Lock()

    def get(self, session_id: str) -> EditorFallback:
        """Return the fallback state machine of ``session_id``, creating it on first use."""
        with self._lock:
            fallback = self._sessions.get(session_id)
            if fallback is None:
                fallback = EditorFallback(
                    [self.persistent, MemoryStorage(self.session_quota_bytes)],
                    error_log=self._error_log,
                )
                self._sessions[session_id] = fallback
                while len(self._sessions) > self.max_sessions:
                    self._sessions.popitem(last=False)
            else:
                self._sessions.move_to_end(session_id)
            return fallback

    def discard(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
